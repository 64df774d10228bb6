from inbox_sync.identity import (
    canonical_key,
    digits_only,
    is_whatsapp,
    same_party,
    strip_transport,
    to_transport_address,
)


def test_canonical_key_uses_last_ten_digits():
    assert canonical_key("+91 98765-43210") == "9876543210"
    assert canonical_key("whatsapp:+919876543210") == "9876543210"
    assert canonical_key("09876543210") == "9876543210"


def test_canonical_key_is_empty_for_short_inputs():
    assert canonical_key("12345") == ""
    assert canonical_key(None) == ""
    assert canonical_key("") == ""


def test_same_party_matches_differently_formatted_numbers():
    assert same_party("+919876543210", "(987) 654-3210")
    assert same_party("whatsapp:+919876543210", "9876543210")
    assert not same_party("+919876543210", "+919876543211")


def test_empty_suffix_never_matches():
    assert not same_party("123", "123")
    assert not same_party("", "")
    assert not same_party(None, None)


def test_digits_only_and_strip_transport():
    assert digits_only("+1 (555) 010-9999") == "15550109999"
    assert strip_transport("whatsapp:+15550109999") == "+15550109999"
    assert strip_transport("SMS:+15550109999") == "+15550109999"
    assert is_whatsapp("WhatsApp:+15550109999")
    assert not is_whatsapp("+15550109999")


def test_to_transport_address_adds_country_code_and_scheme():
    assert to_transport_address("9876543210") == "+919876543210"
    assert to_transport_address("9876543210", default_country_code="1") == "+19876543210"
    assert to_transport_address("+919876543210", "whatsapp") == "whatsapp:+919876543210"
    assert to_transport_address("whatsapp:+919876543210") == "+919876543210"
    assert to_transport_address("919876543210") == "+919876543210"
