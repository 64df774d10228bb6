"""Phone-number identity helpers shared by every sync component."""

from __future__ import annotations

import re

KEY_LENGTH = 10
WHATSAPP_SCHEME = "whatsapp:"

_NON_DIGITS_RE = re.compile(r"\D")
_SCHEME_RE = re.compile(r"^\s*(?:whatsapp|sms|tel):", flags=re.IGNORECASE)


def digits_only(value: object) -> str:
    if value is None:
        return ""
    return _NON_DIGITS_RE.sub("", str(value))


def canonical_key(value: object) -> str:
    """Return the last ``KEY_LENGTH`` digits of ``value``.

    Inputs with fewer digits than that yield ``""``, which never compares
    equal to anything.
    """

    digits = digits_only(value)
    if len(digits) < KEY_LENGTH:
        return ""
    return digits[-KEY_LENGTH:]


def same_party(a: object, b: object) -> bool:
    key_a = canonical_key(a)
    key_b = canonical_key(b)
    return bool(key_a) and key_a == key_b


def strip_transport(value: object) -> str:
    if value is None:
        return ""
    return _SCHEME_RE.sub("", str(value)).strip()


def is_whatsapp(value: object) -> bool:
    return value is not None and str(value).strip().lower().startswith(WHATSAPP_SCHEME)


def to_transport_address(value: str, channel: str = "sms", default_country_code: str = "91") -> str:
    """Format ``value`` as a destination address for the send API."""

    bare = strip_transport(value)
    if not bare.startswith("+"):
        digits = digits_only(bare)
        bare = f"+{default_country_code}{digits}" if len(digits) == KEY_LENGTH else f"+{digits}"
    if channel == "whatsapp":
        return f"{WHATSAPP_SCHEME}{bare}"
    return bare
