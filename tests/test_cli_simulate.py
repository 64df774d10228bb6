import io
import json

from inbox_sync.cli import _load_frames, main, simulate

OWN = "+911111111111"
PEER = "+919876543210"


def _frames():
    return [
        {"t": "incoming_message", "body": {"sid": "m1", "from": PEER, "body": "hi", "timestamp": 10}},
        {"t": "incoming_message", "body": {"sid": "m1", "from": PEER, "body": "hi", "timestamp": 10}},
        {"t": "outgoing_message", "body": {"sid": "SM1", "to": PEER, "body": "hello back", "timestamp": 20}},
        {"event": "new_message", "data": {"sid": "m2", "from": PEER, "to": OWN, "body": "again", "timestamp": 30}},
        {"t": "message_status_update", "body": {"sid": "SM1", "status": "read"}},
        {"t": "message_status_update", "body": {"sid": "SM1", "status": "delivered"}},
        {"t": "nonsense", "body": {}},
    ]


def test_simulate_dumps_reconciled_state():
    output = io.StringIO()

    dropped = simulate(_frames(), OWN, output)

    state = json.loads(output.getvalue())
    assert dropped == 1
    assert state["dropped"] == 1
    assert [entry["key"] for entry in state["conversations"]] == ["9876543210"]
    assert state["conversations"][0]["unread"] == 2
    messages = state["messages"]["9876543210"]
    assert [message["id"] for message in messages] == ["m1", "SM1", "m2"]
    assert [message["direction"] for message in messages] == ["other", "self", "other"]
    assert messages[1]["status"] == "read"


def test_simulate_with_focus_keeps_unread_at_zero():
    output = io.StringIO()

    simulate(_frames(), OWN, output, focus=PEER)

    state = json.loads(output.getvalue())
    assert state["total_unread"] == 0


def test_load_frames_accepts_list_and_json_lines():
    as_list = io.StringIO(json.dumps(_frames()))
    assert len(_load_frames(as_list)) == 7

    lines = "\n".join(json.dumps(frame) for frame in _frames()[:2]) + "\n\n"
    assert len(_load_frames(io.StringIO(lines))) == 2

    assert _load_frames(io.StringIO("   ")) == []


def test_main_simulate_reads_file(tmp_path):
    frames_path = tmp_path / "frames.jsonl"
    frames_path.write_text("\n".join(json.dumps(frame) for frame in _frames()), encoding="utf-8")
    output = io.StringIO()

    code = main(["simulate", "-f", str(frames_path), "--own-number", OWN], output=output)

    assert code == 0
    assert json.loads(output.getvalue())["dropped"] == 1
