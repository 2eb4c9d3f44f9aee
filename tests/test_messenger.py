"""Tests for the cross-context messenger and wire envelope."""

import json

import pytest

from preview_sync.event_types import ChannelMessage, encode_message, parse_message
from preview_sync.pipeline.messenger import BrowsingContext, Messenger


@pytest.fixture
def contexts(scheduler):
    pane = BrowsingContext("https://admin.example.com/wp-admin/customize.php", scheduler, name="pane")
    preview = BrowsingContext("https://example.com/", scheduler, name="preview")
    return pane, preview


def test_round_trip_delivers_event_and_data(scheduler, contexts):
    pane, preview = contexts
    sender = Messenger(pane, target=preview, channel="preview-0")
    receiver = Messenger(preview, target=pane, channel="preview-0")
    received = []
    receiver.bind("setting", received.append)

    sender.send("setting", ["blogname", "Foo"])
    assert received == []  # delivery is asynchronous
    scheduler.run_pending()
    assert received == [["blogname", "Foo"]]


def test_delivery_preserves_send_order(scheduler, contexts):
    pane, preview = contexts
    sender = Messenger(pane, target=preview)
    receiver = Messenger(preview, target=pane)
    received = []
    receiver.bind("n", received.append)
    for i in range(5):
        sender.send("n", i)
    scheduler.run_pending()
    assert received == [0, 1, 2, 3, 4]


def test_foreign_origin_is_dropped(scheduler, contexts):
    pane, preview = contexts
    stranger = BrowsingContext("https://evil.example/", scheduler)
    receiver = Messenger(preview, target=pane)
    received = []
    receiver.bind("setting", received.append)

    Messenger(stranger, target=preview, origin=preview.origin).send("setting", ["x", 1])
    scheduler.run_pending()
    assert received == []


def test_channel_mismatch_is_dropped(scheduler, contexts):
    pane, preview = contexts
    receiver = Messenger(preview, target=pane, channel="preview-1")
    received = []
    receiver.bind("setting", received.append)

    Messenger(pane, target=preview, channel="preview-2").send("setting", 1)
    Messenger(pane, target=preview).send("setting", 2)
    scheduler.run_pending()
    assert received == []


def test_unchannelled_receiver_drops_channelled_message(scheduler, contexts):
    pane, preview = contexts
    receiver = Messenger(preview, target=pane)
    received = []
    receiver.bind("setting", received.append)
    Messenger(pane, target=preview, channel="preview-1").send("setting", 1)
    scheduler.run_pending()
    assert received == []


def test_target_origin_mismatch_is_not_delivered(scheduler, contexts):
    pane, preview = contexts
    receiver = Messenger(preview, target=pane)
    received = []
    receiver.bind("ping", received.append)
    Messenger(pane, target=preview, origin="https://not-the-preview.example").send("ping", 1)
    scheduler.run_pending()
    assert received == []


def test_unparseable_payload_is_ignored(scheduler, contexts):
    pane, preview = contexts
    receiver = Messenger(preview, target=pane)
    received = []
    receiver.bind("ping", received.append)
    preview.post_message("not json", "*", source=pane)
    preview.post_message(json.dumps({"data": 1}), "*", source=pane)
    scheduler.run_pending()
    assert received == []


def test_send_without_target_is_noop(scheduler, contexts):
    _, preview = contexts
    Messenger(preview).send("ping")
    assert scheduler.run_pending() == 0


def test_destroy_stops_receiving(scheduler, contexts):
    pane, preview = contexts
    receiver = Messenger(preview, target=pane)
    received = []
    receiver.bind("ping", received.append)
    receiver.destroy()
    Messenger(pane, target=preview).send("ping", 1)
    scheduler.run_pending()
    assert received == []


def test_local_trigger_uses_same_handlers(contexts):
    _, preview = contexts
    messenger = Messenger(preview)
    seen = []
    messenger.bind("settings", seen.append)
    messenger.trigger("settings", {"a": 1})
    assert seen == [{"a": 1}]


class TestEnvelope:
    def test_encode_shape(self):
        raw = encode_message(ChannelMessage(channel="c", event="ready", data={"x": 1}))
        assert json.loads(raw) == {"id": "c", "event": "ready", "data": {"x": 1}}

    def test_parse_accepts_dict_and_bytes(self):
        assert parse_message({"event": "e"}).event == "e"
        message = parse_message(b'{"id": "", "event": "e", "data": [1]}')
        assert message.channel is None
        assert message.data == [1]

    @pytest.mark.parametrize("raw", ["[1, 2]", "{bad", '{"event": ""}', 42])
    def test_parse_rejects_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_message(raw)
