"""Tests for Events, Value and Values."""

import pytest

from preview_sync.core.events import Events
from preview_sync.core.values import Value, Values, detach_value


class TestEvents:
    def test_trigger_calls_handlers_in_order(self):
        events = Events()
        calls = []
        events.bind("x", lambda v: calls.append(("a", v)))
        events.bind("x", lambda v: calls.append(("b", v)))
        events.trigger("x", 1)
        assert calls == [("a", 1), ("b", 1)]

    def test_unbind_one_and_all(self):
        events = Events()
        calls = []

        def handler():
            calls.append("h")

        events.bind("x", handler)
        events.bind("x", lambda: calls.append("other"))
        events.unbind("x", handler)
        events.trigger("x")
        assert calls == ["other"]
        events.unbind("x")
        assert not events.has_handlers("x")

    def test_handler_bound_during_trigger_runs_next_time(self):
        events = Events()
        calls = []

        def late():
            calls.append("late")

        def first():
            calls.append("first")
            events.bind("x", late)

        events.bind("x", first)
        events.trigger("x")
        assert calls == ["first"]
        events.trigger("x")
        assert calls == ["first", "first", "late"]

    def test_unbinding_unknown_handler_is_noop(self):
        events = Events()
        events.unbind("missing", lambda: None)
        assert events.handler_count("missing") == 0


class TestValue:
    def test_set_notifies_with_new_and_old(self):
        value = Value("a")
        seen = []
        value.bind(lambda new, old: seen.append((new, old)))
        assert value.set("b") is True
        assert seen == [("b", "a")]

    def test_equal_set_is_noop(self):
        value = Value({"k": [1, 2]})
        seen = []
        value.bind(lambda new, old: seen.append(new))
        assert value.set({"k": [1, 2]}) is False
        assert seen == []

    def test_type_change_counts_as_change(self):
        value = Value(1)
        assert value.set(1.0) is True
        assert value.set(True) is True

    def test_get_returns_detached_copy(self):
        value = Value({"k": [1]})
        copy = value.get()
        copy["k"].append(2)
        assert value.get() == {"k": [1]}

    def test_validate_rejects_none(self):
        value = Value(5, validate=lambda v: v if isinstance(v, int) else None)
        assert value.set("nope") is False
        assert value.get() == 5
        assert value.set(6) is True

    def test_validate_can_transform(self):
        value = Value("", validate=lambda v: str(v).strip())
        value.set("  hi ")
        assert value.get() == "hi"


class TestValues:
    def test_add_existing_wins(self):
        values = Values()
        first = values.create("a", 1)
        second = values.add("a", Value(2))
        assert second is first
        assert values.get_value("a") == 1

    def test_collection_change_event(self):
        values = Values()
        values.create("a", 1)
        seen = []
        values.bind("change", lambda item, new, old: seen.append((item.id, new, old)))
        values.instance("a").set(2)
        assert seen == [("a", 2, 1)]

    def test_add_event(self):
        values = Values()
        added = []
        values.bind("add", lambda item: added.append(item.id))
        values.create("x")
        assert added == ["x"]

    def test_collection_listener_not_counted_as_callback(self):
        values = Values()
        item = values.create("a", 1)
        assert item.callback_count == 0
        item.bind(lambda new, old: None)
        assert item.callback_count == 1

    def test_when_fires_immediately_if_present(self):
        values = Values()
        values.create("a", 1)
        got = []
        values.when("a", callback=lambda a: got.append(a.get()))
        assert got == [1]

    def test_when_defers_until_all_present(self):
        values = Values()
        got = []
        values.when("a", "b", callback=lambda a, b: got.append((a.id, b.id)))
        values.create("a")
        assert got == []
        values.create("b")
        assert got == [("a", "b")]
        values.create("c")
        assert got == [("a", "b")]

    def test_membership_helpers(self):
        values = Values()
        values.create("a", 1)
        values.create("b", 2)
        assert "a" in values
        assert values.has("b")
        assert not values.has("c")
        assert values.ids() == ["a", "b"]
        assert len(values) == 2
        assert values.get_value("missing") is None


@pytest.mark.parametrize("payload", [{"a": [1]}, [1, {"b": 2}], (1, 2), {1, 2}])
def test_detach_value_copies_composites(payload):
    copied = detach_value(payload)
    assert copied == payload
    assert copied is not payload


def test_detach_value_passes_scalars_through():
    marker = object()
    assert detach_value(marker) is marker
