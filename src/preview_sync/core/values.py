"""Observable values and keyed collections of them.

// [LAW:one-source-of-truth] A Value owns its current payload; readers get
// copies so composite payloads can only change through set().
// [LAW:single-enforcer] Change detection (structural equality) lives in Value.set.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterator

from preview_sync.core.events import Events


ChangeCallback = Callable[[object, object], object]


def detach_value(value: object) -> object:
    """Copy composite payloads so callers cannot mutate stored state in place."""
    if isinstance(value, (dict, list, tuple, set)):
        return copy.deepcopy(value)
    return value


class Value:
    """A single observable payload.

    validate, when given, maps an incoming value to the value to store;
    returning None rejects the update.
    """

    def __init__(
        self,
        initial: object = None,
        *,
        validate: Callable[[object], object] | None = None,
    ) -> None:
        self.id: str | None = None
        self._value = detach_value(initial)
        self._validate = validate
        self._callbacks: list[ChangeCallback] = []
        # Collection-level forwarder, kept apart from user callbacks.
        self._collection_listener: ChangeCallback | None = None

    def get(self) -> object:
        return detach_value(self._value)

    def set(self, value: object) -> bool:
        """Store value; returns True when the stored payload changed."""
        candidate = detach_value(value)
        if self._validate is not None:
            candidate = self._validate(candidate)
            if candidate is None:
                return False
        # dict/list == is structural, so composite payloads compare deeply.
        if candidate == self._value and type(candidate) is type(self._value):
            return False
        old = self._value
        self._value = candidate
        self._notify(candidate, old)
        return True

    def _notify(self, new: object, old: object) -> None:
        for callback in tuple(self._callbacks):
            callback(detach_value(new), detach_value(old))
        if self._collection_listener is not None:
            self._collection_listener(detach_value(new), detach_value(old))

    def bind(self, callback: ChangeCallback) -> None:
        self._callbacks.append(callback)

    def unbind(self, callback: ChangeCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    @property
    def callback_count(self) -> int:
        return len(self._callbacks)


class Values:
    """Keyed collection of Value instances with collection-level events.

    Events:
        add(item)               -- a new item was registered
        change(item, new, old)  -- any member's value changed
    """

    def __init__(self) -> None:
        self._items: dict[str, Value] = {}
        self._deferred: list[tuple[tuple[str, ...], Callable[..., object]]] = []
        self.events = Events()

    # ─── Events capability ────────────────────────────────────────────

    def bind(self, event: str, handler: Callable[..., object]) -> None:
        self.events.bind(event, handler)

    def unbind(self, event: str, handler: Callable[..., object] | None = None) -> None:
        self.events.unbind(event, handler)

    def trigger(self, event: str, *args: object) -> None:
        self.events.trigger(event, *args)

    # ─── Membership ───────────────────────────────────────────────────

    def add(self, item_id: str, item: Value) -> Value:
        """Register item under item_id; an existing item wins over a late duplicate."""
        existing = self._items.get(item_id)
        if existing is not None:
            return existing
        item.id = item_id
        self._items[item_id] = item
        item._collection_listener = lambda new, old, it=item: self.events.trigger("change", it, new, old)
        self.events.trigger("add", item)
        self._resolve_deferred()
        return item

    def create(self, item_id: str, value: object = None) -> Value:
        return self.add(item_id, Value(value))

    def instance(self, item_id: str) -> Value | None:
        return self._items.get(item_id)

    def has(self, item_id: str) -> bool:
        return item_id in self._items

    def get_value(self, item_id: str) -> object:
        item = self._items.get(item_id)
        return None if item is None else item.get()

    def ids(self) -> list[str]:
        return list(self._items)

    def each(self) -> Iterator[Value]:
        return iter(tuple(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def when(self, *item_ids: str, callback: Callable[..., object]) -> None:
        """Call callback(*items) once every id in item_ids is registered."""
        ids = tuple(item_ids)
        if all(i in self._items for i in ids):
            callback(*(self._items[i] for i in ids))
            return
        self._deferred.append((ids, callback))

    def _resolve_deferred(self) -> None:
        ready = [entry for entry in self._deferred if all(i in self._items for i in entry[0])]
        if not ready:
            return
        self._deferred = [entry for entry in self._deferred if entry not in ready]
        for ids, callback in ready:
            callback(*(self._items[i] for i in ids))
