"""Local pub/sub capability shared by every component.

// [LAW:locality-or-seam] Components compose an Events instance instead of
// inheriting from a base emitter; messenger, store and controllers all expose
// the same bind/unbind/trigger surface through it.
"""

from __future__ import annotations

from collections.abc import Callable


Handler = Callable[..., object]


class Events:
    """Named-event callback registry.

    Handlers run synchronously in registration order. A handler added or
    removed while an event is being triggered takes effect on the next
    trigger.
    """

    def __init__(self) -> None:
        self._topics: dict[str, list[Handler]] = {}

    def bind(self, event: str, handler: Handler) -> None:
        self._topics.setdefault(event, []).append(handler)

    def unbind(self, event: str, handler: Handler | None = None) -> None:
        """Remove one handler, or every handler for event when handler is None."""
        if handler is None:
            self._topics.pop(event, None)
            return
        handlers = self._topics.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._topics[event]

    def trigger(self, event: str, *args: object) -> None:
        # Snapshot so handlers may (un)bind during dispatch.
        for handler in tuple(self._topics.get(event, ())):
            handler(*args)

    def has_handlers(self, event: str) -> bool:
        return bool(self._topics.get(event))

    def handler_count(self, event: str) -> int:
        return len(self._topics.get(event, ()))
