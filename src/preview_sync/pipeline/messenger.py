"""Cross-context message channel.

A BrowsingContext stands in for a window: it has an origin and receives
posted messages asynchronously through its own scheduler, in post order.
A Messenger sends named JSON events to a target context and dispatches the
ones addressed to it (matching origin and channel) to local handlers.

// [LAW:single-enforcer] Messenger._receive is the only inbound filter;
// foreign-origin and foreign-channel traffic never reaches handlers.
// [LAW:locality-or-seam] Events is composed, not inherited, so local and
// remote notifications share one bind/trigger surface.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from preview_sync.core.events import Events
from preview_sync.core.scheduling import Scheduler
from preview_sync.core.urls import origin_of
from preview_sync.event_types import ChannelMessage, encode_message, parse_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageEvent:
    """A delivered cross-context message, as a window listener sees it."""

    data: str
    origin: str
    source: BrowsingContext | None = None


MessageListener = Callable[[MessageEvent], object]


class BrowsingContext:
    """A window-like endpoint: origin + asynchronous, ordered inbox."""

    def __init__(self, url: str, scheduler: Scheduler, *, name: str = "") -> None:
        self.url = url
        self.origin = origin_of(url)
        self.scheduler = scheduler
        self.name = name or self.origin
        self._listeners: list[MessageListener] = []

    def add_message_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def post_message(self, data: str, target_origin: str, source: BrowsingContext | None = None) -> None:
        """Queue data for delivery; dropped when target_origin does not match."""
        if target_origin != "*" and origin_of(target_origin) != self.origin:
            logger.debug("Dropping message for %s: target origin %s mismatch", self.name, target_origin)
            return
        event = MessageEvent(data=data, origin=source.origin if source is not None else "", source=source)
        self.scheduler.call_soon(self._dispatch, event)

    def _dispatch(self, event: MessageEvent) -> None:
        for listener in tuple(self._listeners):
            listener(event)


class Messenger:
    """Named-event channel between this context and a target context."""

    def __init__(
        self,
        context: BrowsingContext,
        *,
        target: BrowsingContext | None = None,
        origin: str | None = None,
        channel: str | None = None,
    ) -> None:
        self.context = context
        self.target = target
        # Trusted origin: explicit, else the target's.
        self.origin = origin_of(origin) if origin else (target.origin if target is not None else "")
        self.channel = channel or None
        self.events = Events()
        context.add_message_listener(self._receive)

    # ─── Events capability ────────────────────────────────────────────

    def bind(self, event: str, handler: Callable[..., object]) -> None:
        self.events.bind(event, handler)

    def unbind(self, event: str, handler: Callable[..., object] | None = None) -> None:
        self.events.unbind(event, handler)

    def trigger(self, event: str, *args: object) -> None:
        self.events.trigger(event, *args)

    # ─── Messaging capability ─────────────────────────────────────────

    def send(self, event: str, data: object = None) -> None:
        if self.target is None:
            logger.debug("Messenger %s has no target; dropping %r", self.channel, event)
            return
        payload = encode_message(ChannelMessage(channel=self.channel, event=event, data=data))
        self.target.post_message(payload, self.origin or "*", source=self.context)

    def _receive(self, message_event: MessageEvent) -> None:
        if self.origin and message_event.origin != self.origin:
            logger.debug("Ignoring message from untrusted origin %s", message_event.origin)
            return
        try:
            message = parse_message(message_event.data)
        except ValueError:
            logger.debug("Ignoring unparseable message on %s", self.context.name)
            return
        # If either side is channel-scoped, both must agree.
        if (message.channel or self.channel) and message.channel != self.channel:
            logger.debug("Ignoring %r for channel %s on %s", message.event, message.channel, self.channel)
            return
        self.events.trigger(message.event, message.data)

    def destroy(self) -> None:
        self.context.remove_message_listener(self._receive)
        self.target = None
        self.events = Events()
