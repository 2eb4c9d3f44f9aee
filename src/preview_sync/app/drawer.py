"""Mutually exclusive drawers (expandable editing sub-panels).

// [LAW:single-enforcer] DrawerManager is the only place sibling drawers are
// closed, so count(open) <= 1 holds per manager.
"""

from __future__ import annotations

from collections.abc import Callable

from preview_sync.core.events import Events
from preview_sync.event_types import DrawerStatus

EVENT_STATUS = "change:status"


class Drawer:
    def __init__(self, name: str = "", status: DrawerStatus = DrawerStatus.CLOSED) -> None:
        self.name = name
        self._status = status
        self.events = Events()

    def __repr__(self) -> str:
        return f"Drawer({self.name!r}, {self._status.value})"

    @property
    def status(self) -> DrawerStatus:
        return self._status

    @property
    def is_open(self) -> bool:
        return self._status is DrawerStatus.OPEN

    def bind(self, event: str, handler: Callable[..., object]) -> None:
        self.events.bind(event, handler)

    def unbind(self, event: str, handler: Callable[..., object] | None = None) -> None:
        self.events.unbind(event, handler)

    def _set_status(self, status: DrawerStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self.events.trigger(EVENT_STATUS, self, status)

    def open(self) -> None:
        self._set_status(DrawerStatus.OPEN)

    def close(self) -> None:
        self._set_status(DrawerStatus.CLOSED)

    def toggle(self) -> None:
        if self.is_open:
            self.close()
        else:
            self.open()


class DrawerManager:
    """A scope of drawers of which at most one is open.

    Re-emits every member's change:status, after siblings have been closed.
    """

    def __init__(self) -> None:
        self.drawers: list[Drawer] = []
        self.events = Events()

    def bind(self, event: str, handler: Callable[..., object]) -> None:
        self.events.bind(event, handler)

    def unbind(self, event: str, handler: Callable[..., object] | None = None) -> None:
        self.events.unbind(event, handler)

    def add(self, drawer: Drawer) -> Drawer:
        if any(d is drawer for d in self.drawers):
            return drawer
        self.drawers.append(drawer)
        drawer.bind(EVENT_STATUS, self._on_status)
        if drawer.is_open:
            self._close_others(drawer)
        return drawer

    def remove(self, drawer: Drawer) -> None:
        self.drawers = [d for d in self.drawers if d is not drawer]
        drawer.unbind(EVENT_STATUS, self._on_status)

    def _close_others(self, opened: Drawer) -> None:
        for drawer in tuple(self.drawers):
            if drawer is not opened:
                drawer.close()

    def _on_status(self, drawer: Drawer, status: DrawerStatus) -> None:
        if status is DrawerStatus.OPEN:
            self._close_others(drawer)
        self.events.trigger(EVENT_STATUS, drawer, status)

    def open_drawer(self) -> Drawer | None:
        return next((d for d in self.drawers if d.is_open), None)

    @property
    def any_open(self) -> bool:
        return self.open_drawer() is not None

    def open_count(self) -> int:
        return sum(1 for d in self.drawers if d.is_open)
