"""Tests for mutually exclusive drawers."""

from preview_sync.app.drawer import EVENT_STATUS, Drawer, DrawerManager
from preview_sync.event_types import DrawerStatus


def test_opening_one_closes_the_others():
    manager = DrawerManager()
    a = manager.add(Drawer("a"))
    b = manager.add(Drawer("b"))
    a.open()
    b.open()
    assert not a.is_open
    assert b.is_open
    assert manager.open_drawer() is b
    assert manager.open_count() == 1


def test_toggle_and_close():
    manager = DrawerManager()
    a = manager.add(Drawer("a"))
    a.toggle()
    assert manager.any_open
    a.toggle()
    assert not manager.any_open


def test_adding_open_drawer_closes_existing():
    manager = DrawerManager()
    a = manager.add(Drawer("a", DrawerStatus.OPEN))
    b = manager.add(Drawer("b", DrawerStatus.OPEN))
    assert not a.is_open
    assert b.is_open


def test_status_events_only_on_transition():
    drawer = Drawer("a")
    seen = []
    drawer.bind(EVENT_STATUS, lambda d, status: seen.append(status))
    drawer.close()
    drawer.open()
    drawer.open()
    assert seen == [DrawerStatus.OPEN]


def test_manager_reemits_after_siblings_closed():
    manager = DrawerManager()
    a = manager.add(Drawer("a"))
    b = manager.add(Drawer("b"))
    seen = []
    manager.bind(EVENT_STATUS, lambda d, status: seen.append((d.name, status, manager.open_count())))
    a.open()
    b.open()
    assert seen == [
        ("a", DrawerStatus.OPEN, 1),
        ("a", DrawerStatus.CLOSED, 1),
        ("b", DrawerStatus.OPEN, 1),
    ]


def test_removed_drawer_no_longer_managed():
    manager = DrawerManager()
    a = manager.add(Drawer("a"))
    b = manager.add(Drawer("b"))
    manager.remove(a)
    a.open()
    b.open()
    assert a.is_open
    assert manager.drawers == [b]


def test_separate_managers_are_independent():
    left, right = DrawerManager(), DrawerManager()
    a = left.add(Drawer("a"))
    b = right.add(Drawer("b"))
    a.open()
    b.open()
    assert a.is_open and b.is_open
