"""Setting value store: id -> {value, dirty}, observable.

// [LAW:one-source-of-truth] Dirty state is derived from (value, last-saved
// baseline); there is no separately maintained flag to drift out of sync.
// [LAW:single-enforcer] Mutations go through set/create/mark_saved only;
// remote writes arrive through the same set() path as local edits.

One store per browsing context, constructed explicitly and passed to every
component that needs it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from preview_sync.core.values import Value, Values, detach_value
from preview_sync.event_types import Transport

logger = logging.getLogger(__name__)

# Baseline marker for settings that have never been persisted.
_UNSAVED = object()


class Setting(Value):
    """A named value with a last-saved baseline and a preview transport."""

    def __init__(
        self,
        setting_id: str,
        value: object = None,
        *,
        transport: Transport = Transport.REFRESH,
        dirty: bool = False,
    ) -> None:
        super().__init__(value)
        self.id = setting_id
        self.transport = transport
        self._saved: object = _UNSAVED if dirty else detach_value(value)
        # None when valid; otherwise {error_code: message} from the server.
        self.validity: dict[str, str] | None = None

    @property
    def dirty(self) -> bool:
        if self._saved is _UNSAVED:
            return True
        return not (self._value == self._saved and type(self._value) is type(self._saved))

    def mark_saved(self, value: object) -> None:
        self._saved = detach_value(value)
        self.validity = None

    def _notify(self, new: object, old: object) -> None:
        # Server errors describe the rejected value, not its replacement.
        self.validity = None
        super()._notify(new, old)


class SettingValueStore(Values):
    """Collection of Settings for one browsing context.

    Events (in addition to Values' add/change):
        saved(ids)                 -- baselines updated for ids in one pass
        invalid(setting, errors)   -- server rejected a setting's value
    """

    def __init__(
        self,
        initial: Mapping[str, object] | None = None,
        *,
        dirty_ids: Iterable[str] = (),
        transports: Mapping[str, Transport] | None = None,
    ) -> None:
        super().__init__()
        dirty = set(dirty_ids)
        transports = dict(transports or {})
        for setting_id, value in (initial or {}).items():
            self.create(
                setting_id,
                value,
                dirty=setting_id in dirty,
                transport=transports.get(setting_id, Transport.REFRESH),
            )

    def create(  # type: ignore[override]
        self,
        setting_id: str,
        value: object = None,
        *,
        dirty: bool = False,
        transport: Transport = Transport.REFRESH,
    ) -> Setting:
        existing = self.instance(setting_id)
        if existing is not None:
            return existing  # type: ignore[return-value]
        return self.add(setting_id, Setting(setting_id, value, transport=transport, dirty=dirty))  # type: ignore[return-value]

    def setting(self, setting_id: str) -> Setting | None:
        return self.instance(setting_id)  # type: ignore[return-value]

    def get(self, setting_id: str) -> object:
        return self.get_value(setting_id)

    def set(self, setting_id: str, value: object) -> bool:
        """Set a value, lazily creating an unknown setting as dirty."""
        setting = self.setting(setting_id)
        if setting is None:
            logger.debug("Creating unknown setting %s on write", setting_id)
            created = self.create(setting_id, value, dirty=True)
            self.events.trigger("change", created, created.get(), None)
            return True
        return setting.set(value)

    def is_dirty(self, setting_id: str) -> bool:
        setting = self.setting(setting_id)
        return bool(setting is not None and setting.dirty)

    def dirty_ids(self) -> list[str]:
        return [s.id for s in self.each() if s.dirty]  # type: ignore[attr-defined]

    def dirty_values(self) -> dict[str, object]:
        return {s.id: s.get() for s in self.each() if s.dirty}  # type: ignore[attr-defined]

    def values(self) -> dict[str, object]:
        return {setting_id: self.get_value(setting_id) for setting_id in self.ids()}

    def mark_saved(self, saved: Mapping[str, object]) -> list[str]:
        """Record saved values as baselines for exactly these ids, in one pass."""
        marked: list[str] = []
        for setting_id, value in saved.items():
            setting = self.setting(setting_id)
            if setting is None:
                continue
            setting.mark_saved(value)
            marked.append(setting_id)
        if marked:
            self.events.trigger("saved", marked)
        return marked

    def mark_invalid(self, setting_id: str, errors: Mapping[str, str]) -> None:
        setting = self.setting(setting_id)
        if setting is None:
            return
        setting.validity = {str(code): str(message) for code, message in errors.items()}
        self.events.trigger("invalid", setting, dict(setting.validity))
