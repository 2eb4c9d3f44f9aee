"""Control-pane session: the editing side of the protocol.

Owns the pane's store, nonces and transaction controller, and one Previewer
per preview context (device-size variants each get their own channel).

// [LAW:single-enforcer] ControlPane.notify is the only route to the session
// notification surface; conflicts and terminal auth failures end up there.
// [LAW:one-source-of-truth] The pane store is authoritative for values sent to
// previews; previews only ever receive them through `setting`/`sync`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from preview_sync.app.bootstrap import BootstrapPayload
from preview_sync.app.nonces import NonceStore
from preview_sync.app.settings_store import Setting, SettingValueStore
from preview_sync.app.sync_config import SyncConfig
from preview_sync.core.events import Events
from preview_sync.core.scheduling import Debounced, RequestRunner
from preview_sync.event_types import (
    EVENT_ACTIVE,
    EVENT_DOCUMENT_TITLE,
    EVENT_KEEP_ALIVE,
    EVENT_LOADING_FAILED,
    EVENT_LOADING_INITIATED,
    EVENT_NONCE,
    EVENT_NONCE_REFRESH,
    EVENT_READY,
    EVENT_REFRESH,
    EVENT_SAVED,
    EVENT_SCROLL,
    EVENT_SETTING,
    EVENT_SYNC,
    EVENT_SYNCED,
    EVENT_URL,
    ChangesetStatus,
    Transport,
)
from preview_sync.io.server_api import SaveRequest, ServerApi
from preview_sync.pipeline.messenger import BrowsingContext, Messenger
from preview_sync.pipeline.transaction import SaveError, SaveErrorKind, SaveResult, TransactionController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    code: str
    message: str
    type: str = "error"
    dismissible: bool = True


_MESSAGES = {
    SaveErrorKind.CONFLICT: "These changes belong to a changeset that can no longer be saved. Reload to continue editing.",
    SaveErrorKind.AUTH: "You are not allowed to save these changes, or your session has expired.",
}


class Previewer:
    """Pane-side endpoint of one preview context.

    Events: ready(data), synced(), refresh(), url(url)
    """

    def __init__(
        self,
        pane: ControlPane,
        preview: BrowsingContext,
        *,
        channel: str | None = None,
        url: str = "",
        loader: Callable[[Previewer], object] | None = None,
    ) -> None:
        self.pane = pane
        self.preview = preview
        self.channel = channel
        self.preview_url = url or preview.url
        self.current_url = ""
        self.document_title = ""
        self.scroll = 0
        self.active_panels: dict[str, bool] = {}
        self.active_sections: dict[str, bool] = {}
        self.active_controls: dict[str, bool] = {}
        self.loaded = False
        self.last_keep_alive: float | None = None
        self.events = Events()
        self._loader = loader
        self._synced_this_load = False
        self.messenger = Messenger(pane.context, target=preview, channel=channel)
        bindings = {
            EVENT_READY: self._on_ready,
            EVENT_SYNCED: self._on_synced,
            EVENT_KEEP_ALIVE: self._on_keep_alive,
            EVENT_NONCE: self._on_nonce,
            EVENT_DOCUMENT_TITLE: self._on_document_title,
            EVENT_REFRESH: lambda _=None: self.refresh(),
            EVENT_URL: self._on_url,
            EVENT_SCROLL: self._on_scroll,
        }
        for event, handler in bindings.items():
            self.messenger.bind(event, handler)

    def send(self, event: str, data: object = None) -> None:
        self.messenger.send(event, data)

    def _touch(self) -> None:
        self.last_keep_alive = self.pane.context.scheduler.now()

    def _on_ready(self, data: object) -> None:
        self._touch()
        data = data if isinstance(data, dict) else {}
        self.current_url = str(data.get("currentUrl") or self.current_url)
        for attr, key in (
            ("active_panels", "activePanels"),
            ("active_sections", "activeSections"),
            ("active_controls", "activeControls"),
        ):
            flags = data.get(key)
            if isinstance(flags, dict):
                setattr(self, attr, {str(k): bool(v) for k, v in flags.items()})
        if not self._synced_this_load:
            # First ready of a load: bring the preview up to date with the pane.
            self._synced_this_load = True
            self.send(EVENT_SYNC, {"settings": self.pane.store.values(), "scroll": self.scroll})
        self.events.trigger("ready", data)

    def _on_synced(self, _data: object = None) -> None:
        self.loaded = True
        self.send(EVENT_ACTIVE)
        self.events.trigger("synced")

    def _on_keep_alive(self, _data: object = None) -> None:
        self._touch()

    def _on_nonce(self, tokens: object) -> None:
        if isinstance(tokens, dict):
            self.pane.nonces.update(tokens)

    def _on_document_title(self, title: object) -> None:
        self.document_title = str(title or "")

    def _on_scroll(self, offset: object) -> None:
        if isinstance(offset, (int, float)):
            self.scroll = int(offset)

    def _on_url(self, url: object) -> None:
        if isinstance(url, str) and url:
            self.preview_url = url
            self.events.trigger("url", url)
            self.refresh()

    def is_alive(self) -> bool:
        if self.last_keep_alive is None:
            return False
        elapsed = self.pane.context.scheduler.now() - self.last_keep_alive
        return elapsed < self.pane.config.keep_alive_timeout

    def refresh(self) -> None:
        """Reload the preview; the preview shows its unloading state meanwhile."""
        self.loaded = False
        self._synced_this_load = False
        self.send(EVENT_LOADING_INITIATED)
        self.events.trigger("refresh")
        if self._loader is not None:
            self._loader(self)

    def loading_failed(self) -> None:
        self.send(EVENT_LOADING_FAILED)

    def destroy(self) -> None:
        self.messenger.destroy()


class ControlPane:
    """Events: notification(Notification), saved(SaveResult)."""

    def __init__(
        self,
        context: BrowsingContext,
        bootstrap: BootstrapPayload,
        server: ServerApi,
        *,
        runner: RequestRunner | None = None,
        config: SyncConfig | None = None,
        uuid_factory: Callable[[], str] | None = None,
    ) -> None:
        self.context = context
        self.config = config or SyncConfig()
        self.events = Events()
        self.notifications: list[Notification] = []
        self.previewers: dict[str | None, Previewer] = {}
        self.store = SettingValueStore(
            bootstrap.settings,
            dirty_ids=bootstrap.dirty_ids,
            transports=bootstrap.transports,
        )
        self.nonces = NonceStore(bootstrap.nonces)
        self.transaction = TransactionController(
            self.store,
            server,
            uuid=bootstrap.changeset_uuid,
            status=bootstrap.changeset_status,
            runner=runner,
            nonces=self.nonces,
            theme=bootstrap.theme,
            uuid_factory=uuid_factory,
        )
        self._refresh = Debounced(context.scheduler, self.config.preview_refresh_debounce, self.refresh_previews)

        self.store.bind("change", self._on_setting_change)
        self.transaction.bind("saved", self._on_saved)
        self.transaction.bind("nonces", self._on_nonces)
        self.transaction.bind("conflict", self._on_conflict)
        self.transaction.bind("save-failed", self._on_save_failed)

    def bind(self, event: str, handler: Callable[..., object]) -> None:
        self.events.bind(event, handler)

    # ─── Previewers ───────────────────────────────────────────────────

    def add_previewer(
        self,
        preview: BrowsingContext,
        *,
        channel: str | None = None,
        url: str = "",
        loader: Callable[[Previewer], object] | None = None,
    ) -> Previewer:
        existing = self.previewers.get(channel)
        if existing is not None:
            return existing
        previewer = Previewer(self, preview, channel=channel, url=url, loader=loader)
        self.previewers[channel] = previewer
        return previewer

    def remove_previewer(self, channel: str | None) -> None:
        previewer = self.previewers.pop(channel, None)
        if previewer is not None:
            previewer.destroy()

    def _broadcast(self, event: str, data: object = None) -> None:
        for previewer in tuple(self.previewers.values()):
            previewer.send(event, data)

    def refresh_previews(self) -> None:
        for previewer in tuple(self.previewers.values()):
            previewer.refresh()

    # ─── Settings and saving ──────────────────────────────────────────

    def _on_setting_change(self, setting: Setting, new: object, old: object) -> None:
        self._broadcast(EVENT_SETTING, [setting.id, new])
        if getattr(setting, "transport", Transport.REFRESH) is Transport.REFRESH:
            self._refresh()

    def save(self, status: ChangesetStatus | str = ChangesetStatus.DRAFT) -> SaveRequest | None:
        return self.transaction.save(status)

    def _on_saved(self, result: SaveResult) -> None:
        payload: dict[str, object] = {
            "changeset_status": result.status.value,
            "settings": dict(result.saved),
        }
        if result.uuid_changed:
            payload["next_changeset_uuid"] = result.uuid
        self._broadcast(EVENT_SAVED, payload)
        self.events.trigger("saved", result)

    def _on_nonces(self, tokens: dict) -> None:
        self._broadcast(EVENT_NONCE_REFRESH, tokens)

    def _on_conflict(self, error: SaveError) -> None:
        self.notify(Notification(code=error.code, message=_MESSAGES[SaveErrorKind.CONFLICT]))

    def _on_save_failed(self, error: SaveError) -> None:
        if error.kind is SaveErrorKind.AUTH:
            self.notify(Notification(code=error.code, message=_MESSAGES[SaveErrorKind.AUTH]))

    def notify(self, notification: Notification) -> None:
        if any(n.code == notification.code for n in self.notifications):
            return
        logger.warning("Notification %s: %s", notification.code, notification.message)
        self.notifications.append(notification)
        self.events.trigger("notification", notification)

    def dismiss(self, code: str) -> None:
        self.notifications = [n for n in self.notifications if n.code != code]
