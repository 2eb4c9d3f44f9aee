"""Preview-side session: one per preview browsing context.

Builds the context's store from the bootstrap payload and wires the
messenger, rewriter, heartbeat and selective refresh engine around it.

// [LAW:locality-or-seam] Every collaborator is constructed here and passed
// explicitly; two sessions in one process share nothing.
// [LAW:single-enforcer] Remote writes reach the store only through
// set_value, the same path local edits use.
"""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

from preview_sync.app.bootstrap import BootstrapPayload
from preview_sync.app.nonces import NonceStore
from preview_sync.app.settings_store import SettingValueStore
from preview_sync.app.sync_config import SyncConfig
from preview_sync.core.events import Events
from preview_sync.core.scheduling import Debounced, RequestRunner
from preview_sync.core.urls import normalize_url
from preview_sync.event_types import (
    EVENT_ACTIVE,
    EVENT_DOCUMENT_TITLE,
    EVENT_LOADING_FAILED,
    EVENT_LOADING_INITIATED,
    EVENT_NONCE,
    EVENT_NONCE_REFRESH,
    EVENT_READY,
    EVENT_SAVED,
    EVENT_SCROLL,
    EVENT_SETTING,
    EVENT_SETTINGS,
    EVENT_SYNC,
    EVENT_SYNCED,
)
from preview_sync.io.server_api import ServerApi
from preview_sync.pipeline.document import EVENT_SCROLLED, PreviewDocument, toggle_class
from preview_sync.pipeline.messenger import BrowsingContext, Messenger
from preview_sync.pipeline.rewriter import OutboundRequestPipeline, PreviewRewriter, PreviewState
from preview_sync.pipeline.selective_refresh import Partial, SelectiveRefresh

logger = logging.getLogger(__name__)

UNLOADING_CLASS = "wp-customizer-unloading"
CUSTOM_LOGO_CLASS = "wp-custom-logo"
CUSTOM_BACKGROUND_CLASS = "custom-background"
CUSTOM_BACKGROUND_STYLE_ID = "custom-background-css"
BACKGROUND_SETTINGS = tuple(
    f"background_{prop}" for prop in ("color", "image", "position_x", "repeat", "attachment")
)


class PreviewSession:
    """Events: preview-ready(), saved(response)."""

    def __init__(
        self,
        context: BrowsingContext,
        bootstrap: BootstrapPayload,
        document: PreviewDocument,
        server: ServerApi,
        *,
        parent: BrowsingContext | None = None,
        parent_origin: str | None = None,
        runner: RequestRunner | None = None,
        config: SyncConfig | None = None,
        requests: OutboundRequestPipeline | None = None,
    ) -> None:
        self.context = context
        self.document = document
        self.config = config or SyncConfig()
        self.events = Events()
        self.store = SettingValueStore(
            bootstrap.settings,
            dirty_ids=bootstrap.dirty_ids,
            transports=bootstrap.transports,
        )
        self.nonces = NonceStore(bootstrap.nonces)
        self.state = PreviewState(
            changeset_uuid=bootstrap.changeset_uuid,
            allowed_urls=list(bootstrap.allowed_urls),
            theme=bootstrap.theme,
            theme_active=bootstrap.theme_active,
            channel=bootstrap.channel,
            url_self=bootstrap.url_self or normalize_url(document.location),
            parent_scheme=urlsplit(parent.url).scheme if parent is not None else "",
            active_panels=dict(bootstrap.active_panels),
            active_sections=dict(bootstrap.active_sections),
            active_controls=dict(bootstrap.active_controls),
        )
        self.messenger = Messenger(context, target=parent, origin=parent_origin, channel=bootstrap.channel)
        self.rewriter = PreviewRewriter(
            document,
            self.state,
            messenger=self.messenger,
            scheduler=context.scheduler,
            heartbeat_interval=self.config.heartbeat_interval,
        )
        self.requests = requests if requests is not None else OutboundRequestPipeline()
        self.rewriter.install(self.requests)
        self.selective_refresh = SelectiveRefresh(
            self.store,
            document,
            server,
            self.state,
            scheduler=context.scheduler,
            runner=runner,
            nonces=self.nonces,
            messenger=self.messenger,
            config=self.config,
        )
        for partial_spec in bootstrap.partials:
            self.selective_refresh.add_partial(
                Partial(
                    partial_spec.id,
                    selector=partial_spec.selector,
                    settings=partial_spec.settings,
                    container_inclusive=partial_spec.container_inclusive,
                    fallback_refresh=partial_spec.fallback_refresh,
                    type=partial_spec.type,
                    primary_setting=partial_spec.primary_setting,
                )
            )
        self._scroll = Debounced(context.scheduler, self.config.scroll_debounce, self._send_scroll)
        self._started = False

    # ─── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        bindings = {
            EVENT_SETTINGS: self._on_settings,
            EVENT_SETTING: self._on_setting,
            EVENT_SYNC: self._on_sync,
            EVENT_ACTIVE: self._on_active,
            EVENT_SAVED: self._on_saved,
            EVENT_NONCE_REFRESH: self.nonces.update,
            EVENT_LOADING_INITIATED: lambda _=None: self.document.add_body_class(UNLOADING_CLASS),
            EVENT_LOADING_FAILED: lambda _=None: self.document.remove_body_class(UNLOADING_CLASS),
            EVENT_SCROLL: self._on_scroll,
        }
        for event, handler in bindings.items():
            self.messenger.bind(event, handler)

        self.rewriter.attach()
        self.selective_refresh.attach()
        self._install_live_handlers()
        self.document.bind(EVENT_SCROLLED, lambda offset: self._scroll())

        self.messenger.send(EVENT_READY, self.state.ready_payload())
        self.rewriter.start_heartbeat()
        self.events.trigger("preview-ready")

    def stop(self) -> None:
        self.rewriter.detach()
        self._scroll.cancel()
        self.messenger.destroy()

    # ─── Inbound messages ─────────────────────────────────────────────

    def set_value(self, setting_id: str, value: object, create_dirty: bool = False) -> None:
        setting = self.store.setting(setting_id)
        if setting is not None:
            setting.set(value)
            return
        # Created dirty so it is included in the next save.
        self.store.create(setting_id, value, dirty=create_dirty)

    def _on_settings(self, values: object) -> None:
        if not isinstance(values, dict):
            return
        for setting_id, value in values.items():
            self.set_value(str(setting_id), value)

    def _on_setting(self, args: object) -> None:
        if not isinstance(args, list) or len(args) < 2:
            logger.debug("Ignoring malformed setting message: %r", args)
            return
        self.set_value(str(args[0]), args[1], create_dirty=True)

    def _on_sync(self, events: object) -> None:
        if isinstance(events, dict):
            for event, args in events.items():
                self.messenger.trigger(str(event), args)
        self.messenger.send(EVENT_SYNCED)

    def _on_active(self, _data: object = None) -> None:
        self.messenger.send(EVENT_NONCE, self.nonces.snapshot())
        self.messenger.send(EVENT_DOCUMENT_TITLE, self.document.title)
        self.messenger.send(EVENT_SCROLL, self.document.scroll_top)

    def _on_saved(self, response: object) -> None:
        response = response if isinstance(response, dict) else {}
        next_uuid = response.get("next_changeset_uuid")
        if isinstance(next_uuid, str) and next_uuid and next_uuid != self.state.changeset_uuid:
            self.rewriter.handle_changeset_uuid(next_uuid)
        saved = response.get("settings")
        if isinstance(saved, dict):
            for setting_id, value in saved.items():
                self.set_value(str(setting_id), value)
            self.store.mark_saved(saved)
        self.events.trigger("saved", response)

    def _on_scroll(self, offset: object) -> None:
        try:
            self.document.scroll_to(int(offset))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            logger.debug("Ignoring scroll offset %r", offset)

    def _send_scroll(self) -> None:
        self.messenger.send(EVENT_SCROLL, self.document.scroll_top)

    # ─── Live (postMessage) handlers ──────────────────────────────────

    def _install_live_handlers(self) -> None:
        self.store.when(*BACKGROUND_SETTINGS, callback=self._bind_custom_background)
        self.store.when("custom_logo", callback=self._bind_custom_logo)

    def _bind_custom_logo(self, setting) -> None:
        toggle_class(self.document.body, CUSTOM_LOGO_CLASS, bool(setting.get()))
        setting.bind(lambda new, old: toggle_class(self.document.body, CUSTOM_LOGO_CLASS, bool(new)))

    def _bind_custom_background(self, *settings) -> None:
        for setting in settings:
            setting.bind(lambda new, old: self.update_custom_background())
        self.update_custom_background()

    def update_custom_background(self) -> None:
        color, image, position_x, repeat, attachment = (self.store.get(s) for s in BACKGROUND_SETTINGS)
        toggle_class(self.document.body, CUSTOM_BACKGROUND_CLASS, bool(color or image))
        css = ""
        if color:
            css += f"background-color: {color};"
        if image:
            css += f'background-image: url("{image}");'
            css += f"background-position: top {position_x};"
            css += f"background-repeat: {repeat};"
            css += f"background-attachment: {attachment};"

        soup = self.document.soup
        existing = soup.find("style", id=CUSTOM_BACKGROUND_STYLE_ID)
        if existing is not None:
            existing.decompose()
        style = soup.new_tag("style", attrs={"type": "text/css", "id": CUSTOM_BACKGROUND_STYLE_ID})
        style.string = f"body.{CUSTOM_BACKGROUND_CLASS} {{ {css} }}"
        (soup.head or self.document.body).append(style)
