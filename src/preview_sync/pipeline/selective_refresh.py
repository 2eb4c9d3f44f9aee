"""Selective refresh: re-render only the page regions a setting change affects.

A Partial binds settings to a selector; each matching element is a Placement.
Changes to a bound setting mark its placements as refreshing and schedule the
partial into a debounced batch that is rendered in one server round trip.

// [LAW:one-source-of-truth] _generations holds the latest scheduled generation
// per partial; a response is applied only for partials whose generation and
// changeset uuid are still current (last-scheduled wins, not last-resolved).
// [LAW:single-enforcer] _fallback is the only path to a full preview reload
// from this engine.

Events:
    partial-content-rendered(partial, placements)
    partial-refresh-failed(partial, reason)
    full-refresh-requested(reason)
"""

from __future__ import annotations

import itertools
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace

from bs4 import Tag

from preview_sync.app.nonces import NonceStore
from preview_sync.app.settings_store import Setting, SettingValueStore
from preview_sync.app.sync_config import SyncConfig
from preview_sync.core.events import Events
from preview_sync.core.scheduling import Debounced, InlineRunner, RequestRunner, Scheduler
from preview_sync.event_types import EVENT_REFRESH, JsonDict, Transport
from preview_sync.io.server_api import PartialRenderRequest, ServerApi
from preview_sync.pipeline.document import (
    EVENT_CONTENT_INSERTED,
    PreviewDocument,
    add_class,
    remove_class,
    select_including_self,
)
from preview_sync.pipeline.messenger import Messenger
from preview_sync.pipeline.rewriter import PreviewState

logger = logging.getLogger(__name__)

REFRESHING_CLASS = "customize-partial-refreshing"
PARTIAL_ID_ATTR = "data-customize-partial-id"
PARTIAL_TYPE_ATTR = "data-customize-partial-type"
PARTIAL_SETTINGS_ATTR = "data-customize-partial-settings"
PLACEMENT_CONTEXT_ATTR = "data-customize-partial-placement-context"


def _unwrap_render_response(payload: object) -> tuple[bool, object]:
    """Return (ok, body) for an enveloped or a bare {contents, errors} response."""
    if isinstance(payload, dict) and isinstance(payload.get("success"), bool):
        return payload["success"], payload.get("data")
    return True, payload


def _json_attr(element: Tag, name: str) -> object:
    raw = element.get(name)
    if not raw:
        return None
    try:
        return json.loads(str(raw))
    except json.JSONDecodeError:
        logger.debug("Ignoring malformed %s on <%s>", name, element.name)
        return None


@dataclass
class Placement:
    """One on-page occurrence of a partial."""

    partial: Partial
    container: Tag | None = None
    context: dict[str, object] = field(default_factory=dict)
    added_content: object = None

    def __post_init__(self) -> None:
        if not isinstance(self.partial, Partial):
            raise ValueError("Placement requires a partial")


class Partial:
    def __init__(
        self,
        partial_id: str,
        *,
        selector: str = "",
        settings: Iterable[str] = (),
        container_inclusive: bool = False,
        fallback_refresh: bool = True,
        type: str = "default",
        primary_setting: str | None = None,
    ) -> None:
        self.id = partial_id
        self.selector = selector
        self.settings: tuple[str, ...] = tuple(settings)
        self.container_inclusive = container_inclusive
        self.fallback_refresh = fallback_refresh
        self.type = type
        self.primary_setting = primary_setting or (self.settings[0] if self.settings else None)

    def __repr__(self) -> str:
        return f"Partial({self.id!r}, settings={self.settings!r})"

    def _containers(self, root: Tag) -> list[Tag]:
        found: list[Tag] = []
        if self.selector:
            found.extend(select_including_self(root, self.selector))
        for element in select_including_self(root, f"[{PARTIAL_ID_ATTR}]"):
            if element.get(PARTIAL_ID_ATTR) == self.id and not any(element is f for f in found):
                found.append(element)
        return found

    def placements(self, document: PreviewDocument) -> list[Placement]:
        placements = []
        for container in self._containers(document.body):
            context = _json_attr(container, PLACEMENT_CONTEXT_ATTR)
            placements.append(
                Placement(partial=self, container=container, context=context if isinstance(context, dict) else {})
            )
        return placements

    def is_related_setting(self, setting_id: str) -> bool:
        return setting_id in self.settings

    def prepare_placement(self, placement: Placement) -> None:
        if placement.container is not None:
            add_class(placement.container, REFRESHING_CLASS)

    def clear_placement(self, placement: Placement) -> None:
        if placement.container is not None:
            remove_class(placement.container, REFRESHING_CLASS)

    def render_content(self, placement: Placement, document: PreviewDocument) -> bool:
        """Write placement.added_content into the page.

        Returns False (leaving the page untouched) when there is no container
        or the content is not markup, e.g. None/False from a partial that
        could not render.
        """
        if placement.container is None or not isinstance(placement.added_content, str):
            return False
        if self.container_inclusive:
            document.replace_element(placement.container, placement.added_content)
        else:
            self.clear_placement(placement)
            document.replace_children(placement.container, placement.added_content)
        return True


def _parse_errors(raw: object) -> tuple[dict[str, str], list[str]]:
    """Split an errors payload into per-partial errors and general messages."""
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}, []
    if isinstance(raw, list):
        return {}, [str(item) for item in raw]
    return {}, []


class SelectiveRefresh:
    def __init__(
        self,
        store: SettingValueStore,
        document: PreviewDocument,
        server: ServerApi,
        state: PreviewState,
        *,
        scheduler: Scheduler,
        runner: RequestRunner | None = None,
        nonces: NonceStore | None = None,
        messenger: Messenger | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self.store = store
        self.document = document
        self.server = server
        self.state = state
        self.scheduler = scheduler
        self.runner = runner if runner is not None else InlineRunner()
        self.nonces = nonces if nonces is not None else NonceStore()
        self.messenger = messenger
        self.config = config or SyncConfig()
        self.events = Events()
        self.partials: dict[str, Partial] = {}
        self._generations: dict[str, int] = {}
        self._pending: dict[str, None] = {}
        self._request_ids = itertools.count(1)
        self._batch = Debounced(scheduler, self.config.refresh_buffer, self._flush)

    # ─── Events capability ────────────────────────────────────────────

    def bind(self, event: str, handler: Callable[..., object]) -> None:
        self.events.bind(event, handler)

    def unbind(self, event: str, handler: Callable[..., object] | None = None) -> None:
        self.events.unbind(event, handler)

    # ─── Registration ─────────────────────────────────────────────────

    def attach(self) -> None:
        self.store.bind("change", self._on_setting_change)
        self.document.bind(EVENT_CONTENT_INSERTED, self.discover_partials)
        self.discover_partials(self.document.body)

    def add_partial(self, partial: Partial) -> Partial:
        existing = self.partials.get(partial.id)
        if existing is not None:
            return existing
        self.partials[partial.id] = partial
        self._generations.setdefault(partial.id, 0)
        return partial

    def partial(self, partial_id: str) -> Partial | None:
        return self.partials.get(partial_id)

    def discover_partials(self, root: Tag) -> list[Partial]:
        """Register partials declared by data attributes inside root."""
        added = []
        for element in select_including_self(root, f"[{PARTIAL_ID_ATTR}]"):
            partial_id = str(element.get(PARTIAL_ID_ATTR) or "")
            if not partial_id or partial_id in self.partials:
                continue
            settings = _json_attr(element, PARTIAL_SETTINGS_ATTR)
            partial = Partial(
                partial_id,
                settings=[str(s) for s in settings] if isinstance(settings, list) else [partial_id],
                container_inclusive=True,
                type=str(element.get(PARTIAL_TYPE_ATTR) or "default"),
            )
            added.append(self.add_partial(partial))
            logger.debug("Discovered partial %s", partial_id)
        return added

    # ─── Scheduling ───────────────────────────────────────────────────

    def _on_setting_change(self, setting: Setting, new: object, old: object) -> None:
        related = [p for p in self.partials.values() if p.is_related_setting(setting.id)]
        if related:
            for partial in related:
                self.request_partial_refresh(partial)
            return
        # Refresh-transport settings are reloaded by the pane.
        if getattr(setting, "transport", Transport.REFRESH) is Transport.POST_MESSAGE and setting.callback_count == 0:
            self.request_full_refresh(f"no partial or handler for {setting.id}")

    def request_partial_refresh(self, partial: Partial) -> None:
        for placement in partial.placements(self.document):
            partial.prepare_placement(placement)
        self._pending[partial.id] = None
        self._batch()

    def _flush(self) -> None:
        ids, self._pending = list(self._pending), {}
        payload: dict[str, list[JsonDict]] = {}
        generations: dict[str, int] = {}
        for partial_id in ids:
            partial = self.partials[partial_id]
            placements = partial.placements(self.document)
            if not placements:
                continue
            self._generations[partial_id] += 1
            generations[partial_id] = self._generations[partial_id]
            payload[partial_id] = [dict(p.context) for p in placements]
        if not payload:
            return
        request = PartialRenderRequest(
            request_id=next(self._request_ids),
            uuid=self.state.changeset_uuid,
            url=self.document.location,
            partials=payload,
            customized=self.store.dirty_values(),
            theme=self.state.theme,
        )
        logger.debug("Rendering partials %s (request %d)", sorted(payload), request.request_id)
        self._send(request, generations, attempt=0)

    def _send(self, request: PartialRenderRequest, generations: Mapping[str, int], attempt: int) -> None:
        nonce = self.nonces.get("preview")
        self.runner.submit(
            lambda: self.server.render_partials(request, nonce),
            lambda payload: self._on_response(request, generations, attempt, payload),
            lambda error: self._on_failure(request, generations, attempt, str(error)),
        )

    def _live_ids(self, request: PartialRenderRequest, generations: Mapping[str, int]) -> list[str]:
        return [pid for pid, gen in generations.items() if self._generations.get(pid) == gen]

    # ─── Responses ────────────────────────────────────────────────────

    def _on_failure(
        self,
        request: PartialRenderRequest,
        generations: Mapping[str, int],
        attempt: int,
        reason: str,
    ) -> None:
        if request.uuid != self.state.changeset_uuid:
            self._rerequest_for_current_changeset(request, generations)
            return
        live = self._live_ids(request, generations)
        if not live:
            return
        if attempt < self.config.partial_retry_max:
            delay = self.config.retry_delay(attempt + 1)
            logger.warning(
                "Partial render request %d failed (%s); retry %d in %.2fs",
                request.request_id,
                reason,
                attempt + 1,
                delay,
            )
            self.scheduler.call_later(delay, self._retry, request, generations, attempt + 1)
            return
        logger.warning("Partial render request %d gave up after %d retries", request.request_id, attempt)
        self._fallback_many([self.partials[pid] for pid in live], reason)

    def _retry(self, request: PartialRenderRequest, generations: Mapping[str, int], attempt: int) -> None:
        if request.uuid != self.state.changeset_uuid:
            self._rerequest_for_current_changeset(request, generations)
            return
        live = self._live_ids(request, generations)
        if not live:
            return
        narrowed = replace(
            request,
            partials={pid: request.partials[pid] for pid in live},
            customized=self.store.dirty_values(),
        )
        self._send(narrowed, {pid: generations[pid] for pid in live}, attempt)

    def _on_response(
        self,
        request: PartialRenderRequest,
        generations: Mapping[str, int],
        attempt: int,
        payload: object,
    ) -> None:
        if request.uuid != self.state.changeset_uuid:
            logger.info("Discarding partial render for stale changeset %s", request.uuid)
            self._rerequest_for_current_changeset(request, generations)
            return
        ok, data = _unwrap_render_response(payload)
        if not ok:
            live = self._live_ids(request, generations)
            self._fallback_many([self.partials[pid] for pid in live], f"server error: {data}")
            return
        contents = data.get("contents") if isinstance(data, dict) else None
        if not isinstance(contents, dict):
            self._on_failure(request, generations, attempt, "malformed render response")
            return

        per_partial_errors, general_errors = _parse_errors(data.get("errors"))
        for message in general_errors:
            logger.warning("Partial render error: %s", message)

        failed: list[tuple[Partial, str]] = []
        for partial_id in request.partials:
            if self._generations.get(partial_id) != generations.get(partial_id):
                logger.debug("Dropping superseded render of %s", partial_id)
                continue
            partial = self.partials[partial_id]
            if partial_id in per_partial_errors:
                failed.append((partial, per_partial_errors[partial_id]))
                continue
            fragments = contents.get(partial_id)
            if not isinstance(fragments, list):
                failed.append((partial, "no content returned"))
                continue
            if not self._render(partial, fragments):
                failed.append((partial, "content could not be rendered"))
        if failed:
            self._fallback_many([p for p, _ in failed], "; ".join(reason for _, reason in failed))

    def _rerequest_for_current_changeset(self, request: PartialRenderRequest, generations: Mapping[str, int]) -> None:
        # Superseded partials are covered by their newer request.
        for partial_id in self._live_ids(request, generations):
            logger.debug("Re-requesting %s under changeset %s", partial_id, self.state.changeset_uuid)
            self.request_partial_refresh(self.partials[partial_id])

    def _render(self, partial: Partial, fragments: list) -> bool:
        placements = partial.placements(self.document)
        if not placements:
            return False
        rendered = []
        for index, placement in enumerate(placements):
            placement.added_content = fragments[index] if index < len(fragments) else None
            if not partial.render_content(placement, self.document):
                return False
            rendered.append(placement)
        self.events.trigger("partial-content-rendered", partial, rendered)
        return True

    # ─── Fallback ─────────────────────────────────────────────────────

    def _fallback_many(self, partials: list[Partial], reason: str) -> None:
        needs_reload = False
        for partial in partials:
            for placement in partial.placements(self.document):
                partial.clear_placement(placement)
            if partial.fallback_refresh:
                needs_reload = True
            else:
                logger.info("Partial %s left stale: %s", partial.id, reason)
                self.events.trigger("partial-refresh-failed", partial, reason)
        if needs_reload:
            self.request_full_refresh(reason)

    def request_full_refresh(self, reason: str = "") -> None:
        logger.info("Requesting full preview refresh: %s", reason or "unspecified")
        self.events.trigger("full-refresh-requested", reason)
        if self.messenger is not None:
            self.messenger.send(EVENT_REFRESH)
