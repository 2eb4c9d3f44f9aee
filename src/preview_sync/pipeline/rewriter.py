"""Preview link, form and request rewriting plus the URL heartbeat.

Every navigation out of the preview must carry the changeset uuid (and the
previewed theme and messenger channel when set), or a reload would show the
published site instead of the pending state.

// [LAW:single-enforcer] PreviewState.state_params is the only producer of the
// state query params; links, forms, requests and the heartbeat all use it.
// [LAW:dataflow-not-control-flow] Outbound requests flow through
// OutboundRequestPipeline transforms; the rewriter is one transform among any.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from bs4 import Tag

from preview_sync.core.scheduling import Scheduler, TimerHandle
from preview_sync.core.urls import (
    CHANGESET_UUID_PARAM,
    CHANNEL_PARAM,
    THEME_PARAM,
    is_url_previewable,
    normalize_url,
    query_params,
    with_query_params,
    with_scheme,
)
from preview_sync.event_types import EVENT_KEEP_ALIVE, EVENT_READY
from preview_sync.pipeline.document import (
    EVENT_CONTENT_INSERTED,
    PreviewDocument,
    add_class,
    remove_class,
)
from preview_sync.pipeline.messenger import Messenger

logger = logging.getLogger(__name__)

UNPREVIEWABLE_CLASS = "customize-unpreviewable"
ADMIN_BAR_ID = "wpadminbar"


@dataclass
class PreviewState:
    """Mutable identity of one preview context."""

    changeset_uuid: str
    allowed_urls: list[str] = field(default_factory=list)
    theme: str = ""
    theme_active: bool = True
    channel: str | None = None
    url_self: str = ""
    parent_scheme: str = ""
    active_panels: dict[str, bool] = field(default_factory=dict)
    active_sections: dict[str, bool] = field(default_factory=dict)
    active_controls: dict[str, bool] = field(default_factory=dict)

    def state_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.changeset_uuid:
            params[CHANGESET_UUID_PARAM] = self.changeset_uuid
        if not self.theme_active and self.theme:
            params[THEME_PARAM] = self.theme
        if self.channel:
            params[CHANNEL_PARAM] = self.channel
        return params

    def ready_payload(self) -> dict[str, object]:
        return {
            "currentUrl": self.url_self,
            "activePanels": dict(self.active_panels),
            "activeSections": dict(self.active_sections),
            "activeControls": dict(self.active_controls),
        }


# ─── Outbound requests ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OutboundRequest:
    url: str
    method: str = "GET"
    data: dict[str, object] | None = None


RequestTransform = Callable[[OutboundRequest], OutboundRequest]


@dataclass
class OutboundRequestPipeline:
    """Transforms the host HTTP layer applies to every request before sending.

    Each transform sees the output of the previous one.
    """

    transforms: list[RequestTransform] = field(default_factory=list)

    def add(self, transform: RequestTransform) -> None:
        self.transforms.append(transform)

    def process(self, request: OutboundRequest) -> OutboundRequest:
        for transform in self.transforms:
            request = transform(request)
        return request


# ─── Rewriter ─────────────────────────────────────────────────────────────────


def _inside_admin_bar(tag: Tag) -> bool:
    node = tag
    while node is not None:
        if isinstance(node, Tag) and node.get("id") == ADMIN_BAR_ID:
            return True
        node = node.parent
    return False


class PreviewRewriter:
    def __init__(
        self,
        document: PreviewDocument,
        state: PreviewState,
        *,
        messenger: Messenger | None = None,
        scheduler: Scheduler | None = None,
        heartbeat_interval: float = 1.0,
    ) -> None:
        self.document = document
        self.state = state
        self.messenger = messenger
        self.scheduler = scheduler
        self.heartbeat_interval = heartbeat_interval
        self._heartbeat: TimerHandle | None = None
        self._attached = False

    def attach(self) -> None:
        """Prepare the current document and every subtree inserted later."""
        if self._attached:
            return
        self._attached = True
        self.prepare_subtree(self.document.body)
        self.document.bind(EVENT_CONTENT_INSERTED, self.prepare_subtree)

    def detach(self) -> None:
        self.document.unbind(EVENT_CONTENT_INSERTED, self.prepare_subtree)
        self._attached = False
        self.stop_heartbeat()

    def is_previewable(self, url: str) -> bool:
        return is_url_previewable(url, self.state.allowed_urls, base_url=self.document.location)

    def prepare_subtree(self, root: Tag) -> None:
        for link in self.document.links(root):
            self.prepare_link(link)
        for form in self.document.forms(root):
            self.prepare_form(form)

    # ─── Links ────────────────────────────────────────────────────────

    def prepare_link(self, element: Tag) -> None:
        href = str(element.get("href") or "").strip()
        # In-page anchors and admin bar links are left alone.
        if not href or href.startswith("#") or _inside_admin_bar(element):
            return
        if not self.is_previewable(href):
            add_class(element, UNPREVIEWABLE_CLASS)
            return
        remove_class(element, UNPREVIEWABLE_CLASS)
        if href.lower().startswith("javascript:"):
            return
        if self.state.parent_scheme == "https" and href.lower().startswith("http://"):
            href = with_scheme(href, "https")
        element["href"] = with_query_params(href, self.state.state_params())
        if self.state.channel:
            element["target"] = "_self"

    # ─── Forms ────────────────────────────────────────────────────────

    def prepare_form(self, form: Tag) -> None:
        action = str(form.get("action") or "").strip() or self.document.location
        if not self.is_previewable(action):
            add_class(form, UNPREVIEWABLE_CLASS)
            return
        remove_class(form, UNPREVIEWABLE_CLASS)
        params = self.state.state_params()
        for index, (name, value) in enumerate(params.items()):
            existing = form.find("input", attrs={"name": name})
            if existing is not None:
                existing["value"] = value
                continue
            hidden = self.document.soup.new_tag("input", attrs={"type": "hidden", "name": name, "value": value})
            form.insert(index, hidden)
        # Browsers drop the action query string for GET submissions only.
        if str(form.get("method") or "get").strip().lower() != "get":
            form["action"] = with_query_params(action, params)
        if self.state.channel:
            form["target"] = "_self"

    # ─── Requests ─────────────────────────────────────────────────────

    def prepare_request(self, request: OutboundRequest) -> OutboundRequest:
        if not self.state.changeset_uuid or request.url.lower().startswith("javascript:"):
            return request
        if not self.is_previewable(request.url):
            return request
        return dataclasses.replace(request, url=with_query_params(request.url, self.state.state_params()))

    def install(self, pipeline: OutboundRequestPipeline) -> None:
        pipeline.add(self.prepare_request)

    # ─── Changeset swap ───────────────────────────────────────────────

    def handle_changeset_uuid(self, new_uuid: str) -> None:
        old_uuid = self.state.changeset_uuid
        self.state.changeset_uuid = new_uuid
        self.prepare_subtree(self.document.body)
        if CHANGESET_UUID_PARAM in query_params(self.document.location):
            self.document.replace_location(
                with_query_params(self.document.location, {CHANGESET_UUID_PARAM: new_uuid})
            )
        logger.info("Preview links moved from changeset %s to %s", old_uuid, new_uuid)

    # ─── Heartbeat ────────────────────────────────────────────────────

    def keep_alive_current_url(self) -> None:
        location = self.document.location
        present = query_params(location)
        expected = self.state.state_params()
        if any(name not in present for name in expected):
            self.document.replace_location(with_query_params(location, expected))

        current_url = normalize_url(location)
        if current_url != self.state.url_self:
            self.state.url_self = current_url
            self._send(EVENT_READY, self.state.ready_payload())
        else:
            self._send(EVENT_KEEP_ALIVE)

    def _send(self, event: str, data: object = None) -> None:
        if self.messenger is not None:
            self.messenger.send(event, data)

    def start_heartbeat(self) -> TimerHandle:
        if self.scheduler is None:
            raise RuntimeError("heartbeat requires a scheduler")
        self.stop_heartbeat()
        self._heartbeat = self.scheduler.call_every(self.heartbeat_interval, self.keep_alive_current_url)
        return self._heartbeat

    def stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
