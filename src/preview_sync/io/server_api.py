"""Server collaborator: save, partial render, nonce refresh and post search.

// [LAW:locality-or-seam] ServerApi is the seam between the engine and the
// network. Controllers depend on the protocol; HttpServerApi is the
// requests-backed implementation and tests substitute fakes.
// [LAW:single-enforcer] _post is the only place that turns network failures and
// undecodable bodies into TransportError.

Server-declared failures are not exceptions here: endpoints answer
{"success": false, "data": <code>} and callers classify that payload.
"""

from __future__ import annotations

import json
import logging
import ssl
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

import requests
import truststore
from requests.adapters import HTTPAdapter

from preview_sync.core.urls import CHANGESET_UUID_PARAM, THEME_PARAM, with_query_params
from preview_sync.event_types import ChangesetStatus, JsonDict

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Network failure, or a response body that is not a JSON object."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ─── Request shapes ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SaveRequest:
    """One save attempt; request_id distinguishes retries and queued saves."""

    request_id: int
    uuid: str
    status: ChangesetStatus
    settings: dict[str, object] = field(default_factory=dict)
    theme: str = ""


@dataclass(frozen=True)
class PartialRenderRequest:
    request_id: int
    uuid: str
    url: str
    partials: dict[str, list[JsonDict]] = field(default_factory=dict)
    customized: dict[str, object] = field(default_factory=dict)
    theme: str = ""


class ServerApi(Protocol):
    def save_changeset(self, request: SaveRequest, nonce: str) -> JsonDict: ...

    def render_partials(self, request: PartialRenderRequest, nonce: str) -> JsonDict: ...

    def refresh_nonces(self) -> JsonDict: ...

    def find_posts(self, query: str, post_types: Sequence[str], nonce: str) -> JsonDict: ...


# ─── HTTP implementation ──────────────────────────────────────────────────────


class TruststoreAdapter(HTTPAdapter):
    """HTTPS adapter verifying against the operating system trust store."""

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        return super().init_poolmanager(*args, **kwargs)


def make_session() -> requests.Session:
    session = requests.Session()
    session.mount("https://", TruststoreAdapter())
    return session


class HttpServerApi:
    """ServerApi over admin-ajax style endpoints."""

    def __init__(
        self,
        ajax_url: str,
        *,
        theme: str = "",
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.ajax_url = ajax_url
        self.theme = theme
        self.timeout = timeout
        self.session = session if session is not None else make_session()

    def _post(self, url: str, data: Mapping[str, object]) -> JsonDict:
        try:
            response = self.session.post(url, data=dict(data), timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"POST {url} failed: {e}") from e
        # Error responses (400/403) still carry a JSON envelope; decode before judging status.
        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(
                f"POST {url} returned undecodable body (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from e
        if not isinstance(payload, dict):
            raise TransportError(
                f"POST {url} returned {type(payload).__name__}, expected object",
                status_code=response.status_code,
            )
        logger.debug("POST %s -> HTTP %s success=%s", url, response.status_code, payload.get("success"))
        return payload

    def save_changeset(self, request: SaveRequest, nonce: str) -> JsonDict:
        changeset_data = {setting_id: {"value": value} for setting_id, value in request.settings.items()}
        return self._post(
            self.ajax_url,
            {
                "wp_customize": "on",
                "action": "customize_save",
                CHANGESET_UUID_PARAM: request.uuid,
                "customize_changeset_status": request.status.value,
                "customize_changeset_data": json.dumps(changeset_data),
                THEME_PARAM: request.theme or self.theme,
                "nonce": nonce,
            },
        )

    def render_partials(self, request: PartialRenderRequest, nonce: str) -> JsonDict:
        url = with_query_params(request.url, {CHANGESET_UUID_PARAM: request.uuid})
        return self._post(
            url,
            {
                "wp_customize": "on",
                "wp_customize_render_partials": "1",
                CHANGESET_UUID_PARAM: request.uuid,
                THEME_PARAM: request.theme or self.theme,
                "partials": json.dumps(request.partials),
                "customized": json.dumps(request.customized),
                "nonce": nonce,
            },
        )

    def refresh_nonces(self) -> JsonDict:
        return self._post(
            self.ajax_url,
            {"wp_customize": "on", "action": "customize_refresh_nonces", THEME_PARAM: self.theme},
        )

    def find_posts(self, query: str, post_types: Sequence[str], nonce: str) -> JsonDict:
        data: dict[str, object] = {
            "action": "find_posts",
            "ps": query,
            "post_status": "publish",
            "format": "json",
            "_ajax_nonce": nonce,
        }
        # requests encodes a list value as repeated keys.
        data["post_types[]"] = list(post_types)
        return self._post(self.ajax_url, data)
