"""Initial bootstrap payload, read once when a context starts.

// [LAW:single-enforcer] parse_bootstrap is the only boundary that narrows the
// untyped bootstrap JSON; everything downstream reads BootstrapPayload.

Accepts both the compact shape ({"transaction": ..., "settingsValues": ...})
and the server's settings-export shape ({"changeset": ..., "settings":
{id: {"value", "transport"}}, "_dirty": [...], "url": {...}}).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from preview_sync.event_types import ChangesetStatus, Transport, parse_status, parse_transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartialSpec:
    id: str
    selector: str = ""
    settings: tuple[str, ...] = ()
    container_inclusive: bool = False
    fallback_refresh: bool = True
    type: str = "default"
    primary_setting: str | None = None


@dataclass(frozen=True)
class BootstrapPayload:
    changeset_uuid: str
    changeset_status: ChangesetStatus = ChangesetStatus.DRAFT
    settings: dict[str, object] = field(default_factory=dict)
    dirty_ids: tuple[str, ...] = ()
    transports: dict[str, Transport] = field(default_factory=dict)
    active_panels: dict[str, bool] = field(default_factory=dict)
    active_sections: dict[str, bool] = field(default_factory=dict)
    active_controls: dict[str, bool] = field(default_factory=dict)
    allowed_urls: tuple[str, ...] = ()
    channel: str | None = None
    theme: str = ""
    theme_active: bool = True
    url_self: str = ""
    nonces: dict[str, str] = field(default_factory=dict)
    partials: tuple[PartialSpec, ...] = ()


# ─── Narrowing helpers ────────────────────────────────────────────────────────


def _dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _str_list(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v) for v in value if isinstance(v, (str, int)))


def _flags(value: object) -> dict[str, bool]:
    return {str(k): bool(v) for k, v in _dict(value).items()}


def _first(raw: dict, *keys: str) -> object:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _parse_settings(raw: dict) -> tuple[dict[str, object], dict[str, Transport]]:
    values: dict[str, object] = dict(_dict(raw.get("settingsValues")))
    transports: dict[str, Transport] = {}
    for setting_id, entry in _dict(raw.get("settings")).items():
        if isinstance(entry, dict) and "value" in entry:
            values.setdefault(str(setting_id), entry["value"])
            transports[str(setting_id)] = parse_transport(entry.get("transport"))
        else:
            values.setdefault(str(setting_id), entry)
    for setting_id, transport in _dict(raw.get("transports")).items():
        transports[str(setting_id)] = parse_transport(transport)
    return values, transports


def _parse_partials(raw: object) -> tuple[PartialSpec, ...]:
    if isinstance(raw, list):
        entries = [(str(_dict(p).get("id", "")), _dict(p)) for p in raw]
    else:
        entries = [(str(k), _dict(v)) for k, v in _dict(raw).items()]
    specs = []
    for partial_id, params in entries:
        if not partial_id:
            continue
        params = _dict(params.get("params")) or params
        specs.append(
            PartialSpec(
                id=partial_id,
                selector=_str(params.get("selector")),
                settings=_str_list(params.get("settings")) or (partial_id,),
                container_inclusive=bool(params.get("containerInclusive", False)),
                fallback_refresh=bool(params.get("fallbackRefresh", True)),
                type=_str(params.get("type"), "default"),
                primary_setting=_str(params.get("primarySetting")) or None,
            )
        )
    return tuple(specs)


def parse_bootstrap(raw: object) -> BootstrapPayload:
    """Narrow a bootstrap document into a BootstrapPayload.

    Raises:
        ValueError: not a JSON object, or no changeset uuid.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Undecodable bootstrap payload: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"Bootstrap payload must be an object, got {type(raw).__name__}")

    changeset = _dict(_first(raw, "transaction", "changeset"))
    uuid = _str(changeset.get("uuid"))
    if not uuid:
        raise ValueError("Bootstrap payload has no changeset uuid")

    values, transports = _parse_settings(raw)
    url = _dict(raw.get("url"))
    theme = _dict(raw.get("theme"))
    channel = _str(raw.get("channel")) or None
    nonces = {str(k): str(v) for k, v in _dict(_first(raw, "nonces", "nonce")).items() if v is not None}
    allowed = _str_list(raw.get("allowedUrls")) or _str_list(url.get("allowed"))

    payload = BootstrapPayload(
        changeset_uuid=uuid,
        changeset_status=parse_status(changeset.get("status")),
        settings=values,
        dirty_ids=_str_list(_first(raw, "dirtyIds", "_dirty")),
        transports=transports,
        active_panels=_flags(raw.get("activePanels")),
        active_sections=_flags(raw.get("activeSections")),
        active_controls=_flags(raw.get("activeControls")),
        allowed_urls=allowed,
        channel=channel,
        theme=_str(theme.get("stylesheet")),
        theme_active=bool(theme.get("active", True)),
        url_self=_str(url.get("self")),
        nonces=nonces,
        partials=_parse_partials(raw.get("partials")),
    )
    logger.debug(
        "Bootstrap: changeset %s, %d settings (%d dirty), %d partials",
        uuid,
        len(values),
        len(payload.dirty_ids),
        len(payload.partials),
    )
    return payload
