"""Wire vocabulary shared by the control pane and the preview.

// [LAW:one-source-of-truth] Message event names and enum wire values are
// defined here once.
// [LAW:single-enforcer] parse_message is the sole validation boundary for
// inbound channel payloads.
"""

import json
from dataclasses import dataclass
from enum import Enum


# ─── Type alias for JSON-parsed dicts ─────────────────────────────────────────

JsonDict = dict[str, object]


# ─── Enums ────────────────────────────────────────────────────────────────────


class Transport(Enum):
    """How a setting change reaches the preview."""

    REFRESH = "refresh"
    POST_MESSAGE = "postMessage"


class ChangesetStatus(Enum):
    """Changeset lifecycle status (wire values match the save endpoint)."""

    DRAFT = "draft"
    PENDING = "pending"
    PUBLISH = "publish"


class DrawerStatus(Enum):
    CLOSED = "closed"
    OPEN = "open"


def parse_transport(value: object) -> Transport:
    try:
        return Transport(str(value))
    except ValueError:
        return Transport.REFRESH


def parse_status(value: object) -> ChangesetStatus:
    raw = str(value or "").strip().lower()
    if raw == "published":
        return ChangesetStatus.PUBLISH
    try:
        return ChangesetStatus(raw)
    except ValueError:
        return ChangesetStatus.DRAFT


# ─── Channel events ───────────────────────────────────────────────────────────
# Pane → preview
EVENT_SETTING = "setting"
EVENT_SETTINGS = "settings"
EVENT_SYNC = "sync"
EVENT_ACTIVE = "active"
EVENT_SAVED = "saved"
EVENT_NONCE_REFRESH = "nonce-refresh"
EVENT_LOADING_INITIATED = "loading-initiated"
EVENT_LOADING_FAILED = "loading-failed"
EVENT_SCROLL = "scroll"

# Preview → pane
EVENT_READY = "ready"
EVENT_KEEP_ALIVE = "keep-alive"
EVENT_SYNCED = "synced"
EVENT_NONCE = "nonce"
EVENT_DOCUMENT_TITLE = "documentTitle"
EVENT_REFRESH = "refresh"
EVENT_URL = "url"


# ─── Channel message ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChannelMessage:
    """One envelope on a messenger channel."""

    channel: str | None
    event: str
    data: object = None


def encode_message(message: ChannelMessage) -> str:
    return json.dumps({"id": message.channel, "event": message.event, "data": message.data})


def parse_message(raw: object) -> ChannelMessage:
    """Parse a posted payload into a ChannelMessage.

    Raises:
        ValueError: payload is not a JSON object with a string "event".
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Undecodable channel payload: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"Channel payload must be an object, got {type(raw).__name__}")
    event = raw.get("event")
    if not isinstance(event, str) or not event:
        raise ValueError("Channel payload missing event name")
    channel = raw.get("id")
    return ChannelMessage(
        channel=channel if isinstance(channel, str) and channel else None,
        event=event,
        data=raw.get("data"),
    )
