"""Changeset save/publish protocol.

// [LAW:single-enforcer] TransactionController is the only writer of the
// current changeset uuid; every other component learns about swaps through
// its `changeset-uuid` event.
// [LAW:one-source-of-truth] Pending membership is derived from the store's
// dirty set plus explicitly staged ids; there is no parallel payload copy.
// [LAW:dataflow-not-control-flow] Server failures arrive as data and are
// classified into SaveError values; only the transport raises.

Events:
    save-started(SaveRequest)
    saved(SaveResult)
    save-failed(SaveError)
    changeset-uuid(old_uuid, new_uuid)
    nonces(mapping)
    conflict(SaveError)
"""

from __future__ import annotations

import itertools
import logging
import uuid as uuid_module
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from preview_sync.app.nonces import NonceStore
from preview_sync.app.settings_store import SettingValueStore
from preview_sync.core.events import Events
from preview_sync.core.scheduling import InlineRunner, RequestRunner
from preview_sync.event_types import ChangesetStatus, JsonDict, parse_status
from preview_sync.io.server_api import SaveRequest, ServerApi

logger = logging.getLogger(__name__)


# ─── Error taxonomy ───────────────────────────────────────────────────────────


class SaveErrorKind(Enum):
    AUTH = "auth"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    TRANSPORT = "transport"
    SERVER = "server"


NONCE_ERROR_CODES = frozenset({"bad_nonce", "invalid_nonce"})
AUTH_ERROR_CODES = frozenset({"unauthorized", "customize_not_allowed"}) | NONCE_ERROR_CODES
CONFLICT_ERROR_CODES = frozenset(
    {"invalid_transaction_uuid", "invalid_customize_transaction_uuid", "changeset_conflict"}
)
VALIDATION_ERROR_CODES = frozenset({"setting_validities", "transaction_invalid", "changeset_invalid"})


@dataclass(frozen=True)
class SaveError:
    kind: SaveErrorKind
    code: str
    message: str = ""
    retryable: bool = False
    setting_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class SaveResult:
    request: SaveRequest
    previous_uuid: str
    uuid: str
    status: ChangesetStatus
    saved: dict[str, object] = field(default_factory=dict)
    invalid: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def uuid_changed(self) -> bool:
        return self.uuid != self.previous_uuid


def classify_error(code: str) -> SaveErrorKind:
    if code in AUTH_ERROR_CODES:
        return SaveErrorKind.AUTH
    if code in CONFLICT_ERROR_CODES:
        return SaveErrorKind.CONFLICT
    if code in VALIDATION_ERROR_CODES:
        return SaveErrorKind.VALIDATION
    return SaveErrorKind.SERVER


def _error_code(data: object) -> tuple[str, str]:
    """Return (code, message) from an error envelope's data."""
    if isinstance(data, str):
        return data, ""
    if isinstance(data, dict):
        code = data.get("code") or data.get("errorCode")
        message = data.get("message")
        if not code and "setting_validities" in data:
            code = "setting_validities"
        return str(code or "unknown_error"), str(message or "")
    return "unknown_error", ""


def parse_validities(raw: object) -> dict[str, dict[str, str]]:
    """Extract {setting_id: {code: message}} for settings the server rejected.

    A validity of True means valid; an error entry is either a message string
    or {"message": ..., "data": ...}.
    """
    if not isinstance(raw, dict):
        return {}
    invalid: dict[str, dict[str, str]] = {}
    for setting_id, validity in raw.items():
        if validity is True or not isinstance(validity, dict):
            continue
        errors: dict[str, str] = {}
        for code, detail in validity.items():
            if isinstance(detail, dict):
                errors[str(code)] = str(detail.get("message") or "")
            else:
                errors[str(code)] = str(detail or "")
        if errors:
            invalid[str(setting_id)] = errors
    return invalid


def _sanitized_values(data: JsonDict) -> dict[str, object]:
    for key in ("sanitizedSettings", "sanitized_settings", "settings", "transaction_settings"):
        values = data.get(key)
        if isinstance(values, dict):
            return dict(values)
    return {}


def _next_uuid(data: JsonDict) -> str:
    for key in ("transactionUuid", "next_changeset_uuid", "changeset_uuid", "transaction_uuid"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _unwrap_save_response(payload: object) -> tuple[bool, object] | None:
    """Return (success, data) for a save response, or None when malformed.

    Accepts the {"success", "data"} envelope as well as the bare
    {"transactionUuid", "sanitizedSettings"} success and {"errorCode"} failure bodies.
    """
    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("success"), bool):
        return payload["success"], payload.get("data")
    if "errorCode" in payload:
        return False, payload
    if "transactionUuid" in payload or "sanitizedSettings" in payload:
        return True, payload
    return None


def _same(a: object, b: object) -> bool:
    return a == b and type(a) is type(b)


# ─── Controller ───────────────────────────────────────────────────────────────


class TransactionController:
    """Owns the current changeset uuid and the save/publish round trips.

    At most one save is in flight. A save() requested meanwhile is queued
    (the latest requested status wins) and sent once the in-flight one
    finishes. Transport failures are never retried automatically.
    """

    def __init__(
        self,
        store: SettingValueStore,
        server: ServerApi,
        *,
        uuid: str,
        status: ChangesetStatus = ChangesetStatus.DRAFT,
        runner: RequestRunner | None = None,
        nonces: NonceStore | None = None,
        theme: str = "",
        uuid_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.server = server
        self.runner = runner if runner is not None else InlineRunner()
        self.nonces = nonces if nonces is not None else NonceStore()
        self.uuid = uuid
        self.status = status
        self.theme = theme
        self.events = Events()
        self.last_error: SaveError | None = None
        self.conflict: SaveError | None = None
        self._uuid_factory = uuid_factory or (lambda: str(uuid_module.uuid4()))
        self._staged: set[str] = set()
        self._in_flight: SaveRequest | None = None
        self._queued_status: ChangesetStatus | None = None
        self._request_ids = itertools.count(1)

    # ─── Events capability ────────────────────────────────────────────

    def bind(self, event: str, handler: Callable[..., object]) -> None:
        self.events.bind(event, handler)

    def unbind(self, event: str, handler: Callable[..., object] | None = None) -> None:
        self.events.unbind(event, handler)

    # ─── Staging ──────────────────────────────────────────────────────

    def stage(self, setting_id: str, value: object) -> None:
        """Write value into the store and include setting_id in the next save."""
        self.store.set(setting_id, value)
        self._staged.add(setting_id)

    @property
    def staged_ids(self) -> list[str]:
        return sorted(self._staged)

    def pending_settings(self) -> dict[str, object]:
        pending = self.store.dirty_values()
        for setting_id in sorted(self._staged):
            if setting_id not in pending and self.store.has(setting_id):
                pending[setting_id] = self.store.get(setting_id)
        return pending

    @property
    def saving(self) -> bool:
        return self._in_flight is not None

    # ─── Save ─────────────────────────────────────────────────────────

    def save(self, status: ChangesetStatus | str = ChangesetStatus.DRAFT) -> SaveRequest | None:
        """Send the pending settings with the current uuid.

        Returns the request sent, or None when the save was queued behind an
        in-flight one or refused because the session is in conflict.
        """
        target = status if isinstance(status, ChangesetStatus) else parse_status(status)
        if self.conflict is not None:
            logger.warning("Refusing save on conflicted changeset %s", self.uuid)
            self.events.trigger("save-failed", self.conflict)
            return None
        if self._in_flight is not None:
            logger.debug("Save in flight; queueing %s", target.value)
            self._queued_status = target
            return None
        request = SaveRequest(
            request_id=next(self._request_ids),
            uuid=self.uuid,
            status=target,
            settings=self.pending_settings(),
            theme=self.theme,
        )
        self._in_flight = request
        logger.info(
            "Saving changeset %s as %s (%d settings)", request.uuid, target.value, len(request.settings)
        )
        self.events.trigger("save-started", request)
        self._send(request, retried=False)
        return request

    def _send(self, request: SaveRequest, *, retried: bool) -> None:
        nonce = self.nonces.get("save")
        self.runner.submit(
            lambda: self.server.save_changeset(request, nonce),
            lambda payload: self._on_response(request, payload, retried),
            lambda error: self._on_transport_error(request, error),
        )

    def _finish(self, request: SaveRequest) -> None:
        if self._in_flight is not None and self._in_flight.request_id == request.request_id:
            self._in_flight = None
        if self._in_flight is None and self._queued_status is not None:
            queued, self._queued_status = self._queued_status, None
            self.save(queued)

    def _fail(self, request: SaveRequest, error: SaveError) -> None:
        self.last_error = error
        logger.warning("Save %d failed: %s (%s)", request.request_id, error.code, error.kind.value)
        if error.kind is SaveErrorKind.CONFLICT:
            self.conflict = error
            # Queued saves would hit the same conflict.
            self._queued_status = None
            self.events.trigger("conflict", error)
        self.events.trigger("save-failed", error)
        self._finish(request)

    def _on_transport_error(self, request: SaveRequest, error: Exception) -> None:
        self._fail(
            request,
            SaveError(
                kind=SaveErrorKind.TRANSPORT,
                code="transport",
                message=str(error),
                retryable=True,
                setting_ids=tuple(request.settings),
            ),
        )

    def _on_response(self, request: SaveRequest, payload: object, retried: bool) -> None:
        if request.uuid != self.uuid:
            logger.info("Discarding save response for stale changeset %s", request.uuid)
            self._finish(request)
            return
        unwrapped = _unwrap_save_response(payload)
        if unwrapped is None:
            self._on_transport_error(request, ValueError("malformed save response"))
            return
        success, data = unwrapped
        if success:
            self._apply_success(request, data if isinstance(data, dict) else {})
            return

        code, message = _error_code(data)
        kind = classify_error(code)
        if code in NONCE_ERROR_CODES and not retried:
            logger.info("Save nonce rejected (%s); refreshing nonces", code)
            self._refresh_nonces_and_retry(request, code)
            return
        invalid = parse_validities(data.get("setting_validities")) if isinstance(data, dict) else {}
        for setting_id, errors in invalid.items():
            self.store.mark_invalid(setting_id, errors)
        if invalid:
            kind = SaveErrorKind.VALIDATION
        self._fail(
            request,
            SaveError(
                kind=kind,
                code=code,
                message=message,
                retryable=kind in (SaveErrorKind.VALIDATION, SaveErrorKind.SERVER),
                setting_ids=tuple(invalid) if invalid else tuple(request.settings),
            ),
        )

    def _refresh_nonces_and_retry(self, request: SaveRequest, code: str) -> None:
        def on_nonces(payload: object) -> None:
            tokens = payload.get("data") if isinstance(payload, dict) and payload.get("success") else None
            if not isinstance(tokens, dict) or not tokens:
                self._nonce_refresh_failed(request, code, "nonce refresh rejected")
                return
            self.nonces.update(tokens)
            self.events.trigger("nonces", self.nonces.snapshot())
            self._send(request, retried=True)

        self.runner.submit(
            self.server.refresh_nonces,
            on_nonces,
            lambda error: self._nonce_refresh_failed(request, code, str(error)),
        )

    def _nonce_refresh_failed(self, request: SaveRequest, code: str, message: str) -> None:
        self._fail(
            request,
            SaveError(kind=SaveErrorKind.AUTH, code=code, message=message, setting_ids=tuple(request.settings)),
        )

    def _apply_success(self, request: SaveRequest, data: JsonDict) -> None:
        sanitized = _sanitized_values(data)
        invalid = parse_validities(data.get("setting_validities"))

        baselines: dict[str, object] = {}
        for setting_id, sent in request.settings.items():
            if setting_id in invalid:
                continue
            final = sanitized.get(setting_id, sent)
            # Only reconcile settings not edited while the save was in flight.
            if _same(self.store.get(setting_id), sent) and setting_id in sanitized:
                self.store.set(setting_id, final)
            baselines[setting_id] = final
        saved_ids = self.store.mark_saved(baselines)
        for setting_id, errors in invalid.items():
            self.store.mark_invalid(setting_id, errors)
        self._staged.difference_update(saved_ids)

        previous = self.uuid
        if request.status is ChangesetStatus.PUBLISH:
            next_uuid = _next_uuid(data)
            if not next_uuid or next_uuid == previous:
                next_uuid = self._uuid_factory()
                logger.info("Publish response carried no next uuid; minted %s", next_uuid)
            self.uuid = next_uuid
            self.status = ChangesetStatus.DRAFT
            self.events.trigger("changeset-uuid", previous, next_uuid)
        else:
            returned = _next_uuid(data)
            if returned and returned != previous:
                logger.warning("Ignoring uuid %s returned for non-publish save of %s", returned, previous)
            self.status = request.status

        self.last_error = None
        result = SaveResult(
            request=request,
            previous_uuid=previous,
            uuid=self.uuid,
            status=request.status,
            saved={setting_id: baselines[setting_id] for setting_id in saved_ids},
            invalid=invalid,
        )
        logger.info("Saved changeset %s (%d settings, %d invalid)", previous, len(saved_ids), len(invalid))
        self.events.trigger("saved", result)
        self._finish(request)

    def apply_nonces(self, tokens: Mapping[str, object]) -> None:
        """Merge tokens reported by another context (e.g. the preview)."""
        self.nonces.update(tokens)
        self.events.trigger("nonces", self.nonces.snapshot())
