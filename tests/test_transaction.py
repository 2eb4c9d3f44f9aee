"""Tests for the changeset save/publish protocol."""

import itertools

import pytest

from preview_sync.app.nonces import NonceStore
from preview_sync.app.settings_store import SettingValueStore
from preview_sync.event_types import ChangesetStatus
from preview_sync.io.server_api import TransportError
from preview_sync.pipeline.transaction import (
    SaveErrorKind,
    TransactionController,
    classify_error,
    parse_validities,
)


@pytest.fixture
def store():
    return SettingValueStore({"blogname": "Site", "blogdescription": "Tagline"})


@pytest.fixture
def minted():
    counter = itertools.count(1)
    return lambda: f"minted-{next(counter)}"


@pytest.fixture
def controller(store, server, runner, minted):
    return TransactionController(
        store,
        server,
        uuid="U1",
        runner=runner,
        nonces=NonceStore({"save": "s1", "preview": "p1"}),
        uuid_factory=minted,
    )


def _record(controller, *events):
    seen = []
    for event in events:
        controller.bind(event, lambda *args, _event=event: seen.append((_event, args)))
    return seen


class TestDraftSave:
    def test_sanitized_value_replaces_client_value(self, controller, store, server, runner):
        server.save_responses.append(
            {"success": True, "data": {"setting_validities": {"blogname": True}, "sanitized_settings": {"blogname": "Foo"}}}
        )
        store.set("blogname", "Foo<script>")
        request = controller.save()
        assert request.settings == {"blogname": "Foo<script>"}
        assert request.uuid == "U1"
        assert controller.saving

        runner.resolve()
        assert store.get("blogname") == "Foo"
        assert store.dirty_ids() == []
        assert controller.uuid == "U1"
        assert not controller.saving

    def test_request_carries_save_nonce_and_status(self, controller, store, server, runner):
        store.set("blogname", "Foo")
        controller.save("pending")
        runner.resolve()
        request, nonce = server.save_calls[0]
        assert nonce == "s1"
        assert request.status is ChangesetStatus.PENDING
        assert controller.status is ChangesetStatus.PENDING

    def test_edit_during_flight_stays_dirty(self, controller, store, server, runner):
        server.save_responses.append({"success": True, "data": {"sanitized_settings": {"blogname": "Foo"}}})
        store.set("blogname", "Foo")
        controller.save()
        store.set("blogname", "Foo edited")
        runner.resolve()
        assert store.get("blogname") == "Foo edited"
        assert store.is_dirty("blogname")

    def test_saved_event_reports_baselines(self, controller, store, runner):
        seen = _record(controller, "saved")
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve()
        [(_, (result,))] = seen
        assert result.saved == {"blogname": "Foo"}
        assert not result.uuid_changed

    def test_non_publish_uuid_change_is_ignored(self, controller, store, server, runner):
        server.save_responses.append({"success": True, "data": {"changeset_uuid": "OTHER"}})
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve()
        assert controller.uuid == "U1"

    def test_staged_setting_sent_even_when_clean(self, controller, store, runner):
        controller.stage("blogdescription", "Tagline")
        assert controller.pending_settings() == {"blogdescription": "Tagline"}
        controller.save()
        runner.resolve()
        assert controller.staged_ids == []


class TestPublish:
    def test_next_uuid_becomes_current(self, controller, store, server, runner):
        server.save_responses.append({"success": True, "data": {"next_changeset_uuid": "U2"}})
        seen = _record(controller, "changeset-uuid")
        store.set("blogname", "Foo")
        controller.save(ChangesetStatus.PUBLISH)
        runner.resolve()
        assert controller.uuid == "U2"
        assert controller.status is ChangesetStatus.DRAFT
        assert seen == [("changeset-uuid", ("U1", "U2"))]

    @pytest.mark.parametrize("data", [{}, {"next_changeset_uuid": "U1"}])
    def test_missing_or_reused_uuid_is_minted(self, controller, store, server, runner, data):
        server.save_responses.append({"success": True, "data": data})
        store.set("blogname", "Foo")
        controller.save("publish")
        runner.resolve()
        assert controller.uuid == "minted-1"

    def test_queued_save_uses_new_uuid(self, controller, store, server, runner):
        server.save_responses.append({"success": True, "data": {"next_changeset_uuid": "U2"}})
        store.set("blogname", "Foo")
        controller.save(ChangesetStatus.PUBLISH)
        store.set("blogdescription", "New tagline")
        assert controller.save() is None
        runner.resolve()
        assert len(runner.pending) == 1
        runner.resolve()
        second = server.save_calls[1][0]
        assert second.uuid == "U2"
        assert second.settings == {"blogdescription": "New tagline"}

    def test_latest_queued_status_wins(self, controller, store, server, runner):
        store.set("blogname", "Foo")
        controller.save()
        controller.save("pending")
        controller.save("draft")
        runner.resolve_all()
        assert [call[0].status for call in server.save_calls] == [ChangesetStatus.DRAFT, ChangesetStatus.DRAFT]


class TestBareResponseBodies:
    def test_sanitized_settings_replace_staged_value(self, controller, store, server, runner):
        server.save_responses.append(
            {"transactionUuid": "U1", "sanitizedSettings": {"blogname": "New Title (sanitized)"}}
        )
        controller.stage("blogname", "New Title")
        controller.save(ChangesetStatus.DRAFT)
        runner.resolve()
        assert store.get("blogname") == "New Title (sanitized)"
        assert not store.is_dirty("blogname")
        assert controller.uuid == "U1"
        assert controller.last_error is None

    def test_publish_adopts_server_uuid(self, controller, store, server, runner):
        server.save_responses.append({"transactionUuid": "U2"})
        store.set("blogname", "Foo")
        controller.save(ChangesetStatus.PUBLISH)
        runner.resolve()
        assert controller.uuid == "U2"

    def test_camel_case_keys_inside_envelope(self, controller, store, server, runner):
        server.save_responses.append(
            {"success": True, "data": {"transactionUuid": "U2", "sanitizedSettings": {"blogname": "Clean"}}}
        )
        store.set("blogname", "Dirty")
        controller.save(ChangesetStatus.PUBLISH)
        runner.resolve()
        assert controller.uuid == "U2"
        assert store.get("blogname") == "Clean"

    @pytest.mark.parametrize(
        "code, kind",
        [("invalid_transaction_uuid", SaveErrorKind.CONFLICT), ("missing_payload", SaveErrorKind.SERVER)],
    )
    def test_error_code_body(self, controller, store, server, runner, code, kind):
        server.save_responses.append({"errorCode": code})
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve()
        assert controller.last_error.kind is kind
        assert controller.last_error.code == code
        assert store.is_dirty("blogname")

    def test_unrecognized_object_is_transport_error(self, controller, store, server, runner):
        server.save_responses.append({"status": "ok"})
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve()
        assert controller.last_error.kind is SaveErrorKind.TRANSPORT


class TestStaleResponses:
    def test_response_for_old_uuid_is_discarded(self, controller, store, server, runner):
        server.save_responses.append({"success": True, "data": {"sanitized_settings": {"blogname": "Old"}}})
        store.set("blogname", "Foo")
        controller.save()
        controller.uuid = "U2"
        seen = _record(controller, "saved", "save-failed")
        runner.resolve()
        assert seen == []
        assert store.get("blogname") == "Foo"
        assert store.is_dirty("blogname")
        assert not controller.saving


class TestFailures:
    def test_nonce_refresh_then_single_retry(self, controller, store, server, runner):
        server.save_responses.extend([{"success": False, "data": "invalid_nonce"}, {"success": True, "data": {}}])
        seen = _record(controller, "nonces", "saved")
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve_all()
        assert server.nonce_calls == 1
        assert [nonce for _, nonce in server.save_calls] == ["s1", "fresh-save"]
        assert [event for event, _ in seen] == ["nonces", "saved"]
        assert store.dirty_ids() == []

    def test_second_nonce_failure_is_terminal(self, controller, store, server, runner):
        server.save_responses.extend([{"success": False, "data": "bad_nonce"}, {"success": False, "data": "bad_nonce"}])
        seen = _record(controller, "save-failed")
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve_all()
        assert server.nonce_calls == 1
        assert len(server.save_calls) == 2
        [(_, (error,))] = seen
        assert error.kind is SaveErrorKind.AUTH
        assert store.is_dirty("blogname")

    def test_failed_nonce_refresh_is_auth_error(self, controller, store, server, runner):
        server.save_responses.append({"success": False, "data": "invalid_nonce"})
        server.nonce_responses.append({"success": False, "data": "unauthorized"})
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve_all()
        assert controller.last_error.kind is SaveErrorKind.AUTH
        assert len(server.save_calls) == 1

    def test_transport_error_not_retried(self, controller, store, server, runner):
        server.save_responses.append(TransportError("connection reset"))
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve_all()
        assert len(server.save_calls) == 1
        assert controller.last_error.kind is SaveErrorKind.TRANSPORT
        assert controller.last_error.retryable
        assert store.is_dirty("blogname")
        assert not controller.saving

    def test_malformed_response_is_transport_error(self, controller, store, server, runner):
        server.save_responses.append("<html>fatal error</html>")
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve()
        assert controller.last_error.kind is SaveErrorKind.TRANSPORT

    def test_conflict_blocks_further_saves(self, controller, store, server, runner):
        server.save_responses.append({"success": False, "data": {"code": "changeset_conflict", "message": "Locked"}})
        seen = _record(controller, "conflict", "save-failed")
        store.set("blogname", "Foo")
        controller.save()
        runner.resolve()
        assert controller.conflict.kind is SaveErrorKind.CONFLICT
        assert [event for event, _ in seen] == ["conflict", "save-failed"]

        assert controller.save() is None
        assert runner.pending == []
        assert len(server.save_calls) == 1

    def test_validation_failure_marks_only_rejected_setting(self, controller, store, server, runner):
        server.save_responses.append(
            {
                "success": False,
                "data": {
                    "setting_validities": {
                        "blogname": {"too_long": {"message": "Title is too long", "data": None}},
                        "blogdescription": True,
                    }
                },
            }
        )
        store.set("blogname", "x" * 500)
        store.set("blogdescription", "Fine")
        controller.save()
        runner.resolve()
        error = controller.last_error
        assert error.kind is SaveErrorKind.VALIDATION
        assert error.setting_ids == ("blogname",)
        assert store.setting("blogname").validity == {"too_long": "Title is too long"}
        assert store.setting("blogdescription").validity is None
        assert store.dirty_ids() == ["blogname", "blogdescription"]

    def test_partial_success_saves_valid_settings(self, controller, store, server, runner):
        server.save_responses.append(
            {"success": True, "data": {"setting_validities": {"blogname": {"bad": "Nope"}, "blogdescription": True}}}
        )
        store.set("blogname", "Bad")
        store.set("blogdescription", "Good")
        controller.save()
        runner.resolve()
        assert store.dirty_ids() == ["blogname"]
        assert store.setting("blogname").validity == {"bad": "Nope"}


class TestHelpers:
    @pytest.mark.parametrize(
        "code, kind",
        [
            ("invalid_nonce", SaveErrorKind.AUTH),
            ("unauthorized", SaveErrorKind.AUTH),
            ("changeset_conflict", SaveErrorKind.CONFLICT),
            ("transaction_invalid", SaveErrorKind.VALIDATION),
            ("database_error", SaveErrorKind.SERVER),
        ],
    )
    def test_classify_error(self, code, kind):
        assert classify_error(code) is kind

    def test_parse_validities_skips_valid_entries(self):
        raw = {"a": True, "b": {"empty": "Required"}, "c": "garbage"}
        assert parse_validities(raw) == {"b": {"empty": "Required"}}

    def test_apply_nonces_announces(self, controller):
        seen = _record(controller, "nonces")
        controller.apply_nonces({"preview": "p2"})
        assert controller.nonces.get("preview") == "p2"
        assert seen == [("nonces", ({"save": "s1", "preview": "p2"},))]
