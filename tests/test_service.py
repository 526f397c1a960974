"""Tests for MaintenanceService — proves the facade orchestrates correctly."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from upkeep.access.mediator import Operation
from upkeep.directory.registry import PartyDirectory, PartyEntry, PartyKind
from upkeep.models.caller import Caller, PublicCaller, Role
from upkeep.models.errors import RequestError
from upkeep.models.request import Priority, RequestStatus
from upkeep.notices import NoticeOutbox
from upkeep.persistence.event_log import EventKind, EventLog
from upkeep.persistence.state_store import RequestStore
from upkeep.policy.resolver import PolicyResolver
from upkeep.service import MaintenanceService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

MANAGER = Caller("pm-1", Role.PROPERTY_MANAGER)
TENANT = Caller("tenant-1", Role.TENANT)
OTHER_TENANT = Caller("tenant-2", Role.TENANT)
VENDOR_X = Caller("vendor-x", Role.VENDOR)


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def directory() -> PartyDirectory:
    d = PartyDirectory()
    d.register(PartyEntry("pm-1", PartyKind.USER, "Pat", Role.PROPERTY_MANAGER))
    d.register(PartyEntry("tenant-1", PartyKind.USER, "Terry", Role.TENANT))
    d.register(PartyEntry("vendor-x", PartyKind.VENDOR, "Acme Plumbing"))
    d.register(PartyEntry("vendor-y", PartyKind.VENDOR, "Bolt Electric"))
    return d


@pytest.fixture
def service(resolver: PolicyResolver, directory: PartyDirectory) -> MaintenanceService:
    return MaintenanceService(resolver, directory)


def _create(service: MaintenanceService, request_id: str = "REQ-1") -> str:
    result = service.create_request(
        TENANT, "Leaking tap", "P-1",
        description="Kitchen tap drips", request_id=request_id, now=NOW,
    )
    assert result.success
    return result.data["request_id"]


def _assigned(service: MaintenanceService) -> str:
    rid = _create(service)
    assert service.assign(rid, "vendor-x", "vendor", MANAGER, now=NOW).success
    return rid


def _completed(service: MaintenanceService) -> str:
    rid = _assigned(service)
    assert service.request_transition(rid, "in_progress", VENDOR_X, now=NOW).success
    assert service.request_transition(rid, "completed", VENDOR_X, now=NOW).success
    return rid


# =====================================================================
# Creation and reads
# =====================================================================


class TestCreation:
    def test_create_request(self, service: MaintenanceService) -> None:
        result = service.create_request(
            TENANT, "Broken heater", "P-1", priority="urgent", unit_id="U-2", now=NOW,
        )
        assert result.success
        request = result.data["request"]
        assert request.status == RequestStatus.NEW
        assert request.created_by == "tenant-1"
        assert request.version == 1
        events = service.event_log.events_for(result.data["request_id"])
        assert [e.event_kind for e in events] == [EventKind.REQUEST_CREATED]

    def test_vendor_cannot_create(self, service: MaintenanceService) -> None:
        result = service.create_request(VENDOR_X, "x", "P-1")
        assert result.error == RequestError.FORBIDDEN

    def test_blank_title_rejected(self, service: MaintenanceService) -> None:
        result = service.create_request(TENANT, "  ", "P-1")
        assert result.error == RequestError.INVALID_INPUT

    def test_bad_priority_rejected(self, service: MaintenanceService) -> None:
        result = service.create_request(TENANT, "x", "P-1", priority="asap")
        assert result.error == RequestError.INVALID_INPUT

    def test_duplicate_id_conflicts(self, service: MaintenanceService) -> None:
        _create(service)
        result = service.create_request(TENANT, "x", "P-1", request_id="REQ-1")
        assert result.error == RequestError.CONFLICT

    def test_unwritable_store(
        self, resolver: PolicyResolver, directory: PartyDirectory, tmp_path: Path,
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        svc = MaintenanceService(
            resolver, directory, store=RequestStore(blocker / "requests.json"),
        )
        result = svc.create_request(TENANT, "x", "P-1")
        assert result.error == RequestError.PERSISTENCE_FAILURE
        assert svc.status()["requests"]["total"] == 0


class TestReads:
    def test_get_request_with_capabilities(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.get_request(rid, MANAGER)
        assert result.success
        assert Operation.ASSIGN in result.data["capabilities"]
        assert RequestStatus.ARCHIVED in result.data["permitted_targets"]

    def test_outsider_is_forbidden(self, service: MaintenanceService) -> None:
        rid = _create(service)
        assert service.get_request(rid, OTHER_TENANT).error == RequestError.FORBIDDEN

    def test_unknown_request(self, service: MaintenanceService) -> None:
        assert service.get_request("ghost", MANAGER).error == RequestError.NOT_FOUND

    def test_audit_trail_is_manager_only(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        trail = service.audit_trail(rid, MANAGER)
        assert [e["action"] for e in trail.data["events"]] == [
            "request_created", "assignment", "status_change",
        ]
        assert service.audit_trail(rid, TENANT).error == RequestError.FORBIDDEN


# =====================================================================
# Lifecycle
# =====================================================================


class TestLifecycle:
    def test_full_lifecycle_then_reopen_archived(
        self, service: MaintenanceService,
    ) -> None:
        rid = _create(service)

        assigned = service.assign(rid, "vendor-x", "vendor", MANAGER, now=NOW)
        assert assigned.success
        assert assigned.data["status"] == "assigned"
        assert [e["action"] for e in assigned.data["events"]] == [
            "assignment", "status_change",
        ]

        confirm = service.request_transition(rid, "assigned", MANAGER, now=NOW)
        assert confirm.success
        assert confirm.data["no_op"]
        assert confirm.data["version"] == assigned.data["version"]

        for target, caller in [
            ("in_progress", VENDOR_X),
            ("completed", VENDOR_X),
            ("verified", MANAGER),
            ("archived", MANAGER),
        ]:
            result = service.request_transition(rid, target, caller, now=NOW)
            assert result.success, target
            assert result.data["event"]["to"] == target
            assert result.data["event"]["actor"] == caller.caller_id

        reopen = service.request_transition(rid, "reopened", MANAGER, now=NOW)
        assert reopen.error == RequestError.INVALID_TRANSITION

        request = service.get_request(rid, MANAGER).data["request"]
        assert request.status == RequestStatus.ARCHIVED
        assert request.assigned_to == "vendor-x"

    def test_completion_and_reopen_track_resolved_at(
        self, service: MaintenanceService,
    ) -> None:
        rid = _completed(service)
        assert service.get_request(rid, MANAGER).data["request"].resolved_at == NOW
        service.request_transition(rid, "reopened", MANAGER, now=NOW)
        assert service.get_request(rid, MANAGER).data["request"].resolved_at is None

    def test_vendor_cannot_verify(self, service: MaintenanceService) -> None:
        rid = _completed(service)
        result = service.request_transition(rid, "verified", VENDOR_X)
        assert result.error == RequestError.FORBIDDEN

    def test_assigned_without_assignee(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.request_transition(rid, "assigned", MANAGER)
        assert result.error == RequestError.PRECONDITION_FAILED

    def test_unknown_target(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.request_transition(rid, "paused", MANAGER)
        assert result.error == RequestError.INVALID_TRANSITION

    def test_creator_cancels_new(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.request_transition(rid, "canceled", TENANT, now=NOW)
        assert result.success
        assert result.data["request"].assigned_to is None

    def test_cancel_clears_assignee(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        service.request_transition(rid, "canceled", MANAGER, now=NOW)
        request = service.get_request(rid, MANAGER).data["request"]
        assert request.assigned_to is None
        assert request.assigned_to_kind is None

    def test_rejection_leaves_no_event(self, service: MaintenanceService) -> None:
        rid = _create(service)
        before = service.event_log.count
        service.request_transition(rid, "verified", MANAGER)
        assert service.event_log.count == before

    def test_non_viewer_is_forbidden_before_edge_check(
        self, service: MaintenanceService,
    ) -> None:
        rid = _create(service)
        outsider = service.request_transition(rid, "verified", OTHER_TENANT)
        assert outsider.error == RequestError.FORBIDDEN
        viewer = service.request_transition(rid, "verified", MANAGER)
        assert viewer.error == RequestError.INVALID_TRANSITION
        creator = service.request_transition(rid, "verified", TENANT)
        assert creator.error == RequestError.INVALID_TRANSITION

    def test_stale_expected_version(self, service: MaintenanceService) -> None:
        rid = _create(service)
        service.assign(rid, "vendor-x", "vendor", MANAGER, expected_version=1, now=NOW)
        result = service.request_transition(
            rid, "in_progress", VENDOR_X, expected_version=1,
        )
        assert result.error == RequestError.CONFLICT


# =====================================================================
# Assignment
# =====================================================================


class TestAssignment:
    def test_reassign_keeps_status(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        service.request_transition(rid, "in_progress", VENDOR_X, now=NOW)
        result = service.assign(rid, "vendor-y", "vendor", MANAGER, now=NOW)
        assert result.success
        assert result.data["status"] == "in_progress"
        assert [e["action"] for e in result.data["events"]] == ["assignment"]
        assert result.data["events"][0]["from"] == "vendor-x"

    def test_old_assignee_loses_edges(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        service.assign(rid, "vendor-y", "vendor", MANAGER, now=NOW)
        result = service.request_transition(rid, "in_progress", VENDOR_X)
        assert result.error == RequestError.FORBIDDEN

    def test_invalid_kind(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.assign(rid, "vendor-x", "contractor", MANAGER)
        assert result.error == RequestError.INVALID_ASSIGNEE

    def test_tenant_cannot_assign(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.assign(rid, "vendor-x", "vendor", TENANT)
        assert result.error == RequestError.FORBIDDEN

    def test_archived_request(self, service: MaintenanceService) -> None:
        rid = _create(service)
        service.request_transition(rid, "archived", MANAGER, now=NOW)
        result = service.assign(rid, "vendor-x", "vendor", MANAGER)
        assert result.error == RequestError.PRECONDITION_FAILED

    def test_assignment_notifies(
        self, resolver: PolicyResolver, directory: PartyDirectory,
    ) -> None:
        log = EventLog()
        outbox = NoticeOutbox(log)
        svc = MaintenanceService(resolver, directory, event_log=log)
        _assigned(svc)
        kinds = [n["kind"] for n in outbox.drain()]
        assert kinds == ["assignment", "status_change"]


# =====================================================================
# Public links
# =====================================================================


class TestPublicLinks:
    def test_enable_and_resolve(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        link = service.enable_public_access(rid, 7, MANAGER, now=NOW)
        assert link.success
        assert link.data["expires_at"] == NOW + timedelta(days=7)
        assert link.data["public_url"].endswith(link.data["token"])

        resolved = service.resolve_token(link.data["token"], now=NOW + timedelta(days=1))
        assert resolved.success
        assert resolved.data["request_id"] == rid
        assert resolved.data["capabilities"] == {
            Operation.VIEW, Operation.COMMENT, Operation.UPLOAD_MEDIA,
        }

    def test_rotation_invalidates_previous(self, service: MaintenanceService) -> None:
        rid = _create(service)
        first = service.enable_public_access(rid, 7, MANAGER, now=NOW).data["token"]
        second = service.enable_public_access(rid, 7, MANAGER, now=NOW).data["token"]
        assert first != second
        assert service.resolve_token(first, now=NOW).error == RequestError.TOKEN_NOT_FOUND
        assert service.resolve_token(second, now=NOW).success

    def test_expired_then_not_found(self, service: MaintenanceService) -> None:
        rid = _create(service)
        token = service.enable_public_access(rid, 1, MANAGER, now=NOW).data["token"]
        later = NOW + timedelta(days=2)

        assert service.resolve_token(token, now=later).error == RequestError.TOKEN_EXPIRED
        assert service.resolve_token(token, now=later).error == RequestError.TOKEN_NOT_FOUND

        request = service.get_request(rid, MANAGER).data["request"]
        assert not request.public_access.enabled
        assert request.public_access.disabled_reason == "expired"
        expired = service.event_log.events_for(rid, EventKind.PUBLIC_LINK_EXPIRED)
        assert len(expired) == 1
        assert expired[0].actor_id == "system"

    def test_no_expiry_is_flagged(self, service: MaintenanceService) -> None:
        rid = _create(service)
        link = service.enable_public_access(rid, 0, MANAGER, now=NOW)
        assert link.data["no_expiry"]
        far = NOW + timedelta(days=3650)
        assert service.resolve_token(link.data["token"], now=far).success

    def test_negative_expiry(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.enable_public_access(rid, -1, MANAGER)
        assert result.error == RequestError.INVALID_INPUT

    def test_unrepresentable_expiry_is_invalid_input(
        self, service: MaintenanceService,
    ) -> None:
        rid = _create(service)
        for days in (3_000_000, 10**10):
            result = service.enable_public_access(rid, days, MANAGER, now=NOW)
            assert result.error == RequestError.INVALID_INPUT
        request = service.get_request(rid, MANAGER).data["request"]
        assert request.public_access is None
        assert request.version == 1

    def test_tenant_cannot_enable(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.enable_public_access(rid, 7, TENANT)
        assert result.error == RequestError.FORBIDDEN

    def test_disable(self, service: MaintenanceService) -> None:
        rid = _create(service)
        token = service.enable_public_access(rid, 7, MANAGER, now=NOW).data["token"]
        assert service.disable_public_access(rid, MANAGER, now=NOW).success
        assert service.resolve_token(token, now=NOW).error == RequestError.TOKEN_NOT_FOUND

        again = service.disable_public_access(rid, MANAGER, now=NOW)
        assert again.success
        assert again.data["no_op"]

    def test_garbage_tokens(self, service: MaintenanceService) -> None:
        _create(service)
        for token in ["", "nope", None]:
            assert service.resolve_token(token).error == RequestError.TOKEN_NOT_FOUND

    def test_public_view_hides_private_fields(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        token = service.enable_public_access(rid, 7, MANAGER, now=NOW).data["token"]
        view = service.public_view(token, now=NOW).data["view"]
        assert view["request_id"] == rid
        assert view["status"] == "assigned"
        assert view["assigned_to"] == "vendor-x"
        assert "created_by" not in view
        assert "feedback" not in view
        assert token not in str(view)

    def test_public_comment_and_media(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        token = service.enable_public_access(rid, 7, MANAGER, now=NOW).data["token"]

        comment = service.public_add_comment(
            token, "Sam (Acme)", "Arriving at 3pm", phone="555-0100", now=NOW,
        )
        assert comment.success
        media = service.public_append_media(token, "Sam (Acme)", "blob://photo-1", now=NOW)
        assert media.success

        request = service.get_request(rid, MANAGER).data["request"]
        assert request.comments[0].author_external
        assert request.comments[0].author_id == "external:Sam (Acme)"
        assert request.media[0].ref == "blob://photo-1"
        assert request.status == RequestStatus.ASSIGNED

    def test_public_comment_requires_name(self, service: MaintenanceService) -> None:
        rid = _create(service)
        token = service.enable_public_access(rid, 7, MANAGER, now=NOW).data["token"]
        result = service.public_add_comment(token, " ", "hello", now=NOW)
        assert result.error == RequestError.INVALID_INPUT

    def test_public_comment_on_dead_link(self, service: MaintenanceService) -> None:
        rid = _create(service)
        token = service.enable_public_access(rid, 7, MANAGER, now=NOW).data["token"]
        service.disable_public_access(rid, MANAGER, now=NOW)
        result = service.public_add_comment(token, "Sam", "hello", now=NOW)
        assert result.error == RequestError.TOKEN_NOT_FOUND

    def test_capabilities_for_live_bearer(self, service: MaintenanceService) -> None:
        rid = _create(service)
        token = service.enable_public_access(rid, 7, MANAGER, now=NOW).data["token"]
        result = service.capabilities(rid, PublicCaller(token=token), now=NOW)
        assert result.success
        assert result.data["capabilities"] == {
            Operation.VIEW, Operation.COMMENT, Operation.UPLOAD_MEDIA,
        }

    def test_capabilities_never_reveal_existence_to_bearers(
        self, service: MaintenanceService,
    ) -> None:
        rid = _create(service)
        other = _create(service, "REQ-2")
        token = service.enable_public_access(other, 7, MANAGER, now=NOW).data["token"]
        stranger = PublicCaller(token="not-a-real-token")

        for request_id in (rid, "ghost"):
            result = service.capabilities(request_id, stranger, now=NOW)
            assert result.error == RequestError.TOKEN_NOT_FOUND
        # a live token presented against a different request
        mismatched = service.capabilities(rid, PublicCaller(token=token), now=NOW)
        assert mismatched.error == RequestError.TOKEN_NOT_FOUND

    def test_capabilities_after_link_expires(self, service: MaintenanceService) -> None:
        rid = _create(service)
        token = service.enable_public_access(rid, 1, MANAGER, now=NOW).data["token"]
        later = NOW + timedelta(days=2)
        bearer = PublicCaller(token=token)
        assert service.capabilities(rid, bearer, now=later).error == RequestError.TOKEN_EXPIRED
        assert service.capabilities(rid, bearer, now=later).error == RequestError.TOKEN_NOT_FOUND

    def test_archived_request_keeps_link_management(
        self, service: MaintenanceService,
    ) -> None:
        rid = _create(service)
        service.enable_public_access(rid, 7, MANAGER, now=NOW)
        service.request_transition(rid, "archived", MANAGER, now=NOW)
        assert service.enable_public_access(rid, 7, MANAGER).error == RequestError.FORBIDDEN
        assert service.disable_public_access(rid, MANAGER, now=NOW).success


# =====================================================================
# Detail edits
# =====================================================================


class TestDetails:
    def test_creator_edits_details(self, service: MaintenanceService) -> None:
        rid = _create(service)
        later = NOW + timedelta(hours=1)
        result = service.update_details(
            rid, TENANT, now=later,
            title="  Leaking kitchen tap ", category=" Plumbing ", priority="HIGH",
        )
        assert result.success
        assert result.data["changed"] == ["category", "priority", "title"]
        request = result.data["request"]
        assert request.title == "Leaking kitchen tap"
        assert request.category == "plumbing"
        assert request.priority == Priority.HIGH
        assert request.status == RequestStatus.NEW
        assert request.updated_at == later
        assert request.version == 2

        edits = service.event_log.events_for(rid, EventKind.DETAILS_UPDATED)
        assert len(edits) == 1
        assert edits[0].actor_id == "tenant-1"
        assert edits[0].payload == {"fields": ["category", "priority", "title"]}

    def test_manager_edits_assigned_request(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        result = service.update_details(rid, MANAGER, now=NOW, unit_id="U-7")
        assert result.success
        assert result.data["request"].unit_id == "U-7"
        assert result.data["status"] == "assigned"

    def test_status_is_not_editable(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.update_details(rid, MANAGER, status="archived")
        assert result.error == RequestError.INVALID_INPUT
        request = service.get_request(rid, MANAGER).data["request"]
        assert request.status == RequestStatus.NEW
        assert request.version == 1

    @pytest.mark.parametrize("fields", [
        {},
        {"title": "  "},
        {"priority": "asap"},
        {"created_by": "tenant-2"},
        {"description": 42},
    ])
    def test_bad_fields_rejected(self, service: MaintenanceService, fields) -> None:
        rid = _create(service)
        result = service.update_details(rid, TENANT, **fields)
        assert result.error == RequestError.INVALID_INPUT

    def test_others_cannot_edit(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        assert service.update_details(
            rid, VENDOR_X, title="x",
        ).error == RequestError.FORBIDDEN
        assert service.update_details(
            rid, OTHER_TENANT, title="x",
        ).error == RequestError.FORBIDDEN
        assert service.update_details(
            rid, PublicCaller(token="t" * 43), title="x",
        ).error == RequestError.FORBIDDEN

    def test_terminal_request_is_frozen(self, service: MaintenanceService) -> None:
        rid = _create(service)
        service.request_transition(rid, "canceled", TENANT, now=NOW)
        for caller in (TENANT, MANAGER):
            result = service.update_details(rid, caller, title="Too late")
            assert result.error == RequestError.FORBIDDEN

    def test_unchanged_values_are_no_op(self, service: MaintenanceService) -> None:
        rid = _create(service)
        before = service.event_log.count
        result = service.update_details(
            rid, TENANT, now=NOW, title="Leaking tap", priority="medium",
        )
        assert result.success
        assert result.data["no_op"]
        assert result.data["version"] == 1
        assert service.event_log.count == before

    def test_stale_version_conflicts(self, service: MaintenanceService) -> None:
        rid = _create(service)
        assert service.update_details(rid, TENANT, expected_version=1, title="A").success
        result = service.update_details(rid, MANAGER, expected_version=1, title="B")
        assert result.error == RequestError.CONFLICT

    def test_unknown_request(self, service: MaintenanceService) -> None:
        result = service.update_details("ghost", MANAGER, title="x")
        assert result.error == RequestError.NOT_FOUND


# =====================================================================
# Comments, media, feedback
# =====================================================================


class TestComments:
    def test_participants_comment(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        assert service.add_comment(rid, TENANT, "Any update?", now=NOW).success
        assert service.add_comment(rid, VENDOR_X, "Tomorrow", now=NOW).success
        request = service.get_request(rid, MANAGER).data["request"]
        assert [c.author_name for c in request.comments] == ["Terry", "Acme Plumbing"]

    def test_outsider_cannot_comment(self, service: MaintenanceService) -> None:
        rid = _create(service)
        result = service.add_comment(rid, OTHER_TENANT, "hi")
        assert result.error == RequestError.FORBIDDEN

    def test_comment_length(self, service: MaintenanceService) -> None:
        rid = _create(service)
        assert service.add_comment(rid, TENANT, "").error == RequestError.INVALID_INPUT
        too_long = "x" * 2001
        assert service.add_comment(rid, TENANT, too_long).error == RequestError.INVALID_INPUT


class TestMedia:
    def test_manager_removes_media(self, service: MaintenanceService) -> None:
        rid = _create(service)
        service.append_media(rid, TENANT, "blob://1", now=NOW)
        assert service.remove_media(rid, MANAGER, "blob://1", now=NOW).success
        assert service.remove_media(rid, MANAGER, "blob://1").error == RequestError.NOT_FOUND

    def test_creator_cannot_remove_media(self, service: MaintenanceService) -> None:
        rid = _create(service)
        service.append_media(rid, TENANT, "blob://1", now=NOW)
        result = service.remove_media(rid, TENANT, "blob://1")
        assert result.error == RequestError.FORBIDDEN


class TestFeedback:
    def test_feedback_once(self, service: MaintenanceService) -> None:
        rid = _completed(service)
        first = service.submit_feedback(rid, TENANT, 5, "Quick fix", now=NOW)
        assert first.success
        second = service.submit_feedback(rid, TENANT, 4, now=NOW)
        assert second.error == RequestError.PRECONDITION_FAILED

    def test_feedback_before_completion(self, service: MaintenanceService) -> None:
        rid = _assigned(service)
        result = service.submit_feedback(rid, TENANT, 5)
        assert result.error == RequestError.PRECONDITION_FAILED

    @pytest.mark.parametrize("rating", [0, 6, True, "5"])
    def test_rating_range(self, service: MaintenanceService, rating) -> None:
        rid = _completed(service)
        result = service.submit_feedback(rid, TENANT, rating)
        assert result.error == RequestError.INVALID_INPUT

    def test_only_creator(self, service: MaintenanceService) -> None:
        rid = _completed(service)
        assert service.submit_feedback(rid, MANAGER, 5).error == RequestError.FORBIDDEN


# =====================================================================
# Audit degradation and status
# =====================================================================


class TestAuditDegraded:
    def test_commit_survives_audit_failure(
        self, resolver: PolicyResolver, directory: PartyDirectory, tmp_path: Path,
    ) -> None:
        log = EventLog(tmp_path / "missing" / "audit.jsonl")
        svc = MaintenanceService(resolver, directory, event_log=log)
        result = svc.create_request(TENANT, "Leaking tap", "P-1", now=NOW)
        assert result.success
        assert result.data["warning"] == "audit_degraded"

        assigned = svc.assign(result.data["request_id"], "vendor-x", "vendor", MANAGER)
        assert assigned.success
        assert assigned.data["status"] == "assigned"
        assert svc.status()["audit_degraded"]
        assert log.count == 0

    def test_status_summary(self, service: MaintenanceService) -> None:
        _assigned(service)
        _create(service, "REQ-2")
        status = service.status()
        assert status["requests"]["total"] == 2
        assert status["requests"]["by_status"] == {"assigned": 1, "new": 1}
        assert status["audit_events"] == 4
        assert not status["audit_degraded"]
