"""
Unit tests for request_lifecycle: creation rules, the transition table, actor guards, audit trail.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from clickwork.schemas.marketplace import ActorRole, RequestStatus
from clickwork.services.errors import Forbidden, InvalidTransition, NotFound, ValidationError

# ── helpers ──────────────────────────────────────────────────────────


def _today():
    return datetime.now(timezone.utc).date()


def _create(db, client, provider, **overrides):
    from clickwork.services.request_lifecycle import create_request

    values = {
        "client_id": client.id,
        "provider_id": provider.id,
        "title": "Logo design",
        "description": "A new logo for the bakery",
        "budget": 500,
    }
    values.update(overrides)
    return create_request(db, **values)


def _move(db, request, user, target):
    from clickwork.services.request_lifecycle import transition

    return transition(db, request_id=request.id, acting_user_id=user.id, target_status=target)


def _status_in_db(db, request_id):
    from clickwork.models.marketplace import ServiceRequest

    db.expire_all()
    return db.get(ServiceRequest, request_id).status


# ── Creation ─────────────────────────────────────────────────────────


class TestCreateRequest:
    def test_starts_pending_with_defaults(self, db, make_user, make_provider):
        client = make_user("client")
        provider = make_provider()

        req = _create(db, client, provider)

        assert req.status == RequestStatus.PENDING.value
        assert req.location == "Remote"
        assert req.deadline == _today() + timedelta(days=30)
        assert req.budget == Decimal("500.00")

    def test_blank_location_defaults_to_remote(self, db, make_user, make_provider):
        req = _create(db, make_user("client"), make_provider(), location="   ")
        assert req.location == "Remote"

    def test_explicit_location_and_deadline_kept(self, db, make_user, make_provider):
        deadline = _today() + timedelta(days=5)
        req = _create(db, make_user("client"), make_provider(), location=" Porto ", deadline=deadline)
        assert req.location == "Porto"
        assert req.deadline == deadline

    def test_deadline_default_follows_settings(self, db, make_user, make_provider, monkeypatch):
        from clickwork.core.config import get_settings

        monkeypatch.setenv("DEFAULT_DEADLINE_DAYS", "7")
        get_settings.cache_clear()
        req = _create(db, make_user("client"), make_provider())
        assert req.deadline == _today() + timedelta(days=7)

    @pytest.mark.parametrize("field", ["title", "description"])
    def test_blank_text_rejected(self, db, make_user, make_provider, field):
        with pytest.raises(ValidationError):
            _create(db, make_user("client"), make_provider(), **{field: "  "})

    @pytest.mark.parametrize("budget", [0, -10, "abc", None, True, float("nan")])
    def test_non_positive_or_malformed_budget_rejected(self, db, make_user, make_provider, budget):
        with pytest.raises(ValidationError):
            _create(db, make_user("client"), make_provider(), budget=budget)

    def test_past_deadline_rejected(self, db, make_user, make_provider):
        with pytest.raises(ValidationError):
            _create(db, make_user("client"), make_provider(), deadline=_today() - timedelta(days=1))

    def test_unknown_provider_is_not_found(self, db, make_user):
        from clickwork.services.request_lifecycle import create_request

        with pytest.raises(NotFound):
            create_request(
                db,
                client_id=make_user("client").id,
                provider_id=uuid.uuid4(),
                title="t",
                description="d",
                budget=10,
            )

    def test_provider_cannot_request_own_profile(self, db, make_user, make_provider):
        owner = make_user("provider")
        provider = make_provider(owner)
        with pytest.raises(ValidationError):
            _create(db, owner, provider)

    def test_duplicate_pending_requests_allowed(self, db, make_user, make_provider):
        client = make_user("client")
        provider = make_provider()
        first = _create(db, client, provider)
        second = _create(db, client, provider)
        assert first.id != second.id
        assert first.status == second.status == "pending"

    def test_creation_is_audited_with_location_redacted(self, db, make_user, make_provider):
        from clickwork.models.marketplace import AuditLog

        req = _create(db, make_user("client"), make_provider(), location="Rua Augusta 1")
        log = db.query(AuditLog).filter(AuditLog.entity_id == req.id, AuditLog.action == "REQUEST_CREATED").one()
        assert log.actor_type == "CLIENT"
        assert log.new_value["status"] == "pending"
        assert log.new_value["location"] == "[REDACTED]"


# ── Transition table ─────────────────────────────────────────────────


class TestAllowedTransitions:
    def test_table_matches_two_step_handshake(self):
        from clickwork.services.request_lifecycle import allowed_transitions

        assert allowed_transitions(RequestStatus.PENDING, ActorRole.PROVIDER) == [
            RequestStatus.ACCEPTED,
            RequestStatus.REJECTED,
            RequestStatus.CANCELLED,
        ]
        assert allowed_transitions(RequestStatus.ACCEPTED, ActorRole.PROVIDER) == [RequestStatus.IN_PROGRESS]
        assert allowed_transitions(RequestStatus.IN_PROGRESS, ActorRole.CLIENT) == [RequestStatus.CLIENT_COMPLETED]
        assert allowed_transitions(RequestStatus.CLIENT_COMPLETED, ActorRole.PROVIDER) == [RequestStatus.COMPLETED]

    def test_provider_cannot_skip_client_sign_off(self):
        from clickwork.services.request_lifecycle import allowed_transitions

        assert RequestStatus.COMPLETED not in allowed_transitions(RequestStatus.IN_PROGRESS, ActorRole.PROVIDER)

    @pytest.mark.parametrize("status", [RequestStatus.REJECTED, RequestStatus.CANCELLED, RequestStatus.COMPLETED])
    def test_terminal_states_have_no_exits(self, status):
        from clickwork.services.request_lifecycle import allowed_transitions, is_terminal

        assert is_terminal(status)
        assert allowed_transitions(status, ActorRole.CLIENT) == []
        assert allowed_transitions(status, ActorRole.PROVIDER) == []

    def test_no_role_means_no_transitions(self):
        from clickwork.services.request_lifecycle import allowed_transitions

        assert allowed_transitions(RequestStatus.PENDING, None) == []


# ── Apply transition ─────────────────────────────────────────────────


class TestTransition:
    def test_full_happy_path(self, db, make_user, make_provider):
        client = make_user("client")
        provider_user = make_user("provider")
        provider = make_provider(provider_user)
        req = _create(db, client, provider)

        assert _move(db, req, provider_user, "accepted").status == "accepted"
        assert _move(db, req, provider_user, "in_progress").status == "in_progress"
        assert _move(db, req, client, "client_completed").status == "client_completed"
        done = _move(db, req, provider_user, "completed")
        assert done.status == "completed"
        assert done.status_changed_at is not None

    @pytest.mark.parametrize("target", ["rejected", "cancelled"])
    def test_provider_can_decline_pending(self, db, make_user, make_provider, make_request, target):
        provider_user = make_user("provider")
        req = make_request(provider=make_provider(provider_user))
        assert _move(db, req, provider_user, target).status == target

    def test_unknown_request_is_not_found(self, db, make_user):
        from clickwork.services.request_lifecycle import transition

        with pytest.raises(NotFound):
            transition(db, request_id=uuid.uuid4(), acting_user_id=make_user().id, target_status="accepted")

    def test_malformed_request_id_is_not_found(self, db, make_user):
        from clickwork.services.request_lifecycle import transition

        with pytest.raises(NotFound):
            transition(db, request_id="not-a-uuid", acting_user_id=make_user().id, target_status="accepted")

    def test_stranger_is_forbidden(self, db, make_user, make_request):
        req = make_request()
        with pytest.raises(Forbidden):
            _move(db, req, make_user("provider"), "accepted")
        assert _status_in_db(db, req.id) == "pending"

    def test_client_cannot_accept_own_request(self, db, make_user, make_request):
        client = make_user("client")
        req = make_request(client=client)
        with pytest.raises(Forbidden):
            _move(db, req, client, "accepted")
        assert _status_in_db(db, req.id) == "pending"

    def test_provider_cannot_mark_client_completed(self, db, make_user, make_provider, make_request):
        provider_user = make_user("provider")
        req = make_request(status="in_progress", provider=make_provider(provider_user))
        with pytest.raises(Forbidden):
            _move(db, req, provider_user, "client_completed")
        assert _status_in_db(db, req.id) == "in_progress"

    def test_reject_after_accept_is_invalid(self, db, make_user, make_provider, make_request):
        provider_user = make_user("provider")
        req = make_request(status="accepted", provider=make_provider(provider_user))
        with pytest.raises(InvalidTransition):
            _move(db, req, provider_user, "rejected")
        assert _status_in_db(db, req.id) == "accepted"

    def test_same_status_is_invalid(self, db, make_user, make_provider, make_request):
        provider_user = make_user("provider")
        req = make_request(status="accepted", provider=make_provider(provider_user))
        with pytest.raises(InvalidTransition):
            _move(db, req, provider_user, "accepted")

    def test_unknown_target_status_rejected(self, db, make_user, make_provider, make_request):
        provider_user = make_user("provider")
        req = make_request(provider=make_provider(provider_user))
        with pytest.raises(ValidationError):
            _move(db, req, provider_user, "archived")

    def test_every_pair_outside_table_leaves_status_unchanged(self, db, make_user, make_provider, make_request):
        from clickwork.services.request_lifecycle import TRANSITIONS

        client = make_user("client")
        provider_user = make_user("provider")
        provider = make_provider(provider_user)
        actors = {ActorRole.CLIENT: client, ActorRole.PROVIDER: provider_user}

        for current in RequestStatus:
            req = make_request(status=current.value, client=client, provider=provider)
            for role, user in actors.items():
                for target in RequestStatus:
                    if target in TRANSITIONS.get((current, role), frozenset()):
                        continue
                    with pytest.raises((InvalidTransition, Forbidden)):
                        _move(db, req, user, target)
                    assert _status_in_db(db, req.id) == current.value

    def test_transition_writes_audit_log(self, db, make_user, make_provider, make_request):
        from clickwork.models.marketplace import AuditLog

        provider_user = make_user("provider")
        req = make_request(provider=make_provider(provider_user))
        _move(db, req, provider_user, "accepted")

        log = db.query(AuditLog).filter(AuditLog.entity_id == req.id, AuditLog.action == "STATUS_CHANGE").one()
        assert log.old_value == {"status": "pending"}
        assert log.new_value == {"status": "accepted"}
        assert log.actor_type == "PROVIDER"
        assert log.actor_id == provider_user.id

    def test_failed_transition_writes_no_audit_log(self, db, make_user, make_request):
        from clickwork.models.marketplace import AuditLog

        client = make_user("client")
        req = make_request(client=client)
        with pytest.raises(Forbidden):
            _move(db, req, client, "accepted")
        assert db.query(AuditLog).filter(AuditLog.action == "STATUS_CHANGE").count() == 0

    def test_publishes_update_after_commit(self, db, make_user, make_provider, make_request):
        from clickwork.services.change_feed import change_feed

        events = []
        change_feed.subscribe("service_requests", events.append)
        provider_user = make_user("provider")
        req = make_request(provider=make_provider(provider_user))
        _move(db, req, provider_user, "accepted")

        assert len(events) == 1
        assert events[0].event == "UPDATE"
        assert events[0].record["status"] == "accepted"
        assert events[0].record["id"] == str(req.id)

    def test_forbidden_attempts_are_counted(self, db, make_user, make_request):
        from clickwork.utils.alerting import alert_tracker

        client = make_user("client")
        req = make_request(client=client)
        with pytest.raises(Forbidden):
            _move(db, req, client, "accepted")
        assert alert_tracker.count("STATUS_CHANGE_FORBIDDEN") == 1


# ── Queries ──────────────────────────────────────────────────────────


class TestQueries:
    def test_get_status(self, db, make_request):
        from clickwork.services.request_lifecycle import get_status

        req = make_request(status="in_progress")
        assert get_status(db, req.id) == RequestStatus.IN_PROGRESS

    def test_get_status_unknown(self, db):
        from clickwork.services.request_lifecycle import get_status

        with pytest.raises(NotFound):
            get_status(db, uuid.uuid4())

    def test_get_request_requires_party(self, db, make_user, make_request):
        from clickwork.services.request_lifecycle import get_request

        client = make_user("client")
        req = make_request(client=client)
        assert get_request(db, req.id, client.id).id == req.id
        with pytest.raises(Forbidden):
            get_request(db, req.id, make_user("client").id)

    def test_list_for_client_and_provider(self, db, make_user, make_provider, make_request):
        from clickwork.services.request_lifecycle import list_requests_for_user

        client = make_user("client")
        provider_user = make_user("provider")
        provider = make_provider(provider_user)
        mine = make_request(client=client, provider=provider)
        make_request(status="accepted", client=client, provider=provider)
        make_request()  # unrelated

        assert len(list_requests_for_user(db, client.id)) == 2
        assert len(list_requests_for_user(db, provider_user.id)) == 2
        pending = list_requests_for_user(db, provider_user.id, status=RequestStatus.PENDING)
        assert [r.id for r in pending] == [mine.id]

    def test_actor_role(self, db, make_user, make_provider, make_request):
        from clickwork.services.request_lifecycle import actor_role

        client = make_user("client")
        provider_user = make_user("provider")
        req = make_request(client=client, provider=make_provider(provider_user))
        assert actor_role(db, req, client.id) == ActorRole.CLIENT
        assert actor_role(db, req, str(provider_user.id)) == ActorRole.PROVIDER
        assert actor_role(db, req, uuid.uuid4()) is None


# ── PII redaction ────────────────────────────────────────────────────


class TestRedactPII:
    def test_redacts_nested(self):
        from clickwork.services.request_lifecycle import _redact_pii

        data = {"client": {"phone": "+351900000000", "info": [{"email": "a@b.c"}]}, "status": "pending"}
        result = _redact_pii(data, {"phone", "email"})
        assert result["client"]["phone"] == "[REDACTED]"
        assert result["client"]["info"][0]["email"] == "[REDACTED]"
        assert result["status"] == "pending"

    def test_disabled_redaction_keeps_values(self, db, make_user, make_provider):
        import os

        from clickwork.core.config import get_settings
        from clickwork.models.marketplace import AuditLog

        with patch.dict(os.environ, {"PII_REDACTION_ENABLED": "false"}):
            get_settings.cache_clear()
            req = _create(db, make_user("client"), make_provider(), location="Porto")
        log = db.query(AuditLog).filter(AuditLog.entity_id == req.id).one()
        assert log.new_value["location"] == "Porto"


# ── Provider dashboard ───────────────────────────────────────────────


class TestProviderRequestStats:
    def test_counts_and_earnings_by_status(self, db, make_user, make_provider, make_request):
        from clickwork.services.request_lifecycle import provider_request_stats

        provider_user = make_user("provider")
        provider = make_provider(provider_user)
        for status, budget in (
            ("pending", "90.00"),
            ("accepted", "100.00"),
            ("in_progress", "200.00"),
            ("client_completed", "300.00"),
            ("completed", "400.50"),
            ("completed", "99.50"),
            ("rejected", "1000.00"),
        ):
            make_request(status=status, provider=provider, budget=budget)
        make_request(status="completed", budget="777.00")  # another provider

        stats = provider_request_stats(db, provider_user.id)

        assert stats["provider_id"] == str(provider.id)
        assert stats["active_projects"] == 2
        assert stats["completed_projects"] == 2
        assert stats["total_earnings"] == Decimal("500.00")

    def test_empty_dashboard(self, db, make_user, make_provider):
        from clickwork.services.request_lifecycle import provider_request_stats

        provider_user = make_user("provider")
        make_provider(provider_user)
        stats = provider_request_stats(db, provider_user.id)
        assert (stats["active_projects"], stats["completed_projects"], stats["total_earnings"]) == (0, 0, Decimal("0.00"))

    def test_user_without_profile(self, db, make_user):
        from clickwork.services.request_lifecycle import provider_request_stats

        with pytest.raises(NotFound):
            provider_request_stats(db, make_user("provider").id)


class TestTransitionPrecedence:
    def test_other_partys_step_is_forbidden_not_invalid(self, db, make_user, make_provider, make_request):
        """The client asking for `completed` from client_completed is the provider's step."""
        client = make_user("client")
        req = make_request(status="client_completed", client=client, provider=make_provider())
        with pytest.raises(Forbidden):
            _move(db, req, client, "completed")

    def test_step_nobody_may_take_is_invalid(self, db, make_user, make_provider, make_request):
        client = make_user("client")
        req = make_request(status="client_completed", client=client, provider=make_provider())
        with pytest.raises(InvalidTransition):
            _move(db, req, client, "pending")
