import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from clickwork.core.config import get_settings
from clickwork.models.marketplace import AuditLog, ServiceProvider, ServiceRequest, User
from clickwork.schemas.marketplace import TERMINAL_STATUSES, ActorRole, RequestStatus
from clickwork.services.change_feed import INSERT, UPDATE, change_feed
from clickwork.services.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from clickwork.services.record_store import RecordStore, parse_id, same_id
from clickwork.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

REQUESTS_TABLE = "service_requests"

# (current status, acting party) -> statuses that party may move the request to.
TRANSITIONS: dict[tuple[RequestStatus, ActorRole], frozenset[RequestStatus]] = {
    (RequestStatus.PENDING, ActorRole.PROVIDER): frozenset(
        {RequestStatus.ACCEPTED, RequestStatus.REJECTED, RequestStatus.CANCELLED}
    ),
    (RequestStatus.ACCEPTED, ActorRole.PROVIDER): frozenset({RequestStatus.IN_PROGRESS}),
    (RequestStatus.IN_PROGRESS, ActorRole.CLIENT): frozenset({RequestStatus.CLIENT_COMPLETED}),
    (RequestStatus.CLIENT_COMPLETED, ActorRole.PROVIDER): frozenset({RequestStatus.COMPLETED}),
}

ACTIVE_STATUSES = (RequestStatus.ACCEPTED.value, RequestStatus.IN_PROGRESS.value)

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "address",
    "location",
}


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
        audit_meta=metadata,
    )
    db.add(log)
    record_alert(action, metadata)


def record_alert(action: str, metadata: Optional[dict[str, Any]]) -> None:
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


def allowed_transitions(status: RequestStatus, role: Optional[ActorRole]) -> list[RequestStatus]:
    if role is None:
        return []
    targets = TRANSITIONS.get((RequestStatus(status), ActorRole(role)), frozenset())
    return sorted(targets, key=lambda s: list(RequestStatus).index(s))


def is_terminal(status: RequestStatus) -> bool:
    return RequestStatus(status) in TERMINAL_STATUSES


def actor_role(db: Session, request: ServiceRequest, user_id: Any) -> Optional[ActorRole]:
    if same_id(request.client_id, user_id):
        return ActorRole.CLIENT
    provider = db.get(ServiceProvider, request.provider_id)
    if provider is not None and same_id(provider.user_id, user_id):
        return ActorRole.PROVIDER
    return None


def request_snapshot(request: ServiceRequest) -> dict[str, Any]:
    return {
        "id": str(request.id),
        "client_id": str(request.client_id),
        "provider_id": str(request.provider_id),
        "status": request.status,
        "title": request.title,
    }


def _parse_budget(budget: Any) -> Decimal:
    if isinstance(budget, bool) or budget is None:
        raise ValidationError("Budget must be a positive number")
    try:
        amount = Decimal(str(budget))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Budget must be a positive number") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Budget must be a positive number")
    return amount.quantize(Decimal("0.01"))


def create_request(
    db: Session,
    *,
    client_id: Any,
    provider_id: Any,
    title: str,
    description: str,
    budget: Any,
    location: Optional[str] = None,
    deadline: Optional[date] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    settings = get_settings()
    store = RecordStore(db)

    title = (title or "").strip()
    description = (description or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if not description:
        raise ValidationError("Description is required")
    amount = _parse_budget(budget)

    client = store.find_by_id(User, client_id)
    if client is None:
        raise NotFound("Client not found")
    provider = store.find_by_id(ServiceProvider, provider_id)
    if provider is None:
        raise NotFound("Provider not found")
    if same_id(provider.user_id, client.id):
        raise ValidationError("Providers cannot request their own services")

    today = datetime.now(timezone.utc).date()
    if deadline is None:
        deadline = today + timedelta(days=settings.default_deadline_days)
    elif deadline < today:
        raise ValidationError("Deadline cannot be in the past")

    request = store.insert(
        ServiceRequest,
        client_id=client.id,
        provider_id=provider.id,
        title=title,
        description=description,
        budget=amount,
        deadline=deadline,
        location=(location or "").strip() or settings.default_request_location,
        status=RequestStatus.PENDING.value,
    )
    create_audit_log(
        db,
        entity_type="service_request",
        entity_id=str(request.id),
        action="REQUEST_CREATED",
        old_value=None,
        new_value={
            "status": request.status,
            "budget": str(amount),
            "deadline": deadline.isoformat(),
            "location": request.location,
        },
        actor_type=ActorRole.CLIENT.value.upper(),
        actor_id=str(client.id),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.commit()
    db.refresh(request)

    logger.info("Service request created id=%s provider_id=%s", request.id, request.provider_id)
    change_feed.publish(REQUESTS_TABLE, INSERT, request_snapshot(request))
    return request


def _load_request(db: Session, request_id: Any) -> ServiceRequest:
    request = RecordStore(db).find_by_id(ServiceRequest, request_id)
    if request is None:
        raise NotFound("Service request not found")
    return request


def get_status(db: Session, request_id: Any) -> RequestStatus:
    return RequestStatus(_load_request(db, request_id).status)


def get_request(db: Session, request_id: Any, viewer_id: Any) -> ServiceRequest:
    request = _load_request(db, request_id)
    if actor_role(db, request, viewer_id) is None:
        raise Forbidden("Not a party to this request")
    return request


def list_requests_for_user(
    db: Session,
    user_id: Any,
    status: Optional[RequestStatus] = None,
) -> list[ServiceRequest]:
    key = parse_id(user_id, "User")
    owned_profiles = select(ServiceProvider.id).where(ServiceProvider.user_id == key)
    stmt = select(ServiceRequest).where(
        or_(ServiceRequest.client_id == key, ServiceRequest.provider_id.in_(owned_profiles))
    )
    if status is not None:
        stmt = stmt.where(ServiceRequest.status == RequestStatus(status).value)
    stmt = stmt.order_by(ServiceRequest.created_at.desc())
    return list(db.execute(stmt).scalars().all())


def provider_request_stats(db: Session, user_id: Any) -> dict[str, Any]:
    """Dashboard figures over the requests addressed to the user's provider profile."""
    key = parse_id(user_id, "User")
    provider = db.execute(select(ServiceProvider).where(ServiceProvider.user_id == key)).scalar_one_or_none()
    if provider is None:
        raise NotFound("Provider profile not set up")

    active = ServiceRequest.status.in_(ACTIVE_STATUSES)
    completed = ServiceRequest.status == RequestStatus.COMPLETED.value
    active_count, completed_count, earnings = db.execute(
        select(
            func.coalesce(func.sum(case((active, 1), else_=0)), 0),
            func.coalesce(func.sum(case((completed, 1), else_=0)), 0),
            func.coalesce(func.sum(case((completed, ServiceRequest.budget), else_=0)), 0),
        ).where(ServiceRequest.provider_id == provider.id)
    ).one()

    return {
        "provider_id": str(provider.id),
        "active_projects": int(active_count),
        "completed_projects": int(completed_count),
        "total_earnings": Decimal(str(earnings)).quantize(Decimal("0.01")),
    }


def transition(
    db: Session,
    *,
    request_id: Any,
    acting_user_id: Any,
    target_status: RequestStatus,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    """Move a request one step along ``TRANSITIONS`` on behalf of ``acting_user_id``.

    Non-parties get ``Forbidden``. A party asking for a target that only the
    other party may reach from the current status also gets ``Forbidden``;
    every other move outside the table, including a lost race, is
    ``InvalidTransition``.
    """
    store = RecordStore(db)
    request = _load_request(db, request_id)

    try:
        target = RequestStatus(target_status)
    except ValueError as exc:
        raise ValidationError(f"Unknown status: {target_status}") from exc
    current = RequestStatus(request.status)

    role = actor_role(db, request, acting_user_id)
    if role is None:
        record_alert("STATUS_CHANGE_FORBIDDEN", {"request_id": str(request.id)})
        raise Forbidden("Not a party to this request")

    if target not in TRANSITIONS.get((current, role), frozenset()):
        other = ActorRole.CLIENT if role == ActorRole.PROVIDER else ActorRole.PROVIDER
        if target in TRANSITIONS.get((current, other), frozenset()):
            record_alert("STATUS_CHANGE_FORBIDDEN", {"request_id": str(request.id)})
            raise Forbidden(f"Only the {other.value} may move a request from {current.value} to {target.value}")
        raise InvalidTransition(f"Cannot move request from {current.value} to {target.value}")

    swapped = store.update_where(
        ServiceRequest,
        request.id,
        {"status": current.value},
        {"status": target.value, "status_changed_at": datetime.now(timezone.utc)},
    )
    if not swapped:
        db.rollback()
        logger.warning(
            "Status change lost race request_id=%s expected=%s target=%s",
            request.id,
            current.value,
            target.value,
        )
        record_alert("STATUS_CHANGE_CONFLICT", {"request_id": str(request.id), "target": target.value})
        raise InvalidTransition(f"Request is no longer {current.value}")

    create_audit_log(
        db,
        entity_type="service_request",
        entity_id=str(request.id),
        action="STATUS_CHANGE",
        old_value={"status": current.value},
        new_value={"status": target.value},
        actor_type=role.value.upper(),
        actor_id=str(parse_id(acting_user_id)),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.commit()
    db.refresh(request)

    logger.info("Service request %s: %s -> %s by %s", request.id, current.value, target.value, role.value)
    change_feed.publish(REQUESTS_TABLE, UPDATE, request_snapshot(request))
    return request
