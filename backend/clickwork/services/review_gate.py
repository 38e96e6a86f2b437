import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clickwork.models.marketplace import Review, ServiceProvider, ServiceRequest
from clickwork.schemas.marketplace import ActorRole, RequestStatus
from clickwork.services.change_feed import INSERT, UPDATE, change_feed
from clickwork.services.errors import Forbidden, InvalidRating, NotEligible, NotFound
from clickwork.services.record_store import RecordStore, parse_id, same_id
from clickwork.services.request_lifecycle import create_audit_log, get_status, record_alert

logger = logging.getLogger(__name__)

REVIEWS_TABLE = "reviews"
MIN_RATING = 1
MAX_RATING = 5


def get_review_for_request(db: Session, request_id: Any) -> Optional[Review]:
    key = parse_id(request_id, "Service request")
    return db.execute(select(Review).where(Review.request_id == key)).scalar_one_or_none()


def can_review(db: Session, request_id: Any) -> bool:
    if get_status(db, request_id) != RequestStatus.COMPLETED:
        return False
    return get_review_for_request(db, request_id) is None


def _validate_rating(rating: Any) -> int:
    # bool is an int subclass; True must not pass as a one-star rating.
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidRating()
    if rating < MIN_RATING or rating > MAX_RATING:
        raise InvalidRating()
    return rating


def _reject(request_id: Any, reason: str) -> None:
    logger.warning("Review rejected request_id=%s reason=%s", request_id, reason)
    record_alert("REVIEW_REJECTED", {"request_id": str(request_id), "reason": reason})


def refresh_provider_rating(db: Session, provider_id: Any) -> ServiceProvider:
    """Recompute the denormalised rating/total_reviews from the review rows.

    Callers hold the provider row lock (``RecordStore.lock_by_id``) so the
    COUNT/AVG sees every review committed before it.
    """
    provider = RecordStore(db).find_by_id(ServiceProvider, provider_id)
    if provider is None:
        raise NotFound("Provider not found")
    count, average = db.execute(
        select(func.count(Review.id), func.avg(Review.rating)).where(Review.provider_id == provider.id)
    ).one()
    provider.total_reviews = int(count or 0)
    provider.rating = (
        Decimal(str(average)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) if count else Decimal("0")
    )
    db.flush()
    return provider


def submit_review(
    db: Session,
    *,
    client_id: Any,
    request_id: Any,
    rating: Any,
    comment: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Review:
    store = RecordStore(db)
    request = store.find_by_id(ServiceRequest, request_id)
    if request is None:
        raise NotFound("Service request not found")
    request_key = request.id

    try:
        rating = _validate_rating(rating)
    except InvalidRating:
        _reject(request.id, "invalid_rating")
        raise

    if not same_id(request.client_id, client_id):
        _reject(request.id, "not_client")
        raise Forbidden("Only the requesting client can review this request")

    if not can_review(db, request.id):
        _reject(request.id, "not_eligible")
        raise NotEligible()

    # Held until commit: concurrent reviews of one provider aggregate one after another.
    if store.lock_by_id(ServiceProvider, request.provider_id) is None:
        raise NotFound("Provider not found")

    text = (comment or "").strip() or None
    try:
        review = store.insert(
            Review,
            request_id=request.id,
            client_id=request.client_id,
            provider_id=request.provider_id,
            rating=rating,
            comment=text,
        )
    except IntegrityError as exc:
        db.rollback()
        _reject(request_key, "duplicate")
        raise NotEligible("Request has already been reviewed") from exc

    provider = refresh_provider_rating(db, request.provider_id)
    create_audit_log(
        db,
        entity_type="review",
        entity_id=str(review.id),
        action="REVIEW_SUBMITTED",
        old_value=None,
        new_value={"request_id": str(request.id), "rating": rating},
        actor_type=ActorRole.CLIENT.value.upper(),
        actor_id=str(request.client_id),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        _reject(request_key, "duplicate")
        raise NotEligible("Request has already been reviewed") from exc
    db.refresh(review)

    logger.info("Review submitted request_id=%s provider_id=%s rating=%s", request.id, request.provider_id, rating)
    change_feed.publish(
        REVIEWS_TABLE,
        INSERT,
        {"id": str(review.id), "request_id": str(review.request_id), "provider_id": str(review.provider_id), "rating": rating},
    )
    change_feed.publish(
        "service_providers",
        UPDATE,
        {"id": str(provider.id), "rating": float(provider.rating), "total_reviews": provider.total_reviews},
    )
    return review


def list_provider_reviews(db: Session, provider_id: Any) -> list[Review]:
    provider = RecordStore(db).find_by_id(ServiceProvider, provider_id)
    if provider is None:
        raise NotFound("Provider not found")
    return RecordStore(db).query_by(Review, order_by=Review.created_at.desc(), provider_id=provider.id)
