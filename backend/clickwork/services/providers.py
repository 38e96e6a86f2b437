import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clickwork.core.config import get_settings
from clickwork.models.marketplace import ServiceProvider, User
from clickwork.schemas.marketplace import ProviderProfileUpsert
from clickwork.services.change_feed import INSERT, UPDATE, change_feed
from clickwork.services.errors import Forbidden, NotFound
from clickwork.services.record_store import RecordStore, parse_id

logger = logging.getLogger(__name__)

PROVIDERS_TABLE = "service_providers"


def get_provider(db: Session, provider_id: Any) -> ServiceProvider:
    provider = RecordStore(db).find_by_id(ServiceProvider, provider_id)
    if provider is None:
        raise NotFound("Provider not found")
    return provider


def get_provider_for_user(db: Session, user_id: Any) -> Optional[ServiceProvider]:
    key = parse_id(user_id, "User")
    return db.execute(select(ServiceProvider).where(ServiceProvider.user_id == key)).scalar_one_or_none()


def upsert_provider_profile(db: Session, *, user_id: Any, profile: ProviderProfileUpsert) -> ServiceProvider:
    store = RecordStore(db)
    user = store.find_by_id(User, user_id)
    if user is None:
        raise NotFound("User not found")
    if user.user_type != "provider":
        raise Forbidden("Only provider accounts can have a provider profile")

    values = profile.model_dump()
    if values.get("hourly_rate") is not None:
        values["hourly_rate"] = Decimal(str(values["hourly_rate"]))

    existing = get_provider_for_user(db, user.id)
    if existing is None:
        provider = store.insert(ServiceProvider, user_id=user.id, **values)
        event = INSERT
    else:
        # rating and total_reviews are owned by the review aggregate, never by the profile form.
        for field, value in values.items():
            setattr(existing, field, value)
        provider = existing
        event = UPDATE
    db.commit()
    db.refresh(provider)

    logger.info("Provider profile %s id=%s user_id=%s", event.lower(), provider.id, user.id)
    change_feed.publish(PROVIDERS_TABLE, event, {"id": str(provider.id), "user_id": str(user.id)})
    return provider


def search_providers(
    db: Session,
    *,
    service: Optional[str] = None,
    city: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[ServiceProvider]:
    """Providers ordered by rating, then review count."""
    settings = get_settings()
    max_items = min(int(limit or settings.provider_search_limit), settings.provider_search_limit)

    stmt = select(ServiceProvider)
    if city:
        stmt = stmt.where(func.lower(ServiceProvider.city) == city.strip().lower())
    stmt = stmt.order_by(ServiceProvider.rating.desc(), ServiceProvider.total_reviews.desc(), ServiceProvider.created_at.asc())
    if not service:
        stmt = stmt.limit(max_items)

    providers = list(db.execute(stmt).scalars().all())
    if service:
        # services is a JSON list; matching in Python keeps SQLite and Postgres behaviour identical.
        needle = service.strip().lower()
        providers = [p for p in providers if any(needle in (s or "").lower() for s in (p.services or []))]
    return providers[:max_items]
