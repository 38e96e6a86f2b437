from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clickwork.api.v1.deps import get_account, require_account_roles
from clickwork.core.auth import CurrentUser
from clickwork.core.dependencies import get_db
from clickwork.models.marketplace import ServiceProvider
from clickwork.schemas.marketplace import ProviderListResponse, ProviderOut, ProviderProfileUpsert
from clickwork.services.errors import NotFound
from clickwork.services.providers import get_provider, get_provider_for_user, search_providers, upsert_provider_profile

router = APIRouter()


def _provider_to_out(provider: ServiceProvider) -> ProviderOut:
    return ProviderOut(
        id=str(provider.id),
        user_id=str(provider.user_id),
        brand_name=provider.brand_name,
        business_type=provider.business_type,
        description=provider.description or "",
        phone=provider.phone,
        city=provider.city,
        country=provider.country,
        services=list(provider.services or []),
        languages=list(provider.languages or []),
        hourly_rate=float(provider.hourly_rate) if provider.hourly_rate is not None else None,
        availability=provider.availability,
        rating=float(provider.rating or 0),
        total_reviews=int(provider.total_reviews or 0),
        created_at=provider.created_at,
    )


@router.put("/providers/me", response_model=ProviderOut)
async def upsert_my_profile(
    payload: ProviderProfileUpsert,
    current_user: CurrentUser = Depends(require_account_roles("PROVIDER")),
    db: Session = Depends(get_db),
):
    provider = upsert_provider_profile(db, user_id=current_user.id, profile=payload)
    return _provider_to_out(provider)


@router.get("/providers/me", response_model=ProviderOut)
async def get_my_profile(
    current_user: CurrentUser = Depends(require_account_roles("PROVIDER")),
    db: Session = Depends(get_db),
):
    provider = get_provider_for_user(db, current_user.id)
    if provider is None:
        raise NotFound("Provider profile not set up")
    return _provider_to_out(provider)


@router.get("/providers", response_model=ProviderListResponse)
async def list_providers(
    service: Optional[str] = None,
    city: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    providers = search_providers(db, service=service, city=city, limit=limit)
    return ProviderListResponse(items=[_provider_to_out(p) for p in providers])


@router.get("/providers/{provider_id}", response_model=ProviderOut)
async def get_provider_profile(
    provider_id: str,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    return _provider_to_out(get_provider(db, provider_id))
