from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from clickwork.api.v1.deps import client_ip, get_account, require_account_roles, user_agent
from clickwork.core.auth import CurrentUser
from clickwork.core.dependencies import get_db
from clickwork.models.marketplace import ServiceRequest
from clickwork.schemas.marketplace import (
    ProviderRequestStatsOut,
    RequestStatus,
    RequestStatusOut,
    ServiceRequestCreate,
    ServiceRequestListResponse,
    ServiceRequestOut,
    TransitionRequest,
)
from clickwork.services.request_lifecycle import (
    actor_role,
    allowed_transitions,
    create_request,
    get_request,
    get_status,
    is_terminal,
    list_requests_for_user,
    provider_request_stats,
    transition,
)

router = APIRouter()


def _request_to_out(db: Session, request: ServiceRequest, viewer_id: str) -> ServiceRequestOut:
    status = RequestStatus(request.status)
    return ServiceRequestOut(
        id=str(request.id),
        client_id=str(request.client_id),
        provider_id=str(request.provider_id),
        title=request.title,
        description=request.description,
        budget=float(request.budget),
        deadline=request.deadline,
        location=request.location,
        status=status,
        status_changed_at=request.status_changed_at,
        created_at=request.created_at,
        updated_at=request.updated_at,
        allowed_transitions=allowed_transitions(status, actor_role(db, request, viewer_id)),
    )


@router.post("/requests", response_model=ServiceRequestOut, status_code=201)
async def create_service_request(
    payload: ServiceRequestCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_account_roles("CLIENT")),
    db: Session = Depends(get_db),
):
    created = create_request(
        db,
        client_id=current_user.id,
        provider_id=payload.provider_id,
        title=payload.title,
        description=payload.description,
        budget=payload.budget,
        location=payload.location,
        deadline=payload.deadline,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return _request_to_out(db, created, current_user.id)


@router.get("/requests", response_model=ServiceRequestListResponse)
async def list_my_requests(
    status: Optional[RequestStatus] = None,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    items = list_requests_for_user(db, current_user.id, status=status)
    return ServiceRequestListResponse(items=[_request_to_out(db, item, current_user.id) for item in items])


@router.get("/requests/stats", response_model=ProviderRequestStatsOut)
async def get_provider_request_stats(
    current_user: CurrentUser = Depends(require_account_roles("PROVIDER")),
    db: Session = Depends(get_db),
):
    stats = provider_request_stats(db, current_user.id)
    return ProviderRequestStatsOut(
        provider_id=stats["provider_id"],
        active_projects=stats["active_projects"],
        completed_projects=stats["completed_projects"],
        total_earnings=float(stats["total_earnings"]),
    )


@router.get("/requests/{request_id}", response_model=ServiceRequestOut)
async def get_service_request(
    request_id: str,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    found = get_request(db, request_id, current_user.id)
    return _request_to_out(db, found, current_user.id)


@router.get("/requests/{request_id}/status", response_model=RequestStatusOut)
async def get_service_request_status(
    request_id: str,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    found = get_request(db, request_id, current_user.id)
    status = get_status(db, found.id)
    return RequestStatusOut(request_id=str(found.id), status=status, terminal=is_terminal(status))


@router.post("/requests/{request_id}/transition", response_model=ServiceRequestOut)
async def transition_service_request(
    request_id: str,
    payload: TransitionRequest,
    request: Request,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    updated = transition(
        db,
        request_id=request_id,
        acting_user_id=current_user.id,
        target_status=payload.status,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return _request_to_out(db, updated, current_user.id)
