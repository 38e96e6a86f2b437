from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from clickwork.api.v1.deps import client_ip, get_account, require_account_roles, user_agent
from clickwork.core.auth import CurrentUser
from clickwork.core.dependencies import get_db
from clickwork.models.marketplace import Review
from clickwork.schemas.marketplace import ReviewCreate, ReviewEligibilityOut, ReviewListResponse, ReviewOut
from clickwork.services.providers import get_provider
from clickwork.services.request_lifecycle import get_request, get_status
from clickwork.services.review_gate import can_review, get_review_for_request, list_provider_reviews, submit_review

router = APIRouter()


def _review_to_out(review: Review) -> ReviewOut:
    return ReviewOut(
        id=str(review.id),
        request_id=str(review.request_id),
        client_id=str(review.client_id),
        provider_id=str(review.provider_id),
        rating=review.rating,
        comment=review.comment,
        created_at=review.created_at,
    )


@router.get("/requests/{request_id}/review-eligibility", response_model=ReviewEligibilityOut)
async def review_eligibility(
    request_id: str,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    found = get_request(db, request_id, current_user.id)
    return ReviewEligibilityOut(
        request_id=str(found.id),
        can_review=can_review(db, found.id),
        status=get_status(db, found.id),
        already_reviewed=get_review_for_request(db, found.id) is not None,
    )


@router.post("/requests/{request_id}/review", response_model=ReviewOut, status_code=201)
async def create_review(
    request_id: str,
    payload: ReviewCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_account_roles("CLIENT")),
    db: Session = Depends(get_db),
):
    review = submit_review(
        db,
        client_id=current_user.id,
        request_id=request_id,
        rating=payload.rating,
        comment=payload.comment,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return _review_to_out(review)


@router.get("/providers/{provider_id}/reviews", response_model=ReviewListResponse)
async def provider_reviews(
    provider_id: str,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    provider = get_provider(db, provider_id)
    reviews = list_provider_reviews(db, provider.id)
    return ReviewListResponse(
        items=[_review_to_out(review) for review in reviews],
        average_rating=float(provider.rating or 0),
        total_reviews=int(provider.total_reviews or 0),
    )
