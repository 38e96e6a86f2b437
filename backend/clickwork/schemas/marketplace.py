from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    IN_PROGRESS = "in_progress"
    CLIENT_COMPLETED = "client_completed"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({RequestStatus.REJECTED, RequestStatus.CANCELLED, RequestStatus.COMPLETED})


class ActorRole(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"


class ServiceRequestCreate(BaseModel):
    provider_id: str = Field(min_length=1)
    title: str
    description: str
    # Range checks live in the lifecycle service so API and direct callers get the same error.
    budget: float
    location: Optional[str] = None
    deadline: Optional[date] = None


class ServiceRequestOut(BaseModel):
    id: str
    client_id: str
    provider_id: str
    title: str
    description: str
    budget: float
    deadline: date
    location: str
    status: RequestStatus
    status_changed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    allowed_transitions: List[RequestStatus] = Field(default_factory=list)


class ServiceRequestListResponse(BaseModel):
    items: List[ServiceRequestOut]


class RequestStatusOut(BaseModel):
    request_id: str
    status: RequestStatus
    terminal: bool


class TransitionRequest(BaseModel):
    status: RequestStatus


class ProviderRequestStatsOut(BaseModel):
    provider_id: str
    active_projects: int
    completed_projects: int
    total_earnings: float


class ReviewCreate(BaseModel):
    # Kept loose so out-of-range values reach the gate and come back as INVALID_RATING.
    rating: int
    comment: Optional[str] = None


class ReviewOut(BaseModel):
    id: str
    request_id: str
    client_id: str
    provider_id: str
    rating: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None


class ReviewListResponse(BaseModel):
    items: List[ReviewOut]
    average_rating: float
    total_reviews: int


class ReviewEligibilityOut(BaseModel):
    request_id: str
    can_review: bool
    status: RequestStatus
    already_reviewed: bool


class ProviderProfileUpsert(BaseModel):
    brand_name: str = Field(min_length=1, max_length=200)
    business_type: str = "individual"
    description: str = ""
    phone: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    services: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    availability: Optional[str] = None

    @field_validator("business_type")
    @classmethod
    def _check_business_type(cls, value: str) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in {"individual", "group"}:
            raise ValueError("business_type must be 'individual' or 'group'")
        return normalized

    @field_validator("services", "languages")
    @classmethod
    def _strip_items(cls, value: List[str]) -> List[str]:
        return [item.strip() for item in value if item and item.strip()]


class ProviderOut(BaseModel):
    id: str
    user_id: str
    brand_name: str
    business_type: str
    description: str
    phone: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    services: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    hourly_rate: Optional[float] = None
    availability: Optional[str] = None
    rating: float
    total_reviews: int
    created_at: Optional[datetime] = None


class ProviderListResponse(BaseModel):
    items: List[ProviderOut]


class MessageCreate(BaseModel):
    receiver_id: str = Field(min_length=1)
    content: str


class MessageOut(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    content: str
    read: bool
    created_at: Optional[datetime] = None


class MessageThreadResponse(BaseModel):
    partner_id: str
    items: List[MessageOut]


class ConversationOut(BaseModel):
    partner_id: str
    first_name: str
    last_name: str
    last_message: str
    last_message_at: datetime
    unread_count: int


class ConversationListResponse(BaseModel):
    items: List[ConversationOut]


class UnreadCountOut(BaseModel):
    unread: int
