import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

from clickwork.schemas.marketplace import RequestStatus

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")

_STATUS_VALUES = ",".join(f"'{status.value}'" for status in RequestStatus)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    user_type = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("user_type IN ('client','provider')", name="chk_user_type"),
    )


class ServiceProvider(Base):
    __tablename__ = "service_providers"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID_TYPE, ForeignKey("users.id"), nullable=False, unique=True)
    brand_name = Column(String(200), nullable=False)
    business_type = Column(String(16), nullable=False, default="individual", server_default=text("'individual'"))
    description = Column(Text, nullable=False, default="", server_default=text("''"))
    phone = Column(String(32))
    city = Column(String(120))
    country = Column(String(120))
    services = Column(JSON_TYPE, nullable=False, default=list)
    languages = Column(JSON_TYPE, nullable=False, default=list)
    hourly_rate = Column(Numeric(10, 2))
    availability = Column(String(64))
    rating = Column(Numeric(3, 2), nullable=False, default=0, server_default=text("0"))
    total_reviews = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("business_type IN ('individual','group')", name="chk_provider_business_type"),
        Index("idx_service_providers_rating", "rating"),
    )


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID_TYPE, ForeignKey("users.id"), nullable=False)
    provider_id = Column(UUID_TYPE, ForeignKey("service_providers.id"), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    budget = Column(Numeric(12, 2), nullable=False)
    deadline = Column(Date, nullable=False)
    location = Column(String(200), nullable=False, default="Remote", server_default=text("'Remote'"))
    status = Column(
        String(32),
        nullable=False,
        default=RequestStatus.PENDING.value,
        server_default=text(f"'{RequestStatus.PENDING.value}'"),
    )
    status_changed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="chk_service_request_status"),
        CheckConstraint("budget > 0", name="chk_service_request_budget"),
        Index("idx_service_requests_client", "client_id"),
        Index("idx_service_requests_provider", "provider_id"),
    )


class Review(Base):
    __tablename__ = "reviews"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    request_id = Column(UUID_TYPE, ForeignKey("service_requests.id"), nullable=False, unique=True)
    client_id = Column(UUID_TYPE, ForeignKey("users.id"), nullable=False)
    provider_id = Column(UUID_TYPE, ForeignKey("service_providers.id"), nullable=False)
    rating = Column(SmallInteger, nullable=False)
    comment = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="chk_review_rating"),
        Index("idx_reviews_provider", "provider_id"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    sender_id = Column(UUID_TYPE, ForeignKey("users.id"), nullable=False)
    receiver_id = Column(UUID_TYPE, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_messages_sender_receiver", "sender_id", "receiver_id"),
        Index("idx_messages_receiver_read", "receiver_id", "read"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(UUID_TYPE)
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
