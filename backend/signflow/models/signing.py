from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import JSON, Text, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

from signflow.models.base import TimestampedModel, UUIDModel


class SigningRequestStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_SIGNED = "partially_signed"
    SIGNED = "signed"
    EXPIRED = "expired"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class SigningOrder(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class SignerStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    DECLINED = "declined"
    EXPIRED = "expired"


class SignatureType(str, Enum):
    DRAWN = "drawn"
    TYPED = "typed"
    UPLOADED = "uploaded"


class SigningEventType(str, Enum):
    CREATED = "created"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"
    EXPIRED = "expired"
    COMPLETED = "completed"
    REMINDED = "reminded"
    CANCELLED = "cancelled"


class SigningRequest(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signing_requests"

    owner_id: str = Field(index=True, max_length=128)

    document_name: str = Field(max_length=255)
    document_url: str
    document_size: int | None = Field(default=None)
    document_type: str | None = Field(default=None, max_length=128)

    title: str = Field(max_length=255)
    message: str | None = Field(default=None, sa_type=Text)
    status: SigningRequestStatus = Field(default=SigningRequestStatus.DRAFT, index=True)

    expires_at: datetime = Field(index=True)
    reminder_enabled: bool = Field(default=True)
    reminder_days: int = Field(default=3)
    last_reminder_at: Optional[datetime] = Field(default=None)

    signing_order: SigningOrder = Field(default=SigningOrder.PARALLEL)
    requires_all_signatures: bool = Field(default=True)
    minimum_signatures: int | None = Field(default=None)

    sent_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    cancelled_at: Optional[datetime] = Field(default=None)

    signers: List["Signer"] = Relationship(
        back_populates="request",
        sa_relationship_kwargs={"order_by": "Signer.signing_order"},
    )


class Signer(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signers"

    signing_request_id: UUID = Field(foreign_key="signing_requests.id", index=True)
    name: str = Field(max_length=255)
    email: str = Field(max_length=320)
    role: str = Field(default="Signer", max_length=64)
    signing_order: int = Field(default=1)
    status: SignerStatus = Field(default=SignerStatus.PENDING)

    access_token: str = Field(unique=True, index=True, max_length=128)
    accessed_at: Optional[datetime] = Field(default=None)
    access_count: int = Field(default=0)

    signature_data: str | None = Field(default=None, sa_type=Text)
    signature_type: SignatureType | None = Field(default=None)
    signed_at: Optional[datetime] = Field(default=None)
    declined_at: Optional[datetime] = Field(default=None)
    decline_reason: str | None = Field(default=None, sa_type=Text)
    ip_address: str | None = Field(default=None, max_length=64)
    user_agent: str | None = Field(default=None)

    request: SigningRequest = Relationship(back_populates="signers")


class SigningEvent(SQLModel, table=True):
    __tablename__ = "signing_events"
    __table_args__ = (
        UniqueConstraint("signing_request_id", "dedupe_key", name="uq_signing_events_dedupe_key"),
    )

    id: int | None = Field(default=None, primary_key=True)
    signing_request_id: UUID = Field(foreign_key="signing_requests.id", index=True)
    signer_id: UUID | None = Field(default=None, foreign_key="signers.id", index=True)
    event_type: SigningEventType = Field(index=True)
    event_data: dict | None = Field(default_factory=dict, sa_type=JSON)
    ip_address: str | None = Field(default=None, max_length=64)
    user_agent: str | None = Field(default=None)
    dedupe_key: str | None = Field(default=None, max_length=96)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
