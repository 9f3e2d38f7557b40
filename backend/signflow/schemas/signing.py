from datetime import datetime
from typing import Any, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from signflow.models.signing import (
    SignatureType,
    SignerStatus,
    SigningEventType,
    SigningOrder,
    SigningRequestStatus,
)
from signflow.schemas.common import IDModel, Timestamped


class DocumentReference(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    url: str = Field(min_length=1)
    size: int | None = Field(default=None, ge=0)
    type: str | None = Field(default=None, max_length=128)


class SignerCreate(BaseModel):
    name: str | None = None
    email: str | None = None
    role: str | None = Field(default=None, max_length=64)
    signing_order: int | None = Field(default=None, ge=1)


class SigningRequestCreate(BaseModel):
    document: DocumentReference
    title: str = Field(min_length=1, max_length=255)
    message: str | None = None
    expires_at: datetime
    signing_order: SigningOrder = SigningOrder.PARALLEL
    requires_all_signatures: bool = True
    minimum_signatures: int | None = Field(default=None, ge=1)
    reminder_enabled: bool = True
    reminder_days: int | None = Field(default=None, ge=1, le=90)
    send: bool = False
    signers: List[SignerCreate] = Field(default_factory=list)


class SigningCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class SignatureSubmit(BaseModel):
    signature_data: str
    signature_type: str


class SigningDecline(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class SignerRead(IDModel, Timestamped):
    signing_request_id: UUID
    name: str
    email: str
    role: str
    signing_order: int
    status: SignerStatus
    signature_type: SignatureType | None
    signed_at: datetime | None
    declined_at: datetime | None
    decline_reason: str | None
    accessed_at: datetime | None
    access_count: int


class SignerOwnerRead(SignerRead):
    access_token: str
    signing_url: str


class SigningEventRead(BaseModel):
    id: int
    signing_request_id: UUID
    signer_id: UUID | None
    event_type: SigningEventType
    event_data: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SigningRequestRead(IDModel, Timestamped):
    owner_id: str
    document_name: str
    document_url: str
    document_size: int | None
    document_type: str | None
    title: str
    message: str | None
    status: SigningRequestStatus
    expires_at: datetime
    signing_order: SigningOrder
    requires_all_signatures: bool
    minimum_signatures: int | None
    reminder_enabled: bool
    reminder_days: int
    last_reminder_at: datetime | None
    sent_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    signers: List[SignerOwnerRead]


class SigningRequestDetail(SigningRequestRead):
    events: List[SigningEventRead]


class PublicSigningRead(BaseModel):
    title: str
    message: str | None
    document_name: str
    document_url: str
    document_type: str | None
    status: SigningRequestStatus
    expires_at: datetime
    signing_order: SigningOrder
    signer_name: str
    signer_email: str
    signer_role: str
    signer_status: SignerStatus
    can_sign: bool
    blocked_reason: str | None = None


class SigningActionResult(BaseModel):
    signer_status: SignerStatus
    request_status: SigningRequestStatus
    completed: bool
    message: str
