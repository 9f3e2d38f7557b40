from datetime import datetime
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from signflow.api.deps import get_current_owner, get_db
from signflow.api.errors import owner_http_error
from signflow.core.config import settings
from signflow.models.signing import SigningRequest
from signflow.schemas.signing import (
    SignerOwnerRead,
    SigningCancel,
    SigningEventRead,
    SigningRequestCreate,
    SigningRequestDetail,
    SigningRequestRead,
)
from signflow.services.exceptions import SigningError
from signflow.services.signing_rules import effective_request_status, effective_signer_status
from signflow.services.workflow import SigningWorkflowService

router = APIRouter(prefix="/signing-requests", tags=["signing-requests"])


def _signer_payloads(
    service: SigningWorkflowService,
    request: SigningRequest,
    now: datetime,
) -> list[SignerOwnerRead]:
    signers = service.list_signers(request.id)
    return [
        SignerOwnerRead.model_validate(
            {
                **signer.model_dump(exclude={"signature_data", "ip_address", "user_agent"}),
                "status": effective_signer_status(signer, request, now),
                "signing_url": settings.signing_url(signer.access_token),
            }
        )
        for signer in signers
    ]


def _request_response(service: SigningWorkflowService, request: SigningRequest) -> SigningRequestRead:
    """Owner view of a request. Open requests past their deadline read as expired."""
    now = service.clock()
    payload = request.model_dump()
    payload["status"] = effective_request_status(request, now)
    payload["signers"] = _signer_payloads(service, request, now)
    return SigningRequestRead.model_validate(payload)


@router.post("", response_model=SigningRequestRead, status_code=status.HTTP_201_CREATED)
def create_signing_request(
    payload: SigningRequestCreate,
    session: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
) -> SigningRequestRead:
    service = SigningWorkflowService(session)
    try:
        request = service.create_signing_request(owner_id, payload)
    except SigningError as exc:
        raise owner_http_error(exc) from exc
    return _request_response(service, request)


@router.get("", response_model=List[SigningRequestRead])
def list_signing_requests(
    session: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
) -> List[SigningRequestRead]:
    service = SigningWorkflowService(session)
    return [_request_response(service, item) for item in service.list_requests_for_owner(owner_id)]


@router.get("/{request_id}", response_model=SigningRequestDetail)
def get_signing_request(
    request_id: UUID,
    session: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
) -> SigningRequestDetail:
    """Request with its signers and full event log, oldest event first."""
    service = SigningWorkflowService(session)
    try:
        request = service.get_request_for_owner(owner_id, request_id)
    except SigningError as exc:
        raise owner_http_error(exc) from exc
    payload = _request_response(service, request).model_dump()
    payload["events"] = [
        SigningEventRead.model_validate(event) for event in service.events.list_by_request(request.id)
    ]
    return SigningRequestDetail.model_validate(payload)


@router.post("/{request_id}/send", response_model=SigningRequestRead)
def send_signing_request(
    request_id: UUID,
    session: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
) -> SigningRequestRead:
    service = SigningWorkflowService(session)
    try:
        request = service.send_request(owner_id, request_id)
    except SigningError as exc:
        raise owner_http_error(exc) from exc
    return _request_response(service, request)


@router.post("/{request_id}/cancel", response_model=SigningRequestRead)
def cancel_signing_request(
    request_id: UUID,
    payload: SigningCancel | None = None,
    session: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
) -> SigningRequestRead:
    service = SigningWorkflowService(session)
    try:
        request = service.cancel_request(owner_id, request_id, reason=payload.reason if payload else None)
    except SigningError as exc:
        raise owner_http_error(exc) from exc
    return _request_response(service, request)
