from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel import Session

from signflow.api.deps import get_db
from signflow.api.errors import public_http_error
from signflow.core.config import settings
from signflow.models.signing import SigningRequestStatus
from signflow.schemas.signing import (
    PublicSigningRead,
    SignatureSubmit,
    SigningActionResult,
    SigningDecline,
)
from signflow.services.access import SigningAccessService
from signflow.services.exceptions import SigningError
from signflow.services.workflow import SigningWorkflowService

router = APIRouter(prefix="/public/signatures", tags=["public-signatures"])


def _client_ip(request: Request) -> str | None:
    if settings.trust_proxy_headers:
        cf_ip = request.headers.get("cf-connecting-ip")
        if cf_ip:
            return cf_ip.strip()
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _client_details(request: Request) -> tuple[str | None, str | None]:
    return _client_ip(request), request.headers.get("user-agent")


def _action_result(service: SigningWorkflowService, signer, message: str) -> SigningActionResult:
    signing_request = service.get_request(signer.signing_request_id)
    if not signing_request:
        raise HTTPException(status_code=404, detail="Signing request not found")
    return SigningActionResult(
        signer_status=signer.status,
        request_status=signing_request.status,
        completed=signing_request.status == SigningRequestStatus.SIGNED,
        message=message,
    )


@router.get("/{token}", response_model=PublicSigningRead)
def get_public_signature(
    token: str,
    request: Request,
    session: Session = Depends(get_db),
) -> PublicSigningRead:
    """Signer landing page data. Each call counts as an access of the link."""
    access_service = SigningAccessService(session)
    ip_address, user_agent = _client_details(request)
    try:
        signing_request, signer = access_service.resolve(token, ip_address=ip_address, user_agent=user_agent)
    except SigningError as exc:
        raise public_http_error(exc) from exc

    view = access_service.describe(signing_request, signer)
    return PublicSigningRead(
        title=signing_request.title,
        message=signing_request.message,
        document_name=signing_request.document_name,
        document_url=signing_request.document_url,
        document_type=signing_request.document_type,
        status=view.request_status,
        expires_at=signing_request.expires_at,
        signing_order=signing_request.signing_order,
        signer_name=signer.name,
        signer_email=signer.email,
        signer_role=signer.role,
        signer_status=view.signer_status,
        can_sign=view.can_sign,
        blocked_reason=view.blocked_reason,
    )


@router.post("/{token}/sign", response_model=SigningActionResult)
def sign_public_signature(
    token: str,
    payload: SignatureSubmit,
    request: Request,
    session: Session = Depends(get_db),
) -> SigningActionResult:
    service = SigningWorkflowService(session)
    ip_address, user_agent = _client_details(request)
    try:
        signer = service.submit_signature(
            token,
            payload.signature_data,
            payload.signature_type,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except SigningError as exc:
        raise public_http_error(exc) from exc
    return _action_result(service, signer, "Signature recorded.")


@router.post("/{token}/decline", response_model=SigningActionResult)
def decline_public_signature(
    token: str,
    request: Request,
    payload: SigningDecline | None = None,
    session: Session = Depends(get_db),
) -> SigningActionResult:
    service = SigningWorkflowService(session)
    ip_address, user_agent = _client_details(request)
    try:
        signer = service.decline_signing(
            token,
            reason=payload.reason if payload else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except SigningError as exc:
        raise public_http_error(exc) from exc
    return _action_result(service, signer, "Signing declined.")
