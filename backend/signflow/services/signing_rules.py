"""
Pure rules of the signing workflow.

Nothing here touches the database: the functions receive requests, signers
and events already loaded by the caller and decide what the workflow allows.
``SigningWorkflowService`` applies the decisions inside its critical section.
"""

import base64
import binascii
from datetime import datetime
from typing import Iterable, Sequence

from signflow.core.config import settings
from signflow.models.signing import (
    SignatureType,
    Signer,
    SignerStatus,
    SigningEvent,
    SigningEventType,
    SigningOrder,
    SigningRequest,
    SigningRequestStatus,
)
from signflow.services.exceptions import InvalidSigningInputError, InvalidTransitionError

OPEN_STATUSES = frozenset({SigningRequestStatus.SENT, SigningRequestStatus.PARTIALLY_SIGNED})
TERMINAL_STATUSES = frozenset(
    {
        SigningRequestStatus.SIGNED,
        SigningRequestStatus.EXPIRED,
        SigningRequestStatus.DECLINED,
        SigningRequestStatus.CANCELLED,
    }
)

REQUEST_TRANSITIONS: dict[SigningRequestStatus, frozenset[SigningRequestStatus]] = {
    SigningRequestStatus.DRAFT: frozenset({SigningRequestStatus.SENT, SigningRequestStatus.CANCELLED}),
    SigningRequestStatus.SENT: frozenset(
        {
            SigningRequestStatus.PARTIALLY_SIGNED,
            SigningRequestStatus.SIGNED,
            SigningRequestStatus.EXPIRED,
            SigningRequestStatus.DECLINED,
            SigningRequestStatus.CANCELLED,
        }
    ),
    SigningRequestStatus.PARTIALLY_SIGNED: frozenset(
        {
            SigningRequestStatus.PARTIALLY_SIGNED,
            SigningRequestStatus.SIGNED,
            SigningRequestStatus.EXPIRED,
            SigningRequestStatus.DECLINED,
            SigningRequestStatus.CANCELLED,
        }
    ),
}

IMAGE_SIGNATURE_TYPES = frozenset({SignatureType.DRAWN, SignatureType.UPLOADED})


def can_transition(current: SigningRequestStatus, target: SigningRequestStatus) -> bool:
    return target in REQUEST_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: SigningRequestStatus, target: SigningRequestStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move signing request from '{current.value}' to '{target.value}'",
        )


def is_overdue(request: SigningRequest, now: datetime) -> bool:
    return now > request.expires_at


def effective_request_status(request: SigningRequest, now: datetime) -> SigningRequestStatus:
    """Status as seen by readers: open requests past their deadline read as expired."""
    if request.status in OPEN_STATUSES and is_overdue(request, now):
        return SigningRequestStatus.EXPIRED
    return request.status


def effective_signer_status(signer: Signer, request: SigningRequest, now: datetime) -> SignerStatus:
    if signer.status == SignerStatus.PENDING and is_overdue(request, now):
        return SignerStatus.EXPIRED
    return signer.status


def blocking_signers(signers: Sequence[Signer], signer: Signer, signing_order: SigningOrder) -> list[Signer]:
    """Lower-ranked signers that still have to sign before ``signer`` may act.

    Equal ranks form one parallel cohort, so only strictly lower ranks block.
    """
    if signing_order != SigningOrder.SEQUENTIAL:
        return []
    return [
        other
        for other in signers
        if other.id != signer.id
        and other.signing_order < signer.signing_order
        and other.status != SignerStatus.SIGNED
    ]


def actionable_signers(signers: Sequence[Signer], signing_order: SigningOrder) -> list[Signer]:
    """Pending signers allowed to sign right now."""
    pending = [signer for signer in signers if signer.status == SignerStatus.PENDING]
    if signing_order != SigningOrder.SEQUENTIAL:
        return pending
    return [signer for signer in pending if not blocking_signers(signers, signer, signing_order)]


def required_signatures(request: SigningRequest, signer_count: int) -> int:
    if request.requires_all_signatures or request.minimum_signatures is None:
        return signer_count
    return min(request.minimum_signatures, signer_count)


def completion_reached(request: SigningRequest, signers: Sequence[Signer]) -> bool:
    signed = sum(1 for signer in signers if signer.status == SignerStatus.SIGNED)
    return bool(signers) and signed >= required_signatures(request, len(signers))


def _can_still_sign(signer: Signer, signers: Sequence[Signer], signing_order: SigningOrder) -> bool:
    if signer.status != SignerStatus.PENDING:
        return False
    if signing_order != SigningOrder.SEQUENTIAL:
        return True
    return not any(
        other.signing_order < signer.signing_order
        and other.status in {SignerStatus.DECLINED, SignerStatus.EXPIRED}
        for other in signers
    )


def can_still_complete(request: SigningRequest, signers: Sequence[Signer]) -> bool:
    """Whether the signers that signed or can still sign reach the required count."""
    reachable = sum(
        1
        for signer in signers
        if signer.status == SignerStatus.SIGNED or _can_still_sign(signer, signers, request.signing_order)
    )
    return reachable >= required_signatures(request, len(signers))


def status_after_signature(request: SigningRequest, signers: Sequence[Signer]) -> SigningRequestStatus:
    if completion_reached(request, signers):
        return SigningRequestStatus.SIGNED
    return SigningRequestStatus.PARTIALLY_SIGNED


def replay_status(events: Iterable[SigningEvent]) -> SigningRequestStatus | None:
    """Fold a request's event log into its status.

    The cached ``SigningRequest.status`` column must always equal this fold.
    Returns ``None`` for an empty log.
    """
    status: SigningRequestStatus | None = None
    for event in events:
        kind = event.event_type
        if kind == SigningEventType.CREATED:
            status = SigningRequestStatus.DRAFT
        elif kind == SigningEventType.SENT:
            status = SigningRequestStatus.SENT
        elif kind == SigningEventType.SIGNED:
            if status in OPEN_STATUSES:
                status = SigningRequestStatus.PARTIALLY_SIGNED
        elif kind == SigningEventType.COMPLETED:
            status = SigningRequestStatus.SIGNED
        elif kind == SigningEventType.DECLINED:
            if (event.event_data or {}).get("request_declined"):
                status = SigningRequestStatus.DECLINED
        elif kind == SigningEventType.EXPIRED:
            if event.signer_id is None:
                status = SigningRequestStatus.EXPIRED
        elif kind == SigningEventType.CANCELLED:
            status = SigningRequestStatus.CANCELLED
    return status


def _decode_image_payload(payload: str) -> bytes:
    data = payload.strip()
    encoded = data
    if data.startswith("data:"):
        try:
            header, encoded = data.split(",", 1)
        except ValueError as exc:
            raise InvalidSigningInputError("Signature image is not a valid data URL") from exc
        if ";base64" not in header:
            raise InvalidSigningInputError("Signature image must be base64 encoded")
        if not header[5:].startswith("image/"):
            raise InvalidSigningInputError("Signature payload must be an image")
    try:
        content = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSigningInputError("Signature image is not valid base64") from exc
    if not content:
        raise InvalidSigningInputError("Signature image is empty")
    return content


def validate_signature(signature_data: str | None, signature_type: str | SignatureType | None) -> tuple[str, SignatureType]:
    """Normalise a submitted signature, raising ``InvalidSigningInputError`` when malformed."""
    if not signature_type:
        raise InvalidSigningInputError("Signature type is required")
    try:
        kind = SignatureType(signature_type)
    except ValueError as exc:
        raise InvalidSigningInputError(f"Unsupported signature type '{signature_type}'") from exc
    value = (signature_data or "").strip()
    if not value:
        raise InvalidSigningInputError("Signature data is required")
    if kind == SignatureType.TYPED:
        if len(value) < settings.min_typed_signature_length:
            raise InvalidSigningInputError("Typed signature is too short")
        return value, kind
    content = _decode_image_payload(value)
    if len(content) > settings.max_signature_bytes:
        raise InvalidSigningInputError("Signature image exceeds the size limit")
    return value, kind
