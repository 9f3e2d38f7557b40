from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from signflow.core.config import settings
from signflow.core.logging_setup import logger
from signflow.models.signing import (
    Signer,
    SignerStatus,
    SigningEventType,
    SigningRequest,
    SigningRequestStatus,
)
from signflow.schemas.signing import SignerCreate, SigningRequestCreate
from signflow.services.audit import SigningEventLog
from signflow.services.exceptions import (
    AlreadyActionedError,
    InvalidSigningInputError,
    InvalidTransitionError,
    OutOfOrderError,
    SigningConflictError,
    SigningError,
    SigningExpiredError,
    SigningNotFoundError,
)
from signflow.services.locks import RequestLockRegistry, request_locks
from signflow.services.signing_rules import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    blocking_signers,
    can_still_complete,
    ensure_transition,
    is_overdue,
    status_after_signature,
    validate_signature,
)
from signflow.services.tokens import TokenFactory, issue_unique_tokens
from signflow.utils.email_validation import normalize_signer_email

Clock = Callable[[], datetime]


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SigningWorkflowService:
    """State machine of the signing workflow.

    Every mutating operation runs inside the per-request critical section:
    the in-process lock from ``RequestLockRegistry`` plus ``SELECT ... FOR
    UPDATE`` on the request and signer rows. Status, deadline and signer
    state are re-read and re-checked inside that section, and the state
    change commits together with its audit event.
    """

    def __init__(
        self,
        session: Session,
        *,
        clock: Clock | None = None,
        token_factory: TokenFactory | None = None,
        locks: RequestLockRegistry | None = None,
    ) -> None:
        self.session = session
        self.clock = clock or datetime.utcnow
        self.token_factory = token_factory
        self.locks = locks or request_locks
        self.events = SigningEventLog(session)

    # Queries --------------------------------------------------------------
    def get_request(self, request_id: str | UUID) -> SigningRequest | None:
        return self.session.get(SigningRequest, UUID(str(request_id)))

    def get_request_for_owner(self, owner_id: str, request_id: str | UUID) -> SigningRequest:
        request = self.get_request(request_id)
        if not request or request.owner_id != owner_id:
            raise SigningNotFoundError("Signing request not found", reason="unknown_request")
        return request

    def list_requests_for_owner(self, owner_id: str) -> list[SigningRequest]:
        statement = (
            select(SigningRequest)
            .where(SigningRequest.owner_id == owner_id)
            .order_by(SigningRequest.created_at.desc())
        )
        return list(self.session.exec(statement).all())

    def list_signers(self, request_id: UUID) -> list[Signer]:
        statement = (
            select(Signer)
            .where(Signer.signing_request_id == request_id)
            .order_by(Signer.signing_order, Signer.created_at)
        )
        return list(self.session.exec(statement).all())

    def find_signer_by_token(self, token: str) -> Signer:
        normalized = (token or "").strip()
        if not normalized:
            raise SigningNotFoundError("Invalid signing link", reason="empty_token")
        signer = self.session.exec(select(Signer).where(Signer.access_token == normalized)).first()
        if not signer:
            raise SigningNotFoundError("Invalid signing link", reason="unknown_token")
        return signer

    # Creation -------------------------------------------------------------
    def create_signing_request(self, owner_id: str, payload: SigningRequestCreate) -> SigningRequest:
        now = self.clock()
        signer_rows = self._validate_creation(owner_id, payload, now)
        attempts = max(int(settings.token_generation_attempts), 1)
        for attempt in range(1, attempts + 1):
            tokens = issue_unique_tokens(
                len(signer_rows),
                self._existing_tokens,
                factory=self.token_factory,
            )
            try:
                request = self._persist_new_request(owner_id, payload, signer_rows, tokens, now)
            except IntegrityError:
                self.session.rollback()
                logger.warning(
                    "Access token collision while creating signing request for %s (attempt %s/%s)",
                    owner_id,
                    attempt,
                    attempts,
                )
                continue
            logger.info(
                "Signing request %s created by %s with %s signer(s)",
                request.id,
                owner_id,
                len(signer_rows),
            )
            return request
        raise SigningConflictError("Could not allocate unique access tokens", reason="token_collision")

    def _validate_creation(
        self,
        owner_id: str,
        payload: SigningRequestCreate,
        now: datetime,
    ) -> list[dict[str, object]]:
        if not (owner_id or "").strip():
            raise InvalidSigningInputError("Owner is required", reason="missing_owner")
        if not payload.signers:
            raise InvalidSigningInputError("At least one signer is required", reason="no_signers")
        if to_naive_utc(payload.expires_at) <= now:
            raise InvalidSigningInputError("Expiry date must be in the future", reason="expiry_in_past")
        if payload.requires_all_signatures:
            if payload.minimum_signatures is not None:
                raise InvalidSigningInputError(
                    "minimum_signatures only applies when not all signatures are required",
                    reason="unexpected_minimum",
                )
        else:
            if payload.minimum_signatures is None:
                raise InvalidSigningInputError(
                    "minimum_signatures is required when not all signatures are required",
                    reason="missing_minimum",
                )
            if payload.minimum_signatures > len(payload.signers):
                raise InvalidSigningInputError(
                    "minimum_signatures cannot exceed the number of signers",
                    reason="minimum_too_high",
                )
        return [self._normalize_signer(item, index) for index, item in enumerate(payload.signers, start=1)]

    @staticmethod
    def _normalize_signer(item: SignerCreate, position: int) -> dict[str, object]:
        name = (item.name or "").strip()
        if not name:
            raise InvalidSigningInputError(f"Signer {position} is missing a name", reason="missing_signer_name")
        try:
            email = normalize_signer_email(item.email)
        except ValueError as exc:
            raise InvalidSigningInputError(
                f"Signer {position} has an invalid e-mail: {exc}",
                reason="invalid_signer_email",
            ) from exc
        return {
            "name": name,
            "email": email,
            "role": (item.role or "").strip() or "Signer",
            "signing_order": item.signing_order or position,
        }

    def _existing_tokens(self, candidates: Iterable[str]) -> set[str]:
        values = list(candidates)
        if not values:
            return set()
        rows = self.session.exec(select(Signer.access_token).where(Signer.access_token.in_(values))).all()
        return set(rows)

    def _persist_new_request(
        self,
        owner_id: str,
        payload: SigningRequestCreate,
        signer_rows: list[dict[str, object]],
        tokens: list[str],
        now: datetime,
    ) -> SigningRequest:
        request = SigningRequest(
            owner_id=owner_id,
            document_name=payload.document.name,
            document_url=payload.document.url,
            document_size=payload.document.size,
            document_type=payload.document.type,
            title=payload.title.strip(),
            message=payload.message,
            status=SigningRequestStatus.DRAFT,
            expires_at=to_naive_utc(payload.expires_at),
            reminder_enabled=payload.reminder_enabled,
            reminder_days=payload.reminder_days or settings.default_reminder_days,
            signing_order=payload.signing_order,
            requires_all_signatures=payload.requires_all_signatures,
            minimum_signatures=payload.minimum_signatures,
            created_at=now,
        )
        self.session.add(request)
        self.session.flush()
        signers: list[Signer] = []
        for row, token in zip(signer_rows, tokens):
            signer = Signer(signing_request_id=request.id, access_token=token, created_at=now, **row)
            self.session.add(signer)
            signers.append(signer)
        self.session.flush()
        self.events.append(
            request.id,
            SigningEventType.CREATED,
            event_data={
                "signer_count": len(signers),
                "signing_order": request.signing_order.value,
                "requires_all_signatures": request.requires_all_signatures,
            },
            created_at=now,
        )
        if payload.send:
            self._apply_send(request, signers, now)
        self.session.commit()
        self.session.refresh(request)
        return request

    # Owner transitions ----------------------------------------------------
    def send_request(self, owner_id: str, request_id: str | UUID) -> SigningRequest:
        request_uuid = UUID(str(request_id))
        with self.locks.hold(request_uuid):
            try:
                request = self._lock_owned_request(owner_id, request_uuid)
                now = self.clock()
                ensure_transition(request.status, SigningRequestStatus.SENT)
                if is_overdue(request, now):
                    raise SigningExpiredError("Signing request deadline has already passed")
                signers = self._lock_signers(request.id)
                if not signers:
                    raise InvalidTransitionError("A signing request needs at least one signer", reason="no_signers")
                self._apply_send(request, signers, now)
                self._commit()
            except SigningError as exc:
                self.session.rollback()
                logger.info("Send rejected for signing request %s: %s", request_uuid, exc.reason)
                raise
        self.session.refresh(request)
        logger.info("Signing request %s sent to %s signer(s)", request.id, len(signers))
        return request

    def _apply_send(self, request: SigningRequest, signers: list[Signer], now: datetime) -> None:
        ensure_transition(request.status, SigningRequestStatus.SENT)
        request.status = SigningRequestStatus.SENT
        request.sent_at = now
        request.updated_at = now
        self.session.add(request)
        self.events.append(
            request.id,
            SigningEventType.SENT,
            event_data={"signer_count": len(signers)},
            created_at=now,
        )

    def cancel_request(
        self,
        owner_id: str,
        request_id: str | UUID,
        reason: str | None = None,
    ) -> SigningRequest:
        request_uuid = UUID(str(request_id))
        with self.locks.hold(request_uuid):
            try:
                request = self._lock_owned_request(owner_id, request_uuid)
                if request.status == SigningRequestStatus.CANCELLED:
                    self.session.rollback()
                    return request
                now = self.clock()
                previous = request.status
                ensure_transition(previous, SigningRequestStatus.CANCELLED)
                request.status = SigningRequestStatus.CANCELLED
                request.cancelled_at = now
                request.updated_at = now
                self.session.add(request)
                self.events.append(
                    request.id,
                    SigningEventType.CANCELLED,
                    event_data={"reason": reason, "previous_status": previous.value},
                    created_at=now,
                )
                self._commit()
            except SigningError as exc:
                self.session.rollback()
                logger.info("Cancel rejected for signing request %s: %s", request_uuid, exc.reason)
                raise
        self.session.refresh(request)
        logger.info("Signing request %s cancelled by %s", request.id, owner_id)
        return request

    # Signer transitions ---------------------------------------------------
    def submit_signature(
        self,
        token: str,
        signature_data: str,
        signature_type: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Signer:
        signer_id, request_id = self._signer_key(token)
        with self.locks.hold(request_id):
            try:
                request, signers, signer = self._lock_signer_context(request_id, signer_id)
                now = self.clock()
                self._ensure_request_accepts_actions(request, now)
                self._ensure_signer_pending(signer)
                blockers = blocking_signers(signers, signer, request.signing_order)
                if blockers:
                    raise OutOfOrderError(
                        "Previous signers must sign before this signer",
                        reason="waiting_for_previous_signers",
                    )
                data, kind = validate_signature(signature_data, signature_type)
                signer.status = SignerStatus.SIGNED
                signer.signature_data = data
                signer.signature_type = kind
                signer.signed_at = now
                signer.ip_address = ip_address
                signer.user_agent = user_agent
                signer.updated_at = now
                self.session.add(signer)
                self.events.append(
                    request.id,
                    SigningEventType.SIGNED,
                    signer_id=signer.id,
                    event_data={"signature_type": kind.value, "signing_order": signer.signing_order},
                    ip_address=ip_address,
                    user_agent=user_agent,
                    created_at=now,
                )
                self._settle_after_signature(request, signers, now)
                self._commit()
            except SigningError as exc:
                self.session.rollback()
                logger.info(
                    "Signature rejected for request %s signer %s: %s",
                    request_id,
                    signer_id,
                    exc.reason,
                )
                raise
        self.session.refresh(signer)
        self.session.refresh(request)
        logger.info(
            "Signer %s signed request %s (request status: %s)",
            signer.id,
            request.id,
            request.status.value,
        )
        return signer

    def _settle_after_signature(self, request: SigningRequest, signers: list[Signer], now: datetime) -> None:
        target = status_after_signature(request, signers)
        ensure_transition(request.status, target)
        request.status = target
        request.updated_at = now
        if target == SigningRequestStatus.SIGNED:
            request.completed_at = now
            self.events.append(
                request.id,
                SigningEventType.COMPLETED,
                event_data={
                    "signed_count": sum(1 for item in signers if item.status == SignerStatus.SIGNED),
                    "signer_count": len(signers),
                },
                dedupe_key="completed",
                created_at=now,
            )
        self.session.add(request)

    def decline_signing(
        self,
        token: str,
        reason: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Signer:
        signer_id, request_id = self._signer_key(token)
        cleaned_reason = (reason or "").strip() or None
        with self.locks.hold(request_id):
            try:
                request, signers, signer = self._lock_signer_context(request_id, signer_id)
                now = self.clock()
                self._ensure_request_accepts_actions(request, now)
                self._ensure_signer_pending(signer)
                signer.status = SignerStatus.DECLINED
                signer.declined_at = now
                signer.decline_reason = cleaned_reason
                signer.ip_address = ip_address
                signer.user_agent = user_agent
                signer.updated_at = now
                self.session.add(signer)
                request_declined = not can_still_complete(request, signers)
                self.events.append(
                    request.id,
                    SigningEventType.DECLINED,
                    signer_id=signer.id,
                    event_data={"reason": cleaned_reason, "request_declined": request_declined},
                    ip_address=ip_address,
                    user_agent=user_agent,
                    created_at=now,
                )
                if request_declined:
                    ensure_transition(request.status, SigningRequestStatus.DECLINED)
                    request.status = SigningRequestStatus.DECLINED
                    request.updated_at = now
                    self.session.add(request)
                self._commit()
            except SigningError as exc:
                self.session.rollback()
                logger.info(
                    "Decline rejected for request %s signer %s: %s",
                    request_id,
                    signer_id,
                    exc.reason,
                )
                raise
        self.session.refresh(signer)
        self.session.refresh(request)
        logger.info(
            "Signer %s declined request %s (request status: %s)",
            signer.id,
            request.id,
            request.status.value,
        )
        return signer

    # Scheduler transitions ------------------------------------------------
    def mark_expired(self, request_id: str | UUID) -> bool:
        """Expire an overdue open request. Returns ``False`` when it is already terminal."""
        request_uuid = UUID(str(request_id))
        with self.locks.hold(request_uuid):
            try:
                request = self._lock_request(request_uuid)
                if not request:
                    raise SigningNotFoundError("Signing request not found", reason="unknown_request")
                if request.status in TERMINAL_STATUSES:
                    self.session.rollback()
                    return False
                now = self.clock()
                ensure_transition(request.status, SigningRequestStatus.EXPIRED)
                if not is_overdue(request, now):
                    raise InvalidTransitionError("Signing request has not reached its deadline", reason="not_overdue")
                expired_ids: list[str] = []
                for signer in self._lock_signers(request.id):
                    if signer.status == SignerStatus.PENDING:
                        signer.status = SignerStatus.EXPIRED
                        signer.updated_at = now
                        self.session.add(signer)
                        expired_ids.append(str(signer.id))
                request.status = SigningRequestStatus.EXPIRED
                request.updated_at = now
                self.session.add(request)
                self.events.append(
                    request.id,
                    SigningEventType.EXPIRED,
                    event_data={"expired_signers": expired_ids, "expires_at": request.expires_at.isoformat()},
                    dedupe_key="expired",
                    created_at=now,
                )
                self._commit()
            except SigningError as exc:
                self.session.rollback()
                logger.info("Expiry rejected for signing request %s: %s", request_uuid, exc.reason)
                raise
        logger.info("Signing request %s expired (%s pending signer(s))", request_uuid, len(expired_ids))
        return True

    def record_reminder(self, request_id: str | UUID, signer_ids: Iterable[UUID] = ()) -> SigningRequest:
        request_uuid = UUID(str(request_id))
        with self.locks.hold(request_uuid):
            try:
                request = self._lock_request(request_uuid)
                if not request:
                    raise SigningNotFoundError("Signing request not found", reason="unknown_request")
                now = self.clock()
                if request.status not in OPEN_STATUSES or is_overdue(request, now):
                    raise InvalidTransitionError(
                        f"Cannot remind signers of a '{request.status.value}' request",
                        reason="request_closed",
                    )
                request.last_reminder_at = now
                request.updated_at = now
                self.session.add(request)
                self.events.append(
                    request.id,
                    SigningEventType.REMINDED,
                    event_data={"signer_ids": [str(item) for item in signer_ids]},
                    created_at=now,
                )
                self._commit()
            except SigningError as exc:
                self.session.rollback()
                logger.info("Reminder rejected for signing request %s: %s", request_uuid, exc.reason)
                raise
        self.session.refresh(request)
        return request

    # Critical section helpers ---------------------------------------------
    def _signer_key(self, token: str) -> tuple[UUID, UUID]:
        signer = self.find_signer_by_token(token)
        return signer.id, signer.signing_request_id

    def _lock_request(self, request_id: UUID) -> SigningRequest | None:
        statement = (
            select(SigningRequest)
            .where(SigningRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(statement).first()

    def _lock_owned_request(self, owner_id: str, request_id: UUID) -> SigningRequest:
        request = self._lock_request(request_id)
        if not request or request.owner_id != owner_id:
            raise SigningNotFoundError("Signing request not found", reason="unknown_request")
        return request

    def _lock_signers(self, request_id: UUID) -> list[Signer]:
        statement = (
            select(Signer)
            .where(Signer.signing_request_id == request_id)
            .order_by(Signer.signing_order, Signer.created_at)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.session.exec(statement).all())

    def _lock_signer_context(
        self,
        request_id: UUID,
        signer_id: UUID,
    ) -> tuple[SigningRequest, list[Signer], Signer]:
        request = self._lock_request(request_id)
        if not request:
            raise SigningNotFoundError("Invalid signing link", reason="orphan_signer")
        signers = self._lock_signers(request_id)
        signer = next((item for item in signers if item.id == signer_id), None)
        if not signer:
            raise SigningNotFoundError("Invalid signing link", reason="unknown_token")
        return request, signers, signer

    @staticmethod
    def _ensure_request_accepts_actions(request: SigningRequest, now: datetime) -> None:
        if request.status == SigningRequestStatus.DRAFT:
            raise SigningNotFoundError("Invalid signing link", reason="not_sent")
        if request.status == SigningRequestStatus.EXPIRED or is_overdue(request, now):
            raise SigningExpiredError("Signing request has expired")
        if request.status not in OPEN_STATUSES:
            raise AlreadyActionedError(
                f"Signing request is already {request.status.value}",
                reason=f"request_{request.status.value}",
            )

    @staticmethod
    def _ensure_signer_pending(signer: Signer) -> None:
        if signer.status != SignerStatus.PENDING:
            raise AlreadyActionedError(
                f"Signer already {signer.status.value}",
                reason=f"signer_{signer.status.value}",
            )

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise SigningConflictError(
                "Another action on this signing request was committed first; reload it",
                reason="concurrent_update",
            ) from exc
        except SQLAlchemyError:
            self.session.rollback()
            raise
