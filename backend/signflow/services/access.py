from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from signflow.core.logging_setup import logger
from signflow.models.signing import (
    Signer,
    SignerStatus,
    SigningEventType,
    SigningRequest,
    SigningRequestStatus,
)
from signflow.services.audit import SigningEventLog
from signflow.services.exceptions import SigningNotFoundError
from signflow.services.signing_rules import (
    OPEN_STATUSES,
    blocking_signers,
    effective_request_status,
    effective_signer_status,
)


@dataclass(frozen=True)
class SignerAccessView:
    request_status: SigningRequestStatus
    signer_status: SignerStatus
    can_sign: bool
    blocked_reason: str | None = None


class SigningAccessService:
    """Resolves signer capability tokens.

    Every successful resolution counts as an access. The first one also
    appends the signer's single ``viewed`` event.
    """

    def __init__(self, session: Session, *, clock: Callable[[], datetime] | None = None) -> None:
        self.session = session
        self.clock = clock or datetime.utcnow
        self.events = SigningEventLog(session)

    def resolve(
        self,
        token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[SigningRequest, Signer]:
        normalized = (token or "").strip()
        if not normalized:
            raise SigningNotFoundError("Invalid signing link", reason="empty_token")
        signer = self.session.exec(select(Signer).where(Signer.access_token == normalized)).first()
        if not signer:
            raise SigningNotFoundError("Invalid signing link", reason="unknown_token")
        request = self.session.get(SigningRequest, signer.signing_request_id)
        if not request:
            raise SigningNotFoundError("Invalid signing link", reason="orphan_signer")
        if request.status == SigningRequestStatus.DRAFT:
            raise SigningNotFoundError("Invalid signing link", reason="not_sent")

        now = self.clock()
        try:
            signers_table = Signer.__table__
            access_count = self.session.connection().execute(
                update(signers_table)
                .where(signers_table.c.id == signer.id)
                .values(access_count=signers_table.c.access_count + 1, accessed_at=now)
                .returning(signers_table.c.access_count)
            ).scalar_one()
            if access_count == 1:
                self.events.append(
                    request.id,
                    SigningEventType.VIEWED,
                    signer_id=signer.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    dedupe_key=f"viewed:{signer.id}",
                    created_at=now,
                )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        self.session.refresh(signer)
        self.session.refresh(request)
        if access_count == 1:
            logger.info("Signer %s opened request %s for the first time", signer.id, request.id)
        return request, signer

    def describe(self, request: SigningRequest, signer: Signer) -> SignerAccessView:
        statement = select(Signer).where(Signer.signing_request_id == request.id)
        return describe_access(request, signer, list(self.session.exec(statement).all()), self.clock())


def describe_access(
    request: SigningRequest,
    signer: Signer,
    signers: list[Signer],
    now: datetime,
) -> SignerAccessView:
    """What the signer behind a token may do right now, and why not when blocked."""
    request_status = effective_request_status(request, now)
    signer_status = effective_signer_status(signer, request, now)
    blocked_reason: str | None = None
    if request_status == SigningRequestStatus.EXPIRED:
        blocked_reason = "expired"
    elif signer.status == SignerStatus.SIGNED:
        blocked_reason = "already_signed"
    elif signer.status == SignerStatus.DECLINED:
        blocked_reason = "already_declined"
    elif request_status not in OPEN_STATUSES:
        blocked_reason = "request_closed"
    elif blocking_signers(signers, signer, request.signing_order):
        blocked_reason = "waiting_for_previous_signers"
    return SignerAccessView(
        request_status=request_status,
        signer_status=signer_status,
        can_sign=blocked_reason is None,
        blocked_reason=blocked_reason,
    )
