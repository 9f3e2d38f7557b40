from datetime import datetime
from uuid import UUID

from sqlmodel import Session, select

from signflow.models.signing import SigningEvent, SigningEventType


class SigningEventLog:
    """Append-only ledger of everything that happens to a signing request.

    ``append`` only stages the event on the caller's session. The caller
    commits it together with the state change it records, so either both
    land or neither does.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def append(
        self,
        request_id: UUID,
        event_type: SigningEventType,
        *,
        signer_id: UUID | None = None,
        event_data: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        dedupe_key: str | None = None,
        created_at: datetime | None = None,
    ) -> SigningEvent:
        event = SigningEvent(
            signing_request_id=request_id,
            signer_id=signer_id,
            event_type=event_type,
            event_data=event_data or {},
            ip_address=ip_address,
            user_agent=user_agent,
            dedupe_key=dedupe_key,
            created_at=created_at or datetime.utcnow(),
        )
        self.session.add(event)
        return event

    def list_by_request(self, request_id: UUID) -> list[SigningEvent]:
        statement = (
            select(SigningEvent)
            .where(SigningEvent.signing_request_id == request_id)
            .order_by(SigningEvent.id)
        )
        return list(self.session.exec(statement).all())

    def count(self, request_id: UUID, event_type: SigningEventType) -> int:
        statement = (
            select(SigningEvent)
            .where(SigningEvent.signing_request_id == request_id)
            .where(SigningEvent.event_type == event_type)
        )
        return len(self.session.exec(statement).all())
