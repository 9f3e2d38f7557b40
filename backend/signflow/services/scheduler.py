from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from sqlmodel import Session, select

from signflow.core.logging_setup import logger
from signflow.models.signing import Signer, SigningRequest
from signflow.services.exceptions import SigningError
from signflow.services.signing_rules import OPEN_STATUSES, actionable_signers
from signflow.services.workflow import SigningWorkflowService

ReminderSender = Callable[[SigningRequest, list[Signer]], None]


class SigningScheduler:
    """Time-driven side of the workflow: expiring overdue requests and reminder bookkeeping.

    The queries are read-only. Writes go through ``SigningWorkflowService`` so
    they take the same per-request critical section as signer actions.
    """

    def __init__(
        self,
        session: Session,
        *,
        clock: Callable[[], datetime] | None = None,
        workflow: SigningWorkflowService | None = None,
    ) -> None:
        self.session = session
        self.clock = clock or datetime.utcnow
        self.workflow = workflow or SigningWorkflowService(session, clock=self.clock)

    def find_newly_expired(self, now: datetime | None = None) -> list[SigningRequest]:
        moment = now or self.clock()
        statement = (
            select(SigningRequest)
            .where(SigningRequest.status.in_(list(OPEN_STATUSES)))
            .where(SigningRequest.expires_at < moment)
            .order_by(SigningRequest.expires_at)
        )
        return list(self.session.exec(statement).all())

    def mark_expired(self, request_id: UUID) -> bool:
        return self.workflow.mark_expired(request_id)

    def find_due_for_reminder(self, now: datetime | None = None) -> list[SigningRequest]:
        moment = now or self.clock()
        statement = (
            select(SigningRequest)
            .where(SigningRequest.status.in_(list(OPEN_STATUSES)))
            .where(SigningRequest.reminder_enabled == True)  # noqa: E712
            .where(SigningRequest.expires_at >= moment)
            .where(SigningRequest.sent_at != None)  # noqa: E711
            .order_by(SigningRequest.expires_at)
        )
        return [item for item in self.session.exec(statement).all() if self._reminder_due(item, moment)]

    @staticmethod
    def _reminder_due(request: SigningRequest, now: datetime) -> bool:
        anchor = max(filter(None, [request.sent_at, request.last_reminder_at]))
        return anchor + timedelta(days=request.reminder_days) <= now

    def signers_to_remind(self, request: SigningRequest) -> list[Signer]:
        signers = self.workflow.list_signers(request.id)
        return actionable_signers(signers, request.signing_order)

    def record_reminder(self, request_id: UUID, signer_ids: list[UUID]) -> SigningRequest:
        return self.workflow.record_reminder(request_id, signer_ids)


@dataclass
class SchedulerReport:
    expired: list[UUID] = field(default_factory=list)
    reminded: list[UUID] = field(default_factory=list)
    failed: list[UUID] = field(default_factory=list)


def run_signing_scheduler(
    session: Session,
    send_reminder: ReminderSender | None = None,
    *,
    clock: Callable[[], datetime] | None = None,
) -> SchedulerReport:
    """One scheduler pass: expire overdue requests, then remind pending signers."""
    scheduler = SigningScheduler(session, clock=clock)
    report = SchedulerReport()
    now = scheduler.clock()

    for request in scheduler.find_newly_expired(now):
        request_id = request.id
        try:
            if scheduler.mark_expired(request_id):
                report.expired.append(request_id)
        except SigningError as exc:
            report.failed.append(request_id)
            logger.warning("Could not expire signing request %s: %s", request_id, exc)
        except Exception:
            session.rollback()
            report.failed.append(request_id)
            logger.exception("Expiring signing request %s failed", request_id)

    for request in scheduler.find_due_for_reminder(now):
        request_id = request.id
        signers = scheduler.signers_to_remind(request)
        if not signers:
            continue
        try:
            if send_reminder is not None:
                send_reminder(request, signers)
            scheduler.record_reminder(request_id, [signer.id for signer in signers])
            report.reminded.append(request_id)
        except Exception:
            session.rollback()
            report.failed.append(request_id)
            logger.exception("Reminder for signing request %s failed", request_id)

    logger.info(
        "Signing scheduler pass done: %s expired, %s reminded, %s failed",
        len(report.expired),
        len(report.reminded),
        len(report.failed),
    )
    return report
