"""One pass of the signing scheduler: expire overdue requests and send reminders.

Meant to be run from cron, e.g. ``python scripts/run_signing_scheduler.py`` every
15 minutes. Reminder delivery is logged only; a mail integration plugs in as
``send_reminder``.
"""
from sqlmodel import Session

from signflow.core.config import settings
from signflow.core.logging_setup import logger
from signflow.db.session import engine
from signflow.models.signing import Signer, SigningRequest
from signflow.services.scheduler import run_signing_scheduler


def log_reminder(request: SigningRequest, signers: list[Signer]) -> None:
    for signer in signers:
        logger.info(
            "Reminder for '%s' to %s: %s",
            request.title,
            signer.email,
            settings.signing_url(signer.access_token),
        )


if __name__ == "__main__":
    with Session(engine) as session:
        report = run_signing_scheduler(session, log_reminder)
    print(f"expired={len(report.expired)} reminded={len(report.reminded)} failed={len(report.failed)}")
