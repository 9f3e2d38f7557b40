"""
ORM guards for the signing audit trail.

Signing events are append-only: once flushed, a row in ``signing_events`` may
never be updated or deleted through the ORM. The listeners below abort the
flush before any SQL reaches the database.
"""

from sqlalchemy import event

from signflow.core.logging_setup import logger
from signflow.models.signing import SigningEvent


class ImmutableEventError(RuntimeError):
    pass


def _block_event_update(mapper, connection, target) -> None:
    logger.error(
        "Blocked update of signing event %s (request %s)",
        target.id,
        target.signing_request_id,
    )
    raise ImmutableEventError(f"Signing event {target.id} is immutable and cannot be updated")


def _block_event_delete(mapper, connection, target) -> None:
    logger.error(
        "Blocked deletion of signing event %s (request %s)",
        target.id,
        target.signing_request_id,
    )
    raise ImmutableEventError(f"Signing event {target.id} is immutable and cannot be deleted")


def register_immutability_listeners() -> None:
    if not event.contains(SigningEvent, "before_update", _block_event_update):
        event.listen(SigningEvent, "before_update", _block_event_update)
    if not event.contains(SigningEvent, "before_delete", _block_event_delete):
        event.listen(SigningEvent, "before_delete", _block_event_delete)
