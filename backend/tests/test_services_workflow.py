import itertools
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from conftest import BASE_TIME, build_payload
from signflow.models.signing import (
    SignatureType,
    SignerStatus,
    SigningEventType,
    SigningOrder,
    SigningRequestStatus,
)
from signflow.schemas.signing import SignerCreate
from signflow.services.access import SigningAccessService
from signflow.services.exceptions import (
    AlreadyActionedError,
    InvalidSigningInputError,
    InvalidTransitionError,
    OutOfOrderError,
    SigningConflictError,
    SigningExpiredError,
    SigningNotFoundError,
)
from signflow.services.signing_rules import replay_status
from signflow.services.workflow import SigningWorkflowService


def _event_types(workflow: SigningWorkflowService, request_id) -> list[SigningEventType]:
    return [event.event_type for event in workflow.events.list_by_request(request_id)]


def _assert_projection_matches_log(workflow: SigningWorkflowService, request) -> None:
    assert replay_status(workflow.events.list_by_request(request.id)) == request.status


def test_create_signing_request_persists_signers_and_created_event(workflow: SigningWorkflowService) -> None:
    request = workflow.create_signing_request("owner-1", build_payload(3))

    assert request.status == SigningRequestStatus.DRAFT
    assert request.created_at == BASE_TIME
    assert request.reminder_days == 3
    signers = workflow.list_signers(request.id)
    assert [signer.signing_order for signer in signers] == [1, 2, 3]
    assert all(signer.status == SignerStatus.PENDING for signer in signers)
    assert all(signer.role == "Signer" for signer in signers)
    assert len({signer.access_token for signer in signers}) == 3
    assert _event_types(workflow, request.id) == [SigningEventType.CREATED]
    _assert_projection_matches_log(workflow, request)


def test_create_normalizes_signer_fields_and_timezone(workflow: SigningWorkflowService) -> None:
    payload = build_payload(
        1,
        expires_at=datetime(2026, 3, 9, 12, 0, tzinfo=timezone(timedelta(hours=-3))),
        signers=[SignerCreate(name="  Ana  ", email="Ana@Example.com", role="Witness")],
    )
    request = workflow.create_signing_request("owner-1", payload)

    signer = workflow.list_signers(request.id)[0]
    assert signer.name == "Ana"
    assert signer.email.lower() == "ana@example.com"
    assert signer.role == "Witness"
    assert request.expires_at == datetime(2026, 3, 9, 15, 0)


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"signers": []}, "no_signers"),
        ({"signers": [SignerCreate(name="Ana")]}, "invalid_signer_email"),
        ({"signers": [SignerCreate(email="ana@example.com")]}, "missing_signer_name"),
        ({"signers": [SignerCreate(name="Ana", email="not-an-email")]}, "invalid_signer_email"),
        ({"expires_at": BASE_TIME - timedelta(minutes=1)}, "expiry_in_past"),
        ({"minimum_signatures": 1}, "unexpected_minimum"),
        ({"requires_all_signatures": False}, "missing_minimum"),
        ({"requires_all_signatures": False, "minimum_signatures": 3}, "minimum_too_high"),
    ],
)
def test_create_rejects_invalid_input(workflow: SigningWorkflowService, overrides, reason) -> None:
    with pytest.raises(InvalidSigningInputError) as excinfo:
        workflow.create_signing_request("owner-1", build_payload(2, **overrides))
    assert excinfo.value.reason == reason
    assert workflow.list_requests_for_owner("owner-1") == []


def test_create_retries_when_token_collides(db_session: Session, clock) -> None:
    first = SigningWorkflowService(db_session, clock=clock, token_factory=iter(["tok-a", "tok-b"]).__next__)
    existing = first.create_signing_request("owner-1", build_payload(2))

    candidates = iter(["tok-a", "tok-c", "tok-b", "tok-d"])
    second = SigningWorkflowService(db_session, clock=clock, token_factory=lambda: next(candidates))
    created = second.create_signing_request("owner-1", build_payload(2))

    assert {signer.access_token for signer in second.list_signers(created.id)} == {"tok-c", "tok-d"}
    assert {signer.access_token for signer in first.list_signers(existing.id)} == {"tok-a", "tok-b"}


def test_create_fails_with_conflict_when_tokens_keep_colliding(db_session: Session, clock) -> None:
    SigningWorkflowService(db_session, clock=clock, token_factory=lambda: "fixed").create_signing_request(
        "owner-1", build_payload(1)
    )
    service = SigningWorkflowService(db_session, clock=clock, token_factory=lambda: "fixed")
    with pytest.raises(SigningConflictError):
        service.create_signing_request("owner-1", build_payload(1))


def test_send_moves_draft_to_sent(workflow: SigningWorkflowService, clock) -> None:
    request = workflow.create_signing_request("owner-1", build_payload(2))
    clock.advance(minutes=5)

    sent = workflow.send_request("owner-1", request.id)

    assert sent.status == SigningRequestStatus.SENT
    assert sent.sent_at == BASE_TIME + timedelta(minutes=5)
    assert _event_types(workflow, request.id) == [SigningEventType.CREATED, SigningEventType.SENT]
    with pytest.raises(InvalidTransitionError):
        workflow.send_request("owner-1", request.id)


def test_send_requires_ownership_and_open_deadline(workflow: SigningWorkflowService, clock) -> None:
    request = workflow.create_signing_request("owner-1", build_payload(1))

    with pytest.raises(SigningNotFoundError):
        workflow.send_request("someone-else", request.id)

    clock.advance(days=8)
    with pytest.raises(SigningExpiredError):
        workflow.send_request("owner-1", request.id)
    assert workflow.get_request(request.id).status == SigningRequestStatus.DRAFT


def test_draft_request_cannot_be_signed(workflow: SigningWorkflowService) -> None:
    request = workflow.create_signing_request("owner-1", build_payload(1))
    token = workflow.list_signers(request.id)[0].access_token

    with pytest.raises(SigningNotFoundError):
        workflow.submit_signature(token, "Signer 1", "typed")


def test_scenario_parallel_two_signers_complete(db_session: Session, workflow, sent_request, clock) -> None:
    request = sent_request(2)
    access = SigningAccessService(db_session, clock=clock)
    first, second = workflow.list_signers(request.id)

    access.resolve(first.access_token)
    access.resolve(second.access_token)
    clock.advance(hours=1)
    workflow.submit_signature(first.access_token, "Signer 1", "typed")
    assert workflow.get_request(request.id).status == SigningRequestStatus.PARTIALLY_SIGNED

    clock.advance(hours=1)
    workflow.submit_signature(second.access_token, "Signer 2", "typed")

    request = workflow.get_request(request.id)
    assert request.status == SigningRequestStatus.SIGNED
    assert request.completed_at == BASE_TIME + timedelta(hours=2)
    assert _event_types(workflow, request.id) == [
        SigningEventType.CREATED,
        SigningEventType.SENT,
        SigningEventType.VIEWED,
        SigningEventType.VIEWED,
        SigningEventType.SIGNED,
        SigningEventType.SIGNED,
        SigningEventType.COMPLETED,
    ]
    _assert_projection_matches_log(workflow, request)


def test_scenario_sequential_out_of_order(workflow: SigningWorkflowService, sent_request) -> None:
    request = sent_request(2, signing_order=SigningOrder.SEQUENTIAL)
    first, second = workflow.list_signers(request.id)
    events_before = _event_types(workflow, request.id)

    with pytest.raises(OutOfOrderError):
        workflow.submit_signature(second.access_token, "Signer 2", "typed")

    assert workflow.get_request(request.id).status == SigningRequestStatus.SENT
    assert second.status == SignerStatus.PENDING
    assert _event_types(workflow, request.id) == events_before

    workflow.submit_signature(first.access_token, "Signer 1", "typed")
    workflow.submit_signature(second.access_token, "Signer 2", "typed")
    assert workflow.get_request(request.id).status == SigningRequestStatus.SIGNED


def test_scenario_expired_request_rejects_signature(workflow: SigningWorkflowService, sent_request, clock) -> None:
    request = sent_request(1, expires_at=BASE_TIME + timedelta(hours=1))
    token = workflow.list_signers(request.id)[0].access_token
    clock.advance(hours=2)

    with pytest.raises(SigningExpiredError):
        workflow.submit_signature(token, "Signer 1", "typed")

    assert workflow.get_request(request.id).status == SigningRequestStatus.SENT
    assert SigningEventType.SIGNED not in _event_types(workflow, request.id)
    assert workflow.mark_expired(request.id) is True
    assert workflow.get_request(request.id).status == SigningRequestStatus.EXPIRED


def test_signature_at_exact_deadline_is_accepted(workflow: SigningWorkflowService, sent_request, clock) -> None:
    request = sent_request(1, expires_at=BASE_TIME + timedelta(hours=1))
    token = workflow.list_signers(request.id)[0].access_token
    clock.advance(hours=1)

    workflow.submit_signature(token, "Signer 1", "typed")
    assert workflow.get_request(request.id).status == SigningRequestStatus.SIGNED


@pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
def test_parallel_completion_is_order_independent(workflow: SigningWorkflowService, sent_request, order) -> None:
    request = sent_request(3)
    signers = workflow.list_signers(request.id)

    for index in order:
        workflow.submit_signature(signers[index].access_token, f"Signer {index}", "typed")

    request = workflow.get_request(request.id)
    assert request.status == SigningRequestStatus.SIGNED
    assert _event_types(workflow, request.id).count(SigningEventType.COMPLETED) == 1
    _assert_projection_matches_log(workflow, request)


def test_tied_sequential_ranks_sign_in_any_order(workflow: SigningWorkflowService, sent_request) -> None:
    request = sent_request(3, signing_order=SigningOrder.SEQUENTIAL, ranks=[1, 1, 2])
    first, tied, last = workflow.list_signers(request.id)

    with pytest.raises(OutOfOrderError):
        workflow.submit_signature(last.access_token, "Last", "typed")
    workflow.submit_signature(tied.access_token, "Tied", "typed")
    with pytest.raises(OutOfOrderError):
        workflow.submit_signature(last.access_token, "Last", "typed")
    workflow.submit_signature(first.access_token, "First", "typed")
    workflow.submit_signature(last.access_token, "Last", "typed")

    assert workflow.get_request(request.id).status == SigningRequestStatus.SIGNED


def test_double_submit_is_rejected_without_changes(workflow: SigningWorkflowService, sent_request, clock) -> None:
    request = sent_request(2)
    signer = workflow.list_signers(request.id)[0]
    workflow.submit_signature(signer.access_token, "Signer 1", "typed")
    signed_at = signer.signed_at
    events_before = _event_types(workflow, request.id)

    clock.advance(minutes=1)
    with pytest.raises(AlreadyActionedError):
        workflow.submit_signature(signer.access_token, "Other", "typed")

    assert signer.signed_at == signed_at
    assert signer.signature_data == "Signer 1"
    assert _event_types(workflow, request.id) == events_before


def test_signing_completed_request_is_already_actioned(workflow: SigningWorkflowService, sent_request) -> None:
    request = sent_request(2, requires_all_signatures=False, minimum_signatures=1)
    first, second = workflow.list_signers(request.id)
    workflow.submit_signature(first.access_token, "Signer 1", "typed")
    assert workflow.get_request(request.id).status == SigningRequestStatus.SIGNED

    with pytest.raises(AlreadyActionedError) as excinfo:
        workflow.submit_signature(second.access_token, "Signer 2", "typed")
    assert excinfo.value.reason == "request_signed"


def test_invalid_signature_is_rejected_before_state_changes(workflow: SigningWorkflowService, sent_request) -> None:
    request = sent_request(1)
    signer = workflow.list_signers(request.id)[0]

    with pytest.raises(InvalidSigningInputError):
        workflow.submit_signature(signer.access_token, "", "typed")
    with pytest.raises(SigningNotFoundError):
        workflow.submit_signature("unknown-token", "Signer", "typed")

    assert signer.status == SignerStatus.PENDING


def test_signature_records_evidence(workflow: SigningWorkflowService, sent_request, clock) -> None:
    request = sent_request(1)
    signer = workflow.list_signers(request.id)[0]

    workflow.submit_signature(
        signer.access_token,
        "data:image/png;base64,iVBORw0KGgo=",
        "drawn",
        ip_address="203.0.113.7",
        user_agent="pytest",
    )

    assert signer.signature_type == SignatureType.DRAWN
    assert signer.ip_address == "203.0.113.7"
    signed_event = [
        event for event in workflow.events.list_by_request(request.id) if event.event_type == SigningEventType.SIGNED
    ][0]
    assert signed_event.signer_id == signer.id
    assert signed_event.user_agent == "pytest"
    assert signed_event.event_data["signature_type"] == "drawn"


def test_decline_when_all_required_declines_request(workflow: SigningWorkflowService, sent_request) -> None:
    request = sent_request(2)
    first, second = workflow.list_signers(request.id)

    workflow.decline_signing(first.access_token, reason="  Wrong amount ")

    request = workflow.get_request(request.id)
    assert first.status == SignerStatus.DECLINED
    assert first.decline_reason == "Wrong amount"
    assert request.status == SigningRequestStatus.DECLINED
    _assert_projection_matches_log(workflow, request)
    with pytest.raises(AlreadyActionedError):
        workflow.submit_signature(second.access_token, "Signer 2", "typed")


def test_decline_keeps_request_open_while_quorum_reachable(workflow: SigningWorkflowService, sent_request) -> None:
    request = sent_request(3, requires_all_signatures=False, minimum_signatures=2)
    first, second, third = workflow.list_signers(request.id)

    workflow.decline_signing(first.access_token)
    assert workflow.get_request(request.id).status == SigningRequestStatus.SENT

    workflow.submit_signature(second.access_token, "Signer 2", "typed")
    assert workflow.get_request(request.id).status == SigningRequestStatus.PARTIALLY_SIGNED

    workflow.decline_signing(third.access_token)
    request = workflow.get_request(request.id)
    assert request.status == SigningRequestStatus.DECLINED
    _assert_projection_matches_log(workflow, request)


def test_cancel_request(workflow: SigningWorkflowService, sent_request, clock) -> None:
    request = sent_request(2)
    signer = workflow.list_signers(request.id)[0]

    cancelled = workflow.cancel_request("owner-1", request.id, reason="Superseded")

    assert cancelled.status == SigningRequestStatus.CANCELLED
    assert cancelled.cancelled_at == clock.now
    assert workflow.cancel_request("owner-1", request.id).status == SigningRequestStatus.CANCELLED
    assert _event_types(workflow, request.id).count(SigningEventType.CANCELLED) == 1
    _assert_projection_matches_log(workflow, cancelled)
    with pytest.raises(AlreadyActionedError):
        workflow.submit_signature(signer.access_token, "Signer 1", "typed")


def test_cancel_completed_request_is_invalid(workflow: SigningWorkflowService, sent_request) -> None:
    request = sent_request(1)
    workflow.submit_signature(workflow.list_signers(request.id)[0].access_token, "Signer 1", "typed")

    with pytest.raises(InvalidTransitionError):
        workflow.cancel_request("owner-1", request.id)


def test_owner_queries_are_scoped(workflow: SigningWorkflowService, sent_request) -> None:
    mine = sent_request(1, owner_id="owner-1")
    sent_request(1, owner_id="owner-2")

    assert [item.id for item in workflow.list_requests_for_owner("owner-1")] == [mine.id]
    assert workflow.get_request_for_owner("owner-1", mine.id).id == mine.id
    with pytest.raises(SigningNotFoundError):
        workflow.get_request_for_owner("owner-2", mine.id)


def test_cancel_of_cancelled_request_releases_its_transaction(
    db_session: Session, workflow: SigningWorkflowService, sent_request
) -> None:
    request = sent_request(1)
    workflow.cancel_request("owner-1", request.id)
    workflow.get_request(request.id)

    again = workflow.cancel_request("owner-1", request.id)

    assert not db_session.in_transaction()
    assert again.status == SigningRequestStatus.CANCELLED


def test_unknown_token_is_not_found_even_with_malformed_signature(workflow: SigningWorkflowService) -> None:
    with pytest.raises(SigningNotFoundError):
        workflow.submit_signature("unknown-token", "", "scribbled")


def test_expiry_is_reported_before_closed_state(workflow: SigningWorkflowService, sent_request, clock) -> None:
    request = sent_request(
        2,
        expires_at=BASE_TIME + timedelta(hours=1),
        requires_all_signatures=False,
        minimum_signatures=1,
    )
    first, second = workflow.list_signers(request.id)
    workflow.submit_signature(first.access_token, "Signer 1", "typed")
    assert workflow.get_request(request.id).status == SigningRequestStatus.SIGNED

    clock.advance(hours=2)
    with pytest.raises(SigningExpiredError):
        workflow.submit_signature(second.access_token, "Signer 2", "typed")
    with pytest.raises(SigningExpiredError):
        workflow.submit_signature(second.access_token, "", "typed")
