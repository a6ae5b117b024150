"""Tests for the workflow engine: creation, transitions, edits and concurrency"""
import pytest

from request_navigator.domain.enums import RequestStatus
from request_navigator.domain.errors import ConcurrencyError, RequestNotFoundError, ValidationError
from request_navigator.engine.workflow_engine import WorkflowEngine
from request_navigator.repositories.request_repo import RequestRepository


class RacingRequestRepository(RequestRepository):
    """Loses the first `races` conditional writes, as if another writer got there first"""

    def __init__(self, db, races):
        super().__init__(db)
        self.races = races
        self.writes = 0

    def append_status(self, *args, **kwargs):
        self.writes += 1
        if self.races:
            self.races -= 1
            return None
        return super().append_status(*args, **kwargs)


def _create(engine, status=RequestStatus.SUBMITTED):
    return engine.create_request(
        {"clientName": "Acme Trailers", "expectedQty": 4},
        status=status,
        actor_id="u-1",
        actor_name="Sam Sales"
    )


def test_create_request_records_initial_history(engine):
    record = _create(engine)

    assert record.request_id.startswith("CRA")
    assert record.status == RequestStatus.SUBMITTED
    assert record.version == 1
    assert len(record.history) == 1
    assert record.history[0].status == RequestStatus.SUBMITTED
    assert record.history[0].user_name == "Sam Sales"
    assert record.payload["products"][0]["quantity"] == 4


def test_create_request_only_in_draft_or_submitted(engine):
    assert _create(engine, RequestStatus.DRAFT).status == RequestStatus.DRAFT

    with pytest.raises(ValidationError):
        _create(engine, RequestStatus.CLOSED)


def test_change_status_appends_history(engine):
    record = _create(engine)

    transition = engine.change_status(
        record.request_id,
        RequestStatus.UNDER_REVIEW,
        actor_id="u-2",
        actor_name="Dana Design",
        comment="Looking at it"
    )

    assert transition.changed
    assert transition.previous_status == RequestStatus.SUBMITTED
    updated = transition.record
    assert updated.status == RequestStatus.UNDER_REVIEW
    assert updated.version == 2
    assert [h.status for h in updated.history] == [RequestStatus.SUBMITTED, RequestStatus.UNDER_REVIEW]
    assert updated.history[-1].id == transition.history_entry.id
    assert updated.history[-1].comment == "Looking at it"


def test_status_always_matches_last_history_entry(engine):
    record = _create(engine)
    for status in (RequestStatus.UNDER_REVIEW, RequestStatus.FEASIBILITY_CONFIRMED, RequestStatus.IN_COSTING):
        engine.change_status(record.request_id, status)

    stored = engine.get_request_or_raise(record.request_id)
    assert stored.status == stored.history[-1].status == RequestStatus.IN_COSTING
    timestamps = [h.timestamp for h in stored.history]
    assert timestamps == sorted(timestamps)


def test_same_status_write_appends_history_but_reports_no_change(engine):
    record = _create(engine)

    transition = engine.change_status(record.request_id, RequestStatus.SUBMITTED)

    assert not transition.changed
    assert len(transition.record.history) == 2


def test_any_status_may_follow_any_status(engine):
    record = _create(engine)

    engine.change_status(record.request_id, RequestStatus.CLOSED)
    transition = engine.change_status(record.request_id, RequestStatus.DRAFT)

    assert transition.previous_status == RequestStatus.CLOSED
    assert transition.record.status == RequestStatus.DRAFT


def test_change_status_unknown_request(engine):
    with pytest.raises(RequestNotFoundError):
        engine.change_status("CRA00000000", RequestStatus.CLOSED)


def test_expected_version_mismatch(engine):
    record = _create(engine)
    engine.change_status(record.request_id, RequestStatus.UNDER_REVIEW)

    with pytest.raises(ConcurrencyError):
        engine.change_status(record.request_id, RequestStatus.CLOSED, expected_version=1)

    stored = engine.get_request_or_raise(record.request_id)
    assert stored.status == RequestStatus.UNDER_REVIEW
    assert len(stored.history) == 2


def test_expected_version_match(engine):
    record = _create(engine)

    transition = engine.change_status(record.request_id, RequestStatus.UNDER_REVIEW, expected_version=1)

    assert transition.record.version == 2


def test_lost_race_is_retried_without_expected_version(db, engine):
    record = _create(engine)
    racing_repo = RacingRequestRepository(db, races=1)
    racing_engine = WorkflowEngine(request_repo=racing_repo, id_generator=engine.id_generator)

    transition = racing_engine.change_status(record.request_id, RequestStatus.UNDER_REVIEW)

    assert racing_repo.writes == 2
    assert transition.record.status == RequestStatus.UNDER_REVIEW
    assert len(transition.record.history) == 2


def test_lost_race_with_expected_version_raises(db, engine):
    record = _create(engine)
    racing_engine = WorkflowEngine(
        request_repo=RacingRequestRepository(db, races=1), id_generator=engine.id_generator
    )

    with pytest.raises(ConcurrencyError):
        racing_engine.change_status(record.request_id, RequestStatus.UNDER_REVIEW, expected_version=1)


def test_too_many_lost_races_raise(db, engine):
    record = _create(engine)
    racing_engine = WorkflowEngine(
        request_repo=RacingRequestRepository(db, races=WorkflowEngine.MAX_WRITE_ATTEMPTS),
        id_generator=engine.id_generator
    )

    with pytest.raises(ConcurrencyError):
        racing_engine.change_status(record.request_id, RequestStatus.UNDER_REVIEW)

    assert len(engine.get_request_or_raise(record.request_id).history) == 1


def test_plain_edit_leaves_status_and_history(engine):
    record = _create(engine)

    updated = engine.edit_request(record.request_id, {"clientName": "Acme Axles", "status": "closed"})

    assert updated.payload["clientName"] == "Acme Axles"
    assert updated.status == RequestStatus.SUBMITTED
    assert len(updated.history) == 1
    assert updated.version == 2


def test_edit_recorded_as_edited_transition(engine):
    record = _create(engine)

    updated = engine.edit_request(
        record.request_id,
        {"clientName": "Acme Axles"},
        history_event="edited",
        actor_id="u-1",
        actor_name="Sam Sales"
    )

    assert updated.status == RequestStatus.EDITED
    assert updated.history[-1].status == RequestStatus.EDITED
    assert updated.history[-1].user_name == "Sam Sales"
    assert updated.payload["clientName"] == "Acme Axles"


def test_edit_with_unknown_history_event(engine):
    record = _create(engine)

    with pytest.raises(ValidationError):
        engine.edit_request(record.request_id, {"clientName": "x"}, history_event="approved")
