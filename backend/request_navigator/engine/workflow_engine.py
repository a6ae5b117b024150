"""
Workflow Engine - Status state machine over CRA requests

Every status write loads the request, builds a history entry, and persists
status, normalized payload and the history push in one atomic update. The
update is conditioned on the version that was read, so the previous status
handed to the notification producer is exactly the one that was replaced.

=============================================================================
OPERATIONS
=============================================================================

    create_request   - new request with its first history entry
    change_status    - transition (any status may follow any status)
    edit_request     - field edit, optionally recorded as an 'edited' transition

Callers that pass expected_version get a ConcurrencyError on mismatch.
Callers that don't are last-writer-wins: a write that loses a race is
re-read and re-applied.

=============================================================================
"""
from typing import Any, Dict, Optional

from ..domain.models import RequestRecord, StatusHistoryEntry, StatusTransition
from ..domain.enums import RequestStatus
from ..domain.errors import RequestNotFoundError, ConcurrencyError, ValidationError
from ..domain.request_payload import normalize_request_payload, merge_edit
from ..repositories.request_repo import RequestRepository
from .request_id_generator import RequestIdGenerator
from ..utils.idgen import generate_history_entry_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Statuses a request may be created in
CREATABLE_STATUSES = frozenset({RequestStatus.DRAFT, RequestStatus.SUBMITTED})

HISTORY_EVENT_EDITED = "edited"


class WorkflowEngine:
    """Applies status transitions and edits to requests"""

    MAX_WRITE_ATTEMPTS = 3

    def __init__(
        self,
        request_repo: Optional[RequestRepository] = None,
        id_generator: Optional[RequestIdGenerator] = None,
        db=None
    ):
        self.request_repo = request_repo or RequestRepository(db)
        self.id_generator = id_generator or RequestIdGenerator(db=db)

    def get_request_or_raise(self, request_id: str) -> RequestRecord:
        record = self.request_repo.get_request(request_id)
        if record is None:
            raise RequestNotFoundError(
                f"Request {request_id} not found",
                details={"request_id": request_id}
            )
        return record

    # =========================================================================
    # Creation
    # =========================================================================

    def create_request(
        self,
        payload: Dict[str, Any],
        status: RequestStatus = RequestStatus.DRAFT,
        actor_id: str = "",
        actor_name: str = "",
        comment: Optional[str] = None
    ) -> RequestRecord:
        """
        Create a request with one history entry for its initial status.

        Raises:
            ValidationError: initial status is not draft or submitted
            ConcurrencyError: identifier counter contention
        """
        if status not in CREATABLE_STATUSES:
            raise ValidationError(
                f"Requests cannot be created in status {status.value}",
                details={"status": status.value}
            )

        now = utc_now()
        request_id = self.id_generator.next_request_id(now)
        entry = StatusHistoryEntry(
            id=generate_history_entry_id(),
            status=status,
            timestamp=now,
            user_id=actor_id,
            user_name=actor_name,
            comment=comment
        )
        record = RequestRecord(
            request_id=request_id,
            status=status,
            payload=normalize_request_payload(payload),
            history=[entry],
            version=1,
            created_at=now,
            updated_at=now
        )
        return self.request_repo.create_request(record)

    # =========================================================================
    # Transitions
    # =========================================================================

    def change_status(
        self,
        request_id: str,
        status: RequestStatus,
        actor_id: str = "",
        actor_name: str = "",
        comment: Optional[str] = None,
        expected_version: Optional[int] = None,
        payload_changes: Optional[Dict[str, Any]] = None
    ) -> StatusTransition:
        """
        Move a request to `status` and append the matching history entry.

        A write to the current status still appends history; the returned
        transition reports changed=False so no notification goes out.

        Args:
            request_id: Request to update
            status: Target status
            actor_id: Acting user ID
            actor_name: Acting user display name
            comment: Optional comment stored on the history entry
            expected_version: Optimistic concurrency token from the client
            payload_changes: Field edits applied in the same write

        Raises:
            RequestNotFoundError: request does not exist
            ConcurrencyError: version mismatch, or too many lost races
        """
        for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
            current = self.get_request_or_raise(request_id)
            self._check_version(current, expected_version)

            now = utc_now()
            # History timestamps never go backwards, even across clock skew
            timestamp = max(now, current.history[-1].timestamp) if current.history else now
            entry = StatusHistoryEntry(
                id=generate_history_entry_id(),
                status=status,
                timestamp=timestamp,
                user_id=actor_id,
                user_name=actor_name,
                comment=comment
            )
            if payload_changes:
                payload = merge_edit(current.payload, payload_changes)
            else:
                payload = normalize_request_payload(current.payload)

            updated = self.request_repo.append_status(
                request_id, entry, payload, timestamp, expected_version=current.version
            )
            if updated is not None:
                logger.info(
                    f"Request {request_id}: {current.status.value} -> {status.value}",
                    extra={
                        "request_id": request_id,
                        "status": status.value,
                        "previous_status": current.status.value
                    }
                )
                return StatusTransition(
                    record=updated,
                    previous_status=current.status,
                    history_entry=entry
                )

            self._on_lost_race(request_id, attempt, expected_version)

        raise self._too_many_races(request_id)

    # =========================================================================
    # Edits
    # =========================================================================

    def edit_request(
        self,
        request_id: str,
        changes: Dict[str, Any],
        history_event: Optional[str] = None,
        actor_id: str = "",
        actor_name: str = "",
        expected_version: Optional[int] = None
    ) -> RequestRecord:
        """
        Apply a field edit.

        With history_event 'edited' the edit is recorded as a transition to
        the 'edited' status. Without one, status and history are untouched.

        Raises:
            RequestNotFoundError: request does not exist
            ValidationError: unknown history event
            ConcurrencyError: version mismatch, or too many lost races
        """
        if history_event == HISTORY_EVENT_EDITED:
            transition = self.change_status(
                request_id,
                RequestStatus.EDITED,
                actor_id=actor_id,
                actor_name=actor_name,
                expected_version=expected_version,
                payload_changes=changes
            )
            return transition.record
        if history_event:
            raise ValidationError(
                f"Unknown history event: {history_event}",
                details={"history_event": history_event}
            )

        for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
            current = self.get_request_or_raise(request_id)
            self._check_version(current, expected_version)

            payload = merge_edit(current.payload, changes)
            updated = self.request_repo.update_payload(
                request_id, payload, utc_now(), expected_version=current.version
            )
            if updated is not None:
                logger.info(f"Request {request_id} edited", extra={"request_id": request_id})
                return updated

            self._on_lost_race(request_id, attempt, expected_version)

        raise self._too_many_races(request_id)

    # =========================================================================
    # Concurrency helpers
    # =========================================================================

    def _check_version(self, current: RequestRecord, expected_version: Optional[int]) -> None:
        if expected_version is not None and current.version != expected_version:
            raise ConcurrencyError(
                f"Request {current.request_id} was modified by someone else",
                details={
                    "request_id": current.request_id,
                    "expected_version": expected_version,
                    "current_version": current.version
                }
            )

    def _on_lost_race(self, request_id: str, attempt: int, expected_version: Optional[int]) -> None:
        if expected_version is not None:
            # The caller pinned a version and someone else wrote in between
            raise ConcurrencyError(
                f"Request {request_id} was modified by someone else",
                details={"request_id": request_id, "expected_version": expected_version}
            )
        logger.debug(
            f"Concurrent write on {request_id}, retrying (attempt {attempt})",
            extra={"request_id": request_id, "attempts": attempt}
        )

    def _too_many_races(self, request_id: str) -> ConcurrencyError:
        logger.warning(
            f"Gave up writing {request_id} after {self.MAX_WRITE_ATTEMPTS} concurrent updates",
            extra={"request_id": request_id}
        )
        return ConcurrencyError(
            f"Request {request_id} is being updated concurrently, please retry",
            details={"request_id": request_id}
        )
