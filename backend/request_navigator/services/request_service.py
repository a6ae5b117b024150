"""Request Service - Business logic for CRA requests

Thin layer over the workflow engine: parses API bodies, runs the write, then
hands committed transitions to the notification producer. Notification
failures never fail the request write.
"""
from typing import Any, Dict, List, Optional

from ..domain.models import RequestRecord, NotificationEnqueueResult
from ..domain.enums import RequestStatus, NotificationEventType
from ..domain.errors import ValidationError
from ..engine.workflow_engine import WorkflowEngine
from .notification_service import NotificationService
from ..utils.time import format_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Fields shown in the request list
SUMMARY_FIELDS = ("clientName", "applicationVehicle", "country", "createdBy", "createdByName")


def parse_status(value: Any, field: str = "status") -> RequestStatus:
    """
    Parse a status value sent by a client.

    Raises:
        ValidationError: missing or not one of the workflow statuses
    """
    if value is None or value == "":
        raise ValidationError(f"Missing {field}", details={"field": field})
    try:
        return RequestStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown {field}: {value}",
            details={"field": field, "value": value}
        )


def parse_optional_status(value: Any, field: str) -> Optional[RequestStatus]:
    if value is None or value == "":
        return None
    return parse_status(value, field)


def parse_expected_version(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("expectedVersion must be an integer", details={"field": "expectedVersion"})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("expectedVersion must be an integer", details={"field": "expectedVersion"})


class RequestService:
    """Service for request creation, edits and status changes"""

    def __init__(
        self,
        engine: Optional[WorkflowEngine] = None,
        notification_service: Optional[NotificationService] = None,
        db=None
    ):
        self.engine = engine or WorkflowEngine(db=db)
        self.notification_service = notification_service or NotificationService(db=db)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_request(self, request_id: str) -> RequestRecord:
        return self.engine.get_request_or_raise(request_id)

    def list_requests(self, skip: int = 0, limit: int = 200) -> List[Dict[str, Any]]:
        """Request summaries, most recently updated first"""
        records = self.engine.request_repo.list_requests(skip=skip, limit=limit)
        summaries = []
        for record in records:
            summary = {"id": record.request_id, "status": record.status.value}
            for key in SUMMARY_FIELDS:
                summary[key] = record.payload.get(key)
            summary["createdAt"] = format_iso(record.created_at)
            summary["updatedAt"] = format_iso(record.updated_at)
            summaries.append(summary)
        return summaries

    # =========================================================================
    # Writes
    # =========================================================================

    def create_request(self, body: Dict[str, Any]) -> RequestRecord:
        """
        Create a request from an API body.

        `status` defaults to draft. A request created in any other status
        notifies like a submission.
        """
        data = dict(body)
        raw_status = data.pop("status", None)
        status = RequestStatus.DRAFT if raw_status in (None, "") else parse_status(raw_status)

        record = self.engine.create_request(
            payload=data,
            status=status,
            actor_id=data.get("createdBy") or "",
            actor_name=data.get("createdByName") or ""
        )
        if status != RequestStatus.DRAFT:
            self.notification_service.enqueue_best_effort(
                record=record,
                event_type=NotificationEventType.REQUEST_CREATED,
                status=status,
                actor_name=data.get("createdByName") or "",
                history_entry_id=record.history[-1].id
            )
        return record

    def edit_request(self, request_id: str, body: Dict[str, Any]) -> RequestRecord:
        """Field edit; `historyEvent: edited` records it as an 'edited' transition"""
        changes = dict(body)
        history_event = changes.pop("historyEvent", None)
        edited_by = changes.pop("editedBy", None) or ""
        edited_by_name = changes.pop("editedByName", None) or ""
        expected_version = parse_expected_version(changes.pop("expectedVersion", None))

        return self.engine.edit_request(
            request_id,
            changes,
            history_event=history_event,
            actor_id=edited_by,
            actor_name=edited_by_name,
            expected_version=expected_version
        )

    def change_status(
        self,
        request_id: str,
        status: Any,
        user_id: str = "",
        user_name: str = "",
        comment: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> RequestRecord:
        """
        Transition a request and notify when the status actually changed.

        Raises:
            ValidationError: missing or unknown status
            RequestNotFoundError: request does not exist
            ConcurrencyError: expected_version mismatch
        """
        new_status = parse_status(status)
        transition = self.engine.change_status(
            request_id,
            new_status,
            actor_id=user_id or "",
            actor_name=user_name or "",
            comment=comment,
            expected_version=expected_version
        )

        if transition.changed:
            self.notification_service.enqueue_best_effort(
                record=transition.record,
                event_type=NotificationEventType.REQUEST_STATUS_CHANGED,
                status=new_status,
                previous_status=transition.previous_status,
                actor_name=user_name or "",
                comment=comment,
                history_entry_id=transition.history_entry.id
            )
        else:
            logger.info(
                f"Status of {request_id} unchanged, no notification",
                extra={"request_id": request_id, "status": new_status.value}
            )
        return transition.record

    def renotify(
        self,
        request_id: str,
        status: Any = None,
        previous_status: Any = None,
        event_type: Any = None,
        actor_name: Optional[str] = None,
        comment: Optional[str] = None
    ) -> NotificationEnqueueResult:
        """
        Enqueue a fresh notification for a request (manual re-send).

        Unspecified values come from the request's latest history entries.
        Unlike transition notifications, this one is not deduplicated and
        errors are returned to the caller.
        """
        record = self.engine.get_request_or_raise(request_id)

        current_status = parse_optional_status(status, "status") or record.status
        prior = parse_optional_status(previous_status, "previousStatus")
        if prior is None and len(record.history) > 1:
            prior = record.history[-2].status

        if event_type in (None, ""):
            kind = (
                NotificationEventType.REQUEST_CREATED if prior is None
                else NotificationEventType.REQUEST_STATUS_CHANGED
            )
        else:
            try:
                kind = NotificationEventType(event_type)
            except ValueError:
                raise ValidationError(
                    f"Unknown eventType: {event_type}",
                    details={"field": "eventType", "value": event_type}
                )

        latest = record.history[-1] if record.history else None
        if actor_name is None:
            actor_name = latest.user_name if latest else ""
        if comment is None and latest is not None:
            comment = latest.comment

        return self.notification_service.enqueue_request_event(
            record=record,
            event_type=kind,
            status=current_status,
            previous_status=prior,
            actor_name=actor_name,
            comment=comment
        )
