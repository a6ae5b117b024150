"""Request API Routes - CRA request CRUD and status transitions"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..deps import get_correlation_id_dep, get_request_service
from ...domain.errors import DomainError
from ...services.request_service import RequestService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class StatusChangeRequest(BaseModel):
    """Transition body; status is checked by the service so a missing one is a VALIDATION_ERROR"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    comment: Optional[str] = None
    expected_version: Optional[int] = None


class NotifyRequest(BaseModel):
    """Manual re-send; every field defaults from the request's history"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: Optional[str] = None
    previous_status: Optional[str] = None
    event_type: Optional[str] = None
    actor_name: Optional[str] = None
    comment: Optional[str] = None


# ============================================================================
# Routes
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_request(
    body: Dict[str, Any] = Body(...),
    service: RequestService = Depends(get_request_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """
    Create a request

    Body holds the business fields plus optional status (default draft),
    createdBy and createdByName.
    """
    try:
        record = service.create_request(body)
        return record.to_wire()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("")
async def list_requests(
    skip: int = Query(0, ge=0),
    limit: int = Query(200, ge=1, le=1000),
    service: RequestService = Depends(get_request_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> List[Dict[str, Any]]:
    """List request summaries, most recently updated first"""
    return service.list_requests(skip=skip, limit=limit)


@router.get("/{request_id}")
async def get_request(
    request_id: str,
    service: RequestService = Depends(get_request_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        return service.get_request(request_id).to_wire()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/{request_id}")
async def update_request(
    request_id: str,
    body: Dict[str, Any] = Body(...),
    service: RequestService = Depends(get_request_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """
    Edit request fields

    Engine-owned keys in the body are ignored. With historyEvent "edited"
    the edit is recorded in the history; no notification is sent.
    """
    try:
        return service.edit_request(request_id, body).to_wire()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{request_id}/status")
async def change_status(
    request_id: str,
    request: StatusChangeRequest,
    service: RequestService = Depends(get_request_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """
    Move a request to a new status

    Notifies the routed groups when the status actually changed.
    """
    try:
        record = service.change_status(
            request_id,
            request.status,
            user_id=request.user_id or "",
            user_name=request.user_name or "",
            comment=request.comment,
            expected_version=request.expected_version
        )
        return record.to_wire()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{request_id}/notify")
async def renotify(
    request_id: str,
    request: Optional[NotifyRequest] = Body(None),
    service: RequestService = Depends(get_request_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """Enqueue a notification for the request again"""
    request = request or NotifyRequest()
    try:
        result = service.renotify(
            request_id,
            status=request.status,
            previous_status=request.previous_status,
            event_type=request.event_type,
            actor_name=request.actor_name,
            comment=request.comment
        )
        logger.info(
            f"Manual notification for {request_id}: enqueued={result.enqueued}",
            extra={"request_id": request_id}
        )
        return result.model_dump(by_alias=True, mode="json", exclude={"digest_entry_id"})
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
