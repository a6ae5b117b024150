"""Mail Integration Admin Routes - Microsoft 365 connection, settings and dispatch"""
from typing import Any, Dict, List, Optional, Union
from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..deps import get_correlation_id_dep, get_m365_admin_service
from ...domain.errors import DomainError
from ...services.m365_admin_service import M365AdminService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class PreviewRequest(BaseModel):
    """Template preview parameters; a missing or unknown requestId uses a sample request"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_type: Optional[str] = None
    status: Optional[str] = None
    previous_status: Optional[str] = None
    request_id: Optional[str] = None


class TestEmailRequest(BaseModel):
    """Comma/semicolon separated string or list of addresses"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    to_email: Union[str, List[str], None] = None


class DispatchRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    include_today: bool = True


# ============================================================================
# Settings
# ============================================================================

@router.get("")
async def get_m365_overview(
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """Settings, connection state and the device code awaiting sign-in"""
    return service.get_overview()


@router.put("")
async def update_m365_settings(
    body: Dict[str, Any] = Body(...),
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        mail_settings = service.update_settings(body)
        return {"settings": mail_settings.model_dump(by_alias=True, mode="json")}
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/preview")
async def preview_notification(
    request: Optional[PreviewRequest] = Body(None),
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, str]:
    request = request or PreviewRequest()
    try:
        return service.preview(
            event_type=request.event_type,
            status=request.status,
            previous_status=request.previous_status,
            request_id=request.request_id
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Connection
# ============================================================================

@router.post("/device-code")
async def start_device_code(
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """Start the device-code sign-in for the shared mailbox"""
    try:
        return await service.start_device_code()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/poll")
async def poll_device_code(
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """
    Poll the latest device code

    Returns status connected, pending, slow_down or expired.
    """
    try:
        return await service.poll()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/check")
async def check_connection(
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, str]:
    try:
        return await service.check()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/disconnect")
async def disconnect(
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, bool]:
    return service.disconnect()


# ============================================================================
# Sending
# ============================================================================

@router.post("/test-email")
async def send_test_email(
    request: TestEmailRequest,
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, bool]:
    try:
        return await service.send_test_email(request.to_email)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/dispatch")
async def dispatch_now(
    request: Optional[DispatchRequest] = Body(None),
    service: M365AdminService = Depends(get_m365_admin_service),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """Run one outbox pass and one admin digest pass right now"""
    request = request or DispatchRequest()
    result = await service.dispatch(include_today=request.include_today)
    logger.info("Manual dispatch run", extra={"status": "done"})
    return result
