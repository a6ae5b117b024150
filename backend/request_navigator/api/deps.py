"""API Dependencies - Common dependencies for routes

Service providers are plain dependencies so tests can swap them through
app.dependency_overrides.
"""
from typing import Optional
from fastapi import Header

from ..services.request_service import RequestService
from ..services.m365_admin_service import M365AdminService
from ..services.m365_token_manager import M365TokenManager
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """
    Get or generate correlation ID for request tracing

    If client provides X-Correlation-Id, use it.
    Otherwise generate a new one.
    """
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


# One token manager per process so admin actions share its refresh lock
_token_manager: Optional[M365TokenManager] = None


def get_token_manager() -> M365TokenManager:
    global _token_manager
    if _token_manager is None:
        _token_manager = M365TokenManager()
    return _token_manager


def get_request_service() -> RequestService:
    return RequestService()


def get_m365_admin_service() -> M365AdminService:
    return M365AdminService(token_manager=get_token_manager())
