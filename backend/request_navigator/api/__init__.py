"""API module - Routes and dependencies"""
from .deps import get_correlation_id_dep, get_request_service, get_m365_admin_service

__all__ = ["get_correlation_id_dep", "get_request_service", "get_m365_admin_service"]
