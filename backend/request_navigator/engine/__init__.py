"""Workflow Engine - Status transitions, identifiers and notification routing"""
from .workflow_engine import WorkflowEngine
from .request_id_generator import RequestIdGenerator
from .recipient_resolver import RecipientResolver

__all__ = [
    "WorkflowEngine",
    "RequestIdGenerator",
    "RecipientResolver",
]
