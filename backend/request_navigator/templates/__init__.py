"""
Email Templates Package

HTML templates for request notifications, the admin digest and test emails.
"""
from .email_templates import (
    get_template_for_event,
    render_status_email,
    render_digest_email,
    render_test_email,
    get_status_label,
    DEFAULT_EMAIL_TEMPLATES,
)

__all__ = [
    "get_template_for_event",
    "render_status_email",
    "render_digest_email",
    "render_test_email",
    "get_status_label",
    "DEFAULT_EMAIL_TEMPLATES",
]
