"""
Email Templates - Outlook-compatible HTML for CRA request notifications

Default subject/title/button texts live in DEFAULT_EMAIL_TEMPLATES. Admins
override them field by field through the mail settings; `{{name}}`
placeholders are filled from get_template_vars().
"""
import re
from datetime import datetime
from html import escape
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..domain.enums import NotificationEventType, RequestStatus
from ..domain.models import MailSettings, AdminDigestQueueEntry
from ..utils.time import format_utc_display


STATUS_LABELS: Dict[RequestStatus, str] = {
    RequestStatus.DRAFT: "Draft",
    RequestStatus.SUBMITTED: "Submitted",
    RequestStatus.EDITED: "Edited",
    RequestStatus.DESIGN_RESULT: "Design Result",
    RequestStatus.UNDER_REVIEW: "Under Review",
    RequestStatus.CLARIFICATION_NEEDED: "Clarification Needed",
    RequestStatus.FEASIBILITY_CONFIRMED: "Feasibility Confirmed",
    RequestStatus.IN_COSTING: "In Costing",
    RequestStatus.COSTING_COMPLETE: "Costing Complete",
    RequestStatus.SALES_FOLLOWUP: "Sales Follow-up",
    RequestStatus.GM_APPROVAL_PENDING: "GM Approval Pending",
    RequestStatus.GM_APPROVED: "Approved",
    RequestStatus.GM_REJECTED: "Rejected by GM",
    RequestStatus.CLOSED: "Closed",
    RequestStatus.CANCELLED: "Cancelled",
}

# Accent colour of the status badge and top bar
STATUS_ACCENTS: Dict[RequestStatus, str] = {
    RequestStatus.CLARIFICATION_NEEDED: "#F59E0B",
    RequestStatus.GM_APPROVED: "#10B981",
    RequestStatus.GM_REJECTED: "#EF4444",
    RequestStatus.CANCELLED: "#6B7280",
    RequestStatus.CLOSED: "#6B7280",
}
DEFAULT_ACCENT = "#D71920"

DEFAULT_FOOTER_TEXT = "You received this email because you are subscribed to CRA request notifications."

TEMPLATE_FIELDS = (
    "subject",
    "title",
    "intro",
    "primary_button_text",
    "secondary_button_text",
    "footer_text",
)

DEFAULT_EMAIL_TEMPLATES: Dict[NotificationEventType, Dict[str, str]] = {
    NotificationEventType.REQUEST_CREATED: {
        "subject": "[CRA] Request {{requestId}} submitted",
        "title": "Request {{requestId}}",
        "intro": "",
        "primary_button_text": "Open request",
        "secondary_button_text": "Open dashboard",
        "footer_text": DEFAULT_FOOTER_TEXT,
    },
    NotificationEventType.REQUEST_STATUS_CHANGED: {
        "subject": "[CRA] Request {{requestId}} status changed to {{status}}",
        "title": "Request {{requestId}}",
        "intro": "",
        "primary_button_text": "Open request",
        "secondary_button_text": "Open dashboard",
        "footer_text": DEFAULT_FOOTER_TEXT,
    },
}

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def get_status_label(status: Optional[RequestStatus]) -> str:
    """Human label of a status ('' for None)"""
    if status is None:
        return ""
    return STATUS_LABELS.get(status, status.value.replace("_", " ").title())


def get_template_for_event(
    mail_settings: MailSettings,
    event_type: NotificationEventType
) -> Dict[str, str]:
    """Default template for an event with the admin's overrides merged over it"""
    template = dict(DEFAULT_EMAIL_TEMPLATES[event_type])
    override = mail_settings.templates.get(event_type)
    if override is not None:
        for field in TEMPLATE_FIELDS:
            value = getattr(override, field)
            if value is not None:
                template[field] = value
    return template


def apply_template_vars(template: str, variables: Dict[str, str]) -> str:
    """Replace {{name}} placeholders; unknown names render empty"""
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), "")), template or "")


def build_request_link(base_url: str, request_id: str) -> str:
    base = (base_url or "").strip().rstrip("/")
    if not base:
        return ""
    return f"{base}/requests/{request_id}"


def build_dashboard_link(base_url: str) -> str:
    base = (base_url or "").strip().rstrip("/")
    if not base:
        return ""
    return f"{base}/dashboard"


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def get_template_vars(
    payload: Dict[str, Any],
    request_id: str,
    status: RequestStatus,
    previous_status: Optional[RequestStatus],
    actor_name: str,
    updated_at: Optional[datetime]
) -> Dict[str, str]:
    """Placeholder values available to subjects and texts"""
    expected_qty = payload.get("expectedQty")
    has_qty = isinstance(expected_qty, (int, float)) and not isinstance(expected_qty, bool)
    return {
        "requestId": request_id,
        "status": get_status_label(status),
        "statusCode": status.value,
        "previousStatus": get_status_label(previous_status),
        "previousStatusCode": previous_status.value if previous_status else "",
        "actor": _text(actor_name),
        "updatedAt": format_utc_display(updated_at),
        "client": _text(payload.get("clientName")),
        "country": _text(payload.get("country")),
        "applicationVehicle": _text(payload.get("applicationVehicle")),
        "expectedQty": str(expected_qty) if has_qty else "",
        "expectedDeliveryDate": _text(payload.get("clientExpectedDeliveryDate")),
    }


# =============================================================================
# Base Template Wrapper
# =============================================================================

def _button(href: str, text: str, primary: bool, accent_color: str) -> str:
    if not href or not text.strip():
        return ""
    background = accent_color if primary else "#FFFFFF"
    color = "#FFFFFF" if primary else "#0F172A"
    border = accent_color if primary else "#CBD5E1"
    return f'''
        <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="margin: 12px 0;">
            <tr>
                <td align="center">
                    <a href="{escape(href)}"
                       style="display: inline-block;
                              background-color: {background};
                              color: {color};
                              border: 1px solid {border};
                              text-decoration: none;
                              padding: 14px 32px;
                              border-radius: 8px;
                              font-weight: 600;
                              font-size: 14px;
                              font-family: Arial, sans-serif;">
                        {escape(text)}
                    </a>
                </td>
            </tr>
        </table>
        '''


def get_base_template(
    content: str,
    primary_button: Optional[Tuple[str, str]] = None,
    secondary_button: Optional[Tuple[str, str]] = None,
    footer_text: str = "",
    accent_color: str = DEFAULT_ACCENT
) -> str:
    """
    Email shell: header, accent bar, content card, buttons and footer.

    Buttons are (text, href) pairs; a button without href is left out.
    """
    buttons_html = ""
    if primary_button:
        buttons_html += _button(primary_button[1], primary_button[0], True, accent_color)
    if secondary_button:
        buttons_html += _button(secondary_button[1], secondary_button[0], False, accent_color)

    footer_html = ""
    if footer_text:
        footer_html = f'''
                                        <p style="margin: 0; color: #6B7280; font-size: 12px; font-family: Arial, sans-serif;">
                                            {escape(footer_text)}
                                        </p>'''

    return f'''
<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.0 Transitional//EN" "http://www.w3.org/TR/xhtml1/DTD/xhtml1-transitional.dtd">
<html xmlns="http://www.w3.org/1999/xhtml">
<head>
    <meta http-equiv="Content-Type" content="text/html; charset=UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>CRA Notification</title>
    <style type="text/css">
        body {{margin: 0; padding: 0; -webkit-text-size-adjust: 100%; -ms-text-size-adjust: 100%;}}
        table {{border-collapse: collapse;}}
    </style>
</head>
<body style="margin: 0; padding: 0; background-color: #F8FAFC; font-family: Arial, Helvetica, sans-serif;">
    <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="background-color: #F8FAFC;">
        <tr>
            <td style="padding: 32px 20px;">
                <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="600" align="center" style="margin: 0 auto; max-width: 600px;">
                    <tr>
                        <td style="padding-bottom: 24px;">
                            <span style="color: #111827; font-size: 20px; font-weight: bold; font-family: Arial, sans-serif; letter-spacing: 0.5px;">MONROC</span>
                            <span style="color: #6B7280; font-size: 12px; font-family: Arial, sans-serif; margin-left: 4px;">CRA Notification</span>
                        </td>
                    </tr>
                    <tr>
                        <td>
                            <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="background-color: #ffffff; border-radius: 8px;">
                                <tr>
                                    <td style="height: 4px; background-color: {accent_color}; border-radius: 8px 8px 0 0;"></td>
                                </tr>
                                <tr>
                                    <td style="padding: 32px 40px 40px 40px;">
                                        {content}
                                        {buttons_html}
                                    </td>
                                </tr>
                            </table>
                        </td>
                    </tr>
                    <tr>
                        <td style="padding-top: 24px; text-align: center;">{footer_html}
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>
'''


# =============================================================================
# Info Card Component
# =============================================================================

def get_info_card(request_id: str, fields: Sequence[Tuple[str, str]]) -> str:
    """Request detail card; fields with empty values are left out"""
    fields_html = ""
    for label, value in fields:
        if not value:
            continue
        fields_html += f'''
            <tr>
                <td style="padding: 8px 16px; color: #6B7280; font-size: 13px; border-bottom: 1px solid #E5E7EB; font-family: Arial, sans-serif;">{escape(label)}</td>
                <td style="padding: 8px 16px; color: #111827; font-size: 13px; font-weight: bold; border-bottom: 1px solid #E5E7EB; font-family: Arial, sans-serif;">{escape(value)}</td>
            </tr>
            '''

    return f'''
    <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="margin: 24px 0; border: 1px solid #E5E7EB; background-color: #F9FAFB;">
        <tr>
            <td colspan="2" style="background-color: #F1F5F9; padding: 16px 20px; border-bottom: 1px solid #E5E7EB;">
                <p style="margin: 0; font-size: 11px; text-transform: uppercase; letter-spacing: 0.5px; color: #6B7280; font-weight: bold; font-family: Arial, sans-serif;">
                    REQUEST DETAILS
                </p>
            </td>
        </tr>
        <tr>
            <td style="padding: 12px 16px; color: #6B7280; font-size: 13px; border-bottom: 1px solid #E5E7EB; width: 160px; font-family: Arial, sans-serif;">Request ID</td>
            <td style="padding: 12px 16px; font-size: 13px; border-bottom: 1px solid #E5E7EB; font-family: Arial, sans-serif;">
                <span style="background-color: #E0E7FF; color: #4338CA; padding: 2px 8px; font-size: 12px; font-family: Consolas, monospace;">{escape(request_id)}</span>
            </td>
        </tr>
        {fields_html}
    </table>
    '''


# =============================================================================
# Status Email
# =============================================================================

def render_status_email(
    payload: Dict[str, Any],
    request_id: str,
    event_type: NotificationEventType,
    status: RequestStatus,
    previous_status: Optional[RequestStatus],
    actor_name: str,
    comment: Optional[str],
    template: Dict[str, str],
    base_url: str,
    updated_at: Optional[datetime]
) -> Dict[str, str]:
    """
    Render subject and HTML body for one request event.

    Args:
        payload: Normalized business payload of the request
        template: Merged template from get_template_for_event()
        base_url: Application base URL for the buttons ('' drops them)

    Returns:
        Dict with 'subject' and 'body' keys
    """
    variables = get_template_vars(payload, request_id, status, previous_status, actor_name, updated_at)
    subject = apply_template_vars(template["subject"], variables).strip()
    if not subject:
        subject = apply_template_vars(DEFAULT_EMAIL_TEMPLATES[event_type]["subject"], variables)

    title = apply_template_vars(template["title"], variables).strip() or f"Request {request_id}"
    intro = apply_template_vars(template["intro"], variables).strip()
    accent = STATUS_ACCENTS.get(status, DEFAULT_ACCENT)

    if event_type == NotificationEventType.REQUEST_CREATED:
        headline = "New Request"
    elif previous_status is not None:
        headline = f"{escape(variables['previousStatus'])} &rarr; {escape(variables['status'])}"
    else:
        headline = escape(variables["status"])

    intro_html = ""
    if intro:
        intro_html = f'''
    <p style="margin: 0 0 16px 0; color: #4B5563; font-size: 14px; line-height: 1.6; font-family: Arial, sans-serif;">
        {escape(intro)}
    </p>'''

    comment_html = ""
    if comment and comment.strip():
        comment_html = f'''
    <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="margin: 16px 0;">
        <tr>
            <td style="padding: 16px; background-color: #F3F4F6; border-left: 4px solid {accent}; font-size: 14px; color: #374151; font-family: Arial, sans-serif;">
                {escape(comment.strip())}
            </td>
        </tr>
    </table>'''

    meta = " &middot; ".join(
        escape(part) for part in (variables["updatedAt"], f"By {variables['actor']}" if variables["actor"] else "") if part
    )

    info_card = get_info_card(request_id, [
        ("Status", variables["status"]),
        ("Client", variables["client"]),
        ("Country", variables["country"]),
        ("Application vehicle", variables["applicationVehicle"]),
        ("Expected quantity", variables["expectedQty"]),
        ("Expected delivery date", variables["expectedDeliveryDate"]),
    ])

    content = f'''
    <h1 style="margin: 0 0 8px 0; font-size: 22px; font-weight: bold; color: #111827; font-family: Arial, sans-serif;">
        {escape(title)}
    </h1>
    <p style="margin: 0 0 8px 0; font-size: 15px; font-weight: bold; color: {accent}; font-family: Arial, sans-serif;">
        {headline}
    </p>
    <p style="margin: 0 0 24px 0; color: #6B7280; font-size: 12px; font-family: Arial, sans-serif;">
        {meta}
    </p>
    {intro_html}
    {comment_html}
    {info_card}
    '''

    body = get_base_template(
        content=content,
        primary_button=(
            apply_template_vars(template["primary_button_text"], variables).strip() or "Open request",
            build_request_link(base_url, request_id)
        ),
        secondary_button=(
            apply_template_vars(template["secondary_button_text"], variables).strip(),
            build_dashboard_link(base_url)
        ),
        footer_text=apply_template_vars(template["footer_text"], variables).strip(),
        accent_color=accent
    )
    return {"subject": subject, "body": body}


# =============================================================================
# Admin Digest Email
# =============================================================================

def render_digest_email(
    entries: List[AdminDigestQueueEntry],
    digest_date: str,
    base_url: str
) -> Dict[str, str]:
    """One summary email for a day's status changes, one table row per event"""
    rows_html = ""
    for entry in entries:
        transition = escape(get_status_label(entry.request_status))
        if entry.previous_status is not None:
            transition = f"{escape(get_status_label(entry.previous_status))} &rarr; {transition}"
        request_link = build_request_link(base_url, entry.request_id)
        request_cell = escape(entry.request_id)
        if request_link:
            request_cell = f'<a href="{escape(request_link)}" style="color: #4338CA;">{request_cell}</a>'
        rows_html += f'''
            <tr>
                <td style="padding: 8px; border-bottom: 1px solid #E5E7EB; font-size: 12px; color: #6B7280; white-space: nowrap;">{escape(entry.event_at.strftime("%H:%M UTC"))}</td>
                <td style="padding: 8px; border-bottom: 1px solid #E5E7EB; font-size: 13px; font-family: Consolas, monospace;">{request_cell}</td>
                <td style="padding: 8px; border-bottom: 1px solid #E5E7EB; font-size: 13px; color: #111827;">{transition}</td>
                <td style="padding: 8px; border-bottom: 1px solid #E5E7EB; font-size: 13px; color: #374151;">{escape(entry.actor_name)}</td>
                <td style="padding: 8px; border-bottom: 1px solid #E5E7EB; font-size: 13px; color: #374151;">{escape(entry.comment or "")}</td>
            </tr>'''

    count = len(entries)
    noun = "change" if count == 1 else "changes"
    content = f'''
    <h1 style="margin: 0 0 8px 0; font-size: 22px; font-weight: bold; color: #111827; font-family: Arial, sans-serif;">
        Daily request digest
    </h1>
    <p style="margin: 0 0 24px 0; color: #6B7280; font-size: 14px; font-family: Arial, sans-serif;">
        {count} status {noun} on {escape(digest_date)}
    </p>
    <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="border: 1px solid #E5E7EB; font-family: Arial, sans-serif;">
        <tr style="background-color: #F1F5F9;">
            <th align="left" style="padding: 8px; font-size: 11px; color: #6B7280; text-transform: uppercase;">Time</th>
            <th align="left" style="padding: 8px; font-size: 11px; color: #6B7280; text-transform: uppercase;">Request</th>
            <th align="left" style="padding: 8px; font-size: 11px; color: #6B7280; text-transform: uppercase;">Status</th>
            <th align="left" style="padding: 8px; font-size: 11px; color: #6B7280; text-transform: uppercase;">By</th>
            <th align="left" style="padding: 8px; font-size: 11px; color: #6B7280; text-transform: uppercase;">Comment</th>
        </tr>{rows_html}
    </table>
    '''

    body = get_base_template(
        content=content,
        primary_button=("Open dashboard", build_dashboard_link(base_url)),
        footer_text=DEFAULT_FOOTER_TEXT
    )
    return {"subject": f"[CRA] Daily digest {digest_date} ({count} {noun})", "body": body}


# =============================================================================
# Test Email
# =============================================================================

def render_test_email(sender: str) -> Dict[str, str]:
    """Connectivity check sent from the admin screen"""
    content = f'''
    <h1 style="margin: 0 0 8px 0; font-size: 22px; font-weight: bold; color: #111827; font-family: Arial, sans-serif;">
        Test email
    </h1>
    <p style="margin: 0; color: #4B5563; font-size: 14px; line-height: 1.6; font-family: Arial, sans-serif;">
        The Microsoft 365 mail integration is working. This message was sent by {escape(sender or "the shared mailbox")}.
    </p>
    '''
    return {
        "subject": "[CRA] Test email",
        "body": get_base_template(content=content, footer_text=DEFAULT_FOOTER_TEXT),
    }
