"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, EmailStr, ConfigDict, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from .enums import (
    RequestStatus, NotificationEventType, OutboxStatus,
    DeviceCodeSessionStatus, DeviceCodePollStatus, EnqueueSkipReason
)
from ..utils.time import format_iso, ensure_utc


_email_adapter = TypeAdapter(EmailStr)


def parse_email_list(raw: Optional[str]) -> List[str]:
    """
    Split an admin-typed address list on commas, semicolons and newlines.

    Blank entries are dropped and duplicates removed case-insensitively,
    keeping the first spelling seen.
    """
    if not raw:
        return []
    normalized = raw.replace(";", ",").replace("\n", ",")
    seen = set()
    emails: List[str] = []
    for item in normalized.split(","):
        email = item.strip()
        if not email:
            continue
        key = email.lower()
        if key in seen:
            continue
        seen.add(key)
        emails.append(email)
    return emails


# ============================================================================
# Request & History
# ============================================================================

class StatusHistoryEntry(BaseModel):
    """One immutable status change on a request"""
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    id: str
    status: RequestStatus
    timestamp: datetime
    user_id: str = ""
    user_name: str = ""
    comment: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with camelCase keys and ISO timestamp"""
        wire = {
            "id": self.id,
            "status": self.status.value,
            "timestamp": format_iso(self.timestamp),
            "userId": self.user_id,
            "userName": self.user_name,
        }
        if self.comment is not None:
            wire["comment"] = self.comment
        return wire


class RequestRecord(BaseModel):
    """
    A CRA request as stored.

    The business payload is normalized (see request_payload) and kept
    separate from the fields owned by the workflow engine.
    """
    model_config = ConfigDict(extra="ignore")

    request_id: str
    status: RequestStatus
    payload: Dict[str, Any] = Field(default_factory=dict)
    history: List[StatusHistoryEntry] = Field(default_factory=list)
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc_datetimes(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_wire(self) -> Dict[str, Any]:
        """Flat camelCase representation consumed by the UI"""
        wire = dict(self.payload)
        wire.update({
            "id": self.request_id,
            "status": self.status.value,
            "history": [entry.to_wire() for entry in self.history],
            "createdAt": format_iso(self.created_at),
            "updatedAt": format_iso(self.updated_at),
            "version": self.version,
        })
        return wire


class StatusTransition(BaseModel):
    """Result of a status write: the updated request and what it moved from"""
    record: RequestRecord
    previous_status: RequestStatus
    history_entry: StatusHistoryEntry

    @property
    def changed(self) -> bool:
        return self.previous_status != self.record.status


# ============================================================================
# Notification Outbox & Admin Digest Queue
# ============================================================================

class NotificationOutboxEntry(BaseModel):
    """Rendered notification waiting for (or done with) delivery"""
    model_config = ConfigDict(extra="ignore")  # Allow extra fields from DB

    notification_id: str
    event_type: NotificationEventType
    request_id: str
    recipients: List[EmailStr]
    subject: str
    body_html: str
    status: OutboxStatus = Field(default=OutboxStatus.PENDING)
    attempts: int = Field(default=0)
    next_attempt_at: datetime
    last_error: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None
    dedupe_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    sent_at: Optional[datetime] = None

    @field_validator("next_attempt_at", "claimed_until", "created_at", "updated_at", "sent_at")
    @classmethod
    def _utc_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class AdminDigestQueueEntry(BaseModel):
    """One status-change event waiting to be summarized in a daily admin digest"""
    model_config = ConfigDict(extra="ignore")

    digest_entry_id: str
    event_type: NotificationEventType
    request_id: str
    request_status: RequestStatus
    previous_status: Optional[RequestStatus] = None
    actor_name: str = ""
    comment: Optional[str] = None
    recipients: List[EmailStr]
    recipients_key: str  # Sorted, lower-cased recipients used for grouping
    digest_date: str  # YYYY-MM-DD in the business timezone
    event_at: datetime
    status: OutboxStatus = Field(default=OutboxStatus.PENDING)
    attempts: int = Field(default=0)
    next_attempt_at: datetime
    last_error: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    sent_at: Optional[datetime] = None

    @field_validator("event_at", "next_attempt_at", "claimed_until", "created_at", "updated_at", "sent_at")
    @classmethod
    def _utc_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class NotificationEnqueueResult(BaseModel):
    """What the notification producer did for one event"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enqueued: bool
    reason: Optional[EnqueueSkipReason] = None
    notification_id: Optional[str] = None
    digest_entry_id: Optional[str] = None


class DispatchSummary(BaseModel):
    """Counters reported by one dispatcher or digest run"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0
    skipped_reason: Optional[str] = None


# ============================================================================
# Mail Integration Settings
# ============================================================================

class RoutingFlags(BaseModel):
    """Per-status routing override: which groups get the email"""
    model_config = ConfigDict(extra="ignore")

    sales: bool = False
    design: bool = False
    costing: bool = False
    admin: bool = False


class EmailTemplateOverride(BaseModel):
    """Admin-edited template fields; unset fields fall back to defaults"""
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    subject: Optional[str] = None
    title: Optional[str] = None
    intro: Optional[str] = None
    primary_button_text: Optional[str] = None
    secondary_button_text: Optional[str] = None
    footer_text: Optional[str] = None


class MailSettings(BaseModel):
    """Singleton Microsoft 365 mail integration settings"""
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    enabled: bool = False
    tenant_id: str = ""
    client_id: str = ""
    sender_upn: str = ""
    app_base_url: str = ""
    recipients_sales: str = ""
    recipients_design: str = ""
    recipients_costing: str = ""
    recipients_admin: str = ""
    test_mode: bool = False
    test_email: str = ""
    flow_map: Optional[Dict[RequestStatus, RoutingFlags]] = None
    templates: Dict[NotificationEventType, EmailTemplateOverride] = Field(default_factory=dict)
    admin_digest_enabled: bool = False
    updated_at: Optional[datetime] = None

    @field_validator("tenant_id", "client_id", "sender_upn", "app_base_url", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator(
        "recipients_sales", "recipients_design", "recipients_costing",
        "recipients_admin", "test_email", mode="before"
    )
    @classmethod
    def _validate_email_list(cls, value: Any) -> str:
        """Normalize a pasted address list and reject malformed entries"""
        if value is None:
            return ""
        emails = parse_email_list(str(value))
        for email in emails:
            try:
                _email_adapter.validate_python(email)
            except ValueError:
                raise ValueError(f"Invalid email address: {email}")
        return ", ".join(emails)


class OAuthTokenState(BaseModel):
    """Singleton credential for the shared mailbox"""
    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    refresh_lease_owner: Optional[str] = None
    refresh_lease_until: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("expires_at", "refresh_lease_until", "updated_at")
    @classmethod
    def _utc_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)


class DeviceCodeSession(BaseModel):
    """One in-flight device-code authorization attempt"""
    model_config = ConfigDict(extra="ignore")

    session_id: str
    device_code: str
    user_code: Optional[str] = None
    verification_uri: Optional[str] = None
    verification_uri_complete: Optional[str] = None
    message: Optional[str] = None
    interval_seconds: Optional[int] = None
    expires_at: Optional[datetime] = None
    status: DeviceCodeSessionStatus = Field(default=DeviceCodeSessionStatus.PENDING)
    created_at: datetime

    @field_validator("expires_at", "created_at")
    @classmethod
    def _utc_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    def is_expired(self, now: datetime) -> bool:
        """A session without an expiry never expires by time"""
        return self.expires_at is not None and self.expires_at <= now


class DeviceCodePollResult(BaseModel):
    """Classified token endpoint response for a device-code poll"""
    status: DeviceCodePollStatus
    interval_seconds: Optional[int] = None
