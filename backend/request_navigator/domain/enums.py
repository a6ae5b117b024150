"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class RequestStatus(str, Enum):
    """Workflow status of a CRA request"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    EDITED = "edited"
    DESIGN_RESULT = "design_result"
    UNDER_REVIEW = "under_review"
    CLARIFICATION_NEEDED = "clarification_needed"
    FEASIBILITY_CONFIRMED = "feasibility_confirmed"
    IN_COSTING = "in_costing"
    COSTING_COMPLETE = "costing_complete"
    SALES_FOLLOWUP = "sales_followup"
    GM_APPROVAL_PENDING = "gm_approval_pending"
    GM_APPROVED = "gm_approved"
    GM_REJECTED = "gm_rejected"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class RecipientGroup(str, Enum):
    """Mailing groups configured in the mail integration settings"""
    SALES = "sales"
    DESIGN = "design"
    COSTING = "costing"
    ADMIN = "admin"


class NotificationEventType(str, Enum):
    """Events that produce notification emails"""
    REQUEST_CREATED = "request_created"
    REQUEST_STATUS_CHANGED = "request_status_changed"


class OutboxStatus(str, Enum):
    """Delivery status of an outbox or digest queue entry"""
    PENDING = "pending"
    SENDING = "sending"  # Claimed by a dispatcher run
    SENT = "sent"
    FAILED = "failed"  # Attempt budget exhausted, needs manual attention


class DeviceCodeSessionStatus(str, Enum):
    """Lifecycle of a device-code authorization attempt"""
    PENDING = "pending"
    REDEEMING = "redeeming"  # A poll call is exchanging the code right now
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


class DeviceCodePollStatus(str, Enum):
    """Outcome of polling the token endpoint with a device code"""
    CONNECTED = "connected"
    PENDING = "pending"
    SLOW_DOWN = "slow_down"
    EXPIRED = "expired"


class EnqueueSkipReason(str, Enum):
    """Why the notification producer did not write an outbox row"""
    DISABLED = "disabled"
    NOT_CONNECTED = "not_connected"
    NO_RECIPIENTS = "no_recipients"
    DUPLICATE = "duplicate"
