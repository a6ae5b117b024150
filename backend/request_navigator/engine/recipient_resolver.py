"""
Recipient Resolver - Decides who gets emailed for a status

Routing is two-level: an admin-configured per-status override in the mail
settings is looked up first; statuses without an override fall back to the
built-in DEFAULT_ROUTING table.
"""
from typing import Dict, Iterable, List, Optional, Tuple

from ..domain.models import MailSettings, RoutingFlags, parse_email_list
from ..domain.enums import RequestStatus, RecipientGroup


# Groups in the order their addresses are listed in a message
GROUP_ORDER: Tuple[RecipientGroup, ...] = (
    RecipientGroup.SALES,
    RecipientGroup.DESIGN,
    RecipientGroup.COSTING,
    RecipientGroup.ADMIN,
)

DEFAULT_ROUTING: Dict[RequestStatus, Tuple[RecipientGroup, ...]] = {
    RequestStatus.SUBMITTED: (RecipientGroup.DESIGN, RecipientGroup.ADMIN),
    RequestStatus.UNDER_REVIEW: (RecipientGroup.DESIGN, RecipientGroup.ADMIN),
    RequestStatus.CLARIFICATION_NEEDED: (RecipientGroup.SALES, RecipientGroup.ADMIN),
    RequestStatus.FEASIBILITY_CONFIRMED: (RecipientGroup.COSTING, RecipientGroup.SALES, RecipientGroup.ADMIN),
    RequestStatus.DESIGN_RESULT: (RecipientGroup.COSTING, RecipientGroup.SALES, RecipientGroup.ADMIN),
    RequestStatus.IN_COSTING: (RecipientGroup.COSTING, RecipientGroup.ADMIN),
    RequestStatus.COSTING_COMPLETE: (RecipientGroup.SALES, RecipientGroup.ADMIN),
    RequestStatus.SALES_FOLLOWUP: (RecipientGroup.SALES, RecipientGroup.ADMIN),
    RequestStatus.GM_APPROVAL_PENDING: (RecipientGroup.SALES, RecipientGroup.ADMIN),
    RequestStatus.GM_APPROVED: (RecipientGroup.SALES, RecipientGroup.ADMIN),
    RequestStatus.GM_REJECTED: (RecipientGroup.SALES, RecipientGroup.ADMIN),
    RequestStatus.CLOSED: (RecipientGroup.SALES,),
}

# Statuses missing from DEFAULT_ROUTING (draft, edited, cancelled)
FALLBACK_ROUTING: Tuple[RecipientGroup, ...] = (RecipientGroup.ADMIN,)


def _flagged_groups(flags: RoutingFlags) -> Tuple[RecipientGroup, ...]:
    return tuple(group for group in GROUP_ORDER if getattr(flags, group.value))


def _dedupe(emails: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for email in emails:
        key = email.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(email)
    return result


class RecipientResolver:
    """Resolves notification recipients from mail settings and a status"""

    def routing_for_status(
        self,
        mail_settings: MailSettings,
        status: RequestStatus
    ) -> Tuple[RecipientGroup, ...]:
        """Groups routed for a status: override if configured, else the default table"""
        override: Optional[RoutingFlags] = None
        if mail_settings.flow_map:
            override = mail_settings.flow_map.get(status)
        if override is not None:
            return _flagged_groups(override)
        return DEFAULT_ROUTING.get(status, FALLBACK_ROUTING)

    def group_recipients(self, mail_settings: MailSettings, group: RecipientGroup) -> List[str]:
        """Addresses configured for one group"""
        return parse_email_list(getattr(mail_settings, f"recipients_{group.value}"))

    def test_recipients(self, mail_settings: MailSettings) -> List[str]:
        """Test-mode recipient, or the sender mailbox when none is set"""
        return parse_email_list(mail_settings.test_email or mail_settings.sender_upn)

    def resolve(
        self,
        mail_settings: MailSettings,
        status: RequestStatus,
        exclude_groups: Iterable[RecipientGroup] = ()
    ) -> List[str]:
        """
        Resolve recipients for a status.

        Test mode wins over everything: only the test recipient is returned.
        When groups are excluded and nothing else is routed, test mode also
        yields no one, so an excluded-only status never reaches the test
        inbox twice.

        Args:
            mail_settings: Current mail integration settings
            status: Status the request moved to
            exclude_groups: Groups served through another channel (admin digest)

        Returns:
            Deduplicated addresses (case-insensitive), in routing order
        """
        excluded = set(exclude_groups)
        groups = [g for g in self.routing_for_status(mail_settings, status) if g not in excluded]

        if mail_settings.test_mode:
            if excluded and not groups:
                return []
            return self.test_recipients(mail_settings)

        recipients: List[str] = []
        for group in groups:
            recipients.extend(self.group_recipients(mail_settings, group))
        return _dedupe(recipients)

    def routes_to(
        self,
        mail_settings: MailSettings,
        status: RequestStatus,
        group: RecipientGroup
    ) -> bool:
        """Whether a status is routed to a group"""
        return group in self.routing_for_status(mail_settings, status)

    def admin_digest_recipients(self, mail_settings: MailSettings) -> List[str]:
        """Addresses the admin digest goes to (test recipient in test mode)"""
        if mail_settings.test_mode:
            return self.test_recipients(mail_settings)
        return self.group_recipients(mail_settings, RecipientGroup.ADMIN)
