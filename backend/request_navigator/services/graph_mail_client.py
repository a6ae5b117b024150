"""Graph Mail Client - sendMail on behalf of the shared mailbox"""
from typing import Callable, List, Optional
import httpx

from ..domain.errors import TransientDeliveryError
from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


def default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.http_timeout_seconds)


class GraphMailClient:
    """
    Thin wrapper over Microsoft Graph `POST /me/sendMail`.

    The access token is passed in per call; token lifecycle belongs to the
    token manager. Any failure raises TransientDeliveryError so the caller
    can apply its retry policy.
    """

    def __init__(
        self,
        graph_base_url: Optional[str] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None
    ):
        self.graph_base_url = (graph_base_url or settings.graph_base_url).rstrip("/")
        self._client_factory = client_factory or default_client_factory

    async def send_mail(
        self,
        access_token: str,
        recipients: List[str],
        subject: str,
        body_html: str
    ) -> None:
        """
        Send one HTML email.

        Raises:
            TransientDeliveryError: network error, timeout or non-2xx response
        """
        message = {
            "message": {
                "subject": subject,
                "body": {
                    "contentType": "HTML",
                    "content": body_html
                },
                "toRecipients": [
                    {"emailAddress": {"address": email}}
                    for email in recipients
                ]
            },
            "saveToSentItems": True
        }

        try:
            async with self._client_factory() as client:
                response = await client.post(
                    f"{self.graph_base_url}/me/sendMail",
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json"
                    },
                    json=message
                )
        except httpx.HTTPError as e:
            raise TransientDeliveryError(
                f"Graph API request failed: {type(e).__name__}: {e}",
                details={"error_type": type(e).__name__}
            )

        if not response.is_success:
            raise TransientDeliveryError(
                f"Graph API error: {response.status_code}",
                details={"status_code": response.status_code, "response": response.text[:500]}
            )

        logger.debug(
            "Graph sendMail accepted",
            extra={"recipients_count": len(recipients)}
        )
