"""
Transactional email delivery

Sends templated email through an HTTP email API (Resend compatible).
Delivery is best effort: send_email never raises.
"""

from typing import Any, Dict, Optional
import logging

import httpx

from services.email_templates import EMAIL_TEMPLATES
from utils.exceptions import NotificationError

logger = logging.getLogger(__name__)


class EmailNotifier:
    """Templated email sender"""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        from_address: str,
        from_name: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout
        self.transport = transport

    def render(self, template: str, data: Dict[str, Any]) -> Dict[str, str]:
        """
        Render a template's html and text bodies

        Raises:
            NotificationError: Unknown template or missing template variable
        """
        bodies = EMAIL_TEMPLATES.get(template)
        if bodies is None:
            raise NotificationError(template, "template not found")
        try:
            return {
                "html": bodies["html"].format_map(data),
                "text": bodies["text"].format_map(data),
            }
        except KeyError as e:
            raise NotificationError(template, f"missing template variable {e}")

    async def send_email(
        self, to: str, subject: str, template: str, data: Dict[str, Any]
    ) -> bool:
        """
        Send a templated email

        Args:
            to: Recipient address
            subject: Subject line
            template: Template name
            data: Template variables

        Returns:
            True if the email API accepted the message
        """
        try:
            await self._send(to, subject, template, data)
            return True
        except NotificationError as e:
            logger.error(e.message, extra={"template": template})
        except Exception as e:
            logger.error(
                NotificationError(template, str(e)).message,
                exc_info=True,
                extra={"template": template},
            )
        return False

    async def _send(self, to: str, subject: str, template: str, data: Dict[str, Any]):
        if not self.api_key:
            raise NotificationError(template, "email API key is not configured")

        # Render before any network call
        rendered = self.render(template, data)

        # Send via email API
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            response = await client.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "from": f"{self.from_name} <{self.from_address}>",
                    "to": [to],
                    "subject": subject,
                    "html": rendered["html"],
                    "text": rendered["text"],
                    "tags": [{"name": "category", "value": template}],
                },
            )

        if response.status_code >= 400:
            raise NotificationError(
                template, f"email API returned {response.status_code}"
            )

        # Resend returns the message id as JSON
        message_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            message_id = response.json().get("id")
        logger.info(f"Email sent: {template} (message {message_id})")
