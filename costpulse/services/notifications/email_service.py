"""
Email Notification Service

Sends the weekly report through the mail-relay HTTP API (SendGrid v3
`mail/send`). Transient relay failures are retried a small bounded number of
times; anything else fails the send.
"""

import html
from typing import Any, List, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from costpulse.core.exceptions import DeliveryError

logger = structlog.get_logger()

MAX_RECIPIENTS = 50


def escape_html(text: Any) -> str:
    """Escape dynamic content to prevent HTML injection."""
    if text is None:
        return ""
    return html.escape(str(text))


class _TransientDeliveryError(Exception):
    """Relay throttled (429), 5xx, or the connection failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmailService:
    """
    Mail-relay client for the weekly report.

    Args:
        api_key: relay API key.
        from_email: sender address.
        api_url: relay send endpoint.
        max_attempts: total attempts, transient failures only.
        client: optional shared httpx.AsyncClient (tests inject a MockTransport).
        wait: tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        api_key: str,
        from_email: str,
        api_url: str = "https://api.sendgrid.com/v3/mail/send",
        max_attempts: int = 2,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        wait=None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._client = client
        self._wait = wait or wait_exponential(multiplier=1, min=2, max=10)

    def build_payload(self, subject: str, html_body: str, recipients: List[str]) -> dict:
        return {
            "personalizations": [{"to": [{"email": r} for r in recipients]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/html", "value": html_body}],
        }

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> Optional[str]:
        try:
            response = await client.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            raise _TransientDeliveryError(f"Mail relay unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientDeliveryError(
                f"Mail relay returned {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise DeliveryError(
                f"Mail relay rejected the report ({response.status_code}): {response.text[:500]}",
                code="delivery_rejected",
                status_code=response.status_code,
            )
        return response.headers.get("X-Message-Id")

    async def send_report(self, subject: str, html_body: str, recipients: List[str]) -> Optional[str]:
        """
        Send the report to the bounded recipient list.

        Returns:
            The relay's message id, when it provides one.

        Raises:
            DeliveryError: rejected by the relay, or transient failures exhausted the attempts.
        """
        if not recipients:
            raise DeliveryError("No report recipients configured", code="no_recipients")
        if len(recipients) > MAX_RECIPIENTS:
            raise DeliveryError(f"At most {MAX_RECIPIENTS} recipients are allowed", code="too_many_recipients")

        payload = self.build_payload(subject, html_body, recipients)
        client = self._client or httpx.AsyncClient()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self._wait,
                retry=retry_if_exception_type(_TransientDeliveryError),
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.warning("report_email_retry", attempt=number)
                    message_id = await self._post(client, payload)
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error("report_email_failed", attempts=self.max_attempts, error=str(last))
            raise DeliveryError(
                f"Mail relay unavailable after {self.max_attempts} attempts: {last}",
                code="delivery_exhausted",
                status_code=getattr(last, "status_code", None),
            ) from last
        except DeliveryError as e:
            logger.error("report_email_rejected", status_code=e.status_code, error=e.message)
            raise
        finally:
            if self._client is None:
                await client.aclose()

        logger.info("report_email_sent", recipient_count=len(recipients), message_id=message_id)
        return message_id
