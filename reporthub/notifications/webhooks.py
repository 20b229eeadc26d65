"""Failure notifications delivered to configured webhooks.

When a run finishes with failures, a ``run_failed`` event is POSTed as JSON
to every URL in ``WEBHOOK_URLS``. With ``WEBHOOK_SECRET`` set, the body is
signed with HMAC-SHA256 and the hex digest is sent in
``X-Webhook-Signature`` so receivers can verify the sender.

Delivery:
    - 10 second timeout per request
    - Transport errors and 5xx responses retried with exponential backoff
      (tenacity, 3 attempts); 4xx responses are not retried
    - Each URL is independent: one failing endpoint does not block others
"""

import hashlib
import hmac
import json
from typing import Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..models.report_models import RunFailureSummary

logger = structlog.get_logger()

USER_AGENT = "ReportHub-Webhook/1.0"


class WebhookDeliveryError(Exception):
    pass


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    """Deliver run events to a fixed list of webhook URLs."""

    def __init__(
        self,
        urls: list[str],
        secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.urls = urls
        self.secret = secret
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def _deliver(self, url: str, body: bytes, headers: dict[str, str]) -> int:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type((httpx.TransportError, WebhookDeliveryError)),
            reraise=True,
        ):
            with attempt:
                response = await self.client.post(url, content=body, headers=headers)
                if response.status_code >= 500:
                    raise WebhookDeliveryError(f"HTTP {response.status_code}")
                response.raise_for_status()
                return response.status_code
        return 0

    async def notify_run_failure(
        self,
        summary: RunFailureSummary,
        project_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> int:
        """Send a ``run_failed`` event to every configured URL.

        Args:
            summary: Failure summary for the stored run
            project_id: Project the run belongs to
            organization_id: Organization owning the project

        Returns:
            Number of successful deliveries
        """
        if not self.urls:
            logger.debug("No webhooks configured, skipping run failure notification")
            return 0

        payload = {
            "event": "run_failed",
            "projectId": project_id,
            "organizationId": organization_id,
            "data": summary.model_dump(),
        }
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self.secret:
            headers["X-Webhook-Signature"] = sign_payload(body, self.secret)

        delivered = 0
        for url in self.urls:
            try:
                status = await self._deliver(url, body, headers)
                delivered += 1
                logger.info("Webhook delivered", url=url, status=status)
            except (httpx.HTTPError, WebhookDeliveryError) as e:
                logger.error("Webhook delivery failed", url=url, error=str(e))
        return delivered

    async def close(self) -> None:
        await self.client.aclose()
