"""Outbound message sending for email nodes."""

from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from core.config import Settings
from core.logging import get_logger
from .exceptions import ConfigurationError, MessageSendError

logger = get_logger(__name__)


@runtime_checkable
class MessageSender(Protocol):
    """Send one templated message to one contact.

    Implementations return a provider message id and raise MessageSendError for
    transient failures or ConfigurationError for problems a retry cannot fix.
    The idempotency key is stable for a (run, node) pair so repeated attempts
    can be collapsed by the provider.
    """

    async def send(self, workspace_id: str, template_id: str, email: str,
                   context: Dict[str, Any], *, idempotency_key: str) -> str:
        ...


class HttpMessageSender:
    """MessageSender that posts to the delivery service's HTTP API."""

    # 4xx statuses that mean "fix the config", everything else 4xx/5xx is retried
    PERMANENT_STATUSES = frozenset([400, 401, 403, 404, 422])

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.settings.message_sender_api_key:
                headers["Authorization"] = f"Bearer {self.settings.message_sender_api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.settings.message_sender_url or "",
                headers=headers,
                timeout=self.settings.email_send_timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, workspace_id: str, template_id: str, email: str,
                   context: Dict[str, Any], *, idempotency_key: str) -> str:
        if not self.settings.message_sender_url and self._owns_client:
            raise ConfigurationError("message_sender_url is not configured")

        payload = {
            "workspace_id": workspace_id,
            "template_id": template_id,
            "email": email,
            "data": context,
        }
        try:
            response = await self._get_client().post(
                "/messages",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as e:
            raise MessageSendError(f"Message send failed: {e}") from e

        if response.status_code in self.PERMANENT_STATUSES:
            raise ConfigurationError(
                f"Message rejected ({response.status_code}) for template {template_id}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise MessageSendError(f"Message send failed with status {response.status_code}")

        message_id = response.json().get("message_id")
        if not message_id:
            raise MessageSendError("Message service returned no message_id")

        logger.debug("Message sent", template_id=template_id, message_id=message_id)
        return message_id
