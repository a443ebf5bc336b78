"""
Tool: Push Transport Interface
Purpose: Contract between the delivery processor and a push provider

Usage:
    from notify_router.delivery.transport import PushTransport, get_transport

    transport = get_transport()
    result = await transport.send(token, title, body, data)

A transport never raises for a delivery problem: every outcome comes back as
a DeliveryResult. `should_unsubscribe` marks an invalid or unregistered
token, which the processor evicts from the recipient.
"""

import os
from abc import ABC, abstractmethod

from notify_router.config import EngineSettings, load_settings
from notify_router.models import DeliveryResult

# Provider error codes that mean the token will never work again
INVALID_TOKEN_CODES = {
    "DeviceNotRegistered",
    "messaging/invalid-registration-token",
    "messaging/registration-token-not-registered",
}


class PushTransport(ABC):
    """Sends one message to one device token."""

    name: str = "abstract"

    @abstractmethod
    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> DeliveryResult:
        """
        Deliver one message.

        Args:
            token: Recipient's delivery token
            title: Notification title
            body: Notification body
            data: Flat string map delivered alongside the notification

        Returns:
            DeliveryResult with `delivery_id` on success
        """

    async def close(self) -> None:
        """Release provider resources (sessions, connections)."""


def get_transport(settings: EngineSettings | None = None) -> PushTransport:
    """Build the configured transport."""
    settings = settings or load_settings()
    provider = settings.transport.provider

    if provider == "expo":
        from notify_router.delivery.expo import ExpoPushTransport

        return ExpoPushTransport(
            access_token=os.environ.get(settings.transport.access_token_env),
            timeout_seconds=settings.transport.timeout_seconds,
        )

    raise ValueError(f"Unknown push transport provider: {provider}")
