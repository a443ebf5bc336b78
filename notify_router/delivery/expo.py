"""
Tool: Expo Push Transport
Purpose: Deliver notifications through the Expo Push Service

Expo fans out to FCM/APNs itself, so one HTTP call per message is enough.

Usage:
    from notify_router.delivery.expo import ExpoPushTransport

    transport = ExpoPushTransport(access_token=os.environ.get("EXPO_ACCESS_TOKEN"))
    result = await transport.send("ExponentPushToken[xxx]", "Hi", "Body", {})
    await transport.close()
"""

import asyncio
from typing import Any

import aiohttp

from notify_router.delivery.transport import INVALID_TOKEN_CODES, PushTransport
from notify_router.logging_config import get_logger
from notify_router.models import DeliveryResult, ErrorCode

logger = get_logger(__name__)

# Expo Push API endpoint
EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"

DEFAULT_RETRY_AFTER_MS = 60_000


def _retry_after_ms(headers: Any) -> int:
    """Retry-After header (seconds) in milliseconds, with a default."""
    raw = headers.get("Retry-After") if headers else None
    try:
        return max(0, int(float(raw) * 1000))
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_MS


class ExpoPushTransport(PushTransport):
    """PushTransport backed by Expo's HTTP push API."""

    name = "expo"

    def __init__(
        self,
        access_token: str | None = None,
        timeout_seconds: float = 10.0,
        url: str = EXPO_PUSH_URL,
    ):
        self.access_token = access_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.url = url
        self._session: aiohttp.ClientSession | None = None

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> DeliveryResult:
        message = {
            "to": token,
            "title": title,
            "body": body,
            "data": data,
            "sound": "default",
            "priority": "high",
        }

        try:
            session = await self._get_session()
            async with session.post(self.url, json=message, headers=self._headers()) as response:
                if response.status == 429:
                    return DeliveryResult(
                        success=False,
                        error="Expo API rate limited",
                        error_code="rate_limited",
                        retry_after_ms=_retry_after_ms(response.headers),
                    )

                if response.status != 200:
                    text = await response.text()
                    return DeliveryResult(
                        success=False,
                        error=f"Expo API error: {response.status} {text[:200]}",
                        error_code=ErrorCode.TRANSPORT_ERROR.value,
                        retry_after_ms=(
                            _retry_after_ms(response.headers) if response.status >= 500 else None
                        ),
                    )

                result = await response.json()

        except aiohttp.ClientError as e:
            logger.warning("expo_push_network_error", error=str(e))
            return DeliveryResult(
                success=False,
                error=f"Network error: {str(e)}",
                error_code=ErrorCode.TRANSPORT_ERROR.value,
                retry_after_ms=DEFAULT_RETRY_AFTER_MS,
            )
        except asyncio.TimeoutError:
            return DeliveryResult(
                success=False,
                error="Expo API timeout",
                error_code=ErrorCode.TRANSPORT_ERROR.value,
                retry_after_ms=DEFAULT_RETRY_AFTER_MS,
            )

        return self._parse_ticket(result)

    @staticmethod
    def _parse_ticket(result: Any) -> DeliveryResult:
        """Turn an Expo push ticket response into a DeliveryResult."""
        ticket = result.get("data") if isinstance(result, dict) else None
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else None

        if not isinstance(ticket, dict):
            return DeliveryResult(
                success=False,
                error="Unexpected response format",
                error_code=ErrorCode.TRANSPORT_ERROR.value,
            )

        if ticket.get("status") == "ok":
            return DeliveryResult(success=True, delivery_id=ticket.get("id"))

        error_type = (ticket.get("details") or {}).get("error", "")
        if error_type in INVALID_TOKEN_CODES:
            return DeliveryResult(
                success=False,
                error=ticket.get("message", "Device not registered"),
                error_code=error_type,
                should_unsubscribe=True,
            )

        return DeliveryResult(
            success=False,
            error=ticket.get("message", "Unknown error"),
            error_code=error_type or ErrorCode.TRANSPORT_ERROR.value,
            retry_after_ms=DEFAULT_RETRY_AFTER_MS if error_type == "MessageRateExceeded" else None,
        )
