"""Shared test fixtures for Notify Router tests.

This module provides common fixtures used across all test modules:
- Database isolation with temporary files
- A fixed reference instant
- Engine settings with small broadcast pages
- A recording push transport

Usage:
    @pytest.mark.asyncio
    async def test_something(db, add_recipient, transport, now):
        await add_recipient("u1")
        ...
"""

import asyncio
import os
import tempfile
from collections.abc import Generator
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from notify_router.config import BroadcastSettings, EngineSettings, RouterConfig
from notify_router.delivery.transport import PushTransport
from notify_router.models import DeliveryResult


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_db() -> Generator[Path, None, None]:
    """Create a temporary database file for testing.

    The database file is automatically deleted after the test completes.

    Yields:
        Path to the temporary database file
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup
    if db_path.exists():
        os.unlink(db_path)


@pytest.fixture
def db(temp_db: Path) -> Generator[Path, None, None]:
    """Point every store at the temporary database and create the tables."""
    with patch("notify_router.DB_PATH", temp_db):
        import notify_router

        conn = notify_router.get_connection()
        conn.close()

        yield temp_db


# ─────────────────────────────────────────────────────────────────────────────
# Time and Configuration Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def now() -> datetime:
    """Wednesday 2026-03-04 12:00 UTC."""
    return datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> EngineSettings:
    """Engine settings that allow tiny broadcast pages."""
    return EngineSettings(
        broadcast=BroadcastSettings(min_batch_size=1, default_batch_size=300),
    )


@pytest.fixture
def config() -> RouterConfig:
    """Default (everything enabled) router config."""
    return RouterConfig()


# ─────────────────────────────────────────────────────────────────────────────
# Recipient Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def add_recipient(db):
    """Async helper registering a recipient in the temporary directory."""
    from notify_router.recipients import register_recipient

    async def _add(
        recipient_id: str,
        token: str | None = "ExponentPushToken[default]",
        tz_offset_minutes: int | None = 0,
        signed_up_at: datetime | None = None,
    ) -> str:
        await register_recipient(
            recipient_id,
            delivery_token=token,
            tz_offset_minutes=tz_offset_minutes,
            signed_up_at=signed_up_at,
        )
        return recipient_id

    return _add


# ─────────────────────────────────────────────────────────────────────────────
# Transport Fixtures
# ─────────────────────────────────────────────────────────────────────────────


class FakeTransport(PushTransport):
    """Records every send; per-token results can be scripted."""

    name = "fake"

    def __init__(self, results: dict[str, DeliveryResult] | None = None):
        self.results = results or {}
        self.sent: list[dict] = []

    async def send(self, token, title, body, data):
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
        # Yield to the loop like a real network call would
        await asyncio.sleep(0)
        if token in self.results:
            return self.results[token]
        return DeliveryResult(success=True, delivery_id=f"fake-{len(self.sent)}")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
