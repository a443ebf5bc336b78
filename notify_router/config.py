"""
Tool: Router Configuration
Purpose: Persisted kill switches (RouterConfig) and static engine settings

Two layers:
    RouterConfig    Versioned flags document stored in `notification_config`.
                    Read at every scheduling/processing entry point, written
                    by privileged callers as partial patches. Missing keys
                    fall back to defaults, so a partial document never breaks
                    a run.
    EngineSettings  Static limits read from args/notifications.yaml.

Usage:
    from notify_router.config import load_router_config, save_router_config
    config = await load_router_config()
    await save_router_config({"processingEnabled": False})
"""

from __future__ import annotations

import copy
import json
import logging
from datetime import datetime
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from notify_router import CONFIG_PATH, get_connection
from notify_router.models import RepeatMode, to_iso, utc_now

logger = logging.getLogger(__name__)

CONFIG_DOC_ID = "global"

ENGAGEMENT_FEATURES = ("water", "daily_checkin", "mood", "meal_tracking", "journal", "gratitude")


class _FlagsModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)


# =============================================================================
# RouterConfig (notification_config row)
# =============================================================================

class LocalTime(_FlagsModel):
    hour: int = Field(default=8, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)


class MessageTemplate(_FlagsModel):
    title: str = ""
    body: str = ""


class RecurringRule(_FlagsModel):
    repeat: RepeatMode = RepeatMode.DAILY
    interval_days: Optional[int] = Field(default=None, ge=1)
    days_of_week: list[int] = Field(default_factory=list)
    occurrences: Optional[int] = Field(default=None, ge=1)


class ConnectConfig(_FlagsModel):
    enabled: bool = True
    # ms cooldown per (sender, recipient, type)
    rate_limits_ms: dict[str, int] = Field(
        default_factory=lambda: {
            "connect_comment": 60_000,
            "connect_general": 5 * 60_000,
            "connect_friend_request": 10 * 60_000,
        }
    )
    blocked_senders: list[str] = Field(default_factory=list)


class EngagementTemplates(_FlagsModel):
    intro: dict[str, MessageTemplate] = Field(
        default_factory=lambda: {
            "water": MessageTemplate(
                title="Stay Hydrated 💧",
                body="Track your water intake! Start with a glass of water and build a healthy habit.",
            ),
            "daily_checkin": MessageTemplate(
                title="Daily Wellness Check 🏥",
                body="Quick daily check-in! Track your sleep, energy, and overall wellbeing.",
            ),
            "mood": MessageTemplate(
                title="How Are You Feeling? 🌈",
                body="Track your mood throughout the day. It helps you understand your emotional patterns!",
            ),
            "meal_tracking": MessageTemplate(
                title="Track Your Meals 🍎",
                body="Good nutrition is key to wellness. Start logging your meals to build healthy eating habits!",
            ),
            "journal": MessageTemplate(
                title="Start Journaling ✍️",
                body="Writing helps you process your thoughts and emotions. Try your first journal entry!",
            ),
            "gratitude": MessageTemplate(
                title="Practice Gratitude 🙏",
                body="What are you grateful for today? Gratitude practice boosts happiness and wellbeing!",
            ),
        }
    )
    recurring: dict[str, MessageTemplate] = Field(
        default_factory=lambda: {
            "water": MessageTemplate(
                title="Stay Hydrated 💧", body="Don't forget to track your water intake today!"
            ),
            "daily_checkin": MessageTemplate(
                title="Daily Wellness Check 🏥",
                body="How are you feeling today? Take a moment for your daily check-in!",
            ),
            "mood": MessageTemplate(
                title="How Are You Feeling? 🌈",
                body="Track your mood to understand your emotional patterns better!",
            ),
            "meal_tracking": MessageTemplate(
                title="Track Your Meals 🍎", body="Log your meals to build healthy eating habits!"
            ),
            "journal": MessageTemplate(
                title="Journal Time ✍️",
                body="Reflect on your day and process your thoughts through journaling!",
            ),
            "gratitude": MessageTemplate(
                title="Gratitude Moment 🙏",
                body="What are you grateful for today? Practice gratitude for better wellbeing!",
            ),
        }
    )


class EngagementConfig(_FlagsModel):
    enabled: bool = True
    first_time_enabled: bool = True
    recurring_enabled: bool = True
    # Local-clock schedule for both intros and recurring reminders
    schedule: dict[str, LocalTime] = Field(
        default_factory=lambda: {
            "water": LocalTime(hour=8, minute=0),
            "daily_checkin": LocalTime(hour=9, minute=0),
            "mood": LocalTime(hour=10, minute=0),
            "meal_tracking": LocalTime(hour=12, minute=0),
            "journal": LocalTime(hour=20, minute=0),
            "gratitude": LocalTime(hour=21, minute=0),
        }
    )
    templates: EngagementTemplates = Field(default_factory=EngagementTemplates)
    recurring_rules: dict[str, RecurringRule] = Field(
        default_factory=lambda: {key: RecurringRule() for key in ENGAGEMENT_FEATURES}
    )


class RouterConfig(_FlagsModel):
    global_enabled: bool = True
    processing_enabled: bool = True
    # False turns the periodic trigger into a no-op; manual runs still work
    auto_cron_enabled: bool = True
    connect: ConnectConfig = Field(default_factory=ConnectConfig)
    engagement: EngagementConfig = Field(default_factory=EngagementConfig)

    # Populated from the stored row, never part of the document itself
    version: int = Field(default=0, exclude=True)
    updated_at: Optional[datetime] = Field(default=None, exclude=True)

    def category_enabled(self, category: str | None) -> bool:
        """
        Per-category kill switch.

        Categories without a configuration section are always enabled.
        Extra sections added through a patch (e.g. {"finance": {"enabled":
        false}}) are honoured as well.
        """
        if not category:
            return True
        section: Any = None
        if category in type(self).model_fields and category not in ("version", "updated_at"):
            section = getattr(self, category)
        elif self.model_extra:
            section = self.model_extra.get(category)
        if isinstance(section, BaseModel):
            return bool(getattr(section, "enabled", True))
        if isinstance(section, dict):
            return bool(section.get("enabled", True))
        return True

    def to_document(self) -> dict[str, Any]:
        """Serialize with the persisted (camelCase) key names."""
        return self.model_dump(mode="json", by_alias=True)

    def summary(self) -> dict[str, bool]:
        return {
            "globalEnabled": self.global_enabled,
            "processingEnabled": self.processing_enabled,
            "autoCronEnabled": self.auto_cron_enabled,
            "connectEnabled": self.connect.enabled,
            "engagementEnabled": self.engagement.enabled,
            "firstTimeEnabled": self.engagement.first_time_enabled,
            "recurringEnabled": self.engagement.recurring_enabled,
        }


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge `patch` over `base`; nested dicts merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _default_document() -> dict[str, Any]:
    return RouterConfig().to_document()


async def load_router_config() -> RouterConfig:
    """
    Load the persisted RouterConfig merged over defaults.

    An absent row yields the defaults. A stored document that no longer
    validates is logged and replaced by the defaults rather than failing the
    caller. Database errors propagate.
    """
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT document, version, updated_at FROM notification_config WHERE id = ?",
            (CONFIG_DOC_ID,),
        ).fetchone()
    finally:
        conn.close()

    if not row:
        return RouterConfig()

    try:
        stored = json.loads(row["document"]) or {}
        config = RouterConfig.model_validate(deep_merge(_default_document(), stored))
    except (ValueError, AttributeError, ValidationError) as e:
        logger.warning(f"Stored notification config is invalid: {e}, using defaults")
        config = RouterConfig()

    config.version = row["version"]
    config.updated_at = datetime.fromisoformat(row["updated_at"])
    return config


async def save_router_config(patch: dict[str, Any]) -> dict[str, Any]:
    """
    Merge a partial patch into the stored RouterConfig.

    Args:
        patch: Partial document using the persisted key names

    Returns:
        {"success": True, "config": dict, "version": int}
        or {"success": False, "error": str} when the merged document is invalid
    """
    if not isinstance(patch, dict):
        return {"success": False, "error": "Invalid config payload"}

    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT document, version FROM notification_config WHERE id = ?",
            (CONFIG_DOC_ID,),
        ).fetchone()
        stored = json.loads(row["document"]) if row else {}
        merged_stored = deep_merge(stored, patch)

        try:
            config = RouterConfig.model_validate(deep_merge(_default_document(), merged_stored))
        except ValidationError as e:
            return {"success": False, "error": str(e)}

        version = (row["version"] if row else 0) + 1
        conn.execute(
            """
            INSERT INTO notification_config (id, document, version, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                document = excluded.document,
                version = excluded.version,
                updated_at = excluded.updated_at
            """,
            (CONFIG_DOC_ID, json.dumps(merged_stored), version, to_iso(utc_now())),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info(f"Notification config saved (version {version})")
    return {"success": True, "config": config.to_document(), "version": version}


# =============================================================================
# EngineSettings (args/notifications.yaml)
# =============================================================================

class ProcessSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    default_limit: int = Field(default=100, ge=1)
    max_limit: int = Field(default=500, ge=1)
    claim_timeout_seconds: int = Field(default=300, ge=1)


class BroadcastSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    min_batch_size: int = Field(default=50, ge=1)
    max_batch_size: int = Field(default=500, ge=1)
    default_batch_size: int = Field(default=300, ge=1)
    max_per_run: int = Field(default=5, ge=1)
    purge_limit: int = Field(default=400, ge=1)


class DedupeSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    default_window_ms: int = Field(default=2 * 60_000, ge=0)
    intro_window_ms: int = Field(default=10 * 365 * 24 * 60 * 60_000, ge=0)


class StoreSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    write_batch_size: int = Field(default=400, ge=1, le=500)


class EngagementSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    scan_limit: int = Field(default=200, ge=1)
    welcome_delay_seconds: int = Field(default=120, ge=0)


class TransportSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    provider: str = Field(default="expo")
    timeout_seconds: float = Field(default=10.0, gt=0)
    access_token_env: str = Field(default="EXPO_ACCESS_TOKEN")


class EngineSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    process: ProcessSettings = Field(default_factory=ProcessSettings)
    broadcast: BroadcastSettings = Field(default_factory=BroadcastSettings)
    dedupe: DedupeSettings = Field(default_factory=DedupeSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    engagement: EngagementSettings = Field(default_factory=EngagementSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)


def load_settings(config_name: str = "notifications") -> EngineSettings:
    yaml_path = CONFIG_PATH / f"{config_name}.yaml"

    try:
        if yaml_path.exists():
            with open(yaml_path) as f:
                raw = yaml.safe_load(f) or {}
        else:
            raw = {}

        return EngineSettings.model_validate(raw)
    except Exception as e:
        logger.warning(f"Settings validation failed for {config_name}: {e}, using defaults")
        return EngineSettings()


def clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)
