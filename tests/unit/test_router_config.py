"""Tests for notify_router/config.py

RouterConfig is a partial, versioned flags document. Key functionality:
- Missing keys fall back to defaults
- Patches merge recursively and bump the version
- Invalid patches are rejected without writing
- Unknown category sections act as kill switches
- EngineSettings load from YAML with defaults on failure
"""

import pytest

import notify_router
from notify_router.config import (
    RouterConfig,
    clamp,
    deep_merge,
    load_router_config,
    load_settings,
    save_router_config,
)


class TestDeepMerge:
    def test_nested_dicts_merge(self):
        base = {"connect": {"enabled": True, "rateLimitsMs": {"connect_comment": 1}}}
        patch = {"connect": {"rateLimitsMs": {"connect_general": 2}}}

        merged = deep_merge(base, patch)

        assert merged["connect"]["enabled"] is True
        assert merged["connect"]["rateLimitsMs"] == {"connect_comment": 1, "connect_general": 2}

    def test_lists_replace(self):
        merged = deep_merge({"a": [1, 2]}, {"a": [3]})

        assert merged == {"a": [3]}

    def test_base_is_not_mutated(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})

        assert base == {"a": {"b": 1}}


class TestRouterConfig:
    """Tests for defaults and category switches."""

    def test_defaults_enable_everything(self):
        config = RouterConfig()

        assert config.global_enabled is True
        assert config.processing_enabled is True
        assert config.auto_cron_enabled is True
        assert config.category_enabled("admin") is True
        assert config.category_enabled("connect") is True

    def test_document_uses_camel_case(self):
        document = RouterConfig().to_document()

        assert "globalEnabled" in document
        assert "blockedSenders" in document["connect"]
        assert "version" not in document

    def test_known_category_switch(self):
        config = RouterConfig.model_validate({"engagement": {"enabled": False}})

        assert config.category_enabled("engagement") is False

    def test_extra_category_switch(self):
        config = RouterConfig.model_validate({"finance": {"enabled": False}})

        assert config.category_enabled("finance") is False
        assert config.category_enabled("weather") is True

    def test_summary(self):
        summary = RouterConfig(processing_enabled=False).summary()

        assert summary["processingEnabled"] is False
        assert summary["globalEnabled"] is True


class TestPersistedConfig:
    """Tests for load/save against the config table."""

    @pytest.mark.asyncio
    async def test_absent_row_yields_defaults(self, db):
        config = await load_router_config()

        assert config.global_enabled is True
        assert config.version == 0

    @pytest.mark.asyncio
    async def test_patch_merges_and_bumps_version(self, db):
        first = await save_router_config({"processingEnabled": False})
        second = await save_router_config({"connect": {"blockedSenders": ["u9"]}})

        config = await load_router_config()

        assert first["version"] == 1
        assert second["version"] == 2
        assert config.processing_enabled is False
        assert config.connect.blocked_senders == ["u9"]
        assert config.connect.enabled is True
        assert config.version == 2

    @pytest.mark.asyncio
    async def test_invalid_patch_is_rejected(self, db):
        result = await save_router_config({"engagement": {"schedule": {"water": {"hour": 31}}}})

        assert result["success"] is False
        assert (await load_router_config()).version == 0

    @pytest.mark.asyncio
    async def test_non_dict_patch(self, db):
        result = await save_router_config(["globalEnabled"])

        assert result == {"success": False, "error": "Invalid config payload"}

    @pytest.mark.asyncio
    async def test_corrupt_document_falls_back_to_defaults(self, db):
        conn = notify_router.get_connection()
        with conn:
            conn.execute(
                "INSERT INTO notification_config (id, document, version, updated_at) "
                "VALUES ('global', 'not json', 4, '2026-03-04T12:00:00.000+00:00')"
            )
        conn.close()

        config = await load_router_config()

        assert config.global_enabled is True
        assert config.version == 4


class TestEngineSettings:
    def test_loads_shipped_settings(self):
        settings = load_settings()

        assert settings.broadcast.default_batch_size == 300
        assert settings.process.max_limit == 500

    def test_missing_file_uses_defaults(self):
        settings = load_settings("does_not_exist")

        assert settings.store.write_batch_size == 400

    def test_clamp(self):
        assert clamp(0, 1, 10) == 1
        assert clamp(11, 1, 10) == 10
        assert clamp(5, 1, 10) == 5
