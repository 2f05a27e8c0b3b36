"""Tests for config parsing and the application wiring built from it."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from chatsync import config as config_module
from chatsync.agents.triggers import normalized_matcher
from chatsync.app import Application
from chatsync.config import (
    AppConfig,
    StorageConfig,
    _parse_config,
    get_config,
    resolve_secret,
)
from chatsync.constants import DEFAULT_CONTEXT_WINDOW, DEFAULT_TRIGGERS
from chatsync.providers.llm import LlmApiProvider
from conftest import FakePlatform, make_event

RAW = {
    "agent": {
        "default": {"provider": "groq", "model": "groq/llama3-8b", "max_tokens": 120},
        "completion_timeout": 12,
    },
    "providers": {
        "groq": {
            "name": "Groq",
            "api_key": "GROQ_API_KEY",
            "api_base": "https://api.groq.test/openai/v1",
            "enabled": True,
            "adapters": "llmapi",
        }
    },
    "channels": {
        "telegram": {
            "type": "telegram",
            "enabled": True,
            "env_token": "TELEGRAM_BOT_TOKEN",
            "replay_window": 50,
        }
    },
    "auto_reply": {"triggers": ["hey bot"], "matcher": "normalized"},
    "reconcile": {"fetch_window": 20, "on_startup": False},
    "logging": {"level": "debug"},
}


class TestResolveSecret:
    def test_env_reference(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-123")
        assert resolve_secret("GROQ_API_KEY") == "gsk-123"

    def test_missing_env_reference(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        assert resolve_secret("NOT_SET_ANYWHERE") is None

    def test_literal_value(self):
        assert resolve_secret("sk-literal") == "sk-literal"


class TestParseConfig:
    def test_sections(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-123")
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "tg-token")

        cfg = _parse_config(RAW)

        assert cfg.agent.defaults.model == "groq/llama3-8b"
        assert cfg.agent.defaults.max_tokens == 120
        assert cfg.agent.completion_timeout == 12
        assert cfg.get_provider("groq").api_key == "gsk-123"
        assert cfg.get_provider("groq").adapters == "llmapi"
        channel = cfg.get_channel("telegram")
        assert channel.token == "tg-token"
        assert channel.extra == {"replay_window": 50}
        assert cfg.auto_reply.triggers == ("hey bot",)
        assert cfg.auto_reply.window_size == DEFAULT_CONTEXT_WINDOW
        assert cfg.reconcile.on_startup is False
        assert cfg.logging.level == "debug"

    def test_enabled_providers(self):
        raw = dict(RAW, providers={**RAW["providers"], "openai": {"api_key": "sk-x"}})

        cfg = _parse_config(raw)

        assert sorted(cfg.get_enabled_providers()) == ["groq"]

    def test_defaults_for_missing_sections(self):
        cfg = _parse_config({})

        assert cfg.providers == {}
        assert cfg.get_enabled_channels() == {}
        assert cfg.auto_reply.enabled is True
        assert cfg.auto_reply.triggers == tuple(DEFAULT_TRIGGERS)
        assert cfg.auto_reply.matcher == "substring"

    def test_get_config_reads_override_path(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"reconcile": {"fetch_window": 7}}), encoding="utf-8")
        monkeypatch.setenv("CHATSYNC_CONFIG", str(path))
        monkeypatch.setattr(config_module, "_config", None)

        cfg = get_config(reload=True)

        assert cfg.reconcile.fetch_window == 7
        assert get_config() is cfg


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def app_config(tmp_path, monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk-123")
    cfg = _parse_config(RAW)
    return AppConfig(
        agent=cfg.agent,
        providers=cfg.providers,
        channels=cfg.channels,
        storage=StorageConfig(
            database_path=str(tmp_path / "db" / "chatsync.db"),
            media_dir=str(tmp_path / "media"),
        ),
        auto_reply=cfg.auto_reply,
        reconcile=cfg.reconcile,
        logging=cfg.logging,
    )


class TestApplication:
    def test_components_follow_config(self, app_config):
        app = Application(config=app_config, platform=FakePlatform(), llm=AsyncMock())

        assert app.gateway.path.exists()
        assert app.realtime.auto_reply.triggers == ("hey bot",)
        assert app.realtime.auto_reply.matcher is normalized_matcher
        assert app.orchestrator.llm is not None

    def test_builds_provider_from_config(self, app_config):
        app = Application(config=app_config, platform=FakePlatform())

        assert isinstance(app.orchestrator.llm, LlmApiProvider)

    def test_missing_token_means_no_platform(self, app_config, monkeypatch):
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        cfg = _parse_config(RAW)
        bare = AppConfig(
            agent=cfg.agent,
            providers=cfg.providers,
            channels=cfg.channels,
            storage=app_config.storage,
        )

        with pytest.raises(RuntimeError, match="No enabled platform"):
            Application(config=bare, llm=AsyncMock())

    @pytest.mark.asyncio
    async def test_bus_feeds_realtime_handler(self, app_config):
        platform = FakePlatform()
        app = Application(config=app_config, platform=platform, llm=AsyncMock())
        app.realtime.set_auto_reply_enabled(False)

        await app.event_bus.publish(make_event("m1"))
        app.event_bus._enqueue(await app.event_bus.consume(), app.realtime.handle)
        await app.event_bus.drain()

        assert await app.gateway.get_message("m1") is not None


class TestShutdown:
    @pytest.mark.asyncio
    async def test_in_flight_events_finish_before_disconnect(self, app_config):
        platform = FakePlatform()
        app = Application(config=app_config, platform=platform, llm=AsyncMock())
        app.realtime.set_auto_reply_enabled(False)
        await platform.connect()

        release = asyncio.Event()
        fetch = platform.fetch_attachment

        async def slow_fetch(message):
            await release.wait()
            return await fetch(message)

        platform.fetch_attachment = slow_fetch
        app.event_bus._enqueue(
            make_event("m1", kind="photo", has_attachment=True, mime_type="image/jpeg"),
            app.realtime.handle,
        )
        assert app.event_bus.active_lanes == 1
        asyncio.get_running_loop().call_later(0.05, release.set)

        await app.shutdown()

        assert platform.is_running is False
        assert app.event_bus.active_lanes == 0
        assert (await app.gateway.find_attachment("m1")).success is True

    @pytest.mark.asyncio
    async def test_stuck_lane_is_cancelled_after_timeout(self, app_config):
        platform = FakePlatform()
        app = Application(config=app_config, platform=platform, llm=AsyncMock())
        await platform.connect()

        async def stuck(conversation_ref):
            await asyncio.Event().wait()

        platform.get_conversation = stuck
        app.drain_timeout = 0.05
        app.event_bus._enqueue(make_event("m1"), app.realtime.handle)

        await app.shutdown()

        assert platform.is_running is False
        assert app.event_bus.active_lanes == 0
        assert await app.gateway.get_message("m1") is None
