"""
Tests for the command line entry point
"""

import os
import sys
from unittest.mock import AsyncMock, Mock, patch

import pytest
import yaml

from buddy.config_manager import BuddyConfig, ConfigManager, EnvironmentType
from buddy.main import QUIT_COMMANDS, BuddyApp, parse_arguments
from buddy.session import SessionMode
from buddy.store import InMemoryStore
from buddy.usage_guardian import UsageGuardian, UsageRules


class TestArguments:
    """Test argument parsing"""

    def test_defaults(self):
        with patch.object(sys, "argv", ["buddy"]):
            args = parse_arguments()
        assert args.config is None
        assert args.debug is False
        assert args.age is None

    def test_overrides(self):
        with patch.object(sys, "argv", ["buddy", "--debug", "--child-name", "Leo", "--age", "8",
                                        "--config", "config/home.yaml"]):
            args = parse_arguments()
        assert args.debug is True
        assert args.child_name == "Leo"
        assert args.age == 8
        assert args.config == "config/home.yaml"


class TestBuddyApp:
    """Test the terminal front end"""

    def make_app(self, tmp_path, **kwargs):
        config = BuddyConfig(environment=EnvironmentType.TESTING)
        config.session.store_path = str(tmp_path / "store.json")
        config_manager = Mock()
        config_manager.load_config.return_value = config
        return BuddyApp(config_manager, **kwargs), config

    def test_initialize_applies_overrides(self, tmp_path):
        pytest.importorskip("pyaudio")
        app, config = self.make_app(tmp_path, child_name="Leo", age=9)
        backend = Mock()

        with patch("buddy.audio.AudioBackend", return_value=backend), \
                patch("buddy.main.create_session_controller") as create:
            app.initialize()

        assert app.config.session.child_name == "Leo"
        assert app.config.session.age_years == 9
        create.assert_called_once()
        args = create.call_args.args
        assert args[1] is backend.microphone
        assert args[2] is backend.speaker
        app.config_manager.add_reload_callback.assert_called_once_with(app._on_config_reloaded)

    @pytest.mark.asyncio
    async def test_run_loop(self, tmp_path):
        app, _ = self.make_app(tmp_path)
        controller = Mock()
        controller.greet = AsyncMock()
        controller.press_mic = AsyncMock()
        controller.release_mic = AsyncMock()
        controller.mode = SessionMode.IDLE
        app.controller = controller

        lines = iter(["\n", "x\n", "q\n"])
        app._setup_signal_handlers = Mock()
        app._read_line = AsyncMock(side_effect=lambda: next(lines))

        await app.run()

        controller.greet.assert_awaited_once()
        controller.press_mic.assert_awaited_once()
        controller.notify_user_input.assert_called_once_with("key_press")
        assert "q" in QUIT_COMMANDS

    @pytest.mark.asyncio
    async def test_stop(self, tmp_path):
        app, _ = self.make_app(tmp_path)
        app.controller = Mock(shutdown=AsyncMock(), get_statistics=Mock(return_value={}))
        app.backend = Mock()

        await app.stop()

        app.controller.shutdown.assert_awaited_once()
        app.backend.cleanup.assert_called_once()
        app.config_manager.disable_hot_reload.assert_called_once()


class TestConfigReload:
    """Test that reloaded configuration reaches the running session"""

    @patch.dict(os.environ, {key: "" for key in (
        "OPENAI_API_KEY", "OPENAI_ORG_ID", "BUDDY_STREAMING_STT_URL", "BUDDY_TIMEZONE",
        "BUDDY_CHILD_NAME", "BUDDY_CHILD_AGE", "DEBUG",
    )})
    def test_reload_updates_guardian_rules(self, tmp_path):
        config_path = tmp_path / "buddy.yaml"
        config_path.write_text(yaml.safe_dump({"guardian": {"daily_limit_min": 60}}))
        config_manager = ConfigManager(config_path=str(config_path), environment=EnvironmentType.TESTING)
        config_manager.load_config()

        app = BuddyApp(config_manager)
        guardian = UsageGuardian(InMemoryStore(), UsageRules(daily_limit_min=60))
        app.controller = Mock(guardian=guardian, verbose_notices=False)
        config_manager.add_reload_callback(app._on_config_reloaded)

        config_path.write_text(yaml.safe_dump({
            "guardian": {"daily_limit_min": 15, "bedtime_start": "19:00", "timezone": "Europe/Berlin"},
            "development": {"verbose_notices": True},
        }))
        config_manager.reload_config()

        assert guardian.rules.daily_limit_min == 15
        assert guardian.rules.bedtime_start == "19:00"
        assert guardian.rules.timezone == "Europe/Berlin"
        assert app.controller.verbose_notices is True

    def test_reload_before_initialize_is_ignored(self):
        app = BuddyApp(Mock())
        app._on_config_reloaded(BuddyConfig())
        assert app.controller is None
