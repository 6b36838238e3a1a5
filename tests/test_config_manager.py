"""
Tests for Configuration Management

Tests loading, environment overlays, environment variable overrides,
validation, saving and reload callbacks.
"""

import os
import shutil
import tempfile
from unittest.mock import Mock, patch

import pytest
import yaml

from buddy.config_manager import (
    AudioConfig, BuddyConfig, ConfigManager, ConfigurationError, EnvironmentType,
    GuardianConfig, STTConfig, SessionConfig, TTSConfig
)

CLEAN_ENV = {
    key: "" for key in (
        "OPENAI_API_KEY", "OPENAI_ORG_ID", "BUDDY_STREAMING_STT_URL", "BUDDY_TIMEZONE",
        "BUDDY_CHILD_NAME", "BUDDY_CHILD_AGE", "DEBUG",
    )
}


class TestConfigManager:
    """Test the ConfigManager class"""

    def setup_method(self):
        """Setup test environment"""
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.temp_dir, "buddy.yaml")
        self.config_manager = None

    def teardown_method(self):
        """Clean up test environment"""
        if self.config_manager:
            self.config_manager.disable_hot_reload()
        shutil.rmtree(self.temp_dir)

    def write_config(self, data: dict, path: str = None) -> None:
        with open(path or self.config_path, 'w') as f:
            yaml.safe_dump(data, f)

    def create_basic_config(self) -> dict:
        return {
            'api': {'openai_api_key': 'sk-file', 'streaming_stt_url': 'wss://stt.example/stream'},
            'guardian': {'timezone': 'Europe/Berlin', 'daily_limit_min': 45,
                         'bedtime_start': '19:30', 'bedtime_end': '06:45'},
            'session': {'child_name': 'Mia', 'age_years': 5, 'interests': ['dinosaurs']},
            'tts': {'voice': 'shimmer'},
        }

    def make_manager(self, environment=EnvironmentType.TESTING) -> ConfigManager:
        self.config_manager = ConfigManager(config_path=self.config_path, environment=environment)
        return self.config_manager

    @patch.dict(os.environ, CLEAN_ENV)
    def test_load_config_success(self):
        self.write_config(self.create_basic_config())

        config = self.make_manager().load_config()

        assert config.environment == EnvironmentType.TESTING
        assert config.api.openai_api_key == 'sk-file'
        assert config.guardian.timezone == 'Europe/Berlin'
        assert config.guardian.daily_limit_min == 45
        assert config.session.child_name == 'Mia'
        assert config.session.interests == ['dinosaurs']
        assert config.tts.voice == 'shimmer'
        assert config.stt.primary_model == 'whisper-1'

    @patch.dict(os.environ, CLEAN_ENV)
    def test_missing_file_uses_defaults(self):
        config = self.make_manager().load_config()
        assert config.audio.sample_rate == 16000
        assert config.guardian.bedtime_start == "20:30"

    def test_invalid_yaml(self):
        with open(self.config_path, 'w') as f:
            f.write("api: [unclosed")

        with pytest.raises(ConfigurationError):
            self.make_manager().load_config()

    def test_unknown_key_rejected(self):
        self.write_config({'audio': {'sample_rte': 16000}})
        with pytest.raises(ConfigurationError, match="audio"):
            self.make_manager().load_config()

    @patch.dict(os.environ, {**CLEAN_ENV, 'OPENAI_API_KEY': 'sk-env', 'BUDDY_TIMEZONE': 'Asia/Tokyo',
                             'BUDDY_CHILD_NAME': 'Leo', 'BUDDY_CHILD_AGE': '8', 'DEBUG': 'true'})
    def test_environment_variable_overrides(self):
        self.write_config(self.create_basic_config())

        config = self.make_manager().load_config()

        assert config.api.openai_api_key == 'sk-env'
        assert config.guardian.timezone == 'Asia/Tokyo'
        assert config.guardian.daily_limit_min == 45
        assert config.session.child_name == 'Leo'
        assert config.session.age_years == 8
        assert config.development.debug_mode is True

    @patch.dict(os.environ, {**CLEAN_ENV, 'BUDDY_CHILD_AGE': 'six'})
    def test_invalid_age_override(self):
        with pytest.raises(ConfigurationError, match="BUDDY_CHILD_AGE"):
            self.make_manager().load_config()

    @patch.dict(os.environ, CLEAN_ENV)
    def test_environment_specific_overlay(self):
        self.write_config(self.create_basic_config())
        self.write_config({'guardian': {'daily_limit_min': 5}, 'development': {'verbose_notices': True}},
                          os.path.join(self.temp_dir, "buddy.testing.yaml"))

        config = self.make_manager().load_config()

        assert config.guardian.daily_limit_min == 5
        assert config.guardian.timezone == 'Europe/Berlin'
        assert config.development.verbose_notices is True

    @patch.dict(os.environ, {**CLEAN_ENV, 'BUDDY_ENV': 'production'})
    def test_environment_detection(self):
        manager = ConfigManager(config_path=self.config_path)
        assert manager.environment == EnvironmentType.PRODUCTION

    @patch.dict(os.environ, {**CLEAN_ENV, 'BUDDY_ENV': 'staging'})
    def test_unknown_environment_defaults_to_development(self):
        manager = ConfigManager(config_path=self.config_path)
        assert manager.environment == EnvironmentType.DEVELOPMENT

    @patch.dict(os.environ, CLEAN_ENV)
    def test_production_requires_api_key(self):
        with pytest.raises(ConfigurationError, match="API key"):
            self.make_manager(EnvironmentType.PRODUCTION).load_config()

    @patch.dict(os.environ, CLEAN_ENV)
    def test_config_validation_failures(self):
        self.write_config({
            'audio': {'sample_rate': 12345},
            'guardian': {'bedtime_start': '25:00', 'daily_limit_min': 0},
            'tts': {'max_attempts': 0},
        })

        with pytest.raises(ConfigurationError) as exc_info:
            self.make_manager().load_config()

        message = str(exc_info.value)
        assert "sample rate" in message
        assert "bedtime_start" in message
        assert "daily_limit_min" in message
        assert "max_attempts" in message

    @patch.dict(os.environ, CLEAN_ENV)
    def test_save_config_omits_api_key(self):
        manager = self.make_manager()
        config = BuddyConfig(environment=EnvironmentType.TESTING)
        config.api.openai_api_key = 'sk-secret'
        config.session.child_name = 'Ava'

        manager.save_config(config)

        with open(self.config_path) as f:
            saved = yaml.safe_load(f)
        assert 'openai_api_key' not in saved['api']
        assert saved['session']['child_name'] == 'Ava'
        assert saved['environment'] == 'testing'

        reloaded = self.make_manager().load_config()
        assert reloaded.session.child_name == 'Ava'

    @patch.dict(os.environ, CLEAN_ENV)
    def test_reload_callbacks(self):
        self.write_config(self.create_basic_config())
        manager = self.make_manager()
        manager.load_config()

        callback = Mock()
        manager.add_reload_callback(callback)
        data = self.create_basic_config()
        data['guardian']['daily_limit_min'] = 30
        self.write_config(data)

        config = manager.reload_config()

        callback.assert_called_once_with(config)
        assert config.guardian.daily_limit_min == 30

        manager.remove_reload_callback(callback)
        manager.reload_config()
        assert callback.call_count == 1

    @patch.dict(os.environ, CLEAN_ENV)
    def test_reload_callback_errors_are_contained(self):
        manager = self.make_manager()
        manager.add_reload_callback(Mock(side_effect=RuntimeError("boom")))
        assert isinstance(manager.reload_config(), BuddyConfig)

    @patch.dict(os.environ, CLEAN_ENV)
    def test_get_config_caching(self):
        manager = self.make_manager()
        assert manager.get_config() is manager.get_config()

    @patch.dict(os.environ, CLEAN_ENV)
    def test_is_config_modified(self):
        self.write_config(self.create_basic_config())
        manager = self.make_manager()
        manager.load_config()
        assert not manager.is_config_modified()

        stat = os.stat(self.config_path)
        os.utime(self.config_path, (stat.st_atime, stat.st_mtime + 10))
        assert manager.is_config_modified()

    def test_hot_reload_toggle(self):
        manager = self.make_manager()
        manager.enable_hot_reload()
        assert manager._hot_reload_enabled
        manager.disable_hot_reload()
        assert not manager._hot_reload_enabled

    @patch.dict(os.environ, CLEAN_ENV)
    def test_create_default_config(self):
        manager = self.make_manager()
        manager.create_default_config()
        assert os.path.exists(self.config_path)
        assert manager.load_config().tts.voice == "nova"


class TestConfigurationDataClasses:
    """Test configuration defaults"""

    def test_audio_defaults(self):
        config = AudioConfig()
        assert config.sample_rate == 16000
        assert config.min_buffer_bytes == 500
        assert config.preferred_encodings == ["ogg/opus", "webm/opus", "mp4/aac", "wav"]

    def test_stt_defaults(self):
        config = STTConfig()
        assert config.primary_head_start == 4.0
        assert config.streaming_timeout == 10.0

    def test_tts_defaults(self):
        config = TTSConfig()
        assert config.max_attempts == 3
        assert config.gesture_timeout == 30.0

    def test_guardian_defaults(self):
        config = GuardianConfig()
        assert config.daily_limit_min == 60
        assert config.break_interval_min == 20

    def test_session_defaults(self):
        assert SessionConfig().barge_in_budget_ms == 150.0
