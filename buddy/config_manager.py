"""
Buddy Voice Turn Engine - Configuration Management

Provides configuration management with:
- YAML-based configuration files
- Environment-specific overlay files (buddy.<env>.yaml)
- Environment variable overrides
- Configuration validation
- Hot-reload capability for development

Usage:
    config_manager = ConfigManager()
    config = config_manager.load_config()

    api_key = config.api.openai_api_key
    limit = config.guardian.daily_limit_min

    # Hot-reload in development
    config_manager.enable_hot_reload()
"""

import os
import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import yaml
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class EnvironmentType(Enum):
    """Build modes; only auxiliary notices differ between them"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


@dataclass
class APIConfig:
    """API configuration with secure key handling"""
    openai_api_key: Optional[str] = None
    openai_org_id: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    streaming_stt_url: Optional[str] = None
    timeout: float = 30.0


@dataclass
class AudioConfig:
    """Microphone capture settings"""
    input_device: Optional[int] = None
    output_device: Optional[int] = None
    sample_rate: int = 16000
    chunk_size: int = 1024
    channels: int = 1

    silence_threshold: float = 0.01
    silence_duration: float = 2.0
    max_audio_length: float = 30.0
    min_buffer_bytes: int = 500

    echo_cancellation: bool = True
    noise_suppression: bool = True
    preferred_encodings: List[str] = field(default_factory=lambda: [
        "ogg/opus", "webm/opus", "mp4/aac", "wav"
    ])


@dataclass
class STTConfig:
    """Speech-to-Text configuration"""
    primary_model: str = "whisper-1"
    language: str = "en"
    temperature: float = 0.0
    primary_head_start: float = 4.0
    streaming_timeout: float = 10.0


@dataclass
class TTSConfig:
    """Text-to-Speech configuration"""
    model: str = "tts-1"
    voice: str = "nova"
    response_format: str = "mp3"
    timeout: float = 15.0
    max_attempts: int = 3
    base_delay: float = 0.5
    gesture_timeout: float = 30.0
    cache_size: int = 64


@dataclass
class LLMConfig:
    """Text generation configuration"""
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    timeout: float = 15.0
    history_exchanges: int = 8


@dataclass
class GuardianConfig:
    """Parent-configured usage rules"""
    timezone: str = "UTC"
    daily_limit_min: int = 60
    break_interval_min: int = 20
    break_duration_min: int = 5
    bedtime_start: str = "20:30"
    bedtime_end: str = "07:00"


@dataclass
class SessionConfig:
    """Child profile and turn settings"""
    child_name: str = "friend"
    age_years: int = 6
    language: str = "en"
    interests: List[str] = field(default_factory=list)
    barge_in_budget_ms: float = 150.0
    store_path: str = "./data/buddy_store.json"


@dataclass
class DevelopmentConfig:
    """Development and debugging settings"""
    debug_mode: bool = False
    verbose_notices: bool = False
    enable_hot_reload: bool = False
    json_logs: bool = False
    log_file: Optional[str] = None


@dataclass
class BuddyConfig:
    """Complete Buddy configuration"""
    environment: EnvironmentType = EnvironmentType.DEVELOPMENT
    api: APIConfig = field(default_factory=APIConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    stt: STTConfig = field(default_factory=STTConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    guardian: GuardianConfig = field(default_factory=GuardianConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    development: DevelopmentConfig = field(default_factory=DevelopmentConfig)

    version: str = "1.0.0"
    name: str = "Buddy"


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


class ConfigFileWatcher(FileSystemEventHandler):
    """Watches configuration files for changes and triggers reloads"""

    def __init__(self, config_manager: 'ConfigManager'):
        self.config_manager = config_manager

    def on_modified(self, event):
        if event.is_directory:
            return

        if event.src_path.endswith('.yaml') or event.src_path.endswith('.yml'):
            logger.info(f"Configuration file changed: {event.src_path}")
            try:
                self.config_manager.reload_config()
                logger.info("Configuration reloaded successfully")
            except ConfigurationError as e:
                logger.error(f"Failed to reload configuration: {e}")


SECTION_TYPES = {
    'api': APIConfig,
    'audio': AudioConfig,
    'stt': STTConfig,
    'tts': TTSConfig,
    'llm': LLMConfig,
    'guardian': GuardianConfig,
    'session': SessionConfig,
    'development': DevelopmentConfig,
}

VALID_SAMPLE_RATES = [8000, 16000, 22050, 44100, 48000]


class ConfigManager:
    """
    Configuration management for Buddy

    Features:
    - YAML-based configuration with environment overrides
    - Environment profiles
    - Validation
    - Hot-reload capability for development
    """

    def __init__(self, config_path: Optional[str] = None, environment: Optional[EnvironmentType] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.environment = environment or self._detect_environment()

        self._config: Optional[BuddyConfig] = None
        self._last_modified: Optional[float] = None

        self._hot_reload_enabled = False
        self._file_observer: Optional[Observer] = None
        self._reload_callbacks: List[Callable[[BuddyConfig], None]] = []

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path"""
        return os.getenv('BUDDY_CONFIG', os.path.join('config', 'buddy.yaml'))

    def _detect_environment(self) -> EnvironmentType:
        """Detect the current environment"""
        env_name = os.getenv('BUDDY_ENV', 'development').lower()

        try:
            return EnvironmentType(env_name)
        except ValueError:
            logger.warning(f"Unknown environment '{env_name}', defaulting to development")
            return EnvironmentType.DEVELOPMENT

    def _load_yaml_config(self, config_path: str) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        if not os.path.exists(config_path):
            logger.warning(f"Configuration file not found: {config_path}")
            return {}

        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration from {config_path}: {e}")

        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        self._last_modified = os.stat(config_path).st_mtime
        return config_data

    def _environment_config_path(self) -> str:
        root, ext = os.path.splitext(self.config_path)
        return f"{root}.{self.environment.value}{ext or '.yaml'}"

    def _apply_environment_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment-specific overrides"""
        env_config_path = self._environment_config_path()
        if os.path.exists(env_config_path):
            env_config = self._load_yaml_config(env_config_path)
            config_data = self._deep_merge(config_data, env_config)

        env_overrides = self._get_environment_variable_overrides()
        if env_overrides:
            config_data = self._deep_merge(config_data, env_overrides)

        return config_data

    def _get_environment_variable_overrides(self) -> Dict[str, Any]:
        """Get configuration overrides from environment variables"""
        overrides: Dict[str, Any] = {}

        api_overrides = {}
        if openai_key := os.getenv('OPENAI_API_KEY'):
            api_overrides['openai_api_key'] = openai_key
        if openai_org := os.getenv('OPENAI_ORG_ID'):
            api_overrides['openai_org_id'] = openai_org
        if streaming_url := os.getenv('BUDDY_STREAMING_STT_URL'):
            api_overrides['streaming_stt_url'] = streaming_url
        if api_overrides:
            overrides['api'] = api_overrides

        if timezone := os.getenv('BUDDY_TIMEZONE'):
            overrides['guardian'] = {'timezone': timezone}

        session_overrides: Dict[str, Any] = {}
        if child_name := os.getenv('BUDDY_CHILD_NAME'):
            session_overrides['child_name'] = child_name
        if age := os.getenv('BUDDY_CHILD_AGE'):
            try:
                session_overrides['age_years'] = int(age)
            except ValueError:
                raise ConfigurationError(f"BUDDY_CHILD_AGE must be an integer, got '{age}'")
        if session_overrides:
            overrides['session'] = session_overrides

        if debug := os.getenv('DEBUG'):
            overrides['development'] = {'debug_mode': debug.lower() in ('true', '1', 'yes')}

        return overrides

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _create_config_from_dict(self, config_data: Dict[str, Any]) -> BuddyConfig:
        """Create BuddyConfig from dictionary data"""
        sections = {}
        for name, section_type in SECTION_TYPES.items():
            section_data = config_data.get(name) or {}
            try:
                sections[name] = section_type(**section_data)
            except TypeError as e:
                raise ConfigurationError(f"Invalid '{name}' section: {e}")

        config = BuddyConfig(environment=self.environment, **sections)
        if 'version' in config_data:
            config.version = str(config_data['version'])
        if 'name' in config_data:
            config.name = config_data['name']
        return config

    def _validate_config(self, config: BuddyConfig) -> None:
        """Validate configuration for completeness and correctness"""
        errors = []

        if config.environment == EnvironmentType.PRODUCTION and not config.api.openai_api_key:
            errors.append("OpenAI API key is required in production")

        if config.audio.sample_rate not in VALID_SAMPLE_RATES:
            errors.append(f"Invalid sample rate: {config.audio.sample_rate}")
        if config.audio.channels not in [1, 2]:
            errors.append(f"Invalid channel count: {config.audio.channels}")
        if config.audio.silence_duration <= 0:
            errors.append("Audio silence_duration must be positive")
        if config.audio.min_buffer_bytes < 0:
            errors.append("Audio min_buffer_bytes must not be negative")

        if config.stt.streaming_timeout <= 0:
            errors.append("STT streaming_timeout must be positive")
        if config.stt.primary_head_start < 0:
            errors.append("STT primary_head_start must not be negative")

        if config.tts.max_attempts < 1:
            errors.append("TTS max_attempts must be at least 1")
        if config.tts.gesture_timeout <= 0:
            errors.append("TTS gesture_timeout must be positive")

        if not 0 <= config.llm.temperature <= 2:
            errors.append("Invalid LLM temperature")

        guardian = config.guardian
        if guardian.daily_limit_min <= 0:
            errors.append("Guardian daily_limit_min must be positive")
        if guardian.break_interval_min <= 0:
            errors.append("Guardian break_interval_min must be positive")
        if guardian.break_duration_min < 0:
            errors.append("Guardian break_duration_min must not be negative")
        for label, value in (("bedtime_start", guardian.bedtime_start),
                             ("bedtime_end", guardian.bedtime_end)):
            if not _is_hhmm(value):
                errors.append(f"Guardian {label} must be HH:MM, got '{value}'")

        if config.session.age_years < 1:
            errors.append("Child age must be positive")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def load_config(self) -> BuddyConfig:
        """Load and validate configuration"""
        logger.info(f"Loading configuration from {self.config_path}")

        config_data = self._load_yaml_config(self.config_path)
        config_data = self._apply_environment_overrides(config_data)
        config = self._create_config_from_dict(config_data)
        self._validate_config(config)

        self._config = config
        logger.info(f"Configuration loaded successfully for {self.environment.value} environment")
        return config

    def get_config(self) -> BuddyConfig:
        """Get the current configuration, loading if necessary"""
        if self._config is None:
            return self.load_config()
        return self._config

    def reload_config(self) -> BuddyConfig:
        """Reload configuration from file"""
        logger.info("Reloading configuration...")
        self._config = None

        config = self.load_config()

        for callback in self._reload_callbacks:
            try:
                callback(config)
            except Exception as e:
                logger.error(f"Error in reload callback: {e}")

        return config

    def save_config(self, config: BuddyConfig) -> None:
        """Save configuration to file (API keys are never written)"""
        config_dict = asdict(config)
        config_dict['environment'] = config.environment.value
        config_dict['api'].pop('openai_api_key', None)

        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            with open(self.config_path, 'w') as f:
                yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise ConfigurationError(f"Configuration saving failed: {e}")

        logger.info(f"Configuration saved to {self.config_path}")

    def enable_hot_reload(self) -> None:
        """Enable hot reload for development"""
        if self._hot_reload_enabled:
            return

        try:
            self._file_observer = Observer()
            event_handler = ConfigFileWatcher(self)
            config_dir = os.path.dirname(os.path.abspath(self.config_path))
            self._file_observer.schedule(event_handler, config_dir, recursive=False)
            self._file_observer.start()
            self._hot_reload_enabled = True
            logger.info("Hot reload enabled for configuration files")
        except OSError as e:
            logger.error(f"Failed to enable hot reload: {e}")
            self._file_observer = None

    def disable_hot_reload(self) -> None:
        """Disable hot reload"""
        if not self._hot_reload_enabled:
            return

        if self._file_observer:
            self._file_observer.stop()
            self._file_observer.join()
            self._file_observer = None

        self._hot_reload_enabled = False
        logger.info("Hot reload disabled")

    def add_reload_callback(self, callback: Callable[[BuddyConfig], None]) -> None:
        """Add a callback to be called when configuration is reloaded"""
        self._reload_callbacks.append(callback)

    def remove_reload_callback(self, callback: Callable[[BuddyConfig], None]) -> None:
        """Remove a reload callback"""
        if callback in self._reload_callbacks:
            self._reload_callbacks.remove(callback)

    def is_config_modified(self) -> bool:
        """Check if configuration file has been modified"""
        if not os.path.exists(self.config_path):
            return False
        return os.stat(self.config_path).st_mtime != self._last_modified

    def create_default_config(self) -> None:
        """Create a default configuration file"""
        self.save_config(BuddyConfig(environment=self.environment))
        logger.info(f"Created default configuration at {self.config_path}")


def _is_hhmm(value: str) -> bool:
    parts = str(value).split(':')
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        return False
    hours, minutes = int(parts[0]), int(parts[1])
    return 0 <= hours < 24 and 0 <= minutes < 60


__all__ = [
    'ConfigManager',
    'BuddyConfig',
    'APIConfig',
    'AudioConfig',
    'STTConfig',
    'TTSConfig',
    'LLMConfig',
    'GuardianConfig',
    'SessionConfig',
    'DevelopmentConfig',
    'EnvironmentType',
    'ConfigurationError',
]
