"""
Buddy Voice Turn Engine

A spoken-dialogue front end for a children's voice companion:
- Push-to-talk capture with silence auto-stop
- Transcription with a racing streaming fallback
- Dialogue mode decisions (chat, story, game, coaching, repair)
- Spoken replies with barge-in
- Daily limit, break and bedtime governance

The PyAudio device backend lives in ``buddy.audio`` and is not imported here.
"""

__version__ = "1.0.0"

from .capture import CaptureManager, CapturedAudio, Encoding, MicrophoneSource, select_encoding
from .config_manager import (
    ConfigManager, BuddyConfig, APIConfig, AudioConfig, STTConfig, TTSConfig,
    LLMConfig, GuardianConfig, SessionConfig, DevelopmentConfig, EnvironmentType,
    ConfigurationError
)
from .dialogue import Decision, Energy, Mode, Prosody, Sentiment, TurnSignals, decide_next
from .error_handling import (
    ErrorCategory, VoiceAIException, CaptureError, TranscriptionError, TooShort,
    TranscriptionTimeout, SynthesisError, AutoplayBlocked, DecodeError, GenerationError,
    AllProvidersFailed, BackoffConfig, retry_with_backoff, ProviderOutcome, run_fallback_chain
)
from .memory import ChildProfile, LearningMemory
from .playback import (
    AudioSink, Clip, PendingUserGesture, PlaybackManager, PlaybackResult, PlaybackState,
    UserInputBus
)
from .response import ResponseCoordinator, OpenAIChatGenerator, TextGenerator, assess_quality
from .session import Session, SessionController, SessionMode, create_session_controller
from .store import KeyValueStore, InMemoryStore, JsonFileStore
from .stt import (
    OutcomeSlot, StreamingTranscriber, TranscriptionGateway, TranscriptionResult,
    WhisperTranscriber, create_transcription_gateway
)
from .tts import OpenAISpeechSynthesizer, SpeechSynthesizer, SynthesizedSpeech
from .usage_guardian import (
    DailyTelemetry, GuardianDirective, LockState, UsageGuardian, UsageRules
)
