"""
Session Controller

Top-level coordinator of the voice turn engine. Wires capture,
transcription, dialogue decisions, replies, playback and usage governance
into one loop and is the sole arbiter of microphone vs speaker:

    press_mic -> RECORDING -> TRANSCRIBING -> RESPONDING -> SPEAKING -> IDLE | LOCKED

A press while SPEAKING is a barge-in: playback is stopped synchronously
before capture starts. A press while TRANSCRIBING or RESPONDING supersedes
the pending turn. Every failure path resolves to IDLE or LOCKED.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from openai import AsyncOpenAI, OpenAI

from .capture import CaptureManager, CapturedAudio, MicrophoneSource
from .config_manager import BuddyConfig, EnvironmentType
from .dialogue import (
    Decision, Mode, Prosody, TurnSignals, classify_energy, classify_sentiment,
    decide_next, is_engaged
)
from .error_handling import (
    BackoffConfig, CaptureError, SynthesisError, TranscriptionError, VoiceAIException
)
from .memory import ChildProfile, LearningMemory
from .playback import AudioSink, PlaybackManager, UserInputBus
from .response import OpenAIChatGenerator, ResponseCoordinator
from .store import KeyValueStore
from .structured_logging import log_event, new_turn_id, turn_context
from .stt import TranscriptionGateway, TranscriptionResult, create_transcription_gateway
from .tts import OpenAISpeechSynthesizer
from .usage_guardian import GuardianDirective, UsageGuardian, UsageRules, describe_lock

logger = logging.getLogger(__name__)

TRANSCRIPTION_FAILED = "[Transcription failed]"


class SessionMode(Enum):
    """Session states"""
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    RESPONDING = "responding"
    SPEAKING = "speaking"
    LOCKED = "locked"


@dataclass
class Session:
    """The single live conversation on this device"""
    mode: SessionMode = SessionMode.IDLE
    has_greeted: bool = False
    last_transition: float = 0.0
    last_mode: Mode = Mode.CHAT
    turn_count: int = 0
    avg_turn_secs: float = 0.0
    last_speech_end: Optional[float] = None


@dataclass
class SessionStatistics:
    """Turn statistics for the dev console"""
    total_turns: int = 0
    completed_turns: int = 0
    failed_turns: int = 0
    barge_ins: int = 0
    superseded_turns: int = 0
    total_recording_time: float = 0.0
    total_playback_time: float = 0.0
    max_barge_in_ms: float = 0.0


class SessionController:
    """Drives turns and arbitrates the microphone and speaker"""

    def __init__(
        self,
        capture: CaptureManager,
        gateway: TranscriptionGateway,
        responder: ResponseCoordinator,
        playback: PlaybackManager,
        guardian: UsageGuardian,
        profile: ChildProfile,
        memory: LearningMemory,
        input_bus: Optional[UserInputBus] = None,
        environment: EnvironmentType = EnvironmentType.DEVELOPMENT,
        verbose_notices: bool = False,
        barge_in_budget_ms: float = 150.0,
    ):
        self.capture = capture
        self.gateway = gateway
        self.responder = responder
        self.playback = playback
        self.guardian = guardian
        self.profile = profile
        self.memory = memory
        self.input_bus = input_bus or playback.input_bus
        self.environment = environment
        self.verbose_notices = verbose_notices and environment != EnvironmentType.PRODUCTION
        self.barge_in_budget_ms = barge_in_budget_ms

        self.session = Session(last_transition=time.time())
        self.statistics = SessionStatistics()

        self._current_turn: Optional[str] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._starting = False
        self._session_recorded = False

        # Event callbacks
        self.on_state_changed: Optional[Callable[[SessionMode, SessionMode], None]] = None
        self.on_transcription: Optional[Callable[[str], None]] = None
        self.on_response: Optional[Callable[[str], None]] = None
        self.on_notice: Optional[Callable[[str, str], None]] = None

    @property
    def mode(self) -> SessionMode:
        return self.session.mode

    # State and events

    def _transition(self, new_mode: SessionMode, turn_id: Optional[str] = None) -> bool:
        """Change mode; transitions from a superseded turn are ignored"""
        if turn_id is not None and turn_id != self._current_turn:
            logger.debug(f"Ignoring {new_mode.value} from superseded turn")
            return False

        old_mode = self.session.mode
        if old_mode == new_mode:
            return True
        self.session.mode = new_mode
        self.session.last_transition = time.time()
        logger.info(f"Session: {old_mode.value} → {new_mode.value}")

        if self.on_state_changed:
            try:
                self.on_state_changed(old_mode, new_mode)
            except Exception as e:
                logger.error(f"Error in state change callback: {e}")
        return True

    def _emit(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Error in session callback: {e}")

    def _notice(self, kind: str, message: str, debug: bool = False) -> None:
        if debug and not self.verbose_notices:
            return
        self._emit(self.on_notice, kind, message)

    def _active_lock_message(self) -> Optional[str]:
        lock = self.guardian.current_lock()
        if lock is None:
            return None
        return describe_lock(lock, self.guardian.rules.timezone)

    def _ensure_session_recorded(self) -> None:
        if not self._session_recorded:
            self.guardian.record_session()
            self._session_recorded = True

    # Inputs

    async def press_mic(self) -> bool:
        """Start capturing; barges in on playback and supersedes a pending turn.

        Returns False when the press was refused (locked, busy or no microphone).
        """
        lock_message = self._active_lock_message()
        if lock_message:
            self._transition(SessionMode.LOCKED)
            self._notice("locked", lock_message)
            return False

        if self._starting or self.session.mode == SessionMode.RECORDING:
            return self.session.mode == SessionMode.RECORDING

        pressed_at = time.perf_counter()
        barge_in = self.session.mode == SessionMode.SPEAKING or self.playback.is_active
        if barge_in:
            self.playback.stop()
            self.statistics.barge_ins += 1

        if self._turn_task is not None and not self._turn_task.done():
            if self.session.mode in (SessionMode.TRANSCRIBING, SessionMode.RESPONDING):
                self.statistics.superseded_turns += 1
                logger.info(f"New press supersedes the {self.session.mode.value} turn")
            self._turn_task.cancel()
        self._turn_task = None

        turn_id = new_turn_id()
        self._current_turn = turn_id
        silence_ms = 0
        if self.session.last_speech_end is not None:
            silence_ms = int((time.monotonic() - self.session.last_speech_end) * 1000)

        self._starting = True
        try:
            await self.capture.start()
        except CaptureError as e:
            logger.error(f"Microphone unavailable: {e}")
            self._transition(SessionMode.IDLE)
            self._notice("capture_error", e.user_message)
            return False
        finally:
            self._starting = False

        if turn_id != self._current_turn:
            # Shutdown or another input took over while the device was opening
            return False

        if barge_in:
            latency_ms = (time.perf_counter() - pressed_at) * 1000
            self.statistics.max_barge_in_ms = max(self.statistics.max_barge_in_ms, latency_ms)
            log_event(logger, "Barge-in", duration_ms=latency_ms)
            if latency_ms > self.barge_in_budget_ms:
                logger.warning(f"Barge-in took {latency_ms:.0f}ms "
                               f"(budget {self.barge_in_budget_ms:.0f}ms)")

        self._ensure_session_recorded()
        self._transition(SessionMode.RECORDING)
        self.statistics.total_turns += 1
        self._turn_task = asyncio.create_task(self._run_turn(turn_id, barge_in, silence_ms))
        return True

    async def release_mic(self) -> None:
        """Manual end of the utterance; the turn task handles the outcome"""
        if self.session.mode != SessionMode.RECORDING or not self.capture.is_recording:
            return
        try:
            await self.capture.stop()
        except VoiceAIException as e:
            logger.debug(f"Capture ended with {type(e).__name__}, reported by the turn")

    def notify_user_input(self, kind: str) -> None:
        """Forward a UI input event (key press, touch, click) to pending listeners"""
        self.input_bus.emit(kind)

    async def greet(self) -> Optional[str]:
        """First greeting of the session with the day part and the child's name"""
        if self.session.has_greeted:
            return None

        lock_message = self._active_lock_message()
        if lock_message:
            self._transition(SessionMode.LOCKED)
            self._notice("locked", lock_message)
            return None

        turn_id = new_turn_id()
        self._current_turn = turn_id
        self.session.has_greeted = True
        self._ensure_session_recorded()

        greeting = (f"{self.guardian.day_part()}, {self.profile.name}! 🎉 I'm Buddy and I'm SO "
                    f"excited to talk with you! What adventure should we start with?")
        self._emit(self.on_response, greeting)

        with turn_context(turn_id):
            self._transition(SessionMode.SPEAKING, turn_id)
            try:
                result = await self.playback.speak(greeting, Prosody.EXCITED)
            except SynthesisError as e:
                logger.error(f"Greeting could not be spoken: {e}")
                self._notice("voice_error", e.user_message)
                self._transition(SessionMode.IDLE, turn_id)
                return greeting

            if not result.interrupted:
                self.session.last_speech_end = time.monotonic()
            self._transition(SessionMode.IDLE, turn_id)
        return greeting

    # Turn

    async def _run_turn(self, turn_id: str, interrupted: bool, silence_ms: int) -> None:
        with turn_context(turn_id):
            try:
                await self._turn(turn_id, interrupted, silence_ms)
            except asyncio.CancelledError:
                logger.debug("Turn cancelled")
                raise
            except Exception as e:
                self.statistics.failed_turns += 1
                logger.exception(f"Turn failed: {e}")
                self._notice("error", "Oops, something went wrong. Let's try again!")
                self._transition(SessionMode.IDLE, turn_id)

    async def _turn(self, turn_id: str, interrupted: bool, silence_ms: int) -> None:
        try:
            audio = await self.capture.wait_finished()
            self.statistics.total_recording_time += audio.duration
            if not self._transition(SessionMode.TRANSCRIBING, turn_id):
                return
            transcription = await self.gateway.transcribe(audio)
        except (TranscriptionError, CaptureError) as e:
            await self._transcription_failed(turn_id, e)
            return

        self._emit(self.on_transcription, transcription.text)

        signals = self._derive_signals(transcription, audio, interrupted, silence_ms)
        decision = decide_next(
            self.profile.age_years,
            is_engaged(self.session.avg_turn_secs, signals.energy),
            self.session.last_mode,
            signals,
        )
        self._notice("decision", f"{decision.mode.value} ≤{decision.tok_max} tokens, "
                                 f"{decision.prosody.value}", debug=True)

        if not self._transition(SessionMode.RESPONDING, turn_id):
            return
        response = await self.responder.respond(
            transcription.text, signals, decision, duration_ms=audio.duration * 1000
        )
        if turn_id != self._current_turn:
            return

        # Synthesis starts while the transcript view is being updated
        self.playback.prepare(response, decision.prosody)
        self._emit(self.on_response, response)

        if not self._transition(SessionMode.SPEAKING, turn_id):
            return
        await self._speak_reply(turn_id, transcription.text, response, audio, decision)

    async def _speak_reply(self, turn_id: str, user_text: str, response: str,
                           audio: CapturedAudio, decision: Decision) -> None:
        try:
            result = await self.playback.speak(response, decision.prosody)
        except SynthesisError as e:
            self.statistics.failed_turns += 1
            logger.error(f"Reply could not be spoken: {e}")
            self._notice("voice_error", e.user_message)
            self._transition(SessionMode.IDLE, turn_id)
            return

        if decision.mode != Mode.REPAIR:
            self.session.last_mode = decision.mode
        self.memory.record_turn(user_text, audio.duration)

        if result.interrupted or turn_id != self._current_turn:
            return

        self.session.last_speech_end = time.monotonic()
        self.statistics.total_playback_time += result.duration
        self.guardian.update_telemetry(audio.duration + result.duration)

        if not result.completed:
            # Output stayed blocked; the reply is on screen
            self._transition(SessionMode.IDLE, turn_id)
            return

        self.statistics.completed_turns += 1
        directive = self.guardian.post_turn_check(is_health_message=False)
        if directive is not None:
            await self._deliver_directive(turn_id, directive)
            return
        self._transition(SessionMode.IDLE, turn_id)

    async def _deliver_directive(self, turn_id: str, directive: GuardianDirective) -> None:
        logger.info(f"Guardian directive: {directive.kind} until {directive.locked_until}")
        self._notice(directive.kind, directive.message)
        self._emit(self.on_response, directive.message)

        try:
            await self.playback.speak(directive.message, Prosody.SOOTHING, is_health_message=True)
        except SynthesisError as e:
            logger.warning(f"Guardian notice could not be spoken: {e}")
        self._transition(SessionMode.LOCKED, turn_id)

    async def _transcription_failed(self, turn_id: str, error: VoiceAIException) -> None:
        if turn_id != self._current_turn:
            return
        self.statistics.failed_turns += 1
        logger.warning(f"Transcription failed: {error}")
        self._emit(self.on_transcription, TRANSCRIPTION_FAILED)
        self._notice("transcription_error", error.user_message)
        await self.playback.play_cue("error")
        self._transition(SessionMode.IDLE, turn_id)

    def _derive_signals(self, transcription: TranscriptionResult, audio: CapturedAudio,
                        interrupted: bool, silence_ms: int) -> TurnSignals:
        self.session.turn_count += 1
        count = self.session.turn_count
        self.session.avg_turn_secs += (audio.duration - self.session.avg_turn_secs) / count

        return TurnSignals(
            stt_confidence=min(max(transcription.confidence, 0.0), 1.0),
            interrupted=interrupted,
            silence_ms=max(silence_ms, 0),
            avg_turn_secs=self.session.avg_turn_secs,
            sentiment=classify_sentiment(transcription.text),
            energy=classify_energy(audio.energy),
        )

    # Lifecycle

    async def shutdown(self) -> None:
        """Stop everything; safe to call in any state"""
        self._current_turn = None
        self.playback.stop()
        if self._turn_task is not None and not self._turn_task.done():
            self._turn_task.cancel()
            await asyncio.gather(self._turn_task, return_exceptions=True)
        self._turn_task = None
        if self.capture.is_recording:
            try:
                await self.capture.stop()
            except VoiceAIException as e:
                logger.debug(f"Discarding capture on shutdown: {e}")
        self._transition(SessionMode.IDLE)

    def get_statistics(self) -> dict:
        stats = self.statistics
        return {
            "mode": self.session.mode.value,
            "total_turns": stats.total_turns,
            "completed_turns": stats.completed_turns,
            "failed_turns": stats.failed_turns,
            "barge_ins": stats.barge_ins,
            "superseded_turns": stats.superseded_turns,
            "max_barge_in_ms": stats.max_barge_in_ms,
            "avg_turn_secs": self.session.avg_turn_secs,
            "minutes_today": self.guardian.mins_used_today(),
        }


def create_session_controller(
    config: BuddyConfig,
    microphone: MicrophoneSource,
    speaker: AudioSink,
    store: KeyValueStore,
) -> SessionController:
    """Factory function wiring the turn engine with OpenAI providers"""
    api_key = config.api.openai_api_key
    client_kwargs = {"api_key": api_key, "base_url": config.api.openai_base_url}
    if config.api.openai_org_id:
        client_kwargs["organization"] = config.api.openai_org_id

    sync_client = OpenAI(timeout=config.api.timeout, **client_kwargs)
    async_client = AsyncOpenAI(timeout=config.api.timeout, **client_kwargs)

    profile = ChildProfile(
        name=config.session.child_name,
        age_years=config.session.age_years,
        language=config.session.language,
        interests=list(config.session.interests),
    )
    memory = LearningMemory(store, child_id=profile.name.lower())
    guardian_config = config.guardian
    guardian = UsageGuardian(
        store,
        UsageRules(
            timezone=guardian_config.timezone,
            daily_limit_min=guardian_config.daily_limit_min,
            break_interval_min=guardian_config.break_interval_min,
            bedtime_start=guardian_config.bedtime_start,
            bedtime_end=guardian_config.bedtime_end,
            break_duration_min=guardian_config.break_duration_min,
        ),
        child_name=profile.name,
    )

    input_bus = UserInputBus()
    playback = PlaybackManager(
        OpenAISpeechSynthesizer(config.tts, sync_client),
        speaker,
        input_bus,
        age=profile.age_years,
        backoff=BackoffConfig(max_attempts=config.tts.max_attempts, base_delay=config.tts.base_delay),
        gesture_timeout=config.tts.gesture_timeout,
    )

    return SessionController(
        capture=CaptureManager(microphone, config.audio),
        gateway=create_transcription_gateway(
            config.stt, sync_client, config.api.streaming_stt_url, api_key
        ),
        responder=ResponseCoordinator(
            [OpenAIChatGenerator(config.llm, async_client)],
            profile,
            memory,
            history_limit=config.llm.history_exchanges,
        ),
        playback=playback,
        guardian=guardian,
        profile=profile,
        memory=memory,
        input_bus=input_bus,
        environment=config.environment,
        verbose_notices=config.development.verbose_notices,
        barge_in_budget_ms=config.session.barge_in_budget_ms,
    )
