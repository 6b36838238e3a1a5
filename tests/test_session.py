"""
Tests for the session controller
Full turns through fake devices and providers: locks, barge-in, failures
and guardian directives
"""

import asyncio
import random

import pytest

from buddy.capture import CaptureManager
from buddy.config_manager import AudioConfig, BuddyConfig, EnvironmentType
from buddy.dialogue import Mode, Prosody
from buddy.error_handling import BackoffConfig, TranscriptionError
from buddy.memory import ChildProfile, LearningMemory
from buddy.playback import PlaybackManager, UserInputBus
from buddy.response import ResponseCoordinator
from buddy.session import (
    TRANSCRIPTION_FAILED, SessionController, SessionMode, create_session_controller
)
from buddy.store import TELEMETRY_KEY
from buddy.stt import TranscriptionGateway
from buddy.usage_guardian import UsageGuardian, UsageRules

from fakes import (
    FakeGenerator, FakeMicrophone, FakeSink, FakeSynthesizer, FakeTranscriber,
    fake_decoder, tone_chunk, wait_until
)


class Harness:
    """A controller wired to fakes, with recorded callbacks"""

    def __init__(self, store, clock, microphone=None, transcriber=None, sink=None,
                 synthesizer=None, generator=None, rules=None, environment=EnvironmentType.TESTING):
        self.store = store
        self.clock = clock
        self.microphone = microphone or FakeMicrophone(chunk=tone_chunk(8000))
        self.transcriber = transcriber or FakeTranscriber("whisper", text="I like dinosaurs")
        self.sink = sink or FakeSink()
        self.synthesizer = synthesizer or FakeSynthesizer()
        self.generator = generator or FakeGenerator(reply="Dinosaurs are awesome!")

        profile = ChildProfile(name="Mia", age_years=6)
        memory = LearningMemory(store, child_id="mia")
        self.guardian = UsageGuardian(store, rules or UsageRules(timezone="UTC"),
                                      child_name="Mia", clock=clock)
        bus = UserInputBus()
        self.playback = PlaybackManager(
            self.synthesizer, self.sink, bus, age=6,
            backoff=BackoffConfig(max_attempts=2, base_delay=0.001), decoder=fake_decoder,
        )
        self.controller = SessionController(
            capture=CaptureManager(self.microphone, AudioConfig(silence_duration=5.0),
                                   encoding_probe=lambda: False),
            gateway=TranscriptionGateway([self.transcriber], head_start=1.0),
            responder=ResponseCoordinator([self.generator], profile, memory, rng=random.Random(1)),
            playback=self.playback,
            guardian=self.guardian,
            profile=profile,
            memory=memory,
            input_bus=bus,
            environment=environment,
        )

        self.states = []
        self.transcripts = []
        self.responses = []
        self.notices = []
        self.controller.on_state_changed = lambda old, new: self.states.append(new)
        self.controller.on_transcription = self.transcripts.append
        self.controller.on_response = self.responses.append
        self.controller.on_notice = lambda kind, message: self.notices.append((kind, message))

    async def talk(self, seconds: float = 0.05) -> None:
        """Press, speak for a moment, release and wait for the turn to finish"""
        assert await self.controller.press_mic()
        await asyncio.sleep(seconds)
        await self.controller.release_mic()
        await asyncio.wait_for(self.controller._turn_task, 2.0)


class TestTurn:
    """Test a complete turn"""

    @pytest.mark.asyncio
    async def test_full_turn(self, store, noon_clock):
        harness = Harness(store, noon_clock)
        controller = harness.controller

        await harness.talk()

        assert harness.states == [
            SessionMode.RECORDING, SessionMode.TRANSCRIBING, SessionMode.RESPONDING,
            SessionMode.SPEAKING, SessionMode.IDLE,
        ]
        assert harness.transcripts == ["I like dinosaurs"]
        assert harness.responses == ["Dinosaurs are awesome!"]
        assert harness.synthesizer.calls[0]["text"] == "Dinosaurs are awesome!"
        assert len(harness.sink.played) == 1
        assert harness.microphone.close_count == 1

        stats = controller.get_statistics()
        assert stats["completed_turns"] == 1
        assert stats["failed_turns"] == 0
        assert store.get(TELEMETRY_KEY)["seconds_spoken"] > 0
        assert store.get(TELEMETRY_KEY)["sessions_count"] == 1
        assert controller.session.turn_count == 1
        assert controller.memory.top_topics(1) == ["dinosaurs"]

        await controller.shutdown()

    @pytest.mark.asyncio
    async def test_low_confidence_goes_to_repair(self, store, noon_clock):
        transcriber = FakeTranscriber("whisper", text="blue dog sky", confidence=0.4)
        generator = FakeGenerator(reply="Can you say that again?")
        harness = Harness(store, noon_clock, transcriber=transcriber, generator=generator)

        await harness.talk()

        assert generator.requests[0].is_repair
        assert generator.requests[0].decision.mode == Mode.REPAIR
        assert harness.controller.session.last_mode == Mode.CHAT
        await harness.controller.shutdown()

    @pytest.mark.asyncio
    async def test_clear_turn_after_repair_leaves_repair(self, store, noon_clock):
        transcriber = FakeTranscriber("whisper", text="blue dog sky", confidence=0.4)
        generator = FakeGenerator(reply="Tell me more!")
        harness = Harness(store, noon_clock, transcriber=transcriber, generator=generator)

        await harness.talk()
        transcriber.text = "I like dinosaurs a lot"
        transcriber.confidence = 0.95
        await harness.talk()

        follow_up = generator.requests[1]
        assert not follow_up.is_repair
        assert follow_up.decision.mode == Mode.CHAT
        assert not follow_up.decision.need_clarify
        await harness.controller.shutdown()

    @pytest.mark.asyncio
    async def test_greeting(self, store, noon_clock):
        harness = Harness(store, noon_clock)

        greeting = await harness.controller.greet()

        assert greeting.startswith("Good afternoon, Mia!")
        assert harness.synthesizer.calls[0]["prosody"] == Prosody.EXCITED
        assert await harness.controller.greet() is None
        assert harness.controller.mode == SessionMode.IDLE
        assert harness.controller.session.last_speech_end is not None


class TestFailures:
    """Every failure path ends in IDLE"""

    @pytest.mark.asyncio
    async def test_transcription_failure_placeholder(self, store, noon_clock):
        transcriber = FakeTranscriber("whisper", error=TranscriptionError("503"))
        harness = Harness(store, noon_clock, transcriber=transcriber)

        await harness.talk()

        assert harness.transcripts == [TRANSCRIPTION_FAILED]
        assert harness.notices[-1][0] == "transcription_error"
        # Only the error cue was played
        assert len(harness.sink.played) == 1
        assert harness.synthesizer.calls == []
        assert harness.controller.mode == SessionMode.IDLE

    @pytest.mark.asyncio
    async def test_short_recording_never_transcribed(self, store, noon_clock):
        microphone = FakeMicrophone(chunk=b"")
        harness = Harness(store, noon_clock, microphone=microphone)

        await harness.talk()

        assert harness.transcriber.calls == 0
        assert harness.transcripts == [TRANSCRIPTION_FAILED]
        assert harness.controller.mode == SessionMode.IDLE

    @pytest.mark.asyncio
    async def test_capture_error(self, store, noon_clock):
        harness = Harness(store, noon_clock, microphone=FakeMicrophone(fail_open=True))

        assert await harness.controller.press_mic() is False

        assert harness.controller.mode == SessionMode.IDLE
        assert harness.notices[-1][0] == "capture_error"
        assert "microphone" in harness.notices[-1][1]

    @pytest.mark.asyncio
    async def test_synthesis_failure(self, store, noon_clock):
        harness = Harness(store, noon_clock, synthesizer=FakeSynthesizer(failures=5))

        await harness.talk()

        assert harness.notices[-1][0] == "voice_error"
        assert harness.controller.mode == SessionMode.IDLE
        assert harness.controller.statistics.failed_turns == 1


class TestBargeIn:
    """Test interrupting Buddy mid-reply"""

    @pytest.mark.asyncio
    async def test_press_while_speaking(self, store, noon_clock):
        sink = FakeSink(play_seconds=5.0)
        harness = Harness(store, noon_clock, sink=sink)
        controller = harness.controller

        assert await controller.press_mic()
        await asyncio.sleep(0.05)
        await controller.release_mic()
        await wait_until(lambda: controller.mode == SessionMode.SPEAKING
                         and len(sink.played) == 1)

        assert await controller.press_mic()

        assert sink.halt_count >= 1
        assert controller.mode == SessionMode.RECORDING
        assert controller.statistics.barge_ins == 1
        assert not controller.playback.is_active

        # The interrupted reply never counts towards telemetry
        assert store.get(TELEMETRY_KEY)["seconds_spoken"] == 0
        await controller.shutdown()
        assert controller.mode == SessionMode.IDLE

    @pytest.mark.asyncio
    async def test_press_while_responding_supersedes(self, store, noon_clock):
        transcriber = FakeTranscriber("whisper", text="I like dinosaurs", delay=0.5)
        harness = Harness(store, noon_clock, transcriber=transcriber)
        controller = harness.controller

        assert await controller.press_mic()
        await asyncio.sleep(0.03)
        await controller.release_mic()
        await wait_until(lambda: controller.mode == SessionMode.TRANSCRIBING)

        assert await controller.press_mic()

        assert controller.statistics.superseded_turns == 1
        assert controller.mode == SessionMode.RECORDING
        await wait_until(lambda: transcriber.cancelled)
        await controller.shutdown()

    @pytest.mark.asyncio
    async def test_press_during_error_cue_halts_it(self, store, noon_clock):
        transcriber = FakeTranscriber("whisper", error=TranscriptionError("503"))
        sink = FakeSink(play_seconds=1.0)
        harness = Harness(store, noon_clock, transcriber=transcriber, sink=sink)
        controller = harness.controller

        assert await controller.press_mic()
        await asyncio.sleep(0.03)
        await controller.release_mic()
        await wait_until(lambda: len(sink.played) == 1 and controller.playback.is_active)

        assert await controller.press_mic()

        assert sink.halt_count >= 1
        assert not controller.playback.is_active
        assert controller.mode == SessionMode.RECORDING
        await controller.shutdown()

    @pytest.mark.asyncio
    async def test_interrupted_flag_reaches_next_turn(self, store, noon_clock):
        sink = FakeSink(play_seconds=5.0)
        harness = Harness(store, noon_clock, sink=sink)
        controller = harness.controller

        assert await controller.press_mic()
        await asyncio.sleep(0.03)
        await controller.release_mic()
        await wait_until(lambda: controller.mode == SessionMode.SPEAKING and sink.played)

        sink.play_seconds = 0.01
        assert await controller.press_mic()
        await asyncio.sleep(0.03)
        await controller.release_mic()
        await asyncio.wait_for(controller._turn_task, 2.0)

        assert controller.mode == SessionMode.IDLE
        assert controller.statistics.completed_turns == 1


class TestGuardianLocks:
    """Test lock enforcement and guardian directives"""

    @pytest.mark.asyncio
    async def test_locked_press_refused(self, store, noon_clock):
        harness = Harness(store, noon_clock)
        harness.guardian.lock_mic(noon_clock.now + 60_000, "daily_limit")

        assert await harness.controller.press_mic() is False

        assert harness.controller.mode == SessionMode.LOCKED
        assert harness.notices[-1][0] == "locked"
        assert "12:01" in harness.notices[-1][1]
        assert harness.microphone.open_count == 0

    @pytest.mark.asyncio
    async def test_unlocks_after_expiry(self, store, noon_clock):
        harness = Harness(store, noon_clock)
        harness.guardian.lock_break(noon_clock.now + 60_000, "break")
        assert await harness.controller.press_mic() is False

        noon_clock.advance(minutes=2)
        await harness.talk()

        assert harness.controller.mode == SessionMode.IDLE
        await harness.controller.shutdown()

    @pytest.mark.asyncio
    async def test_daily_limit_directive_locks(self, store, noon_clock):
        store.set(TELEMETRY_KEY, {"date": "2024-05-01", "seconds_spoken": 119,
                                  "sessions_count": 1, "last_break_time": noon_clock.now,
                                  "last_usage_check": noon_clock.now})
        harness = Harness(store, noon_clock, rules=UsageRules(timezone="UTC", daily_limit_min=2))

        await harness.talk()

        assert harness.controller.mode == SessionMode.LOCKED
        assert harness.notices[-1][0] == "daily_limit"
        last_call = harness.synthesizer.calls[-1]
        assert "That's enough fun for today, Mia!" in last_call["text"]
        assert last_call["prosody"] == Prosody.SOOTHING
        assert harness.responses[-1] == last_call["text"]

        # The spoken notice does not trigger another check and the mic stays locked
        assert await harness.controller.press_mic() is False
        assert harness.controller.mode == SessionMode.LOCKED

    @pytest.mark.asyncio
    async def test_bedtime_greeting_refused(self, store, noon_clock):
        harness = Harness(store, noon_clock)
        harness.guardian.lock_mic(noon_clock.now + 3_600_000, "bedtime")

        assert await harness.controller.greet() is None
        assert harness.controller.mode == SessionMode.LOCKED


class TestFactory:
    """Test wiring from configuration"""

    def test_create_session_controller(self, store):
        config = BuddyConfig()
        config.api.openai_api_key = "sk-test"
        config.api.streaming_stt_url = "wss://stt.example/stream"
        config.session.child_name = "Leo"
        config.session.age_years = 9

        controller = create_session_controller(config, FakeMicrophone(), FakeSink(), store)

        assert controller.profile.name == "Leo"
        assert controller.playback.age == 9
        assert [p.name for p in controller.gateway.providers] == ["whisper", "streaming"]
        assert controller.guardian.rules.daily_limit_min == config.guardian.daily_limit_min
        assert controller.input_bus is controller.playback.input_bus
        assert controller.mode == SessionMode.IDLE
