"""
Playback Manager

Owns the speaker. Turns reply text into played audio and exposes the
barge-in primitive ``stop()``.

Per-utterance states: IDLE -> LOADING -> PLAYING -> ENDED, ERROR from any.

Ordering guarantee: once ``stop()`` returns, nothing from the interrupted
utterance plays. Every ``speak()`` captures a generation number; ``stop()``
bumps it, and a synthesis or decode result that arrives for an older
generation is dropped.
"""

import asyncio
import io
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from .dialogue import Prosody
from .error_handling import (
    AutoplayBlocked, BackoffConfig, DecodeError, SynthesisError, retry_with_backoff
)
from .tts import SpeechSynthesizer, SynthesizedSpeech

logger = logging.getLogger(__name__)

GESTURE_KINDS = ("mic_press", "key_press", "touch", "click")
GESTURE_TIMEOUT = 30.0


class PlaybackState(Enum):
    """Playback states for one utterance"""
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    ENDED = "ended"
    ERROR = "error"


@dataclass
class Clip:
    """Decoded, playable PCM audio"""
    pcm: bytes
    sample_rate: int
    channels: int = 1
    sample_width: int = 2

    @property
    def duration(self) -> float:
        frame_bytes = self.channels * self.sample_width
        return len(self.pcm) / float(self.sample_rate * frame_bytes) if self.pcm else 0.0


@dataclass
class PlaybackResult:
    """How an utterance ended"""
    completed: bool = False
    interrupted: bool = False
    blocked: bool = False
    duration: float = 0.0


class AudioSink:
    """Speaker port.

    ``play`` starts output and returns immediately; it raises
    ``AutoplayBlocked`` when the platform needs a user gesture first.
    ``halt`` must be safe to call at any time.
    """

    def play(self, clip: Clip) -> None:
        raise NotImplementedError

    async def wait_until_done(self) -> None:
        raise NotImplementedError

    def halt(self) -> None:
        raise NotImplementedError


class UserInputBus:
    """Fan-out of UI input events (mic press, key press, touch, click)"""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[str], None]]] = {}

    def subscribe(self, kind: str, callback: Callable[[str], None]) -> Callable[[], None]:
        self._listeners.setdefault(kind, []).append(callback)

        def unsubscribe():
            listeners = self._listeners.get(kind, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def emit(self, kind: str) -> None:
        for callback in list(self._listeners.get(kind, [])):
            callback(kind)

    def listener_count(self) -> int:
        return sum(len(listeners) for listeners in self._listeners.values())


class PendingUserGesture:
    """One-shot wait for the first of several input kinds.

    All listeners are removed as soon as one fires, on timeout, or on cancel.
    """

    def __init__(self, bus: UserInputBus, kinds: Sequence[str] = GESTURE_KINDS,
                 timeout: float = GESTURE_TIMEOUT):
        self.bus = bus
        self.kinds = tuple(kinds)
        self.timeout = timeout
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._unsubscribers = [bus.subscribe(kind, self._on_input) for kind in self.kinds]

    def _on_input(self, kind: str) -> None:
        if not self._future.done():
            self._future.set_result(kind)
        self._remove_listeners()

    def _remove_listeners(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    @property
    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> Optional[str]:
        """Kind of the gesture that fired, or None on timeout or cancel"""
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), self.timeout)
        except asyncio.TimeoutError:
            logger.info(f"No user gesture within {self.timeout:.0f}s")
            return None
        except asyncio.CancelledError:
            if self._future.cancelled():
                return None
            raise
        finally:
            self._remove_listeners()

    def cancel(self) -> None:
        self._remove_listeners()
        if not self._future.done():
            self._future.cancel()


def decode_speech(speech: SynthesizedSpeech) -> Clip:
    """Decode an encoded TTS payload into 16-bit PCM"""
    try:
        segment = AudioSegment.from_file(io.BytesIO(speech.audio_data), format=speech.format)
    except (CouldntDecodeError, IndexError, OSError) as e:
        raise DecodeError(f"Could not decode {speech.format} audio: {e}", original_exception=e)

    segment = segment.set_sample_width(2)
    return Clip(pcm=segment.raw_data, sample_rate=segment.frame_rate, channels=segment.channels)


# (start Hz, end Hz, seconds, peak gain)
CUES: Dict[str, Tuple[float, float, float, float]] = {
    "start": (440.0, 880.0, 0.2, 0.3),
    "stop": (660.0, 330.0, 0.15, 0.25),
    "success": (523.0, 784.0, 0.25, 0.25),
    "error": (330.0, 220.0, 0.3, 0.3),
}


def chime(kind: str, sample_rate: int = 16000) -> Clip:
    """Exponential sine sweep with a short fade in/out"""
    if kind not in CUES:
        raise ValueError(f"Unknown cue '{kind}'")
    f0, f1, seconds, gain = CUES[kind]

    t = np.arange(int(sample_rate * seconds)) / sample_rate
    ratio = f1 / f0
    phase = 2 * np.pi * f0 * seconds / np.log(ratio) * (ratio ** (t / seconds) - 1)

    fade = max(1, int(0.03 * sample_rate))
    envelope = np.ones_like(t)
    envelope[:fade] = np.linspace(0.0, 1.0, fade)
    envelope[-fade:] = np.linspace(1.0, 0.0, fade)

    wave = gain * envelope * np.sin(phase)
    pcm = (wave * 32767).astype(np.int16).tobytes()
    return Clip(pcm=pcm, sample_rate=sample_rate)


PROSODY_RATE = {
    Prosody.CALM: 0.95,
    Prosody.SOOTHING: 0.9,
    Prosody.EXCITED: 1.05,
    Prosody.SINGING: 1.0,
    Prosody.NEUTRAL: 1.0,
}


def speaking_rate(age: int, prosody: Prosody = Prosody.NEUTRAL) -> float:
    """Slower speech for younger children, scaled by delivery style"""
    if age <= 5:
        base = 0.8
    elif age <= 8:
        base = 0.9
    else:
        base = 1.0
    return round(base * PROSODY_RATE.get(prosody, 1.0), 3)


class PlaybackManager:
    """Speaks replies through an ``AudioSink`` with barge-in support"""

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        sink: AudioSink,
        input_bus: UserInputBus,
        age: int = 6,
        backoff: Optional[BackoffConfig] = None,
        decoder: Callable[[SynthesizedSpeech], Clip] = decode_speech,
        gesture_timeout: float = GESTURE_TIMEOUT,
        gesture_kinds: Sequence[str] = GESTURE_KINDS,
    ):
        self.synthesizer = synthesizer
        self.sink = sink
        self.input_bus = input_bus
        self.age = age
        self.backoff = backoff or BackoffConfig(max_attempts=3, base_delay=0.5)
        self.decoder = decoder
        self.gesture_timeout = gesture_timeout
        self.gesture_kinds = tuple(gesture_kinds)

        self._state = PlaybackState.IDLE
        self._generation = 0
        self._clip: Optional[Clip] = None
        self._gesture: Optional[PendingUserGesture] = None
        self._prepared: Optional[Tuple[Tuple[str, Prosody], asyncio.Task]] = None

        self.on_state_changed: Optional[Callable[[PlaybackState, PlaybackState], None]] = None

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state in (PlaybackState.LOADING, PlaybackState.PLAYING)

    @property
    def has_pending_gesture(self) -> bool:
        return self._gesture is not None

    def _set_state(self, new_state: PlaybackState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.debug(f"Playback state: {old_state.value} → {new_state.value}")
        if self.on_state_changed:
            try:
                self.on_state_changed(old_state, new_state)
            except Exception as e:
                logger.error(f"Error in playback state callback: {e}")

    async def _synthesize(self, text: str, prosody: Prosody) -> SynthesizedSpeech:
        speed = speaking_rate(self.age, prosody)
        return await retry_with_backoff(
            lambda: self.synthesizer.synthesize(text, prosody, speed),
            self.backoff,
            operation="speech synthesis",
        )

    def prepare(self, text: str, prosody: Prosody = Prosody.NEUTRAL) -> None:
        """Start synthesis early; the next ``speak`` of the same text reuses it"""
        key = (text, prosody)
        if self._prepared and self._prepared[0] == key:
            return
        task = asyncio.create_task(self._synthesize(text, prosody))
        task.add_done_callback(_consume_result)
        self._prepared = (key, task)

    def _take_synthesis(self, text: str, prosody: Prosody) -> "asyncio.Future":
        prepared, self._prepared = self._prepared, None
        if prepared and prepared[0] == (text, prosody):
            return prepared[1]
        task = asyncio.ensure_future(self._synthesize(text, prosody))
        task.add_done_callback(_consume_result)
        return task

    async def speak(self, text: str, prosody: Prosody = Prosody.NEUTRAL,
                    is_health_message: bool = False) -> PlaybackResult:
        """Synthesize and play one utterance.

        Raises ``SynthesisError`` when synthesis or decoding fails for good.
        A blocked output device never fails: playback waits for a gesture.
        """
        if self.is_active:
            self.stop()

        self._generation += 1
        generation = self._generation
        self._set_state(PlaybackState.LOADING)
        kind = "health notice" if is_health_message else "reply"
        logger.info(f"🔊 Speaking {kind}: {text[:60]}")

        synthesis = self._take_synthesis(text, prosody)
        try:
            # Shielded so that stop() can drop the result without cancelling the request
            speech = await asyncio.shield(synthesis)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation != self._generation:
                return PlaybackResult(interrupted=True)
            self._set_state(PlaybackState.ERROR)
            if isinstance(e, SynthesisError):
                raise
            raise SynthesisError(f"Speech synthesis failed: {e}", original_exception=e)

        if generation != self._generation:
            logger.debug("Discarding synthesis for a stopped utterance")
            return PlaybackResult(interrupted=True)

        try:
            clip = self.decoder(speech)
        except DecodeError:
            self._set_state(PlaybackState.ERROR)
            raise
        self._clip = clip

        try:
            self.sink.play(clip)
        except AutoplayBlocked:
            return await self._play_after_gesture(generation, clip)
        except Exception as e:
            self._set_state(PlaybackState.ERROR)
            self._clip = None
            raise SynthesisError(f"Audio output failed: {e}", original_exception=e)

        return await self._finish_playback(generation, clip)

    async def _play_after_gesture(self, generation: int, clip: Clip) -> PlaybackResult:
        logger.info("Autoplay blocked, waiting for a user gesture")
        gesture = PendingUserGesture(self.input_bus, self.gesture_kinds, self.gesture_timeout)
        self._gesture = gesture
        try:
            fired = await gesture.wait()
        finally:
            gesture.cancel()
            if self._gesture is gesture:
                self._gesture = None

        if generation != self._generation:
            return PlaybackResult(interrupted=True)
        if fired is None:
            self._clip = None
            self._set_state(PlaybackState.IDLE)
            return PlaybackResult(blocked=True)

        logger.info(f"User gesture '{fired}' received, retrying playback")
        try:
            self.sink.play(clip)
        except AutoplayBlocked:
            self._clip = None
            self._set_state(PlaybackState.IDLE)
            return PlaybackResult(blocked=True)
        except Exception as e:
            self._set_state(PlaybackState.ERROR)
            self._clip = None
            raise SynthesisError(f"Audio output failed: {e}", original_exception=e)

        return await self._finish_playback(generation, clip)

    async def _finish_playback(self, generation: int, clip: Clip) -> PlaybackResult:
        self._set_state(PlaybackState.PLAYING)
        started = time.monotonic()
        await self.sink.wait_until_done()

        if generation != self._generation:
            return PlaybackResult(interrupted=True, duration=time.monotonic() - started)

        self._clip = None
        self._set_state(PlaybackState.ENDED)
        return PlaybackResult(completed=True, duration=clip.duration)

    def stop(self) -> None:
        """Barge-in: halt audio now and drop anything still in flight.

        Synchronous, idempotent, never raises.
        """
        self._generation += 1

        if self._gesture is not None:
            self._gesture.cancel()
            self._gesture = None

        try:
            self.sink.halt()
        except Exception as e:
            logger.warning(f"Error halting audio output: {e}")

        self._clip = None
        self._prepared = None
        self._set_state(PlaybackState.IDLE)

    async def play_cue(self, kind: str) -> None:
        """Short feedback chime; skipped silently when output is blocked.

        The cue counts as active playback, so ``stop()`` halts it like speech.
        """
        if self.is_active:
            self.stop()

        self._generation += 1
        generation = self._generation
        try:
            self.sink.play(chime(kind))
        except AutoplayBlocked:
            logger.debug(f"Cue '{kind}' skipped, output blocked")
            return
        except Exception as e:
            logger.warning(f"Could not play cue '{kind}': {e}")
            return
        self._set_state(PlaybackState.PLAYING)
        await self.sink.wait_until_done()
        if generation == self._generation:
            self._set_state(PlaybackState.IDLE)


def _consume_result(task: "asyncio.Future") -> None:
    # Results of dropped synthesis requests are never awaited
    if not task.cancelled():
        task.exception()
