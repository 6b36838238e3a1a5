"""
Capture Manager

Owns the microphone for one utterance at a time:
- Negotiates the output encoding once per recording (ogg/opus, webm/opus,
  mp4/aac, then uncompressed WAV)
- Pumps PCM chunks from the device and tracks speech energy
- Auto-stops on trailing silence or the maximum recording length
- Rejects buffers too small to contain speech before transcription
"""

import asyncio
import io
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from pydub import AudioSegment
from pydub.exceptions import CouldntEncodeError
from pydub.utils import which

from .config_manager import AudioConfig
from .dialogue import rms_level
from .error_handling import CaptureError, TooShort

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # 16-bit PCM


@dataclass(frozen=True)
class Encoding:
    """A container/codec pair the recorder can produce"""
    name: str
    format: str
    codec: Optional[str] = None
    mime_type: str = "audio/wav"

    @property
    def compressed(self) -> bool:
        return self.format != "wav"


ENCODINGS = {
    "ogg/opus": Encoding("ogg/opus", "ogg", "libopus", "audio/ogg;codecs=opus"),
    "webm/opus": Encoding("webm/opus", "webm", "libopus", "audio/webm;codecs=opus"),
    "mp4/aac": Encoding("mp4/aac", "mp4", "aac", "audio/mp4"),
    "wav": Encoding("wav", "wav", None, "audio/wav"),
}
WAV = ENCODINGS["wav"]


def ffmpeg_available() -> bool:
    return bool(which("ffmpeg") or which("avconv"))


def select_encoding(preferred: Sequence[str], probe: Callable[[], bool] = ffmpeg_available) -> Encoding:
    """First supported encoding in ``preferred``; WAV needs no encoder and always works"""
    encoder_present = None
    for name in preferred:
        encoding = ENCODINGS.get(name)
        if encoding is None:
            logger.warning(f"Unknown encoding '{name}' in cascade, skipping")
            continue
        if not encoding.compressed:
            return encoding
        if encoder_present is None:
            encoder_present = probe()
        if encoder_present:
            return encoding
    return WAV


def encode_pcm(pcm: bytes, sample_rate: int, channels: int, encoding: Encoding) -> bytes:
    """Wrap raw 16-bit PCM in the requested container"""
    segment = AudioSegment(data=pcm, sample_width=SAMPLE_WIDTH, frame_rate=sample_rate, channels=channels)
    buffer = io.BytesIO()
    params = {"format": encoding.format}
    if encoding.codec:
        params["codec"] = encoding.codec
    segment.export(buffer, **params)
    return buffer.getvalue()


@dataclass
class CapturedAudio:
    """One finished recording"""
    data: bytes
    encoding: Encoding
    sample_rate: int
    duration: float
    energy: float
    stop_reason: str = "release"

    @property
    def size(self) -> int:
        return len(self.data)


class MicrophoneSource:
    """Device port: blocking reads of 16-bit PCM chunks"""

    def open(self, sample_rate: int, channels: int, chunk_size: int,
             echo_cancellation: bool = True, noise_suppression: bool = True) -> None:
        raise NotImplementedError

    def read_chunk(self) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class CaptureManager:
    """Records one utterance at a time from a ``MicrophoneSource``"""

    def __init__(self, source: MicrophoneSource, config: Optional[AudioConfig] = None,
                 encoding_probe: Callable[[], bool] = ffmpeg_available):
        self.source = source
        self.config = config or AudioConfig()
        self.encoding_probe = encoding_probe

        self._recording = False
        self._chunks: List[bytes] = []
        self._energies: List[float] = []
        self._encoding: Encoding = WAV
        self._started_at = 0.0
        self._stop_reason = "release"
        self._pump_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._stop_requested: Optional[asyncio.Event] = None

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def encoding(self) -> Encoding:
        return self._encoding

    async def start(self) -> None:
        """Acquire the microphone and begin pumping audio"""
        if self._recording:
            logger.warning("Capture already in progress")
            return

        loop = asyncio.get_running_loop()
        self._encoding = select_encoding(self.config.preferred_encodings, self.encoding_probe)

        try:
            await loop.run_in_executor(
                None,
                lambda: self.source.open(
                    self.config.sample_rate,
                    self.config.channels,
                    self.config.chunk_size,
                    self.config.echo_cancellation,
                    self.config.noise_suppression,
                )
            )
        except CaptureError:
            raise
        except Exception as e:
            raise CaptureError(f"Could not acquire microphone: {e}", original_exception=e)

        self._chunks = []
        self._energies = []
        self._stop_reason = "release"
        self._stop_task = None
        self._stop_requested = asyncio.Event()
        self._started_at = time.monotonic()
        self._recording = True
        self._pump_task = asyncio.create_task(self._pump())
        logger.info(f"🎤 Recording started ({self._encoding.name})")

    async def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        last_voice = time.monotonic()
        reason = None

        try:
            while self._recording:
                chunk = await loop.run_in_executor(None, self.source.read_chunk)
                if not self._recording:
                    break
                if chunk:
                    self._chunks.append(chunk)
                    level = rms_level(chunk)
                    self._energies.append(level)
                    if level >= self.config.silence_threshold:
                        last_voice = time.monotonic()

                now = time.monotonic()
                if now - last_voice >= self.config.silence_duration:
                    reason = "silence"
                    break
                if now - self._started_at >= self.config.max_audio_length:
                    reason = "max_duration"
                    break
        except Exception as e:
            logger.error(f"Microphone read failed: {e}")
            reason = "device_error"

        if reason and self._recording:
            logger.info(f"Auto-stopping capture: {reason}")
            self._request_stop(reason)

    def _request_stop(self, reason: str) -> asyncio.Task:
        if self._stop_task is None:
            self._stop_reason = reason
            self._recording = False
            self._stop_task = asyncio.create_task(self._finish())
            self._stop_requested.set()
        return self._stop_task

    async def stop(self) -> CapturedAudio:
        """Finish the recording and release the device.

        Idempotent: every call after the first returns (or raises) the same
        outcome. Raises ``TooShort`` for buffers under the minimum size.
        """
        if self._stop_task is None:
            if self._stop_requested is None:
                raise CaptureError("stop() called before start()")
            self._request_stop("release")
        return await asyncio.shield(self._stop_task)

    async def wait_finished(self) -> CapturedAudio:
        """Wait until release, silence or max duration ends the recording"""
        if self._stop_requested is None:
            raise CaptureError("No recording in progress")
        await self._stop_requested.wait()
        return await asyncio.shield(self._stop_task)

    async def _finish(self) -> CapturedAudio:
        loop = asyncio.get_running_loop()

        # The pump exits after its in-flight read returns
        if self._pump_task is not None:
            await self._pump_task
            self._pump_task = None

        try:
            await loop.run_in_executor(None, self.source.close)
        except Exception as e:
            logger.warning(f"Error releasing microphone: {e}")

        pcm = b"".join(self._chunks)
        duration = len(pcm) / float(self.config.sample_rate * self.config.channels * SAMPLE_WIDTH)
        energy = sum(self._energies) / len(self._energies) if self._energies else 0.0
        logger.info(f"⏹️ Recording stopped ({self._stop_reason}): {len(pcm)} bytes, {duration:.2f}s")

        if len(pcm) < self.config.min_buffer_bytes:
            raise TooShort(len(pcm), self.config.min_buffer_bytes)

        encoding = self._encoding
        try:
            data = await loop.run_in_executor(
                None, encode_pcm, pcm, self.config.sample_rate, self.config.channels, encoding
            )
        except CouldntEncodeError as e:
            logger.warning(f"Encoding as {encoding.name} failed, using WAV: {e}")
            encoding = WAV
            data = await loop.run_in_executor(
                None, encode_pcm, pcm, self.config.sample_rate, self.config.channels, WAV
            )

        return CapturedAudio(
            data=data,
            encoding=encoding,
            sample_rate=self.config.sample_rate,
            duration=duration,
            energy=energy,
            stop_reason=self._stop_reason,
        )
