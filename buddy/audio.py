"""
Audio Device Backend

PyAudio implementations of the device ports used by the turn engine:
- PyAudioMicrophone: 16 kHz mono capture for CaptureManager
- PyAudioSpeaker: chunked output for PlaybackManager, haltable mid-clip
- Device detection and default selection
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import numpy as np
import pyaudio

from .capture import MicrophoneSource
from .error_handling import CaptureError, SynthesisError
from .playback import AudioSink, Clip

logger = logging.getLogger(__name__)


class AudioDeviceType(Enum):
    """Audio device types"""
    INPUT = "input"
    OUTPUT = "output"


@dataclass
class AudioDevice:
    """Audio device information"""
    index: int
    name: str
    device_type: AudioDeviceType
    default_sample_rate: float
    is_default: bool


def detect_devices(pa: pyaudio.PyAudio) -> List[AudioDevice]:
    """List input and output devices, marking the defaults"""
    devices = []
    try:
        default_input = pa.get_default_input_device_info()['index']
    except (IOError, OSError):
        default_input = None
    try:
        default_output = pa.get_default_output_device_info()['index']
    except (IOError, OSError):
        default_output = None

    for i in range(pa.get_device_count()):
        info = pa.get_device_info_by_index(i)
        if info['maxInputChannels'] > 0:
            devices.append(AudioDevice(i, info['name'], AudioDeviceType.INPUT,
                                       info['defaultSampleRate'], i == default_input))
        if info['maxOutputChannels'] > 0:
            devices.append(AudioDevice(i, info['name'], AudioDeviceType.OUTPUT,
                                       info['defaultSampleRate'], i == default_output))

    for device in devices:
        logger.debug(f"  Device {device.index}: {device.name} ({device.device_type.value}) "
                     f"- {device.default_sample_rate}Hz {'[DEFAULT]' if device.is_default else ''}")
    return devices


class PyAudioMicrophone(MicrophoneSource):
    """Blocking microphone reads through PyAudio"""

    def __init__(self, pa: pyaudio.PyAudio, device_index: Optional[int] = None,
                 input_volume: float = 1.0):
        self.pa = pa
        self.device_index = device_index
        self.input_volume = input_volume
        self.chunk_size = 1024
        self._stream = None

    def open(self, sample_rate: int, channels: int, chunk_size: int,
             echo_cancellation: bool = True, noise_suppression: bool = True) -> None:
        if self._stream is not None:
            logger.warning("Input stream already open, closing previous stream")
            self.close()

        # PortAudio exposes no echo cancellation or noise suppression; the OS
        # input chain provides them where available
        if echo_cancellation or noise_suppression:
            logger.debug("Relying on OS audio processing for echo/noise suppression")

        self.chunk_size = chunk_size
        try:
            self._stream = self.pa.open(
                format=pyaudio.paInt16,
                channels=channels,
                rate=sample_rate,
                input=True,
                input_device_index=self.device_index,
                frames_per_buffer=chunk_size,
            )
        except (IOError, OSError, ValueError) as e:
            self._stream = None
            raise CaptureError(f"Failed to open microphone: {e}", original_exception=e)
        logger.info(f"Input stream opened on device {self.device_index}")

    def read_chunk(self) -> bytes:
        if self._stream is None:
            return b""
        data = self._stream.read(self.chunk_size, exception_on_overflow=False)

        if self.input_volume != 1.0:
            samples = np.frombuffer(data, dtype=np.int16).astype(np.float32) * self.input_volume
            data = np.clip(samples, -32768, 32767).astype(np.int16).tobytes()
        return data

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop_stream()
            stream.close()
            logger.info("Input stream closed")
        except (IOError, OSError) as e:
            logger.error(f"Error closing input stream: {e}")


class PyAudioSpeaker(AudioSink):
    """Plays clips in small chunks on a worker thread so ``halt`` takes effect quickly"""

    def __init__(self, pa: pyaudio.PyAudio, device_index: Optional[int] = None,
                 output_volume: float = 1.0, chunk_frames: int = 1024):
        self.pa = pa
        self.device_index = device_index
        self.output_volume = output_volume
        self.chunk_frames = chunk_frames
        self._halt = threading.Event()
        self._done: Optional[asyncio.Future] = None

    def play(self, clip: Clip) -> None:
        self.halt()
        try:
            stream = self.pa.open(
                format=self.pa.get_format_from_width(clip.sample_width),
                channels=clip.channels,
                rate=clip.sample_rate,
                output=True,
                output_device_index=self.device_index,
                frames_per_buffer=self.chunk_frames,
            )
        except (IOError, OSError, ValueError) as e:
            raise SynthesisError(f"Failed to open output stream: {e}", original_exception=e)

        halt = threading.Event()
        self._halt = halt
        loop = asyncio.get_running_loop()
        self._done = loop.run_in_executor(None, self._write, stream, clip, halt)

    def _write(self, stream, clip: Clip, halt: threading.Event) -> None:
        pcm = clip.pcm
        if self.output_volume != 1.0:
            samples = np.frombuffer(pcm, dtype=np.int16).astype(np.float32) * self.output_volume
            pcm = np.clip(samples, -32768, 32767).astype(np.int16).tobytes()

        step = self.chunk_frames * clip.channels * clip.sample_width
        try:
            for offset in range(0, len(pcm), step):
                if halt.is_set():
                    break
                stream.write(pcm[offset:offset + step])
        finally:
            try:
                stream.stop_stream()
                stream.close()
            except (IOError, OSError) as e:
                logger.error(f"Error closing output stream: {e}")

    async def wait_until_done(self) -> None:
        done = self._done
        if done is None:
            return
        try:
            await done
        except (IOError, OSError) as e:
            logger.error(f"Audio output failed: {e}")

    def halt(self) -> None:
        self._halt.set()


class AudioBackend:
    """Owns the PyAudio instance and the device ports built on it"""

    def __init__(self, input_device: Optional[int] = None, output_device: Optional[int] = None):
        self.pa = pyaudio.PyAudio()
        self.devices = detect_devices(self.pa)
        logger.info(f"PyAudio initialized with {len(self.devices)} device endpoints")
        self.microphone = PyAudioMicrophone(self.pa, input_device)
        self.speaker = PyAudioSpeaker(self.pa, output_device)

    def cleanup(self) -> None:
        logger.info("Cleaning up audio resources")
        self.speaker.halt()
        self.microphone.close()
        self.pa.terminate()
