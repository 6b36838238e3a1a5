"""
Text-to-Speech (TTS) Service Module

Speech synthesis for Buddy's replies using OpenAI's speech API.
Features include:
- Voice and speaking-rate control per child and prosody
- In-memory caching for repeated phrases (greetings, clarifiers, notices)
- Statistics for the dev console

Retries are owned by the caller (PlaybackManager) so that a single backoff
policy governs every synthesis attempt.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from openai import OpenAI

from .config_manager import TTSConfig
from .dialogue import Prosody
from .error_handling import SynthesisError, ErrorCategory

logger = logging.getLogger(__name__)

VALID_VOICES = ["alloy", "echo", "fable", "onyx", "nova", "shimmer", "coral", "sage"]
MAX_TEXT_LENGTH = 4096

# Only the gpt-4o speech models accept delivery instructions
PROSODY_INSTRUCTIONS = {
    Prosody.CALM: "Speak calmly and warmly to a young child.",
    Prosody.EXCITED: "Speak with bright, playful excitement, like telling a child a fun surprise.",
    Prosody.SOOTHING: "Speak slowly and gently, in a soothing and reassuring tone.",
    Prosody.SINGING: "Speak in a light sing-song voice.",
    Prosody.NEUTRAL: "Speak in a friendly, clear voice for a child.",
}


@dataclass
class SynthesizedSpeech:
    """Encoded audio returned by a synthesizer"""
    audio_data: bytes
    format: str
    text: str
    voice: str
    speed: float
    processing_time: float = 0.0
    cached: bool = False


class TTSCache:
    """Simple in-memory cache for synthesized speech"""

    def __init__(self, max_size: int = 64, ttl: int = 3600):
        self.max_size = max_size
        self.ttl = ttl
        self.cache: Dict[str, SynthesizedSpeech] = {}
        self.access_times: Dict[str, float] = {}

    def _generate_key(self, text: str, voice: str, speed: float, prosody: Prosody) -> str:
        key_string = f"{text}_{voice}_{speed:.2f}_{prosody.value}"
        return hashlib.md5(key_string.encode()).hexdigest()

    def get(self, text: str, voice: str, speed: float, prosody: Prosody) -> Optional[SynthesizedSpeech]:
        key = self._generate_key(text, voice, speed, prosody)

        if key in self.cache:
            if time.time() - self.access_times[key] < self.ttl:
                self.access_times[key] = time.time()
                result = self.cache[key]
                result.cached = True
                return result
            del self.cache[key]
            del self.access_times[key]

        return None

    def put(self, text: str, voice: str, speed: float, prosody: Prosody, result: SynthesizedSpeech):
        key = self._generate_key(text, voice, speed, prosody)

        if len(self.cache) >= self.max_size and key not in self.cache:
            oldest_key = min(self.access_times.keys(), key=lambda k: self.access_times[k])
            del self.cache[oldest_key]
            del self.access_times[oldest_key]

        self.cache[key] = result
        self.access_times[key] = time.time()

    def clear(self):
        self.cache.clear()
        self.access_times.clear()

    def __len__(self) -> int:
        return len(self.cache)


class SpeechSynthesizer:
    """Synthesis port used by PlaybackManager"""

    name = "synthesizer"

    async def synthesize(self, text: str, prosody: Prosody = Prosody.NEUTRAL,
                         speed: float = 1.0) -> SynthesizedSpeech:
        raise NotImplementedError


class OpenAISpeechSynthesizer(SpeechSynthesizer):
    """OpenAI Text-to-Speech service"""

    name = "openai-tts"

    def __init__(self, config: TTSConfig, client: OpenAI):
        self.config = config
        self.client = client
        self.cache = TTSCache(config.cache_size) if config.cache_size > 0 else None

        # Statistics
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.total_processing_time = 0.0
        self.cache_hits = 0

        if config.voice not in VALID_VOICES:
            logger.warning(f"Voice '{config.voice}' is not a known OpenAI voice")

    async def synthesize(self, text: str, prosody: Prosody = Prosody.NEUTRAL,
                         speed: float = 1.0) -> SynthesizedSpeech:
        """Convert one reply to encoded audio; raises ``SynthesisError``"""
        text = (text or "").strip()
        if not text:
            raise SynthesisError("Empty text provided for TTS", ErrorCategory.PERMANENT, retryable=False)
        if len(text) > MAX_TEXT_LENGTH:
            logger.warning(f"Text too long for TTS ({len(text)} chars), truncating")
            text = text[:MAX_TEXT_LENGTH]

        speed = min(max(speed, 0.25), 4.0)

        if self.cache is not None:
            cached = self.cache.get(text, self.config.voice, speed, prosody)
            if cached:
                logger.debug(f"Cache hit for text: {text[:50]}...")
                self.cache_hits += 1
                return cached

        start_time = time.time()
        self.total_requests += 1
        loop = asyncio.get_running_loop()

        try:
            audio_data = await asyncio.wait_for(
                loop.run_in_executor(None, self._create_speech, text, prosody, speed),
                timeout=self.config.timeout
            )
        except asyncio.TimeoutError as e:
            self.failed_requests += 1
            raise SynthesisError(f"TTS request timed out after {self.config.timeout}s",
                                 ErrorCategory.TIMEOUT, original_exception=e)
        except Exception as e:
            self.failed_requests += 1
            raise SynthesisError(f"TTS request failed: {e}", original_exception=e)

        if not audio_data:
            self.failed_requests += 1
            raise SynthesisError("Empty audio response from TTS")

        processing_time = time.time() - start_time
        result = SynthesizedSpeech(
            audio_data=audio_data,
            format=self.config.response_format,
            text=text,
            voice=self.config.voice,
            speed=speed,
            processing_time=processing_time,
        )

        if self.cache is not None:
            self.cache.put(text, self.config.voice, speed, prosody, result)

        self.successful_requests += 1
        self.total_processing_time += processing_time
        logger.info(f"Synthesized speech: {len(text)} chars in {processing_time:.2f}s")
        return result

    def _create_speech(self, text: str, prosody: Prosody, speed: float) -> bytes:
        params: Dict[str, Any] = {
            "model": self.config.model,
            "voice": self.config.voice,
            "input": text,
            "speed": speed,
            "response_format": self.config.response_format,
        }
        if self.config.model.startswith("gpt-4o"):
            params["instructions"] = PROSODY_INSTRUCTIONS[prosody]

        response = self.client.audio.speech.create(**params)
        return response.content

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": self.successful_requests / max(self.total_requests, 1),
            "average_processing_time": self.total_processing_time / max(self.successful_requests, 1),
            "cache_hits": self.cache_hits,
        }

