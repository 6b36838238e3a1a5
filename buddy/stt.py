"""
Speech-to-Text (STT) Service Module

Transcription for captured utterances with a primary and a fallback path:
- WhisperTranscriber: single request/response call to OpenAI transcription
- StreamingTranscriber: websocket stream (audio, end marker, final message)
- TranscriptionGateway: runs the providers in order with a head start for
  each, and resolves exactly once through a shared OutcomeSlot
"""

import asyncio
import base64
import io
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import websockets
from openai import OpenAI

from .capture import CapturedAudio
from .config_manager import STTConfig
from .error_handling import (
    AllProvidersFailed, ErrorCategory, ProviderOutcome, TooShort,
    TranscriptionError, TranscriptionTimeout, attempt_provider
)

logger = logging.getLogger(__name__)

MIN_AUDIO_BYTES = 500
STREAMING_TIMEOUT = 10.0


@dataclass
class TranscriptionResult:
    """Result from speech-to-text conversion"""
    text: str
    confidence: float
    provider: str
    processing_time: float = 0.0
    language: Optional[str] = None


class Transcriber:
    """Common interface for transcription providers"""

    name = "transcriber"

    async def transcribe(self, audio: CapturedAudio) -> TranscriptionResult:
        raise NotImplementedError


class WhisperTranscriber(Transcriber):
    """Single-shot transcription via OpenAI's audio API"""

    name = "whisper"

    def __init__(self, config: STTConfig, client: OpenAI):
        self.config = config
        self.client = client

        # Statistics
        self.total_requests = 0
        self.failed_requests = 0

    async def transcribe(self, audio: CapturedAudio) -> TranscriptionResult:
        start_time = time.time()
        self.total_requests += 1
        audio_file = io.BytesIO(audio.data)
        audio_file.name = f"audio.{audio.encoding.format}"

        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: self.client.audio.transcriptions.create(
                    model=self.config.primary_model,
                    file=audio_file,
                    language=self.config.language,
                    response_format="verbose_json",
                    temperature=self.config.temperature
                )
            )
        except Exception as e:
            self.failed_requests += 1
            raise TranscriptionError(f"Whisper request failed: {e}", original_exception=e)

        text = (getattr(response, 'text', '') or '').strip()
        segments = getattr(response, 'segments', None) or []
        result = TranscriptionResult(
            text=text,
            confidence=self._estimate_confidence(text, segments),
            provider=self.name,
            processing_time=time.time() - start_time,
            language=getattr(response, 'language', self.config.language),
        )
        logger.info(f"Whisper transcription: '{text}' ({result.confidence:.2f}, "
                    f"{result.processing_time:.2f}s)")
        return result

    def _estimate_confidence(self, text: str, segments: Sequence[Any]) -> float:
        """Confidence from segment log-probabilities, or a text heuristic without them"""
        if not text:
            return 0.0

        scores = []
        for segment in segments:
            avg_logprob = _field(segment, 'avg_logprob')
            no_speech_prob = _field(segment, 'no_speech_prob') or 0.0
            if avg_logprob is not None:
                scores.append(math.exp(avg_logprob) * (1.0 - no_speech_prob))
        if scores:
            return min(max(sum(scores) / len(scores), 0.0), 1.0)

        confidence = 0.6
        if len(text) > 10:
            confidence += 0.1
        if not any(marker in text.lower() for marker in ['[', ']', '(', ')', 'inaudible', 'unclear']):
            confidence += 0.2
        if text[0].isupper() and text[-1] in '.!?':
            confidence += 0.1
        return min(max(confidence, 0.0), 1.0)


def _field(segment: Any, name: str) -> Optional[float]:
    if isinstance(segment, dict):
        return segment.get(name)
    return getattr(segment, name, None)


class StreamingTranscriber(Transcriber):
    """Websocket transcription: audio, then an end marker, then wait for 'final'.

    Bounded by ``timeout``; the socket is closed on every exit path.
    """

    name = "streaming"

    def __init__(self, url: str, timeout: float = STREAMING_TIMEOUT,
                 api_key: Optional[str] = None, connect: Callable[..., Any] = websockets.connect):
        self.url = url
        self.timeout = timeout
        self.api_key = api_key
        self.connect = connect

    async def transcribe(self, audio: CapturedAudio) -> TranscriptionResult:
        try:
            return await asyncio.wait_for(self._stream(audio), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Streaming transcription timed out after {self.timeout:.0f}s")
            raise TranscriptionTimeout(self.timeout)

    async def _stream(self, audio: CapturedAudio) -> TranscriptionResult:
        start_time = time.time()
        connect_kwargs: Dict[str, Any] = {}
        if self.api_key:
            connect_kwargs['additional_headers'] = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with self.connect(self.url, **connect_kwargs) as ws:
                await ws.send(json.dumps({"type": "start_recording",
                                          "encoding": audio.encoding.mime_type,
                                          "sample_rate": audio.sample_rate}))
                await ws.send(json.dumps({"type": "audio",
                                          "data": base64.b64encode(audio.data).decode('ascii')}))
                await ws.send(json.dumps({"type": "stop_recording"}))

                async for raw in ws:
                    message = json.loads(raw)
                    kind = message.get("type")
                    if kind == "final":
                        return TranscriptionResult(
                            text=(message.get("text") or "").strip(),
                            confidence=float(message.get("confidence") or 0.0),
                            provider=self.name,
                            processing_time=time.time() - start_time,
                        )
                    if kind == "error":
                        raise TranscriptionError(f"Streaming service error: {message.get('message', 'unknown')}")
                    logger.debug(f"Streaming message ignored: {kind}")
        except TranscriptionError:
            raise
        except (OSError, websockets.exceptions.WebSocketException, json.JSONDecodeError) as e:
            raise TranscriptionError(f"Streaming transcription failed: {e}",
                                     ErrorCategory.NETWORK, original_exception=e)

        raise TranscriptionError("Stream closed without a final transcript")


class OutcomeSlot:
    """Single-assignment result shared by racing providers"""

    def __init__(self):
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.discarded: List[TranscriptionResult] = []

    @property
    def resolved(self) -> bool:
        return self.future.done()

    def offer(self, result: TranscriptionResult) -> bool:
        """Accept the first result only; later ones are recorded and dropped"""
        if self.future.done():
            self.discarded.append(result)
            logger.debug(f"Discarding late result from {result.provider}")
            return False
        self.future.set_result(result)
        return True

    def result(self) -> TranscriptionResult:
        return self.future.result()


class TranscriptionGateway:
    """Ordered transcription providers racing into one OutcomeSlot.

    Each provider gets ``head_start`` seconds on its own. When it fails,
    returns empty text, or runs out of head start, the next provider starts
    while the earlier one keeps running. The first non-empty result wins.
    """

    def __init__(self, providers: Sequence[Transcriber], head_start: float = 4.0,
                 min_bytes: int = MIN_AUDIO_BYTES):
        if not providers:
            raise ValueError("TranscriptionGateway needs at least one provider")
        self.providers = list(providers)
        self.head_start = head_start
        self.min_bytes = min_bytes

    async def transcribe(self, audio: CapturedAudio) -> TranscriptionResult:
        if audio.size < self.min_bytes:
            raise TooShort(audio.size, self.min_bytes)

        slot = OutcomeSlot()
        outcomes: Dict[str, ProviderOutcome] = {}
        tasks: List[asyncio.Task] = []

        try:
            for index, provider in enumerate(self.providers):
                task = asyncio.create_task(self._run(provider, audio, slot, outcomes))
                tasks.append(task)

                is_last = index == len(self.providers) - 1
                await asyncio.wait(
                    {slot.future, task},
                    timeout=None if is_last else self.head_start,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if slot.resolved:
                    return slot.result()
                if not task.done():
                    logger.info(f"{provider.name} exceeded its {self.head_start:.1f}s head start, "
                                f"starting next provider")

            # Every provider has started; wait for a winner or for all to finish
            pending = [t for t in tasks if not t.done()]
            while pending and not slot.resolved:
                await asyncio.wait({slot.future, *pending}, return_when=asyncio.FIRST_COMPLETED)
                pending = [t for t in tasks if not t.done()]

            if slot.resolved:
                return slot.result()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        raise self._failure(outcomes)

    async def _run(self, provider: Transcriber, audio: CapturedAudio, slot: OutcomeSlot,
                   outcomes: Dict[str, ProviderOutcome]) -> None:
        outcome = await attempt_provider(
            provider.name,
            lambda: provider.transcribe(audio),
            accept=lambda result: bool(result and result.text.strip()),
        )
        outcomes[provider.name] = outcome

        if outcome.success:
            if slot.offer(outcome.value):
                logger.info(f"Transcription resolved by {provider.name} in {outcome.elapsed:.2f}s")
        else:
            logger.warning(f"Transcription provider {provider.name} failed: {outcome.error}")

    def _failure(self, outcomes: Dict[str, ProviderOutcome]) -> TranscriptionError:
        attempted = [p.name for p in self.providers if p.name in outcomes]
        for provider in reversed(self.providers):
            outcome = outcomes.get(provider.name)
            if outcome and isinstance(outcome.error, TranscriptionError):
                return outcome.error
        last = next((outcomes[name].error for name in reversed(attempted)), None)
        return AllProvidersFailed("transcription", attempted, last)


def create_transcription_gateway(config: STTConfig, client: OpenAI,
                                 streaming_url: Optional[str] = None,
                                 api_key: Optional[str] = None) -> TranscriptionGateway:
    """Factory: Whisper primary plus the streaming fallback when a URL is configured"""
    providers: List[Transcriber] = [WhisperTranscriber(config, client)]
    if streaming_url:
        providers.append(StreamingTranscriber(streaming_url, config.streaming_timeout, api_key))
    else:
        logger.warning("No streaming transcription URL configured, fallback disabled")
    return TranscriptionGateway(providers, head_start=config.primary_head_start)
