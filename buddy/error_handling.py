"""
Error Handling and Retry Logic for the Buddy Voice Turn Engine

Provides:
- Structured error categories and the exception taxonomy of the turn engine
- A single reusable retry policy with exponential backoff
- A uniform provider outcome contract for ordered fallback chains
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(Enum):
    """Structured error categories for precise handling"""
    TRANSIENT = "transient"      # Temporary failures, retry recommended
    PERMANENT = "permanent"      # Permanent failures, don't retry
    TIMEOUT = "timeout"          # Timeout errors
    NETWORK = "network"          # Network connectivity issues
    AUDIO = "audio"              # Audio device / processing errors
    MODEL = "model"              # AI model errors


class VoiceAIException(Exception):
    """Base exception for voice turn operations"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        retryable: bool = True,
        original_exception: Optional[BaseException] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.original_exception = original_exception
        self.user_message = user_message or self._generate_user_message()
        self.timestamp = time.time()

    def _generate_user_message(self) -> str:
        """Generate a child-friendly message for the category"""
        if self.category == ErrorCategory.AUDIO:
            return "I can't hear you right now. Can a grown-up check the microphone?"
        elif self.category == ErrorCategory.TIMEOUT:
            return "That took too long. Can you try again?"
        elif self.category == ErrorCategory.NETWORK:
            return "I'm having trouble connecting. Let's try again in a moment!"
        elif self.category == ErrorCategory.MODEL:
            return "I'm having a little trouble thinking right now."
        else:
            return "Oops, something went wrong. Let's try again!"


class CaptureError(VoiceAIException):
    """Microphone could not be acquired (permission denied, unsupported device)"""

    def __init__(self, message: str, original_exception: Optional[BaseException] = None):
        super().__init__(
            message,
            ErrorCategory.AUDIO,
            retryable=False,
            original_exception=original_exception
        )


class TranscriptionError(VoiceAIException):
    """Speech-to-text failed"""
    pass


class TooShort(TranscriptionError):
    """Captured buffer was below the minimum useful size"""

    def __init__(self, size: int, minimum: int):
        super().__init__(
            f"Audio buffer too short: {size} bytes < {minimum} bytes",
            ErrorCategory.PERMANENT,
            retryable=False,
            user_message="I didn't hear anything. Hold the button while you talk!"
        )
        self.size = size
        self.minimum = minimum


class TranscriptionTimeout(TranscriptionError):
    """Streaming transcription did not produce a final result in time"""

    def __init__(self, timeout: float):
        super().__init__(
            f"No final transcript within {timeout:.1f}s",
            ErrorCategory.TIMEOUT,
            retryable=False
        )
        self.timeout = timeout


class SynthesisError(VoiceAIException):
    """Text-to-speech or playback failed"""
    pass


class AutoplayBlocked(SynthesisError):
    """The output device refuses to start until the user interacts"""

    def __init__(self, message: str = "Playback requires a user gesture"):
        super().__init__(message, ErrorCategory.AUDIO, retryable=False)


class DecodeError(SynthesisError):
    """Synthesized payload could not be turned into playable audio"""

    def __init__(self, message: str, original_exception: Optional[BaseException] = None):
        super().__init__(
            message,
            ErrorCategory.AUDIO,
            retryable=False,
            original_exception=original_exception
        )


class GenerationError(VoiceAIException):
    """Text generation provider failed"""

    def __init__(self, message: str, original_exception: Optional[BaseException] = None):
        super().__init__(
            message,
            ErrorCategory.MODEL,
            original_exception=original_exception
        )


class AllProvidersFailed(TranscriptionError):
    """Raised when every provider in a fallback chain failed"""

    def __init__(self, operation: str, attempted: List[str], last_exception: Optional[BaseException]):
        super().__init__(
            f"All providers failed for {operation}. Attempted: {attempted}",
            ErrorCategory.PERMANENT,
            retryable=False,
            original_exception=last_exception
        )
        self.operation = operation
        self.attempted = attempted


@dataclass
class BackoffConfig:
    """Exponential backoff configuration"""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter_type: str = "none"  # "none", "equal", "full"


class AdvancedBackoff:
    """Exponential backoff with optional jitter"""

    def __init__(self, config: BackoffConfig):
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)"""
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)
        delay = min(delay, self.config.max_delay)

        if self.config.jitter_type == "equal":
            return delay / 2 + random.uniform(0, delay / 2)
        elif self.config.jitter_type == "full":
            return random.uniform(0, delay)
        return delay

    def should_retry(self, attempt: int, exception: BaseException) -> bool:
        """Determine if another attempt is allowed"""
        if attempt >= self.config.max_attempts:
            return False
        if isinstance(exception, VoiceAIException):
            return exception.retryable
        return True


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    config: Optional[BackoffConfig] = None,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> T:
    """Run ``func`` up to ``config.max_attempts`` times with exponential backoff.

    Non-retryable ``VoiceAIException`` instances stop the loop immediately.
    The last exception is re-raised once attempts are exhausted.
    """
    config = config or BackoffConfig()
    backoff = AdvancedBackoff(config)
    last_exception: Optional[BaseException] = None

    for attempt in range(config.max_attempts):
        if attempt > 0:
            delay = backoff.calculate_delay(attempt - 1)
            logger.info(f"Retrying {operation} in {delay:.2f}s "
                        f"(attempt {attempt + 1}/{config.max_attempts})")
            await sleep(delay)

        try:
            result = await func()
            if attempt > 0:
                logger.info(f"{operation} succeeded on attempt {attempt + 1}")
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_exception = e
            logger.warning(f"{operation} attempt {attempt + 1} failed: {e}")
            if not backoff.should_retry(attempt + 1, e):
                break

    logger.error(f"{operation} failed after {attempt + 1} attempt(s)")
    raise last_exception


@dataclass
class ProviderOutcome(Generic[T]):
    """Common ``(success, value) | (failure, error)`` contract for providers"""
    provider: str
    success: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    elapsed: float = 0.0

    @classmethod
    def ok(cls, provider: str, value: T, elapsed: float = 0.0) -> "ProviderOutcome[T]":
        return cls(provider=provider, success=True, value=value, elapsed=elapsed)

    @classmethod
    def failed(cls, provider: str, error: BaseException, elapsed: float = 0.0) -> "ProviderOutcome[T]":
        return cls(provider=provider, success=False, error=error, elapsed=elapsed)


async def attempt_provider(
    name: str,
    func: Callable[[], Awaitable[T]],
    accept: Callable[[T], bool] = lambda value: value is not None
) -> ProviderOutcome[T]:
    """Run one provider call and fold its result into a ``ProviderOutcome``"""
    start = time.time()
    try:
        value = await func()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        return ProviderOutcome.failed(name, e, time.time() - start)

    if not accept(value):
        return ProviderOutcome.failed(
            name, ValueError(f"{name} returned an empty result"), time.time() - start
        )
    return ProviderOutcome.ok(name, value, time.time() - start)


@dataclass
class FallbackChainResult(Generic[T]):
    """Result of walking an ordered provider chain"""
    value: Optional[T]
    winner: Optional[str]
    outcomes: List[ProviderOutcome[T]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.winner is not None


async def run_fallback_chain(
    providers: Sequence[Any],
    call: Callable[[Any], Awaitable[T]],
    accept: Callable[[T], bool] = lambda value: value is not None
) -> FallbackChainResult[T]:
    """Try each provider in order and stop at the first accepted result.

    ``providers`` items need a ``name`` attribute; ``call(provider)`` produces
    the awaitable for that provider.
    """
    outcomes: List[ProviderOutcome[T]] = []

    for provider in providers:
        name = getattr(provider, "name", type(provider).__name__)
        outcome = await attempt_provider(name, lambda: call(provider), accept)
        outcomes.append(outcome)

        if outcome.success:
            return FallbackChainResult(value=outcome.value, winner=name, outcomes=outcomes)

        logger.warning(f"Provider {name} failed: {outcome.error}")

    return FallbackChainResult(value=None, winner=None, outcomes=outcomes)
