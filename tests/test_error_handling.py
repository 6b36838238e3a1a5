"""
Tests for the error handling system
Exception taxonomy, the shared retry policy and provider fallback chains
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from buddy.error_handling import (
    AdvancedBackoff, AllProvidersFailed, AutoplayBlocked, BackoffConfig, CaptureError,
    DecodeError, ErrorCategory, GenerationError, ProviderOutcome, SynthesisError, TooShort,
    TranscriptionError, TranscriptionTimeout, VoiceAIException, attempt_provider,
    retry_with_backoff, run_fallback_chain
)


class TestErrorHierarchy:
    """Test the exception taxonomy"""

    def test_base_exception(self):
        exc = VoiceAIException("boom", ErrorCategory.NETWORK)
        assert exc.retryable is True
        assert "trouble connecting" in exc.user_message

    def test_transcription_family(self):
        assert issubclass(TooShort, TranscriptionError)
        assert issubclass(TranscriptionTimeout, TranscriptionError)
        assert issubclass(AllProvidersFailed, TranscriptionError)

    def test_synthesis_family(self):
        assert issubclass(AutoplayBlocked, SynthesisError)
        assert issubclass(DecodeError, SynthesisError)
        assert AutoplayBlocked().retryable is False

    def test_too_short(self):
        exc = TooShort(120, 500)
        assert exc.size == 120
        assert exc.minimum == 500
        assert exc.retryable is False
        assert "Hold the button" in exc.user_message

    def test_capture_error_not_retryable(self):
        original = PermissionError("denied")
        exc = CaptureError("no mic", original_exception=original)
        assert exc.category == ErrorCategory.AUDIO
        assert exc.retryable is False
        assert exc.original_exception is original

    def test_generation_error_category(self):
        assert GenerationError("down").category == ErrorCategory.MODEL

    def test_all_providers_failed(self):
        last = RuntimeError("last")
        exc = AllProvidersFailed("transcription", ["whisper", "streaming"], last)
        assert exc.attempted == ["whisper", "streaming"]
        assert exc.original_exception is last


class TestBackoff:
    """Test the backoff calculation"""

    def test_exponential_delays(self):
        backoff = AdvancedBackoff(BackoffConfig(base_delay=0.5, max_delay=8.0))
        assert [backoff.calculate_delay(i) for i in range(6)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]

    def test_full_jitter_bounded(self):
        backoff = AdvancedBackoff(BackoffConfig(base_delay=1.0, jitter_type="full"))
        for attempt in range(4):
            assert 0 <= backoff.calculate_delay(attempt) <= 2 ** attempt

    def test_should_retry(self):
        backoff = AdvancedBackoff(BackoffConfig(max_attempts=3))
        assert backoff.should_retry(1, RuntimeError()) is True
        assert backoff.should_retry(3, RuntimeError()) is False
        assert backoff.should_retry(1, TooShort(1, 500)) is False


class TestRetryWithBackoff:
    """Test the shared retry policy"""

    @pytest.mark.asyncio
    async def test_success_after_failures(self):
        func = AsyncMock(side_effect=[SynthesisError("1"), SynthesisError("2"), "ok"])
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        result = await retry_with_backoff(func, BackoffConfig(max_attempts=3, base_delay=0.5),
                                          "synthesis", sleep=fake_sleep)

        assert result == "ok"
        assert func.call_count == 3
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exhausted_raises_last(self):
        func = AsyncMock(side_effect=[SynthesisError("1"), SynthesisError("2"), SynthesisError("3")])

        with pytest.raises(SynthesisError, match="3"):
            await retry_with_backoff(func, BackoffConfig(max_attempts=3, base_delay=0.0))

        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_stops(self):
        func = AsyncMock(side_effect=DecodeError("bad payload"))

        with pytest.raises(DecodeError):
            await retry_with_backoff(func, BackoffConfig(max_attempts=3, base_delay=0.0))

        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        func = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await retry_with_backoff(func, BackoffConfig(max_attempts=3, base_delay=0.0))

        assert func.call_count == 1


class TestFallbackChain:
    """Test the uniform provider outcome contract"""

    @pytest.mark.asyncio
    async def test_attempt_provider_success(self):
        outcome = await attempt_provider("p", AsyncMock(return_value="value"))
        assert outcome.success
        assert outcome.value == "value"
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_attempt_provider_rejects_value(self):
        outcome = await attempt_provider("p", AsyncMock(return_value=""), accept=bool)
        assert not outcome.success
        assert isinstance(outcome.error, ValueError)

    @pytest.mark.asyncio
    async def test_attempt_provider_failure(self):
        error = RuntimeError("down")
        outcome = await attempt_provider("p", AsyncMock(side_effect=error))
        assert outcome == ProviderOutcome.failed("p", error, outcome.elapsed)

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self):
        class Provider:
            def __init__(self, name, result):
                self.name = name
                self.call = AsyncMock(side_effect=[result])

        first = Provider("storage", RuntimeError("miss"))
        second = Provider("import", "content")
        third = Provider("generate", "never")

        result = await run_fallback_chain([first, second, third], lambda p: p.call())

        assert result.succeeded
        assert result.value == "content"
        assert result.winner == "import"
        assert [o.provider for o in result.outcomes] == ["storage", "import"]
        assert third.call.call_count == 0

    @pytest.mark.asyncio
    async def test_all_fail(self):
        class Provider:
            name = "only"

            async def call(self):
                raise RuntimeError("down")

        result = await run_fallback_chain([Provider()], lambda p: p.call())

        assert not result.succeeded
        assert result.value is None
        assert len(result.outcomes) == 1
