"""
Tests for retry classification and exponential backoff.
"""
import asyncio

import httpx
import pytest

from apps.indexing.embedder import EmbeddingError
from apps.indexing.retry import (
    RetryExhausted,
    RetryPolicy,
    calculate_backoff,
    is_retriable_error,
    retry_async,
)

NO_JITTER = RetryPolicy(max_retries=3, initial_backoff=1.0, max_backoff=10.0, jitter_percent=0.0)


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request('POST', 'http://ollama:11434/api/embed')
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"status {code}", request=request, response=response)


class TestBackoff:

    def test_exponential_growth(self):
        assert [calculate_backoff(i, NO_JITTER) for i in range(3)] == [1.0, 2.0, 4.0]

    def test_capped_at_max(self):
        assert calculate_backoff(10, NO_JITTER) == 10.0

    def test_jitter_stays_in_range(self):
        policy = RetryPolicy(initial_backoff=4.0, jitter_percent=0.25)
        for _ in range(50):
            assert 3.0 <= calculate_backoff(0, policy) <= 5.0


class TestIsRetriable:

    @pytest.mark.parametrize("error", [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        asyncio.TimeoutError(),
        status_error(503),
        EmbeddingError("Embedding service error: 502"),
        EmbeddingError("Cannot connect to embedding service"),
        EmbeddingError("No embedding in response"),
    ])
    def test_transient(self, error):
        assert is_retriable_error(error)

    @pytest.mark.parametrize("error", [
        status_error(404),
        EmbeddingError("Embedding service error: 400"),
        EmbeddingError("Embedding dimension 384 does not match 768"),
        EmbeddingError("OPENAI_API_KEY not configured"),
        ValueError("something odd"),
    ])
    def test_permanent(self, error):
        assert not is_retriable_error(error)


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        attempts = []
        sleeps = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise EmbeddingError("Embedding service timed out")
            return "ok"

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        result = await retry_async(flaky, NO_JITTER, sleep=fake_sleep)

        assert result == "ok"
        assert len(attempts) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_permanent_error_is_raised_immediately(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise EmbeddingError("Embedding service error: 401")

        with pytest.raises(EmbeddingError):
            await retry_async(broken, NO_JITTER, sleep=lambda s: asyncio.sleep(0))

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        retries = []

        async def down():
            raise httpx.ConnectError("refused")

        async def no_sleep(seconds):
            pass

        with pytest.raises(RetryExhausted) as exc_info:
            await retry_async(
                down, NO_JITTER, sleep=no_sleep,
                on_retry=lambda attempt, error, backoff: retries.append(attempt),
            )

        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_exception, httpx.ConnectError)
        assert retries == [0, 1, 2]

    def test_policy_from_settings(self, settings):
        settings.REPROCESS_MAX_RETRIES = 1
        settings.REPROCESS_INITIAL_BACKOFF = 0.5

        policy = RetryPolicy.from_settings()

        assert policy.max_retries == 1
        assert policy.initial_backoff == 0.5
