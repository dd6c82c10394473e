"""
Unit tests for retry_async and with_timeout.
"""

import asyncio
import logging

import pytest

from stepheal.errors import ProviderError
from stepheal.utils.retry_handler import retry_async, with_timeout, RetryError


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ConnectionError("reset")
            return 'ok'

        assert await retry_async(flaky, max_attempts=3, delay=0) == 'ok'
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_exhausted(self):
        async def broken():
            raise ConnectionError("reset")

        with pytest.raises(RetryError) as exc_info:
            await retry_async(broken, max_attempts=2, delay=0)
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self):
        calls = []

        async def rejected():
            calls.append(1)
            raise ProviderError("401")

        with pytest.raises(RetryError):
            await retry_async(
                rejected,
                max_attempts=3,
                delay=0,
                should_retry=lambda e: getattr(e, 'retryable', False),
            )
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        seen = []

        async def broken():
            raise ValueError("bad")

        with pytest.raises(RetryError):
            await retry_async(broken, max_attempts=3, delay=0, on_retry=lambda n, e: seen.append(n))
        assert seen == [1, 2]


class TestWithTimeout:

    @pytest.mark.asyncio
    async def test_passes_arguments(self):
        async def add(a, b=0):
            return a + b

        assert await with_timeout(add, 1.0, 2, b=3) == 5

    @pytest.mark.asyncio
    async def test_times_out(self):
        with pytest.raises(asyncio.TimeoutError):
            await with_timeout(asyncio.sleep, 0.01, 1)

    @pytest.mark.asyncio
    async def test_timeout_logged_with_label(self, caplog):
        caplog.set_level(logging.DEBUG, logger='stepheal.utils.retry_handler')
        with pytest.raises(asyncio.TimeoutError):
            await with_timeout(asyncio.sleep, 0.01, 1, label='vision_ocr tier')
        assert 'vision_ocr tier cut off after 0.01s' in caplog.text


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
