"""
Tests for unit-level retry with exponential backoff.
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from wikidag.common.config import RetrySettings
from wikidag.common.errors import TransientStorageError
from wikidag.common.retry import _async_sleep_with_backoff, run_with_retries

POLICY = RetrySettings(max_retries=3, base_delay=0.5, max_delay=8.0)


def _flaky(failures, exc_factory, value="ok"):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise exc_factory()
        return value

    return operation, calls


@pytest.mark.asyncio
async def test_sleep_with_backoff_zero_delay_returns():
    await _async_sleep_with_backoff(3, base_delay=0.0, max_delay=0.0)


@pytest.mark.asyncio
async def test_backoff_is_capped():
    with patch("wikidag.common.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await _async_sleep_with_backoff(10, base_delay=0.5, max_delay=2.0)

    delay = sleep.await_args.args[0]
    assert 1.6 <= delay <= 2.4


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures():
    operation, calls = _flaky(2, lambda: OperationalError("SELECT 1", {}, Exception("locked")))

    with patch("wikidag.common.retry._async_sleep_with_backoff", new_callable=AsyncMock) as sleep:
        result = await run_with_retries(operation, policy=POLICY, phase="dag", unit="3")

    assert result == "ok"
    assert calls["count"] == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_max_retries_counts_retries_after_first_attempt():
    operation, calls = _flaky(3, lambda: TimeoutError("slow"))

    with patch("wikidag.common.retry._async_sleep_with_backoff", new_callable=AsyncMock):
        result = await run_with_retries(operation, policy=POLICY, phase="identity", unit="batch_0")

    assert result == "ok"
    assert calls["count"] == 4


@pytest.mark.asyncio
async def test_exhausted_retries_raise_with_context():
    operation, calls = _flaky(10, lambda: ConnectionError("reset"))

    with patch("wikidag.common.retry._async_sleep_with_backoff", new_callable=AsyncMock) as sleep:
        with pytest.raises(TransientStorageError) as excinfo:
            await run_with_retries(operation, policy=POLICY, phase="merge:source1", unit="0-10", key_range=(0, 10))

    error = excinfo.value
    assert calls["count"] == 4
    assert sleep.await_count == 3
    assert error.attempts == 4
    assert error.phase == "merge:source1"
    assert error.key_range == (0, 10)
    assert isinstance(error.__cause__, ConnectionError)
    assert "range=[0, 10)" in str(error)


@pytest.mark.asyncio
async def test_non_transient_errors_propagate_immediately():
    operation, calls = _flaky(1, lambda: IntegrityError("INSERT", {}, Exception("duplicate")))

    with pytest.raises(IntegrityError):
        await run_with_retries(operation, policy=POLICY, phase="identity")

    assert calls["count"] == 1
