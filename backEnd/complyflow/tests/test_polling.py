"""Tests for bounded polling."""

import pytest

from complyflow.errors import PollTimeoutError, TransientError
from complyflow.utils import poll_until


async def _no_sleep(seconds: float) -> None:
    return None


class TestPollUntil:
    """Tests for poll_until."""

    @pytest.mark.asyncio
    async def test_returns_first_done_result(self):
        """Polling stops at the first finished state."""
        states = iter(["running", "running", "succeeded", "never-reached"])
        calls = []

        async def fetch():
            state = next(states)
            calls.append(state)
            return {"status": state}

        result = await poll_until(
            fetch, lambda r: r["status"] == "succeeded", max_attempts=10, interval=1.0, sleep=_no_sleep
        )

        assert result == {"status": "succeeded"}
        assert calls == ["running", "running", "succeeded"]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """A job that never finishes raises PollTimeoutError after the ceiling."""
        calls = []

        async def fetch():
            calls.append(1)
            return {"status": "running"}

        with pytest.raises(PollTimeoutError) as exc_info:
            await poll_until(fetch, lambda r: False, max_attempts=3, interval=0.0, sleep=_no_sleep)

        assert len(calls) == 3
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_fetch_errors_propagate(self):
        """Errors from fetch are not swallowed or retried."""
        calls = []

        async def fetch():
            calls.append(1)
            raise TransientError("connection reset")

        with pytest.raises(TransientError):
            await poll_until(fetch, lambda r: True, max_attempts=5, interval=0.0, sleep=_no_sleep)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_accepts_lambda_returning_coroutine(self):
        """A plain callable that returns a coroutine is awaited before is_done sees it."""
        states = iter(["running", "succeeded"])

        async def fetch_state(url):
            return {"status": next(states), "url": url}

        result = await poll_until(
            lambda: fetch_state("https://ops/1"),
            lambda r: r.get("status") == "succeeded",
            max_attempts=5,
            interval=0.0,
            sleep=_no_sleep,
        )

        assert result == {"status": "succeeded", "url": "https://ops/1"}
