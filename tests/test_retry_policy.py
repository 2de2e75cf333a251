"""Retry policy tests: retry-then-succeed, exhaustion and the circuit breaker alert."""

import pytest
from structlog.testing import capture_logs

from services.retry_policy import CIRCUIT_BREAKER_ALERT, ChunkOutcome, ChunkRetryPolicy
from utils.exceptions import PersistenceError, SourceUnavailable
from tests.fakes import make_event


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class FlakyFetch:
    """Fails ``failures`` times, then returns the given events."""

    def __init__(self, failures, events=None, error=SourceUnavailable):
        self.failures = failures
        self.events = events or []
        self.error = error
        self.calls = 0

    async def __call__(self, from_block, to_block):
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            raise self.error(f"attempt {self.calls} failed")
        return self.events


class RecordingCommit:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def __call__(self, events, to_block):
        self.calls.append((list(events), to_block))
        if self.fail:
            raise PersistenceError("write failed")


@pytest.fixture
def sleep():
    return RecordingSleep()


class TestChunkRetryPolicy:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, sleep):
        policy = ChunkRetryPolicy(chain_id=137, max_retries=5, retry_delay=5, sleep=sleep)
        fetch = FlakyFetch(failures=3, events=[make_event(100), make_event(101)])
        commit = RecordingCommit()

        result = await policy.run(100, 109, fetch, commit)

        assert result.outcome is ChunkOutcome.SUCCESS
        assert result.succeeded
        assert result.attempts == 4
        assert result.events == 2
        assert fetch.calls == 4
        assert len(commit.calls) == 1
        assert commit.calls[0][1] == 109
        assert sleep.delays == [5, 5, 5]

    @pytest.mark.asyncio
    async def test_exhaustion_emits_single_alert(self, sleep):
        policy = ChunkRetryPolicy(chain_id=137, max_retries=3, retry_delay=0, sleep=sleep)
        fetch = FlakyFetch(failures=None)
        commit = RecordingCommit()

        with capture_logs() as logs:
            result = await policy.run(100, 109, fetch, commit)

        assert result.outcome is ChunkOutcome.SKIPPED
        assert result.attempts == 3
        assert "SourceUnavailable" in result.last_error
        assert fetch.calls == 3
        assert commit.calls == []

        alerts = [entry for entry in logs if entry.get("alert") == CIRCUIT_BREAKER_ALERT]
        assert len(alerts) == 1
        assert alerts[0]["log_level"] == "critical"
        assert alerts[0]["chain_id"] == 137
        assert alerts[0]["from_block"] == 100
        assert alerts[0]["to_block"] == 109
        assert alerts[0]["attempts"] == 3

    @pytest.mark.asyncio
    async def test_each_failed_attempt_is_logged(self, sleep):
        policy = ChunkRetryPolicy(chain_id=137, max_retries=3, retry_delay=0, sleep=sleep)

        with capture_logs() as logs:
            await policy.run(100, 109, FlakyFetch(failures=2), RecordingCommit())

        attempts = [entry["attempt"] for entry in logs if entry["event"] == "Error processing blocks"]
        assert attempts == [1, 2]

    @pytest.mark.asyncio
    async def test_commit_failures_are_retried(self, sleep):
        policy = ChunkRetryPolicy(chain_id=137, max_retries=2, retry_delay=0, sleep=sleep)
        fetch = FlakyFetch(failures=0, events=[make_event(100)])
        commit = RecordingCommit(fail=True)

        result = await policy.run(100, 109, fetch, commit)

        assert result.outcome is ChunkOutcome.SKIPPED
        assert fetch.calls == 2
        assert len(commit.calls) == 2
        assert "PersistenceError" in result.last_error

    @pytest.mark.asyncio
    async def test_unexpected_errors_count_as_failures(self, sleep):
        policy = ChunkRetryPolicy(chain_id=137, max_retries=2, retry_delay=0, sleep=sleep)

        result = await policy.run(100, 109, FlakyFetch(failures=1, error=RuntimeError), RecordingCommit())

        assert result.succeeded
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_single_attempt_budget(self, sleep):
        policy = ChunkRetryPolicy(chain_id=137, max_retries=1, retry_delay=5, sleep=sleep)

        result = await policy.run(100, 109, FlakyFetch(failures=None), RecordingCommit())

        assert result.outcome is ChunkOutcome.SKIPPED
        assert result.attempts == 1
        assert sleep.delays == []

    def test_rejects_zero_retries(self):
        with pytest.raises(ValueError):
            ChunkRetryPolicy(chain_id=137, max_retries=0)
