"""Per-chunk retries with a circuit breaker.

A chunk is attempted up to ``max_retries`` times with a fixed delay between
attempts. Every exception raised by fetch or commit counts the same. When the
budget is exhausted a critical ``CIRCUIT_BREAKER_ALERT`` is logged with the
exact range, and the chunk is reported as skipped so newer blocks keep
flowing.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

import structlog
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception_type, stop_after_attempt, wait_fixed

from models.fee_event import FeeCollectedEvent

logger = structlog.get_logger(__name__)

CIRCUIT_BREAKER_ALERT = "CIRCUIT_BREAKER_ALERT"

FetchFn = Callable[[int, int], Awaitable[Sequence[FeeCollectedEvent]]]
CommitFn = Callable[[Sequence[FeeCollectedEvent], int], Awaitable[None]]


class ChunkOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ChunkResult:
    from_block: int
    to_block: int
    outcome: ChunkOutcome
    attempts: int
    events: int = 0
    last_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is ChunkOutcome.SUCCESS


class ChunkRetryPolicy:
    """Runs fetch then commit for one chunk until it succeeds or the budget runs out."""

    def __init__(
        self,
        chain_id: int,
        max_retries: int = 10,
        retry_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        self.chain_id = chain_id
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def _log_failed_attempt(self, from_block: int, to_block: int) -> Callable[[RetryCallState], None]:
        def log(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            logger.error("Error processing blocks",
                         chain_id=self.chain_id,
                         from_block=from_block,
                         to_block=to_block,
                         attempt=retry_state.attempt_number,
                         max_retries=self.max_retries,
                         error_type=type(error).__name__,
                         error=str(error))
        return log

    async def run(self, from_block: int, to_block: int, fetch: FetchFn, commit: CommitFn) -> ChunkResult:
        """Process [from_block, to_block]. Never raises for chunk failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(Exception),
            after=self._log_failed_attempt(from_block, to_block),
            sleep=self._sleep,
        )

        attempts = 0
        saved = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    events = await fetch(from_block, to_block)
                    await commit(events, to_block)
                    saved = len(events)
        except RetryError as e:
            error = e.last_attempt.exception()
            last_error = f"{type(error).__name__}: {error}"
            logger.critical("Circuit breaker tripped, skipping chunk. Manual backfill required",
                            alert=CIRCUIT_BREAKER_ALERT,
                            chain_id=self.chain_id,
                            from_block=from_block,
                            to_block=to_block,
                            attempts=e.last_attempt.attempt_number,
                            last_error=last_error)
            return ChunkResult(
                from_block=from_block,
                to_block=to_block,
                outcome=ChunkOutcome.SKIPPED,
                attempts=e.last_attempt.attempt_number,
                last_error=last_error,
            )

        logger.info("Saved events",
                    chain_id=self.chain_id,
                    from_block=from_block,
                    to_block=to_block,
                    events=saved,
                    attempts=attempts)
        return ChunkResult(
            from_block=from_block,
            to_block=to_block,
            outcome=ChunkOutcome.SUCCESS,
            attempts=attempts,
            events=saved,
        )
