import asyncio
from enum import Enum
from typing import Any, Dict, Optional, Sequence
import structlog
from datetime import datetime

from config.settings import Settings, ChainConfig
from models.fee_event import FeeCollectedEvent, SkippedRange
from repositories.base import EventRepository
from services.chain_source import ChainSource
from services.chunk_planner import PlanStatus, plan_cycle
from services.retry_policy import ChunkResult, ChunkRetryPolicy
from utils.exceptions import AlreadyRunning, PersistenceError


logger = structlog.get_logger(__name__)


class LoopState(str, Enum):
    """Lifecycle of an indexing loop."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class IndexerService:
    """Indexing loop for one chain.

    Each cycle reads the chain height, plans the chunks that are safe to
    index and runs every chunk through the retry policy. The watermark is
    written only after a chunk's events are stored, so a restart resumes
    at the first block that was not durably committed.

    With ``track_watermark=False`` the loop runs detached: it starts at
    ``start_block``, never reads or writes the watermark and only stores
    events. The backfill command uses this to re-index skipped ranges.
    """

    def __init__(
        self,
        settings: Settings,
        chain_config: ChainConfig,
        chain_source: ChainSource,
        event_repo: EventRepository,
        track_watermark: bool = True,
        start_block: Optional[int] = None,
        end_block: Optional[int] = None
    ):
        self.settings = settings
        self.chain_config = chain_config
        self.chain_source = chain_source
        self.event_repo = event_repo
        self.track_watermark = track_watermark

        self.chain_id = chain_config.chain_id
        self.start_block = chain_config.start_block if start_block is None else start_block
        self.end_block = chain_config.end_block if end_block is None else end_block
        self.poll_interval = (
            settings.worker_interval_seconds if chain_config.poll_interval is None else chain_config.poll_interval
        )
        self.error_backoff = settings.worker_error_backoff

        self.retry_policy = ChunkRetryPolicy(
            chain_id=self.chain_id,
            max_retries=chain_config.max_retries or settings.worker_max_retries,
            retry_delay=settings.worker_retry_delay,
        )

        self.state = LoopState.IDLE
        self._stop_event = asyncio.Event()
        self._cursor: Optional[int] = None  # Next block to index

        # Counters for health reporting
        self.last_chain_height: Optional[int] = None
        self.chunks_processed = 0
        self.chunks_skipped = 0
        self.events_saved = 0
        self.last_error: Optional[str] = None
        self.last_cycle_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.state is LoopState.RUNNING

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    @property
    def _stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def start(self) -> None:
        """Run the loop until stop() is called or a bounded run reaches its end."""
        if self.state is LoopState.RUNNING:
            raise AlreadyRunning(f"Indexer for chain {self.chain_id} is already running")

        if self.state is LoopState.STOPPED:
            self._stop_event.clear()
        self.state = LoopState.RUNNING
        self._cursor = None

        logger.info("Indexer started",
                    chain_id=self.chain_id,
                    chain_name=self.chain_config.name,
                    start_block=self.start_block,
                    end_block=self.end_block,
                    chunk_size=self.chain_config.chunk_size,
                    finality_depth=self.chain_config.finality_depth,
                    max_retries=self.retry_policy.max_retries,
                    track_watermark=self.track_watermark)

        try:
            while not self._stop_requested:
                try:
                    if await self._run_cycle():
                        break
                    self.last_error = None
                except Exception as e:
                    self.last_error = f"{type(e).__name__}: {e}"
                    logger.error("Error in indexer loop",
                                 chain_id=self.chain_id,
                                 error_type=type(e).__name__,
                                 error=str(e),
                                 backoff_seconds=self.error_backoff)
                    await self._wait(self.error_backoff)
        finally:
            self.state = LoopState.STOPPED
            logger.info("Indexer stopped",
                        chain_id=self.chain_id,
                        next_block=self._cursor,
                        chunks_processed=self.chunks_processed,
                        chunks_skipped=self.chunks_skipped,
                        events_saved=self.events_saved)

    def stop(self) -> None:
        """Ask the loop to stop at the next safe boundary. Idempotent.

        Called before start(), it makes that start() return at once.
        """
        if not self._stop_event.is_set():
            logger.info("Stopping indexer", chain_id=self.chain_id)
        self._stop_event.set()

    async def _run_cycle(self) -> bool:
        """Run one cycle. Returns True when a bounded run is finished."""
        if self._cursor is None:
            self._cursor = await self._resume_block()
            logger.info("Resuming indexer", chain_id=self.chain_id, from_block=self._cursor)

        current_height = await self.chain_source.get_current_height()
        self.last_chain_height = current_height
        self.last_cycle_at = datetime.utcnow()

        plan = plan_cycle(
            from_block=self._cursor,
            current_height=current_height,
            finality_depth=self.chain_config.finality_depth,
            chunk_size=self.chain_config.chunk_size,
            end_block=self.end_block,
        )

        if plan.status is PlanStatus.FINISHED:
            logger.info("Reached end block, stopping indexer",
                        chain_id=self.chain_id,
                        end_block=self.end_block,
                        last_block=self._cursor - 1)
            return True

        if plan.status is PlanStatus.CAUGHT_UP:
            logger.debug("Caught up, waiting for new blocks",
                         chain_id=self.chain_id,
                         next_block=self._cursor,
                         target_height=plan.target_height,
                         current_height=current_height)
            await self._wait(self.poll_interval)
            return False

        logger.info("Processing block range",
                    chain_id=self.chain_id,
                    from_block=plan.from_block,
                    target_height=plan.target_height,
                    current_height=current_height,
                    chunks=len(plan.chunks))

        for from_block, to_block in plan.chunks:
            if self._stop_requested:
                logger.info("Stop requested, leaving cycle", chain_id=self.chain_id, next_block=from_block)
                return False

            result = await self.retry_policy.run(
                from_block, to_block, self.chain_source.fetch_events, self._commit
            )
            if result.succeeded:
                self.chunks_processed += 1
                self.events_saved += result.events
            else:
                self.chunks_skipped += 1
                await self._handle_skipped(result)

            self._cursor = to_block + 1

        return False

    async def _resume_block(self) -> int:
        if not self.track_watermark:
            return self.start_block

        watermark = await self.event_repo.get_watermark(self.chain_id)
        if watermark is None:
            return self.start_block
        return watermark + 1

    async def _commit(self, events: Sequence[FeeCollectedEvent], to_block: int) -> None:
        # Checkpoint strictly after persistence
        await self.event_repo.save_events(events)
        if self.track_watermark:
            await self.event_repo.set_watermark(self.chain_id, to_block)

    async def _handle_skipped(self, result: ChunkResult) -> None:
        """Register the gap, then move the watermark past it."""
        if not self.track_watermark:
            return

        skipped = SkippedRange(
            chain_id=self.chain_id,
            from_block=result.from_block,
            to_block=result.to_block,
            attempts=result.attempts,
            last_error=result.last_error,
        )
        try:
            await self.event_repo.record_skipped_range(skipped)
        except PersistenceError as e:
            # The circuit breaker alert is then the only record of the gap
            logger.error("Failed to record skipped range",
                         chain_id=self.chain_id,
                         from_block=result.from_block,
                         to_block=result.to_block,
                         error=str(e))
            return

        try:
            await self.event_repo.set_watermark(self.chain_id, result.to_block)
        except PersistenceError as e:
            logger.warning("Failed to advance watermark past skipped range",
                           chain_id=self.chain_id,
                           to_block=result.to_block,
                           error=str(e))

    async def _wait(self, seconds: float) -> None:
        """Sleep that returns early when stop() is called."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def health_check(self) -> Dict[str, Any]:
        """Loop status for the worker health report."""
        healthy = self.state is LoopState.RUNNING and self.last_error is None
        return {
            "status": "healthy" if healthy else "unhealthy",
            "chain_id": self.chain_id,
            "chain_name": self.chain_config.name,
            "state": self.state.value,
            "next_block": self._cursor,
            "chain_height": self.last_chain_height,
            "chunks_processed": self.chunks_processed,
            "chunks_skipped": self.chunks_skipped,
            "events_saved": self.events_saved,
            "last_error": self.last_error,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }
