from abc import ABC, abstractmethod
from typing import Optional, List, Sequence
from models.fee_event import FeeCollectedEvent, SkippedRange


class BaseRepository(ABC):
    """Base repository interface."""

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the data store."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the data store."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the data store is healthy."""
        pass


class EventRepository(BaseRepository):
    """Fee event, watermark and skipped range storage.

    Implementations must tolerate concurrent callers: every indexing loop
    shares one repository but only ever writes the watermark of its own chain.
    """

    @abstractmethod
    async def get_watermark(self, chain_id: int) -> Optional[int]:
        """Get the last processed block for a chain, None before the first chunk."""
        pass

    @abstractmethod
    async def set_watermark(self, chain_id: int, block_number: int) -> None:
        """Create or overwrite the last processed block for a chain."""
        pass

    @abstractmethod
    async def save_events(self, events: Sequence[FeeCollectedEvent]) -> None:
        """Insert events, silently skipping those already stored."""
        pass

    @abstractmethod
    async def list_events_by_integrator(self, integrator: str) -> List[FeeCollectedEvent]:
        """Get events of an integrator ordered by block number then log index."""
        pass

    @abstractmethod
    async def record_skipped_range(self, skipped: SkippedRange) -> None:
        """Register a range abandoned by the circuit breaker."""
        pass

    @abstractmethod
    async def list_skipped_ranges(
        self,
        chain_id: Optional[int] = None,
        include_resolved: bool = False
    ) -> List[SkippedRange]:
        """Get skipped ranges ordered by chain then first block."""
        pass

    @abstractmethod
    async def resolve_skipped_ranges(self, chain_id: int, from_block: int, to_block: int) -> int:
        """Mark skipped ranges lying inside [from_block, to_block] as resolved."""
        pass
