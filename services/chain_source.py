"""Chain data source interface consumed by the indexing loop."""

from abc import ABC, abstractmethod
from typing import List

from models.fee_event import FeeCollectedEvent


class ChainSource(ABC):
    """Read-only view of one chain: its height and its fee events."""

    async def connect(self) -> None:
        """Open transport resources."""

    async def disconnect(self) -> None:
        """Release transport resources."""

    @abstractmethod
    async def get_current_height(self) -> int:
        """Return the latest block number.

        Raises:
            SourceUnavailable: the chain could not be queried.
        """

    @abstractmethod
    async def fetch_events(self, from_block: int, to_block: int) -> List[FeeCollectedEvent]:
        """Return fee events in the closed range [from_block, to_block].

        Events are ordered by block number then log index. Calling this
        repeatedly with the same range has no side effects.

        Raises:
            SourceUnavailable: the chain could not be queried.
            DecodeError: a log could not be decoded.
        """
