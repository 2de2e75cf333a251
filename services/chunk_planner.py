"""Target height and chunk boundary planning.

Pure functions: no I/O, no state. The indexing loop calls ``plan_cycle``
once per cycle with a fresh chain height.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


BlockRange = Tuple[int, int]


class PlanStatus(str, Enum):
    """What the loop should do with a plan."""
    WORK = "work"
    CAUGHT_UP = "caught_up"  # Continuous mode, wait for new blocks
    FINISHED = "finished"  # Bounded mode, end block reached


@dataclass(frozen=True)
class ChunkPlan:
    status: PlanStatus
    from_block: int
    target_height: int
    chunks: List[BlockRange] = field(default_factory=list)


def compute_target_height(current_height: int, finality_depth: int, end_block: Optional[int] = None) -> int:
    """Highest block that may be indexed this cycle.

    Blocks within ``finality_depth`` of the tip may still be reorganized and
    are never returned. A configured ``end_block`` is capped at the tip; when
    it lies deep in history it is used as-is.
    """
    safe_height = current_height - finality_depth
    if end_block is None:
        return safe_height

    capped_end = min(end_block, current_height)
    if capped_end >= safe_height:
        return safe_height
    return capped_end


def split_into_chunks(from_block: int, target_height: int, chunk_size: int) -> List[BlockRange]:
    """Split [from_block, target_height] into ascending ranges of at most chunk_size blocks."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")

    chunks = []
    start = from_block
    while start <= target_height:
        end = min(start + chunk_size - 1, target_height)
        chunks.append((start, end))
        start = end + 1
    return chunks


def plan_cycle(
    from_block: int,
    current_height: int,
    finality_depth: int,
    chunk_size: int,
    end_block: Optional[int] = None
) -> ChunkPlan:
    """Plan one indexing cycle starting at ``from_block``."""
    target_height = compute_target_height(current_height, finality_depth, end_block)

    if from_block > target_height:
        # A bounded run ends here even when finality held it below end_block
        status = PlanStatus.CAUGHT_UP if end_block is None else PlanStatus.FINISHED
        return ChunkPlan(status=status, from_block=from_block, target_height=target_height)

    return ChunkPlan(
        status=PlanStatus.WORK,
        from_block=from_block,
        target_height=target_height,
        chunks=split_into_chunks(from_block, target_height, chunk_size),
    )
