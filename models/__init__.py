from .fee_event import FeeCollectedEvent, IndexerState, SkippedRange, normalize_address

__all__ = [
    "FeeCollectedEvent",
    "IndexerState",
    "SkippedRange",
    "normalize_address",
]
