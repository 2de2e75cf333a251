"""Event parsers."""

from .fee_collector_parser import FeeCollectorParser, FEES_COLLECTED_SIGNATURE, FEES_COLLECTED_TOPIC

__all__ = [
    "FeeCollectorParser",
    "FEES_COLLECTED_SIGNATURE",
    "FEES_COLLECTED_TOPIC",
]
