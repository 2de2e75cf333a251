"""Exception types raised by the indexer."""


class IndexerError(Exception):
    """Base class for all indexer errors."""


class SourceUnavailable(IndexerError):
    """Chain data source could not be reached or returned an RPC error."""


class DecodeError(IndexerError):
    """A raw log could not be decoded into a fee event."""


class PersistenceError(IndexerError):
    """Store write or read failed for a reason other than a duplicate key."""


class AlreadyRunning(IndexerError):
    """start() called on an indexing loop that is already running."""


class ConfigurationError(IndexerError):
    """Startup configuration is missing or invalid."""
