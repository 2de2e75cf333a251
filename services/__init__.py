"""Indexing services for the Fee Collector Indexer."""
