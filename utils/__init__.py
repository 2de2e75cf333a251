"""Utility modules for the Fee Collector Indexer."""
