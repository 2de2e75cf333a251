"""Configuration loading for the Fee Collector Indexer."""
