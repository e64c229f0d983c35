"""Core infrastructure: configuration, database, locking and validation."""
