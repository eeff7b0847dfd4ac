"""Core infrastructure: configuration, database, redis, timezone."""
