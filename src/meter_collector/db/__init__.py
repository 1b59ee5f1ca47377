"""Database layer: aiosqlite engine, schema and repository."""
