"""Persistence helpers: SQLite engine policy, schema, migrations and JSON documents."""
