"""SQLite storage layer for agent runs."""
