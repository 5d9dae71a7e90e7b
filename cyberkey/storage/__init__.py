"""SQLite backed document store."""
