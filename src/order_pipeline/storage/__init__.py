"""SQLite persistence for the order pipeline."""
