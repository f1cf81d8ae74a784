"""SQLite storage helpers shared by workflow repositories."""
