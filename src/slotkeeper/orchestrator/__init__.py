"""Worker loop, session supervision, watchdog and crash recovery."""
