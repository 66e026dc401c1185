"""Knowledge graph model and SQLite-backed repository."""
