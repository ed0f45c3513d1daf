"""Git repository synchronization."""
