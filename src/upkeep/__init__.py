"""Personal-machine update and bootstrap orchestrator."""

__version__ = "0.1.0"
