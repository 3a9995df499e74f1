"""ciflow - config-driven CI pipeline orchestrator."""

__version__ = "0.1.0"
