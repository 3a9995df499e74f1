"""Infrastructure helpers (subprocess execution)."""

from ciflow.infra.command import CommandResult, CommandRunner

__all__ = ["CommandResult", "CommandRunner"]
