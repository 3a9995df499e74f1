"""Capability protocol, result type and registry."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

from ciflow.exceptions import CapabilityNotFoundError

if TYPE_CHECKING:
    from ciflow.config import CiflowConfig
    from ciflow.infra.command import CommandRunner

logger = structlog.get_logger()


@dataclass
class CapabilityResult:
    """Outcome of a capability invocation.

    Attributes:
        exit_code: Exit code (0 is success).
        stdout: Captured standard output.
        stderr: Captured standard error.
        timed_out: Whether the capability stopped because of its timeout.
        cancelled: Whether the capability stopped because of cancellation.
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


@runtime_checkable
class Capability(Protocol):
    """An external operation a step can invoke.

    Implementations own all side effects (processes, network calls). They
    should return promptly once ``cancel_event`` is set.
    """

    def invoke(
        self,
        name: str,
        args: Mapping[str, str],
        secrets: Mapping[str, str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CapabilityResult:
        """Invoke the capability.

        Args:
            name: Capability name the step referenced.
            args: Rendered ``with`` arguments.
            secrets: Resolved secrets the step declared.
            env: Extra environment variables.
            cwd: Working directory.
            timeout: Timeout in seconds.
            cancel_event: Run-level cancellation signal.

        Returns:
            CapabilityResult with exit code and output.
        """
        ...


def input_env(args: Mapping[str, str]) -> dict[str, str]:
    """Expose arguments as ``INPUT_<NAME>`` environment variables."""
    return {f"INPUT_{key.upper().replace('-', '_')}": value for key, value in args.items()}


class CapabilityRegistry:
    """Maps capability names to implementations."""

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(self, name: str, capability: Capability) -> None:
        """Register (or replace) a capability."""
        if name in self._capabilities:
            logger.debug("Replacing capability", capability=name)
        self._capabilities[name] = capability

    def get(self, name: str) -> Capability:
        """Look up a capability.

        Raises:
            CapabilityNotFoundError: If no capability has that name.
        """
        try:
            return self._capabilities[name]
        except KeyError:
            raise CapabilityNotFoundError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    @property
    def names(self) -> list[str]:
        return sorted(self._capabilities)

    @classmethod
    def from_config(
        cls,
        config: CiflowConfig,
        runner: CommandRunner | None = None,
    ) -> CapabilityRegistry:
        """Build the registry described by the configuration.

        Registers the ``shell`` capability plus every named capability
        (command line or Python callable) from ``config.capabilities``.
        """
        from ciflow.capabilities.callable import CallableCapability
        from ciflow.capabilities.shell import CommandCapability, ShellCapability
        from ciflow.infra.command import CommandRunner
        from ciflow.pipeline.constants import SHELL_CAPABILITY

        runner = runner or CommandRunner(grace_seconds=config.run.cancel_grace_seconds)
        registry = cls()
        registry.register(SHELL_CAPABILITY, ShellCapability(runner, shell=config.run.shell))

        for name, cap_config in config.capabilities.items():
            if cap_config.callable_path:
                registry.register(name, CallableCapability(cap_config.callable_path))
            else:
                registry.register(
                    name,
                    CommandCapability(
                        runner,
                        command=cap_config.command,
                        env=cap_config.env,
                    ),
                )

        logger.debug("Capability registry built", capabilities=registry.names)
        return registry
