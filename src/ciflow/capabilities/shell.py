"""Capabilities backed by subprocess commands."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from pathlib import Path

import structlog

from ciflow.capabilities.base import CapabilityResult, input_env
from ciflow.exceptions import ConfigurationError
from ciflow.infra.command import CommandResult, CommandRunner

logger = structlog.get_logger()


def _to_result(result: CommandResult) -> CapabilityResult:
    return CapabilityResult(
        exit_code=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
        timed_out=result.timed_out,
        cancelled=result.cancelled,
    )


class ShellCapability:
    """Runs inline ``run:`` scripts through a shell.

    Example:
        >>> shell = ShellCapability(CommandRunner())
        >>> shell.invoke("shell", {"script": "echo hi"}, {}).stdout
        'hi\\n'
    """

    def __init__(self, cmd: CommandRunner, *, shell: list[str] | None = None) -> None:
        """Initialize the shell capability.

        Args:
            cmd: CommandRunner instance.
            shell: Shell prefix; the script is appended as the last argument.
        """
        self.cmd = cmd
        self.shell = shell or ["sh", "-e", "-c"]

    def invoke(
        self,
        name: str,  # noqa: ARG002
        args: Mapping[str, str],
        secrets: Mapping[str, str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CapabilityResult:
        script = args.get("script")
        if not script:
            msg = "Shell capability requires a 'script' argument"
            raise ConfigurationError(msg, field="script")

        full_env = {**(env or {}), **secrets}
        result = self.cmd.run(
            [*self.shell, script],
            cwd=cwd,
            timeout=timeout,
            env=full_env,
            cancel_event=cancel_event,
        )
        return _to_result(result)


class CommandCapability:
    """A named action mapped to a fixed command line.

    Command tokens may reference arguments as ``{name}``; every argument is
    also exported as ``INPUT_<NAME>`` and every secret under its own name.

    Example:
        >>> lint = CommandCapability(CommandRunner(), command=["npm", "run", "{script}"])
        >>> lint.render_command({"script": "lint"})
        ['npm', 'run', 'lint']
    """

    def __init__(
        self,
        cmd: CommandRunner,
        *,
        command: list[str],
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            msg = "Command capability needs a non-empty command"
            raise ConfigurationError(msg, field="command")
        self.cmd = cmd
        self.command = list(command)
        self.env = dict(env or {})

    def render_command(self, args: Mapping[str, str]) -> list[str]:
        """Substitute ``{name}`` references with arguments.

        Raises:
            ConfigurationError: If a referenced argument is missing.
        """
        try:
            return [token.format_map(args) for token in self.command]
        except KeyError as e:
            msg = f"Missing argument {e.args[0]!r} for command {' '.join(self.command)}"
            raise ConfigurationError(msg, field=str(e.args[0])) from e

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
        command = self.render_command(args)
        full_env = {**self.env, **(env or {}), **input_env(args), **secrets}
        logger.debug("Invoking command capability", capability=name, command=command)
        result = self.cmd.run(
            command,
            cwd=cwd,
            timeout=timeout,
            env=full_env,
            cancel_event=cancel_event,
        )
        return _to_result(result)
