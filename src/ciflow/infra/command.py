"""Subprocess command runner with logging, timeouts and cancellation."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from ciflow.exceptions import CommandError

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        returncode: Exit code of the process (-1 if it was killed by us).
        stdout: Captured stdout.
        stderr: Captured stderr.
        command: The command that was run.
        cwd: Working directory where command ran.
        timed_out: Whether the process was stopped by the timeout.
        cancelled: Whether the process was stopped by the cancel event.
        duration_ms: Wall-clock duration.
    """

    returncode: int
    stdout: str
    stderr: str
    command: list[str]
    cwd: Path | None
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


class CommandRunner:
    """Runs subprocess commands with consistent logging.

    All subprocess calls in ciflow go through this class so timeouts,
    cancellation and logging behave the same for every capability.

    Example:
        >>> runner = CommandRunner()
        >>> result = runner.run(["echo", "hello"])
        >>> result.returncode, result.stdout.strip()
        (0, 'hello')
    """

    def __init__(
        self,
        dry_run: bool = False,
        heartbeat_interval: int = 30,
        grace_seconds: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        """Initialize the command runner.

        Args:
            dry_run: If True, commands are logged but not executed.
            heartbeat_interval: Interval in seconds for heartbeat logging (0 to disable).
            grace_seconds: Time between SIGTERM and SIGKILL when stopping a process.
            poll_interval: How often to check the cancel event.
        """
        self.dry_run = dry_run
        self.heartbeat_interval = heartbeat_interval
        self.grace_seconds = grace_seconds
        self.poll_interval = poll_interval

    @staticmethod
    def _heartbeat_logger(
        log: structlog.BoundLogger, stop_event: threading.Event, interval: int
    ) -> None:
        elapsed = 0
        while not stop_event.wait(timeout=interval):
            elapsed += interval
            log.info("Command still running", elapsed_seconds=elapsed)

    def _stop(self, process: subprocess.Popen[str], log: structlog.BoundLogger) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            process.wait(timeout=self.grace_seconds)
        except subprocess.TimeoutExpired:
            log.warning("Force killing command", pid=process.pid)
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                return
            process.wait(timeout=2)

    def run(
        self,
        command: list[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        cancel_event: threading.Event | None = None,
        check: bool = False,
    ) -> CommandResult:
        """Run a command and capture stdout/stderr in memory.

        Args:
            command: Command and arguments to run.
            cwd: Working directory for the command.
            timeout: Timeout in seconds.
            env: Environment variables (merged with current env).
            cancel_event: When set, the process is stopped.
            check: If True, raise on non-zero exit code.

        Returns:
            CommandResult with exit code and output.

        Raises:
            CommandError: If the command cannot be started, or if check=True and
                it fails.
        """
        log = logger.bind(command=command, cwd=str(cwd) if cwd else None)
        log.info("Running command")

        if self.dry_run:
            log.info("Dry run - skipping execution")
            return CommandResult(
                returncode=0,
                stdout="(dry run output)",
                stderr="",
                command=command,
                cwd=cwd,
            )

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        start = time.perf_counter()
        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=full_env,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            log.error("Command not found", command=command[0])
            msg = f"Command not found: {command[0]}"
            raise CommandError(msg, command=command, cwd=cwd) from e
        except OSError as e:
            log.error("Failed to start command", error=str(e))
            msg = f"Failed to start command: {' '.join(command)}"
            raise CommandError(msg, command=command, cwd=cwd) from e

        stop_heartbeat = threading.Event()
        heartbeat_thread = None
        if self.heartbeat_interval > 0 and (
            timeout is None or timeout > self.heartbeat_interval
        ):
            heartbeat_thread = threading.Thread(
                target=self._heartbeat_logger,
                args=(log, stop_heartbeat, self.heartbeat_interval),
                daemon=True,
            )
            heartbeat_thread.start()

        # Output is drained by communicate() in short slices so the cancel
        # event is observed while the pipes keep flowing.
        deadline = None if timeout is None else start + timeout
        timed_out = False
        cancelled = False
        stdout = stderr = ""
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    log.warning("Command cancelled", pid=process.pid)
                    self._stop(process, log)
                    break
                if deadline is not None and time.perf_counter() >= deadline:
                    timed_out = True
                    log.error("Command timed out", timeout=timeout)
                    self._stop(process, log)
                    break
                try:
                    stdout, stderr = process.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    continue
            if timed_out or cancelled:
                out, err = process.communicate()
                stdout, stderr = out or "", err or ""
        finally:
            if heartbeat_thread:
                stop_heartbeat.set()
                heartbeat_thread.join(timeout=1)

        duration_ms = int((time.perf_counter() - start) * 1000)
        returncode = process.returncode if process.returncode is not None else -1
        if timed_out or cancelled:
            returncode = -1
        log.info("Command completed", returncode=returncode, duration_ms=duration_ms)

        if check and returncode != 0:
            msg = f"Command failed with exit code {returncode}: {' '.join(command)}"
            raise CommandError(msg, command=command, returncode=returncode, cwd=cwd)

        return CommandResult(
            returncode=returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            command=command,
            cwd=cwd,
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=duration_ms,
        )
