"""Fake capability for testing."""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from ciflow.capabilities.base import CapabilityResult

logger = structlog.get_logger()


@dataclass
class FakeOutcome:
    """What the fake capability should do for one key.

    Attributes:
        exit_code: Exit code to return.
        stdout: Output to return.
        stderr: Error output to return.
        delay: Seconds to "run" for; cancellation ends the delay early.
        raises: Exception to raise instead of returning.
    """

    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    delay: float = 0.0
    raises: Exception | None = None


@dataclass
class FakeCall:
    """A recorded invocation."""

    key: str
    args: dict[str, str]
    secrets: dict[str, str]
    env: dict[str, str]
    started: float
    finished: float = 0.0


@dataclass
class FakeCapability:
    """A capability with scripted outcomes.

    Outcomes are keyed by capability name, or for ``shell`` by the script
    text. Every call is recorded so tests can assert on ordering and overlap.

    Example:
        >>> fake = FakeCapability(outcomes={"lint": FakeOutcome(exit_code=1)})
        >>> fake.invoke("lint", {}, {}).exit_code
        1
        >>> fake.invoked("lint")
        True
    """

    outcomes: dict[str, FakeOutcome] = field(default_factory=dict)
    default: FakeOutcome = field(default_factory=FakeOutcome)
    calls: list[FakeCall] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _key(self, name: str, args: Mapping[str, str]) -> str:
        if "script" in args and args["script"] in self.outcomes:
            return args["script"]
        return name

    def invoke(
        self,
        name: str,
        args: Mapping[str, str],
        secrets: Mapping[str, str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,  # noqa: ARG002
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CapabilityResult:
        key = self._key(name, args)
        outcome = self.outcomes.get(key, self.default)
        call = FakeCall(
            key=key,
            args=dict(args),
            secrets=dict(secrets),
            env=dict(env or {}),
            started=time.monotonic(),
        )
        with self._lock:
            self.calls.append(call)
        logger.debug("Fake capability invoked", key=key)

        try:
            if outcome.raises is not None:
                raise outcome.raises

            if outcome.delay:
                wait_for = outcome.delay if timeout is None else min(outcome.delay, timeout)
                event = cancel_event or threading.Event()
                if event.wait(timeout=wait_for):
                    return CapabilityResult(exit_code=-1, cancelled=True)
                if timeout is not None and outcome.delay > timeout:
                    return CapabilityResult(exit_code=-1, timed_out=True)

            return CapabilityResult(
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )
        finally:
            call.finished = time.monotonic()

    def invoked(self, key: str) -> bool:
        """Whether any call used this key."""
        return any(c.key == key for c in self.calls)

    def calls_for(self, key: str) -> list[FakeCall]:
        return [c for c in self.calls if c.key == key]
