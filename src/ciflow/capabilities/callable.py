"""Capability backed by a Python callable."""

from __future__ import annotations

import importlib
import threading
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import structlog

from ciflow.capabilities.base import CapabilityResult
from ciflow.exceptions import ConfigurationError

logger = structlog.get_logger()


def import_callable(path: str) -> Callable[..., Any]:
    """Import a callable from a dotted path.

    Args:
        path: Dotted path like 'module.submodule:function'.

    Returns:
        The imported callable.

    Raises:
        ConfigurationError: If the module or attribute cannot be found.
    """
    if ":" in path:
        module_path, func_name = path.rsplit(":", 1)
    else:
        module_path, func_name = path.rsplit(".", 1)

    try:
        module = importlib.import_module(module_path)
        func = getattr(module, func_name)
    except (ImportError, AttributeError) as e:
        msg = f"Cannot import callable '{path}': {e}"
        raise ConfigurationError(msg, field=path) from e

    if not callable(func):
        msg = f"'{path}' is not callable"
        raise ConfigurationError(msg, field=path)
    return func


class CallableCapability:
    """Invokes ``func(args, secrets, *, env, cwd, timeout, cancel_event)``.

    The callable may return a CapabilityResult, an int exit code, a bool,
    or None (treated as success). Long-running callables should poll
    ``cancel_event``.
    """

    def __init__(self, callable_path: str | Callable[..., Any]) -> None:
        self.callable_path = callable_path
        self._func: Callable[..., Any] | None = (
            None if isinstance(callable_path, str) else callable_path
        )

    @property
    def func(self) -> Callable[..., Any]:
        """The target callable, imported on first use."""
        if self._func is None:
            self._func = import_callable(str(self.callable_path))
        return self._func

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
        logger.debug("Invoking callable capability", capability=name)
        result = self.func(
            dict(args),
            dict(secrets),
            env=dict(env or {}),
            cwd=cwd,
            timeout=timeout,
            cancel_event=cancel_event,
        )

        if isinstance(result, CapabilityResult):
            return result
        if result is None:
            return CapabilityResult(exit_code=0)
        if isinstance(result, bool):
            return CapabilityResult(exit_code=0 if result else 1)
        if isinstance(result, int):
            return CapabilityResult(exit_code=result)
        return CapabilityResult(exit_code=0, stdout=str(result))
