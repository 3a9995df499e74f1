"""Capability implementations supplied by the host environment."""

from ciflow.capabilities.base import (
    Capability,
    CapabilityRegistry,
    CapabilityResult,
)
from ciflow.capabilities.callable import CallableCapability
from ciflow.capabilities.fake import FakeCapability, FakeOutcome
from ciflow.capabilities.shell import CommandCapability, ShellCapability

__all__ = [
    "Capability",
    "CapabilityRegistry",
    "CapabilityResult",
    "CallableCapability",
    "CommandCapability",
    "FakeCapability",
    "FakeOutcome",
    "ShellCapability",
]
