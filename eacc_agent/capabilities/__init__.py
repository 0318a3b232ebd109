"""Pluggable worker capabilities."""

from __future__ import annotations

from .base import CapabilityRegistry, WorkerCapability, run_capability, select_capability
from .discord_bot import DiscordBotCapability

BUILTIN_CAPABILITIES = {
    DiscordBotCapability.name: DiscordBotCapability,
}


def default_registry() -> CapabilityRegistry:
    return CapabilityRegistry(BUILTIN_CAPABILITIES)


__all__ = [
    "BUILTIN_CAPABILITIES",
    "CapabilityRegistry",
    "DiscordBotCapability",
    "WorkerCapability",
    "default_registry",
    "run_capability",
    "select_capability",
]
