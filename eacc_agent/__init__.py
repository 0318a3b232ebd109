"""Autonomous worker agent for the EACC job marketplace.

The agent discovers jobs recorded on chain, talks to job creators through
end-to-end encrypted messages stored on IPFS, and executes and delivers work
through pluggable worker capabilities.
"""

from __future__ import annotations

from .config import AgentSettings, load_settings
from .lifecycle import ActiveJobRecord, JobLifecycleManager, JobPhase
from .runtime import AgentRuntime

__version__ = "0.1.0"

__all__ = [
    "ActiveJobRecord",
    "AgentRuntime",
    "AgentSettings",
    "JobLifecycleManager",
    "JobPhase",
    "__version__",
    "load_settings",
]
