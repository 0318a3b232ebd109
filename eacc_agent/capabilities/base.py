"""Worker capability contract and the name-keyed registry that dispatches to it."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, runtime_checkable

from ..errors import ConfigurationError
from ..ledger.models import Job

_LOGGER = logging.getLogger(__name__)


@runtime_checkable
class WorkerCapability(Protocol):
    """What the lifecycle manager needs from a pluggable worker.

    ``execute`` may be a plain function or a coroutine function.
    """

    name: str

    def matches(self, job: Job, content: str) -> bool: ...

    def build_application_message(self, job: Job, content: str) -> str: ...

    def execute(self, job: Job, content: str) -> Any: ...

    def package_result(self, job: Job, content: str, result: Any) -> str: ...


CapabilityFactory = Callable[..., WorkerCapability]


async def run_capability(capability: WorkerCapability, job: Job, content: str) -> Any:
    outcome = capability.execute(job, content)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


class CapabilityRegistry:
    """Factories keyed by name, instantiated on demand from settings."""

    def __init__(self, factories: Optional[Mapping[str, CapabilityFactory]] = None) -> None:
        self._factories: Dict[str, CapabilityFactory] = dict(factories or {})

    def register(self, name: str, factory: CapabilityFactory) -> None:
        if name in self._factories:
            raise ValueError(f"Capability {name!r} is already registered")
        self._factories[name] = factory

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def create(self, name: str, options: Optional[Mapping[str, Any]] = None) -> WorkerCapability:
        try:
            factory = self._factories[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown worker capability {name!r}",
                problems=[f"ENABLED_AGENTS: {name!r} is not one of {', '.join(self.names()) or 'none'}"],
            ) from None
        capability = factory(**dict(options or {}))
        if not isinstance(capability, WorkerCapability):
            raise ConfigurationError(f"Capability {name!r} does not implement the worker contract")
        return capability

    def load(
        self,
        names: Iterable[str],
        options: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> List[WorkerCapability]:
        """Instantiate the enabled capabilities in order; at least one is required."""

        options = options or {}
        loaded = [self.create(name, options.get(name)) for name in names]
        if not loaded:
            raise ConfigurationError(
                "No worker capabilities enabled", problems=["ENABLED_AGENTS is empty"]
            )
        _LOGGER.info("Loaded %d capabilities: %s", len(loaded), ", ".join(c.name for c in loaded))
        return loaded


def select_capability(
    capabilities: Iterable[WorkerCapability], job: Job, content: str
) -> Optional[WorkerCapability]:
    """First capability that claims the job, in registration order."""

    for capability in capabilities:
        if capability.matches(job, content):
            return capability
    return None


__all__ = [
    "CapabilityFactory",
    "CapabilityRegistry",
    "WorkerCapability",
    "run_capability",
    "select_capability",
]
