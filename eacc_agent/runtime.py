"""Process wiring: build collaborators from settings and run the two timers."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from eth_account import Account

from .capabilities import CapabilityRegistry, default_registry
from .config import AgentSettings
from .crypto.keys import EncryptionIdentity, EthereumSigner, compress_public_key
from .errors import InvalidPublicKeyError
from .ledger.directory import JobDirectory, Web3JobDirectory
from .ledger.memory import InMemoryJobDirectory
from .lifecycle import JobLifecycleManager, TickReport
from .logging_utils import abbreviate
from .scheduler import PeriodicTask
from .storage.facade import ContentStore
from .storage.gateways import GatewayFetcher
from .storage.pinning import InMemoryPinningService, PinataCredentials, PinataPinningService

_LOGGER = logging.getLogger(__name__)

SIMULATED_GATEWAY = "http://simulated-gateway.local/ipfs/"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2


@dataclass(frozen=True)
class RegistrationStatus:
    address: str
    registered: bool
    published_key: bytes
    derived_key: bytes

    @property
    def matches(self) -> bool:
        return self.registered and self.published_key == self.derived_key

    def summary(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "registered": self.registered,
            "publishedKey": "0x" + self.published_key.hex() if self.published_key else None,
            "derivedKey": "0x" + self.derived_key.hex(),
            "matches": self.matches,
        }


class AgentRuntime:
    """Owns the collaborators of one agent process."""

    def __init__(
        self,
        settings: AgentSettings,
        *,
        signer: EthereumSigner,
        directory: JobDirectory,
        store: ContentStore,
        manager: JobLifecycleManager,
        simulate: bool = False,
    ) -> None:
        self.settings = settings
        self.signer = signer
        self.directory = directory
        self.store = store
        self.manager = manager
        self.simulate = simulate
        self.exit_code = EXIT_OK
        self._shutdown: Optional[asyncio.Event] = None

    @classmethod
    def build(
        cls,
        settings: AgentSettings,
        *,
        simulate: bool = False,
        registry: Optional[CapabilityRegistry] = None,
    ) -> "AgentRuntime":
        settings.require_runnable(simulate=simulate)
        registry = registry or default_registry()
        capabilities = registry.load(settings.agent.enabled_agents, settings.agent.options)

        if simulate:
            signer = EthereumSigner(settings.ledger.private_key or Account.create().key)
            pinning = InMemoryPinningService()
            fetcher = GatewayFetcher(
                [SIMULATED_GATEWAY], timeout=settings.ipfs.gateway_timeout, transport=pinning.transport()
            )
            directory: JobDirectory = InMemoryJobDirectory(signer.address)
        else:
            signer = EthereumSigner(settings.ledger.private_key)
            credentials = PinataCredentials(
                api_key=settings.ipfs.api_key,
                api_secret=settings.ipfs.api_secret,
                jwt=settings.ipfs.jwt,
            )
            pinning = PinataPinningService(credentials, endpoint=settings.ipfs.api_url)
            fetcher = GatewayFetcher(settings.ipfs.ordered_gateways(), timeout=settings.ipfs.gateway_timeout)
            directory = Web3JobDirectory.from_url(
                settings.ledger.rpc_url,
                signer,
                settings.ledger.marketplace_address,
                settings.ledger.marketplace_data_address,
                chain_id=settings.ledger.chain_id,
                receipt_timeout=settings.ledger.receipt_timeout,
            )

        store = ContentStore(pinning, fetcher, encoding=settings.ipfs.envelope_encoding)
        manager = JobLifecycleManager(
            directory,
            store,
            signer,
            capabilities,
            keywords=settings.agent.relevant_tags,
            recent_job_window=settings.polling.recent_job_window,
        )
        _LOGGER.info(
            "Agent %s ready (%s mode, capabilities: %s)",
            signer.address,
            "simulated" if simulate else "live",
            ", ".join(c.name for c in capabilities),
        )
        return cls(settings, signer=signer, directory=directory, store=store, manager=manager, simulate=simulate)

    # Identity ----------------------------------------------------------------
    def identity(self) -> EncryptionIdentity:
        return self.store.identity(self.signer)

    async def registration_status(self) -> RegistrationStatus:
        address = self.signer.address
        registered = await self.directory.is_registered(address)
        published = bytes(await self.directory.public_key_of(address)) if registered else b""
        if published:
            try:
                published = compress_public_key(published)
            except InvalidPublicKeyError:
                _LOGGER.warning("Published key for %s is not a valid point", address)
        return RegistrationStatus(
            address=address,
            registered=registered,
            published_key=published,
            derived_key=self.identity().public_key,
        )

    async def register(self) -> EncryptionIdentity:
        identity = self.identity()
        profile = self.settings.agent
        await self.directory.register_identity(identity.public_key, profile.name, profile.bio, profile.avatar)
        _LOGGER.info("Registered %s with key %s", identity.address, abbreviate(identity.public_key))
        return identity

    async def ensure_registration(self) -> EncryptionIdentity:
        """Register when unregistered, otherwise insist the published key is ours."""

        status = await self.registration_status()
        if not status.registered:
            _LOGGER.info("%s is not registered; registering", status.address)
            return await self.register()
        identity = self.store.verify_identity(self.signer, status.published_key)
        _LOGGER.info("Published key for %s matches the derived key", status.address)
        return identity

    # Running -----------------------------------------------------------------
    async def run_once(self) -> Tuple[TickReport, TickReport]:
        await self.ensure_registration()
        discovered = await self.manager.discovery_tick()
        followed = await self.manager.active_jobs_tick()
        return discovered, followed

    def request_shutdown(self, reason: str = "requested", *, exit_code: Optional[int] = None) -> None:
        if exit_code is not None and exit_code > self.exit_code:
            self.exit_code = exit_code
        if self._shutdown is not None and not self._shutdown.is_set():
            _LOGGER.info("Shutting down: %s", reason)
            self._shutdown.set()

    def _on_task_error(self, exc: BaseException) -> None:
        self.request_shutdown(f"unexpected {type(exc).__name__}: {exc}", exit_code=EXIT_FAILURE)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        loop.default_exception_handler(context)
        self.request_shutdown(context.get("message", "unhandled exception"), exit_code=EXIT_FAILURE)

    async def run(
        self,
        *,
        install_signal_handlers: bool = True,
        max_runtime: Optional[float] = None,
    ) -> int:
        """Run both timers until a signal, an unexpected error or ``max_runtime``."""

        loop = asyncio.get_running_loop()
        self._shutdown = asyncio.Event()
        await self.ensure_registration()

        polling = self.settings.polling
        discovery = PeriodicTask(
            polling.job_poll_interval, self.manager.discovery_tick, "discovery", on_error=self._on_task_error
        )
        active = PeriodicTask(
            polling.active_jobs_poll_interval, self.manager.active_jobs_tick, "active-jobs", on_error=self._on_task_error
        )

        installed = []
        if install_signal_handlers:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self.request_shutdown, sig.name)
                except (NotImplementedError, RuntimeError):
                    continue
                installed.append(sig)
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._on_loop_exception)

        discovery.start()
        active.start()
        _LOGGER.info(
            "Polling jobs every %.0fs and active jobs every %.0fs",
            polling.job_poll_interval,
            polling.active_jobs_poll_interval,
        )
        try:
            if max_runtime is None:
                await self._shutdown.wait()
            else:
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=max_runtime)
                except asyncio.TimeoutError:
                    _LOGGER.info("Maximum runtime of %.0fs reached", max_runtime)
        finally:
            await discovery.stop(polling.shutdown_grace_seconds)
            await active.stop(polling.shutdown_grace_seconds)
            for sig in installed:
                loop.remove_signal_handler(sig)
            loop.set_exception_handler(previous_handler)
            _LOGGER.info("Stopped; %s", self.manager.snapshot())
        return self.exit_code


async def seed_simulation(runtime: AgentRuntime, *, title: str = "Need a Discord bot for my server") -> int:
    """Post a job from a simulated client so a simulated run has work to do."""

    directory = runtime.directory
    if not isinstance(directory, InMemoryJobDirectory):
        raise TypeError("seed_simulation requires the in-memory job directory")
    client = EthereumSigner(Account.create().key)
    directory.set_public_key(client.address, runtime.store.identity(client).public_key)
    description = (
        "We want a Discord bot with slash commands, role management and moderation "
        "(kick, ban, timeout) for our community server."
    )
    published = await runtime.store.publish(description)
    job = directory.post_job(
        client.address,
        title,
        tags=["discord", "bot"],
        content_digest=published.digest,
        amount=100,
    )
    _LOGGER.info("Seeded simulated job %s from %s", job.id, client.address)
    return job.id


__all__ = [
    "AgentRuntime",
    "EXIT_CONFIGURATION",
    "EXIT_FAILURE",
    "EXIT_OK",
    "RegistrationStatus",
    "seed_simulation",
]
