"""Core orchestration logic for a single gridrun test run.

Resources are acquired in dependency order (local server, tunnel, remote
session), the test body runs once, and whatever was acquired is stopped in
reverse order. The failure that ended the run is re-raised after the unwind;
stop failures are only logged.
"""

import asyncio
import signal
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, List, Optional

from gridrun.config import AppSettings
from gridrun.domain.errors import ConfigError
from gridrun.domain.models import RunConfig, RunMode, RunState
from gridrun.domain.types import RunOutcome
from gridrun.infra.remote_session import open_session
from gridrun.infra.resources import ResourceHandle
from gridrun.infra.static_server import start_local_server
from gridrun.infra.tunnel import open_tunnel
from gridrun.logs import get_logger

logger = get_logger("Orchestrator")

EXPECTED_HEADING = "Example Domain"

Provider = Callable[[], Awaitable[ResourceHandle]]


@dataclass(frozen=True)
class ResourceProviders:
    """Zero-argument coroutines that acquire each kind of resource."""
    start_server: Optional[Provider] = None
    open_tunnel: Optional[Provider] = None
    open_session: Optional[Provider] = None

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ResourceProviders":
        return cls(
            start_server=partial(
                start_local_server,
                settings.public_dir,
                host=settings.local_host,
                port=settings.local_port,
                file_policy=settings.file_policy,
            ),
            open_tunnel=partial(
                open_tunnel,
                settings.tunnel_spec(),
                binary=settings.sc_binary,
                ready_timeout=settings.sc_ready_timeout,
            ),
            open_session=partial(
                open_session,
                settings.capability_profile(),
                settings.credentials,
                settings.grid_url,
            ),
        )


@dataclass
class RunContext:
    """What the test body gets to work with."""
    config: RunConfig
    target_url: Optional[str] = None
    server: Optional[ResourceHandle] = None
    tunnel: Optional[ResourceHandle] = None
    session: Optional[ResourceHandle] = None


TestBody = Callable[[RunContext], Awaitable[None]]


class Orchestrator:
    """Acquires, runs and unwinds the resources of one run."""

    def __init__(self, config: RunConfig, providers: ResourceProviders):
        self.config = config
        self.providers = providers
        self.state = RunState.IDLE
        self.handles: List[ResourceHandle] = []

    def _transition(self, state: RunState) -> None:
        logger.debug("State change", from_state=self.state.value, to_state=state.value)
        self.state = state

    async def _acquire(self, what: str, provider: Optional[Provider]) -> ResourceHandle:
        if provider is None:
            raise ConfigError(f"No provider configured for the {what}")
        logger.debug("Acquiring", resource=what, index=len(self.handles))
        handle = await provider()
        self.handles.append(handle)
        return handle

    async def _unwind(self) -> None:
        self._transition(RunState.UNWINDING)
        while self.handles:
            handle = self.handles.pop()
            try:
                await handle.stop()
            except Exception as e:
                logger.warning("Failed to stop resource", resource=handle.name, error=str(e))

    async def run(self, body: TestBody) -> RunOutcome:
        """Acquire resources, run ``body`` once, then unwind.

        Raises:
            RuntimeError: if this orchestrator has already run.
            Exception: the acquisition or body failure, after the unwind.
        """
        if self.state != RunState.IDLE:
            raise RuntimeError(f"Orchestrator already used (state={self.state.value})")

        context = RunContext(config=self.config, target_url=self.config.target_url)
        acquired: List[str] = []
        try:
            self._transition(RunState.ACQUIRING)
            if self.config.needs_local_server:
                context.server = await self._acquire("local server", self.providers.start_server)
                context.target_url = context.server.resource.url
            if self.config.needs_tunnel:
                context.tunnel = await self._acquire("tunnel", self.providers.open_tunnel)
            if self.config.needs_remote_session:
                context.session = await self._acquire("remote session", self.providers.open_session)
            acquired = [handle.name for handle in self.handles]

            self._transition(RunState.RUNNING)
            await body(context)
        except Exception as e:
            logger.debug(
                "Run failed, unwinding",
                state=self.state.value,
                acquired=len(self.handles),
                error=type(e).__name__,
            )
            raise
        finally:
            await self._unwind()
            self._transition(RunState.DONE)

        return RunOutcome(mode=self.config.mode.value, target_url=context.target_url, resources=acquired)


async def check_heading(context: RunContext, expected: str = EXPECTED_HEADING) -> None:
    """Open the target URL and require the ``h1`` text to equal ``expected``."""
    if context.session is None or context.target_url is None:
        raise ConfigError("Heading check needs a remote session and a target URL")
    session = context.session.resource
    await session.navigate_to(context.target_url)
    text = await session.element_text("h1")
    if text != expected:
        raise AssertionError(f"Expected <h1> text {expected!r}, got {text!r}")
    logger.info("Heading check passed", url=context.target_url, heading=text)


async def hold_until_interrupted(context: RunContext, stop_event: Optional[asyncio.Event] = None) -> None:
    """Keep the acquired resources up until SIGINT/SIGTERM or ``stop_event``."""
    event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, event.set)
        except (NotImplementedError, RuntimeError):
            # No loop signal support (Windows, or not the main thread).
            continue
        installed.append(sig)

    if context.target_url:
        logger.info("Serving until interrupted", url=context.target_url)
    if context.tunnel is not None:
        logger.info("Tunnel open until interrupted", tunnel_name=context.tunnel.resource.tunnel_name)
    try:
        await event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def body_for_mode(mode: RunMode) -> TestBody:
    if mode in (RunMode.DEMO_LOCAL, RunMode.DEMO_REMOTE):
        return check_heading
    return hold_until_interrupted


async def run_mode(
    settings: AppSettings,
    mode: RunMode,
    providers: Optional[ResourceProviders] = None,
    body: Optional[TestBody] = None,
) -> RunOutcome:
    """Run gridrun in ``mode`` with resources built from ``settings``."""
    config = RunConfig.for_mode(mode)
    logger.info(
        "Starting run",
        mode=mode.value,
        local_server=config.needs_local_server,
        tunnel=config.needs_tunnel,
        remote_session=config.needs_remote_session,
    )
    orchestrator = Orchestrator(config, providers or ResourceProviders.from_settings(settings))
    return await orchestrator.run(body or body_for_mode(mode))
