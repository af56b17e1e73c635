import asyncio
import os
import re
import signal
import sys
import urllib.request
from functools import partial
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from gridrun.config import AppSettings
from gridrun.domain.errors import BindError, SessionError, TunnelError
from gridrun.domain.models import BrowserChoice, Credentials, RunConfig, RunMode, RunState, capability_profile
from gridrun.infra.remote_session import open_session
from gridrun.infra.static_server import start_local_server
from gridrun.orchestration.runner import (
    Orchestrator,
    ResourceProviders,
    body_for_mode,
    check_heading,
    hold_until_interrupted,
    run_mode,
)


def _providers(recorder, **overrides):
    providers = {
        "start_server": recorder.provider("server"),
        "open_tunnel": recorder.provider("tunnel"),
        "open_session": recorder.provider("session"),
    }
    providers.update(overrides)
    return ResourceProviders(**providers)


async def _noop(context):
    return None


DEMO_LOCAL = RunConfig.for_mode(RunMode.DEMO_LOCAL)


@pytest.mark.asyncio
async def test_unwinds_in_reverse_acquisition_order(recorder):
    orchestrator = Orchestrator(DEMO_LOCAL, _providers(recorder))

    outcome = await orchestrator.run(_noop)

    assert recorder.started == ["server", "tunnel", "session"]
    assert recorder.stopped == ["session", "tunnel", "server"]
    assert outcome["resources"] == ["server", "tunnel", "session"]
    assert outcome["target_url"] == "http://stub.invalid/server/"
    assert orchestrator.state == RunState.DONE
    assert orchestrator.handles == []


@pytest.mark.asyncio
async def test_failed_acquisition_unwinds_only_acquired_prefix(recorder):
    providers = _providers(recorder, open_tunnel=recorder.provider("tunnel", fail_start=TunnelError("no tunnel")))
    orchestrator = Orchestrator(DEMO_LOCAL, providers)
    body = AsyncMock()

    with pytest.raises(TunnelError, match="no tunnel"):
        await orchestrator.run(body)

    assert recorder.requested == ["server", "tunnel"]
    assert recorder.stopped == ["server"]
    body.assert_not_awaited()


@pytest.mark.asyncio
async def test_bind_error_leaves_nothing_to_unwind(recorder):
    providers = _providers(recorder, start_server=recorder.provider("server", fail_start=BindError("localhost", 8080, "in use")))
    orchestrator = Orchestrator(DEMO_LOCAL, providers)

    with pytest.raises(BindError):
        await orchestrator.run(_noop)

    assert recorder.requested == ["server"]
    assert recorder.stopped == []


@pytest.mark.asyncio
async def test_body_failure_unwinds_everything_and_is_reraised(recorder):
    orchestrator = Orchestrator(DEMO_LOCAL, _providers(recorder))

    async def failing_body(context):
        raise AssertionError("wrong heading")

    with pytest.raises(AssertionError, match="wrong heading"):
        await orchestrator.run(failing_body)

    assert recorder.stopped == ["session", "tunnel", "server"]


@pytest.mark.asyncio
async def test_failure_is_left_to_the_caller_to_report(recorder):
    orchestrator = Orchestrator(DEMO_LOCAL, _providers(recorder))

    async def failing_body(context):
        raise AssertionError("wrong heading")

    with capture_logs() as logs:
        with pytest.raises(AssertionError):
            await orchestrator.run(failing_body)

    assert not [entry for entry in logs if entry["log_level"] == "error"]
    assert recorder.stopped == ["session", "tunnel", "server"]


@pytest.mark.asyncio
async def test_stop_failure_does_not_abort_unwind(recorder):
    providers = _providers(recorder, open_tunnel=recorder.provider("tunnel", fail_stop=RuntimeError("stuck")))
    orchestrator = Orchestrator(DEMO_LOCAL, providers)

    outcome = await orchestrator.run(_noop)

    assert recorder.stopped == ["session", "tunnel", "server"]
    assert outcome["mode"] == "demo-local"


@pytest.mark.asyncio
async def test_root_cause_wins_over_unwind_failures(recorder):
    providers = _providers(
        recorder,
        start_server=recorder.provider("server", fail_stop=RuntimeError("server stop failed")),
        open_tunnel=recorder.provider("tunnel", fail_stop=RuntimeError("tunnel stop failed")),
        open_session=recorder.provider("session", fail_start=SessionError("grid said no")),
    )
    orchestrator = Orchestrator(DEMO_LOCAL, providers)

    with capture_logs() as logs:
        with pytest.raises(SessionError, match="grid said no"):
            await orchestrator.run(_noop)

    assert recorder.stopped == ["tunnel", "server"]
    warnings = [entry for entry in logs if entry["log_level"] == "warning"]
    assert {entry["label"] for entry in warnings} == {"server", "tunnel"}


@pytest.mark.asyncio
async def test_raising_handle_is_logged_and_unwind_continues(recorder):
    rogue = MagicMock()
    rogue.name = "rogue"
    rogue.stop = AsyncMock(side_effect=RuntimeError("boom"))

    async def rogue_provider():
        return rogue

    providers = _providers(recorder, open_tunnel=rogue_provider)
    orchestrator = Orchestrator(DEMO_LOCAL, providers)

    with capture_logs() as logs:
        await orchestrator.run(_noop)

    rogue.stop.assert_awaited_once()
    assert recorder.stopped == ["session", "server"]
    assert any(entry["event"] == "Failed to stop resource" and entry["resource"] == "rogue" for entry in logs)


@pytest.mark.asyncio
async def test_orchestrator_runs_only_once(recorder):
    orchestrator = Orchestrator(DEMO_LOCAL, _providers(recorder))
    await orchestrator.run(_noop)

    with pytest.raises(RuntimeError, match="already used"):
        await orchestrator.run(_noop)


@pytest.mark.asyncio
async def test_server_only_mode_acquires_just_the_server(recorder):
    orchestrator = Orchestrator(RunConfig.for_mode(RunMode.SERVER), _providers(recorder))

    await orchestrator.run(_noop)

    assert recorder.started == ["server"]
    assert recorder.stopped == ["server"]


@pytest.mark.asyncio
async def test_tunnel_only_mode_acquires_just_the_tunnel(recorder):
    orchestrator = Orchestrator(RunConfig.for_mode(RunMode.SAUCE_CONNECT), _providers(recorder))

    await orchestrator.run(_noop)

    assert recorder.started == ["tunnel"]


@pytest.mark.asyncio
async def test_remote_demo_with_failing_tunnel_requests_no_session(recorder):
    start_server = AsyncMock()
    open_session_mock = AsyncMock()
    providers = ResourceProviders(
        start_server=start_server,
        open_tunnel=recorder.provider("tunnel", fail_start=TunnelError("provisioning failed")),
        open_session=open_session_mock,
    )

    with pytest.raises(TunnelError, match="provisioning failed"):
        await run_mode(AppSettings(), RunMode.DEMO_REMOTE, providers=providers)

    start_server.assert_not_awaited()
    open_session_mock.assert_not_awaited()
    assert recorder.stopped == []


class _HttpDriver:
    """Stands in for a remote browser by fetching pages over plain HTTP."""

    session_id = "local-http"

    def __init__(self):
        self.page = ""
        self.visited = []
        self.quit_called = False

    def get(self, url):
        self.visited.append(url)
        opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        with opener.open(url, timeout=5) as response:
            self.page = response.read().decode("utf-8")

    def find_element(self, by, value):
        match = re.search(rf"<{value}>(.*?)</{value}>", self.page, re.S)
        return SimpleNamespace(text=match.group(1).strip() if match else "")

    def quit(self):
        self.quit_called = True


@pytest.mark.asyncio
async def test_local_demo_end_to_end(public_dir, recorder):
    driver = _HttpDriver()
    providers = ResourceProviders(
        start_server=partial(start_local_server, public_dir, host="127.0.0.1", port=0),
        open_tunnel=recorder.provider("SauceConnect"),
        open_session=partial(
            open_session,
            capability_profile(BrowserChoice.CHROME_LATEST),
            Credentials(user="me", key="secret"),
            "http://grid.invalid/wd/hub",
            driver_factory=lambda url, options: driver,
        ),
    )
    orchestrator = Orchestrator(DEMO_LOCAL, providers)

    outcome = await orchestrator.run(check_heading)

    assert outcome["resources"] == ["Local Server", "SauceConnect", "WebDriver"]
    assert re.fullmatch(r"http://127\.0\.0\.1:\d+/", outcome["target_url"])
    assert driver.visited == [outcome["target_url"]]
    assert driver.quit_called
    assert recorder.stopped == ["SauceConnect"]


@pytest.mark.asyncio
async def test_check_heading_mismatch_raises_assertion_error():
    session = SimpleNamespace(
        navigate_to=AsyncMock(),
        element_text=AsyncMock(return_value="Something Else"),
    )
    context = SimpleNamespace(session=SimpleNamespace(resource=session), target_url="https://example.com/")

    with pytest.raises(AssertionError, match="Something Else"):
        await check_heading(context)

    session.navigate_to.assert_awaited_once_with("https://example.com/")
    session.element_text.assert_awaited_once_with("h1")


@pytest.mark.asyncio
async def test_hold_returns_once_stop_event_is_set():
    event = asyncio.Event()
    event.set()
    context = SimpleNamespace(target_url="http://localhost:8080/", tunnel=None)

    await hold_until_interrupted(context, stop_event=event)


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="needs loop signal handlers")
async def test_sigterm_ends_hold_and_unwinds(recorder):
    loop = asyncio.get_running_loop()
    orchestrator = Orchestrator(RunConfig.for_mode(RunMode.SERVER), _providers(recorder))
    loop.call_later(0.2, os.kill, os.getpid(), signal.SIGTERM)

    outcome = await asyncio.wait_for(orchestrator.run(hold_until_interrupted), timeout=5)

    assert outcome["resources"] == ["server"]
    assert recorder.stopped == ["server"]
    assert orchestrator.state == RunState.DONE
    assert loop.remove_signal_handler(signal.SIGTERM) is False
    assert loop.remove_signal_handler(signal.SIGINT) is False


def test_body_for_mode():
    assert body_for_mode(RunMode.DEMO_LOCAL) is check_heading
    assert body_for_mode(RunMode.DEMO_REMOTE) is check_heading
    assert body_for_mode(RunMode.SERVER) is hold_until_interrupted
    assert body_for_mode(RunMode.SAUCE_CONNECT) is hold_until_interrupted


def test_default_providers_target_localhost_8080():
    settings = AppSettings()
    providers = ResourceProviders.from_settings(settings)

    assert providers.start_server.keywords["host"] == "localhost"
    assert providers.start_server.keywords["port"] == 8080
    assert providers.open_tunnel.args[0].options.kind == "v5"
