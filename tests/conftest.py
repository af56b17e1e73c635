"""Pytest configuration for gridrun."""
from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional

import pytest

from gridrun.infra.resources import ResourceHandle
from gridrun.logs import configure_logging

INDEX_HTML = "<html><body><h1>Example Domain</h1></body></html>\n"


def pytest_configure():
    configure_logging("DEBUG")


@pytest.fixture
def public_dir(tmp_path: Path) -> Path:
    root = tmp_path / "public"
    root.mkdir()
    (root / "index.html").write_text(INDEX_HTML)
    return root


class ResourceRecorder:
    """Builds stub providers and records start/stop order."""

    def __init__(self):
        self.started: List[str] = []
        self.stopped: List[str] = []
        self.requested: List[str] = []

    def provider(
        self,
        name: str,
        fail_start: Optional[BaseException] = None,
        fail_stop: Optional[BaseException] = None,
    ):
        async def start() -> ResourceHandle:
            self.requested.append(name)
            if fail_start is not None:
                raise fail_start
            self.started.append(name)

            async def stop() -> None:
                self.stopped.append(name)
                if fail_stop is not None:
                    raise fail_stop

            resource = SimpleNamespace(url=f"http://stub.invalid/{name}/", tunnel_name="test-run")
            return ResourceHandle(name, resource, stop)

        return start


@pytest.fixture
def recorder() -> ResourceRecorder:
    return ResourceRecorder()
