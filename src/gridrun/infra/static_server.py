"""Minimal static file server for the local demo page."""

from http import HTTPStatus
from pathlib import Path
from typing import List, Optional

import aiofiles
from aiohttp import web

from gridrun.domain.errors import BindError
from gridrun.domain.models import FilePolicy
from gridrun.infra.resources import ResourceHandle
from gridrun.logs import get_logger

LABEL = "Local Server"
INDEX_FILE = "index.html"
CHUNK_SIZE = 64 * 1024

logger = get_logger(LABEL)


def candidate_pathnames(request_path: str) -> List[str]:
    """Return the paths tried for a request, in order.

    One trailing slash is stripped, then the bare path and its
    ``/index.html`` variant are tried.
    """
    pathname = request_path[:-1] if request_path.endswith("/") else request_path
    return [pathname, f"{pathname}/{INDEX_FILE}"]


class StaticFileServer:
    """Serves files from ``root_dir`` over HTTP using aiohttp."""

    def __init__(
        self,
        root_dir: Path,
        host: str = "localhost",
        port: int = 8080,
        file_policy: FilePolicy = FilePolicy.INDEX_ONLY,
    ):
        self.root_dir = Path(root_dir)
        self.host = host
        self.port = port
        self.file_policy = file_policy
        self.request_count = 0
        self._runner: Optional[web.AppRunner] = None
        self._bound_port: Optional[int] = None

    @property
    def bound_port(self) -> int:
        if self._bound_port is None:
            raise RuntimeError("Server is not listening")
        return self._bound_port

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.bound_port}/"

    def resolve(self, request_path: str) -> Optional[Path]:
        """Map a request path to a servable file, or ``None``."""
        for pathname in candidate_pathnames(request_path):
            found = self._lookup(pathname)
            if found is not None:
                return found
        return None

    def _lookup(self, pathname: str) -> Optional[Path]:
        if self.file_policy == FilePolicy.INDEX_ONLY:
            if pathname != f"/{INDEX_FILE}":
                return None
            candidate = self.root_dir / INDEX_FILE
            return candidate if candidate.is_file() else None

        root = self.root_dir.resolve()
        candidate = (root / pathname.lstrip("/")).resolve()
        if candidate != root and root not in candidate.parents:
            return None
        return candidate if candidate.is_file() else None

    async def handle(self, request: web.Request) -> web.StreamResponse:
        self.request_count += 1
        logger.info(
            f"{request.method or 'UNKNOWN'} {request.path_qs} "
            f"(Agent: {request.headers.get('User-Agent', 'N/A')})"
        )

        path = self.resolve(request.path)
        if path is None:
            return web.Response(
                status=HTTPStatus.NOT_FOUND.value,
                reason=HTTPStatus.NOT_FOUND.phrase,
                text=HTTPStatus.NOT_FOUND.phrase,
                content_type="text/plain",
            )

        response = web.StreamResponse(
            status=HTTPStatus.OK.value,
            reason=HTTPStatus.OK.phrase,
            headers={"Content-Type": "text/html"},
        )
        await response.prepare(request)
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(CHUNK_SIZE)
                if not chunk:
                    break
                await response.write(chunk)
        await response.write_eof()
        return response

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app

    async def start(self) -> None:
        """Bind the listener. Raises ``BindError`` if the port is unavailable."""
        runner = web.AppRunner(self.make_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            logger.error("Failed to start server", host=self.host, port=self.port, error=str(e))
            await runner.cleanup()
            raise BindError(self.host, self.port, str(e)) from e

        self._runner = runner
        self._bound_port = runner.addresses[0][1]
        logger.info(f"Server up and running and listening on: {self.url}")

    async def stop(self) -> None:
        """Close the listener and wait for in-flight responses."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()


async def start_local_server(
    root_dir: Path,
    host: str = "localhost",
    port: int = 8080,
    file_policy: FilePolicy = FilePolicy.INDEX_ONLY,
) -> ResourceHandle[StaticFileServer]:
    server = StaticFileServer(root_dir, host=host, port=port, file_policy=file_policy)
    await server.start()
    return ResourceHandle(LABEL, server, server.stop)
