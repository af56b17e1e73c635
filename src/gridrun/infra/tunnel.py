"""Sauce Connect tunnel management via subprocess."""

import asyncio
import shutil
from typing import List, Optional

from gridrun.domain.errors import TunnelError
from gridrun.domain.models import TunnelSpec
from gridrun.infra.resources import ResourceHandle
from gridrun.logs import get_logger

LABEL = "SauceConnect"
READY_MARKER = "Sauce Connect is up"

logger = get_logger(LABEL)


class SauceConnectTunnel:
    """Runs the ``sc`` binary and tracks its readiness."""

    def __init__(
        self,
        spec: TunnelSpec,
        binary: str = "sc",
        ready_timeout: float = 120.0,
        terminate_timeout: float = 10.0,
    ):
        self.spec = spec
        self.binary = binary
        self.ready_timeout = ready_timeout
        self.terminate_timeout = terminate_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self._ready = asyncio.Event()
        self._reader: Optional[asyncio.Task] = None

    @property
    def tunnel_name(self) -> str:
        return self.spec.tunnel_name

    def command(self) -> List[str]:
        return self.spec.command(self.binary)

    async def _pump_output(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        async for raw in self.process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            logger.info(line)
            if READY_MARKER in line:
                self._ready.set()

    async def start(self) -> None:
        """Launch Sauce Connect and wait until it reports the tunnel is up.

        Raises:
            TunnelError: if the binary is missing, exits early, or is not
                ready within ``ready_timeout`` seconds.
        """
        executable = shutil.which(self.binary)
        if executable is None:
            raise TunnelError(f"Sauce Connect binary not found on PATH: {self.binary}")

        cmd = self.command()
        logger.info(
            "Starting Sauce Connect",
            tunnel_name=self.tunnel_name,
            sc_version=self.spec.sc_version,
            options=self.spec.options.kind,
        )
        try:
            self.process = await asyncio.create_subprocess_exec(
                executable,
                *cmd[1:],
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise TunnelError(f"Failed to launch Sauce Connect: {e}") from e

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        self._reader = asyncio.create_task(self._pump_output())
        ready_wait = asyncio.create_task(self._ready.wait())
        try:
            done, _ = await asyncio.wait(
                {ready_wait, self._reader},
                timeout=self.ready_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if ready_wait not in done:
                if self._reader in done:
                    reader_error = self._reader.exception()
                    if reader_error is not None:
                        raise TunnelError(f"Failed reading Sauce Connect output: {reader_error}") from reader_error
                    # Output closed; the process may still be running.
                    try:
                        returncode = await asyncio.wait_for(
                            self.process.wait(), timeout=max(0.0, deadline - loop.time())
                        )
                    except asyncio.TimeoutError:
                        raise TunnelError(f"Sauce Connect was not ready after {self.ready_timeout:g} seconds") from None
                    raise TunnelError(f"Sauce Connect exited before the tunnel was up (exit code {returncode})")
                raise TunnelError(f"Sauce Connect was not ready after {self.ready_timeout:g} seconds")
        except BaseException:
            ready_wait.cancel()
            await self.close()
            raise

        logger.info("\nSauceConnect...ed ;)\n")

    async def close(self) -> None:
        """Terminate the process, escalating to kill after ``terminate_timeout``."""
        process = self.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Sauce Connect did not exit, killing", pid=process.pid)
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass

        if self._reader is not None:
            if not self._reader.done():
                self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Sauce Connect output reader failed", error=str(e))
            self._reader = None


async def open_tunnel(
    spec: TunnelSpec,
    binary: str = "sc",
    ready_timeout: float = 120.0,
) -> ResourceHandle[SauceConnectTunnel]:
    tunnel = SauceConnectTunnel(spec, binary=binary, ready_timeout=ready_timeout)
    await tunnel.start()
    return ResourceHandle(LABEL, tunnel, tunnel.close)
