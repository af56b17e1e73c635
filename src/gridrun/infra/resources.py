"""Uniform start/stop contract for external resources."""

from typing import Awaitable, Callable, Generic, TypeVar

from gridrun.logs import get_logger

T = TypeVar("T")


class ResourceHandle(Generic[T]):
    """A started resource with an asynchronous, at-most-once ``stop``.

    ``stop`` never raises: failures of the underlying shutdown are logged
    under the handle's name. A second call is a silent no-op.
    """

    def __init__(self, name: str, resource: T, stop: Callable[[], Awaitable[None]]):
        self.name = name
        self.resource = resource
        self._stop = stop
        self._stopped = False
        self._logger = get_logger(name)

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        try:
            await self._stop()
        except Exception as e:
            self._logger.warning("Failed to stop cleanly", error=str(e))
            return
        self._logger.info("Stopped")

    def __repr__(self) -> str:
        state = "stopped" if self._stopped else "running"
        return f"<ResourceHandle {self.name!r} {state}>"
