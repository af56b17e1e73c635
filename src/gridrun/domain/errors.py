"""Error taxonomy for gridrun.

Acquisition errors (``BindError``, ``TunnelError``, ``SessionError``) trigger
an unwind of whatever was already acquired. ``ConfigError`` is raised before
any resource is touched. Test-body failures surface as ``AssertionError``.
"""


class GridRunError(Exception):
    """Base class for gridrun errors."""


class ConfigError(GridRunError):
    """Invalid or missing CLI mode / configuration."""


class BindError(GridRunError):
    """The local server could not bind its listening socket."""

    def __init__(self, host: str, port: int, reason: str):
        super().__init__(f"Cannot listen on {host}:{port}: {reason}")
        self.host = host
        self.port = port


class TunnelError(GridRunError):
    """Sauce Connect could not be provisioned."""


class SessionError(GridRunError):
    """The remote WebDriver session could not be established."""
