"""Domain models for a gridrun invocation."""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gridrun.domain.errors import ConfigError

TUNNEL_NAME = "test-run"
REMOTE_DEMO_URL = "https://example.com/"


class RunMode(str, Enum):
    """Mode selected by the CLI flag."""
    DEMO_LOCAL = "demo-local"
    DEMO_REMOTE = "demo-remote"
    SAUCE_CONNECT = "sauce-connect"
    SERVER = "server"


# Short flag for each mode, in the order they are checked and listed.
MODE_SHORT_FLAGS: Dict[RunMode, str] = {
    RunMode.DEMO_LOCAL: "l",
    RunMode.DEMO_REMOTE: "r",
    RunMode.SAUCE_CONNECT: "t",
    RunMode.SERVER: "s",
}


class RunState(str, Enum):
    """Lifecycle state of an orchestrated run."""
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"
    UNWINDING = "unwinding"
    DONE = "done"


class FilePolicy(str, Enum):
    """Which request paths the static server may resolve to files."""
    INDEX_ONLY = "index-only"
    TREE = "tree"


class BrowserChoice(str, Enum):
    """Static capability profiles available on the grid."""
    CHROME_LATEST = "chrome-latest"
    IE9 = "ie9"


class Credentials(BaseModel):
    """Sauce Labs user/key pair, shared by the tunnel and the session."""
    model_config = ConfigDict(frozen=True)

    user: str = ""
    key: str = ""


class SauceConnect4Options(BaseModel):
    """Options understood by Sauce Connect 4.x."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["v4"] = "v4"
    verbose: bool = True

    def to_args(self, credentials: Credentials, tunnel_name: str, region: str) -> List[str]:
        args = [
            "-u", credentials.user,
            "-k", credentials.key,
            "--tunnel-name", tunnel_name,
            "--region", region,
        ]
        if self.verbose:
            args.append("--verbose")
        return args


class SauceConnect5Options(BaseModel):
    """Options understood by Sauce Connect 5.x (``sc run``)."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["v5"] = "v5"
    log_level: str = "debug"
    proxy_localhost: str = "direct"

    def to_args(self, credentials: Credentials, tunnel_name: str, region: str) -> List[str]:
        return [
            "run",
            "--username", credentials.user,
            "--access-key", credentials.key,
            "--tunnel-name", tunnel_name,
            "--region", region,
            "--log-level", self.log_level,
            "--proxy-localhost", self.proxy_localhost,
        ]


TunnelOptions = Annotated[
    Union[SauceConnect4Options, SauceConnect5Options],
    Field(discriminator="kind"),
]


def resolve_tunnel_options(sc_version: str) -> Union[SauceConnect4Options, SauceConnect5Options]:
    """Pick the option shape matching a Sauce Connect version string."""
    head = sc_version.strip().split(".", 1)[0]
    try:
        major = int(head)
    except ValueError:
        raise ConfigError(f"Invalid Sauce Connect version: {sc_version!r}")
    return SauceConnect4Options() if major < 5 else SauceConnect5Options()


class TunnelSpec(BaseModel):
    """Everything needed to provision one tunnel."""
    model_config = ConfigDict(frozen=True)

    credentials: Credentials
    tunnel_name: str = TUNNEL_NAME
    sc_version: str = "5.2.3"
    region: str = "us-west"
    options: TunnelOptions

    def command(self, binary: str) -> List[str]:
        """Full argv for launching Sauce Connect."""
        return [binary, *self.options.to_args(self.credentials, self.tunnel_name, self.region)]


class CapabilityProfile(BaseModel):
    """Browser/platform descriptor sent to the grid."""
    model_config = ConfigDict(frozen=True)

    browser_name: str
    browser_version: str
    platform_name: str
    tunnel_name: str = TUNNEL_NAME
    # W3C profiles nest vendor options under ``sauce:options``; legacy
    # JSON-wire profiles keep them at the top level.
    w3c: bool = True
    build: str = "test-run-0"
    name: str = "Test run"
    public: str = "team"

    def to_capabilities(self, credentials: Credentials) -> Dict[str, Any]:
        vendor: Dict[str, Any] = {
            "build": self.build,
            "name": self.name,
            "public": self.public,
            "tunnelName": self.tunnel_name,
            "username": credentials.user,
            "accessKey": credentials.key,
        }
        if self.w3c:
            return {
                "browserName": self.browser_name,
                "browserVersion": self.browser_version,
                "platformName": self.platform_name,
                "sauce:options": vendor,
            }
        return {
            "browserName": self.browser_name,
            "version": self.browser_version,
            "platform": self.platform_name,
            **vendor,
        }


def capability_profile(choice: BrowserChoice, tunnel_name: str = TUNNEL_NAME) -> CapabilityProfile:
    if choice == BrowserChoice.IE9:
        return CapabilityProfile(
            browser_name="internet explorer",
            browser_version="9",
            platform_name="Windows 7",
            tunnel_name=tunnel_name,
            w3c=False,
        )
    return CapabilityProfile(
        browser_name="chrome",
        browser_version="latest",
        platform_name="macOS 13",
        tunnel_name=tunnel_name,
    )


def describe_mode_flags() -> str:
    return ", ".join(f"--{mode.value} (-{short})" for mode, short in MODE_SHORT_FLAGS.items())


def select_mode(flags: Mapping[RunMode, bool]) -> RunMode:
    """Return the single mode whose flag is set.

    Raises:
        ConfigError: if no flag or more than one flag is set.
    """
    chosen = [mode for mode in MODE_SHORT_FLAGS if flags.get(mode, False)]
    if not chosen:
        raise ConfigError(f"Missing CLI option. You must give one of: {describe_mode_flags()}")
    if len(chosen) > 1:
        given = ", ".join(f"--{mode.value}" for mode in chosen)
        raise ConfigError(f"CLI options are mutually exclusive, got: {given}")
    return chosen[0]


class RunConfig(BaseModel):
    """Which resources a run acquires and what the test body targets."""
    model_config = ConfigDict(frozen=True)

    mode: RunMode
    needs_local_server: bool = False
    needs_tunnel: bool = False
    needs_remote_session: bool = False
    target_url: Optional[str] = None

    @model_validator(mode="after")
    def _check_target(self) -> "RunConfig":
        if self.needs_local_server and self.target_url is not None:
            raise ValueError("target_url is derived from the local server and must not be given")
        if self.needs_remote_session and not self.needs_local_server and not self.target_url:
            raise ValueError("a remote session needs a target_url or a local server")
        return self

    @classmethod
    def for_mode(cls, mode: RunMode, remote_url: str = REMOTE_DEMO_URL) -> "RunConfig":
        if mode == RunMode.DEMO_LOCAL:
            return cls(mode=mode, needs_local_server=True, needs_tunnel=True, needs_remote_session=True)
        if mode == RunMode.DEMO_REMOTE:
            return cls(mode=mode, needs_tunnel=True, needs_remote_session=True, target_url=remote_url)
        if mode == RunMode.SAUCE_CONNECT:
            return cls(mode=mode, needs_tunnel=True)
        return cls(mode=mode, needs_local_server=True)
