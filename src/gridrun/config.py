"""Process-level settings, read once from the environment."""

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict

from gridrun.domain.models import (
    TUNNEL_NAME,
    BrowserChoice,
    CapabilityProfile,
    Credentials,
    FilePolicy,
    TunnelSpec,
    capability_profile,
    resolve_tunnel_options,
)

PUBLIC_DIR = Path(__file__).resolve().parent / "public"
DEFAULT_GRID_URL = "https://ondemand.us-west-1.saucelabs.com/wd/hub"


class AppSettings(BaseModel):
    """Immutable settings for one gridrun process."""
    model_config = ConfigDict(frozen=True)

    credentials: Credentials = Credentials()
    browser: BrowserChoice = BrowserChoice.CHROME_LATEST
    sc_version: str = "5.2.3"
    sc_binary: str = "sc"
    sc_ready_timeout: float = 120.0
    region: str = "us-west"
    grid_url: str = DEFAULT_GRID_URL
    tunnel_name: str = TUNNEL_NAME

    local_host: str = "localhost"
    local_port: int = 8080
    public_dir: Path = PUBLIC_DIR
    file_policy: FilePolicy = FilePolicy.INDEX_ONLY

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "AppSettings":
        """Build settings from environment variables.

        Missing credentials default to empty strings; the grid rejects them
        later rather than failing here.
        """
        env = os.environ if environ is None else environ
        values = {
            "credentials": Credentials(
                user=env.get("SAUCE_USERNAME", ""),
                key=env.get("SAUCE_ACCESS_KEY", ""),
            ),
            "sc_binary": env.get("SC_BINARY", "sc"),
            "sc_ready_timeout": float(env.get("SC_READY_TIMEOUT", "120")),
            "region": env.get("SAUCE_REGION", "us-west"),
            "grid_url": env.get("SAUCE_GRID_URL", DEFAULT_GRID_URL),
        }
        values.update(overrides)
        return cls(**values)

    def tunnel_spec(self) -> TunnelSpec:
        return TunnelSpec(
            credentials=self.credentials,
            tunnel_name=self.tunnel_name,
            sc_version=self.sc_version,
            region=self.region,
            options=resolve_tunnel_options(self.sc_version),
        )

    def capability_profile(self) -> CapabilityProfile:
        return capability_profile(self.browser, self.tunnel_name)
