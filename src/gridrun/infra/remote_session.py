"""Remote WebDriver sessions on the Sauce Labs grid."""

import asyncio
from typing import Any, Callable, Dict, Optional

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.common.options import ArgOptions
from urllib3.exceptions import HTTPError

from gridrun.domain.errors import SessionError
from gridrun.domain.models import CapabilityProfile, Credentials
from gridrun.infra.resources import ResourceHandle
from gridrun.logs import get_logger

LABEL = "WebDriver"

logger = get_logger(LABEL)


def build_options(capabilities: Dict[str, Any]) -> ArgOptions:
    options = ArgOptions()
    for name, value in capabilities.items():
        options.set_capability(name, value)
    return options


def _default_driver_factory(grid_url: str, options: ArgOptions) -> Any:
    return webdriver.Remote(command_executor=grid_url, options=options)


class RemoteSession:
    """Thin async wrapper over a blocking Selenium remote driver."""

    def __init__(self, driver: Any, profile: CapabilityProfile):
        self.driver = driver
        self.profile = profile

    @property
    def session_id(self) -> Optional[str]:
        return getattr(self.driver, "session_id", None)

    async def navigate_to(self, url: str) -> None:
        logger.info("Navigating", url=url)
        await asyncio.to_thread(self.driver.get, url)

    async def element_text(self, tag_name: str) -> str:
        element = await asyncio.to_thread(self.driver.find_element, By.TAG_NAME, tag_name)
        return await asyncio.to_thread(lambda: element.text)

    async def close(self) -> None:
        """End the session; failures propagate to the owning handle."""
        await asyncio.to_thread(self.driver.quit)


async def open_session(
    profile: CapabilityProfile,
    credentials: Credentials,
    grid_url: str,
    driver_factory: Callable[[str, ArgOptions], Any] = _default_driver_factory,
) -> ResourceHandle[RemoteSession]:
    """Create a remote session for ``profile``.

    Raises:
        SessionError: on transport or authentication failure.
    """
    options = build_options(profile.to_capabilities(credentials))
    logger.info(
        "Requesting remote session",
        browser=profile.browser_name,
        version=profile.browser_version,
        platform=profile.platform_name,
        tunnel_name=profile.tunnel_name,
    )
    try:
        driver = await asyncio.to_thread(driver_factory, grid_url, options)
    except (WebDriverException, HTTPError, OSError) as e:
        raise SessionError(f"Could not create remote session: {e}") from e

    session = RemoteSession(driver, profile)
    logger.info("Session started", session_id=session.session_id)
    return ResourceHandle(LABEL, session, session.close)
