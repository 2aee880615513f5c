"""
Playwright-backed session driver.

Every virtual user gets its own headless Chromium browser, an isolated browser
context (private cookies / storage) and one page. Playwright's own timeout and
error types are translated into the journey_errors vocabulary so the core can
classify them without importing playwright.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, Playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from journey_errors import (
    ElementNotFoundError,
    ElementTimeoutError,
    NavigationError,
    NavigationTimeoutError,
    SessionCreationError,
)
from session_driver import SessionDriver, SessionDriverFactory

logger = logging.getLogger("JourneyRunner.playwright")

BROWSER_ARGS = [
    '--disable-dev-shm-usage',
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-gpu',
]
DEFAULT_VIEWPORT = {"width": 1280, "height": 720}
DEFAULT_USER_AGENT = "LoadTest-Runner/Playwright"
# Short bound for click/fill on elements that are expected to be present already.
ACTION_TIMEOUT_MS = 5000


class PlaywrightSessionDriver(SessionDriver):
    def __init__(self, vu_id: str, browser: Browser, context: BrowserContext, page: Page):
        self.vu_id = vu_id
        self.browser = browser
        self.context = context
        self.page = page
        self._closed = False

    @property
    def current_url(self) -> Optional[str]:
        return self.page.url if self.page else None

    async def navigate(self, url: str, timeout_ms: int) -> None:
        try:
            await self.page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"Navigation to {url} timed out after {timeout_ms}ms") from e
        except PlaywrightError as e:
            raise NavigationError(f"Navigation to {url} failed: {e.message}") from e

    async def wait_for_url_pattern(self, pattern: str, timeout_ms: int) -> None:
        try:
            await self.page.wait_for_url(pattern, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(
                f"URL did not match '{pattern}' within {timeout_ms}ms (current: {self.page.url})"
            ) from e

    async def wait_for_load_state(self, state: str = "networkidle", timeout_ms: int = 10000) -> None:
        try:
            await self.page.wait_for_load_state(state, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"Page did not reach '{state}' within {timeout_ms}ms") from e

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> None:
        try:
            await self.page.wait_for_selector(selector, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise ElementTimeoutError(f"Selector '{selector}' not found within {timeout_ms}ms") from e

    async def fill_field(self, name: str, value: str) -> None:
        selector = f'input[name="{name}"]'
        try:
            await self.page.fill(selector, value, timeout=ACTION_TIMEOUT_MS)
        except PlaywrightTimeoutError as e:
            raise ElementNotFoundError(f"Field '{name}' not found on {self.page.url}") from e

    async def click(self, selector: str) -> None:
        try:
            await self.page.click(selector, timeout=ACTION_TIMEOUT_MS)
        except PlaywrightTimeoutError as e:
            raise ElementNotFoundError(f"Element '{selector}' not clickable on {self.page.url}") from e

    async def click_and_wait_for_navigation(self, selector: str, timeout_ms: int) -> None:
        try:
            async with self.page.expect_navigation(timeout=timeout_ms):
                await self.page.click(selector, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"No navigation after clicking '{selector}' within {timeout_ms}ms") from e
        except PlaywrightError as e:
            raise NavigationError(f"Navigation after clicking '{selector}' failed: {e.message}") from e

    async def close(self) -> None:
        """Close page, then context, then browser. Keeps going if one of them fails."""
        if self._closed:
            return
        self._closed = True
        errors: List[str] = []
        for label, resource in (("page", self.page), ("context", self.context), ("browser", self.browser)):
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                errors.append(f"{label}: {e}")
        if errors:
            logger.warning(f"VU {self.vu_id}: Errors while closing browser resources: {errors}")
        else:
            logger.debug(f"VU {self.vu_id}: Browser context closed")


class PlaywrightDriverFactory(SessionDriverFactory):
    """Owns the Playwright runtime; launches one browser per virtual user."""

    def __init__(
        self,
        headless: bool = True,
        viewport: Optional[Dict[str, int]] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        launch_args: Optional[List[str]] = None,
    ):
        self.headless = headless
        self.viewport = viewport or dict(DEFAULT_VIEWPORT)
        self.user_agent = user_agent
        self.launch_args = launch_args if launch_args is not None else list(BROWSER_ARGS)
        self._playwright_cm: Any = None
        self._playwright: Optional[Playwright] = None

    async def start(self) -> None:
        if self._playwright is not None:
            return
        self._playwright_cm = async_playwright()
        self._playwright = await self._playwright_cm.start()
        logger.info(f"Playwright started (headless={self.headless})")

    async def shutdown(self) -> None:
        if self._playwright is None:
            return
        try:
            await self._playwright.stop()
        finally:
            self._playwright = None
            self._playwright_cm = None
            logger.info("Playwright stopped")

    async def create_driver(self, vu_id: str) -> PlaywrightSessionDriver:
        if self._playwright is None:
            raise SessionCreationError("Playwright runtime is not started", vu_id=vu_id)

        browser = None
        context = None
        try:
            browser = await self._playwright.chromium.launch(headless=self.headless, args=self.launch_args)
            context = await browser.new_context(
                viewport=self.viewport,
                user_agent=self.user_agent,
                accept_downloads=False,
                java_script_enabled=True,
            )
            page = await context.new_page()
        except BaseException as e:
            # Partial allocation (including cancellation mid-launch): release what exists first
            for resource in (context, browser):
                if resource is not None:
                    try:
                        await resource.close()
                    except Exception as close_err:
                        logger.debug(f"VU {vu_id}: Cleanup after failed launch raised: {close_err}")
            if not isinstance(e, Exception):
                raise
            raise SessionCreationError(f"Failed to create browser context for VU {vu_id}: {e}", vu_id=vu_id) from e

        logger.debug(f"VU {vu_id}: Browser context created")
        return PlaywrightSessionDriver(vu_id, browser, context, page)
