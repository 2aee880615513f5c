import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from journey_errors import (
    ElementNotFoundError,
    ElementTimeoutError,
    NavigationError,
    NavigationTimeoutError,
    SessionCreationError,
)
from playwright_driver import PlaywrightDriverFactory, PlaywrightSessionDriver


def make_driver():
    closed = []
    page, context, browser = AsyncMock(), AsyncMock(), AsyncMock()
    page.url = "https://example.test/tk03/question/1"
    page.close.side_effect = lambda: closed.append("page")
    context.close.side_effect = lambda: closed.append("context")
    browser.close.side_effect = lambda: closed.append("browser")
    return PlaywrightSessionDriver("vu-1", browser, context, page), closed


@pytest.mark.asyncio
async def test_navigate_translates_playwright_errors():
    driver, _ = make_driver()
    driver.page.goto.side_effect = PlaywrightTimeoutError("Timeout 10000ms exceeded")
    with pytest.raises(NavigationTimeoutError):
        await driver.navigate("https://example.test/tk03/", 10000)

    driver.page.goto.side_effect = PlaywrightError("net::ERR_CONNECTION_REFUSED")
    with pytest.raises(NavigationError) as exc_info:
        await driver.navigate("https://example.test/tk03/", 10000)
    assert "ERR_CONNECTION_REFUSED" in str(exc_info.value)


@pytest.mark.asyncio
async def test_waits_translate_timeouts():
    driver, _ = make_driver()
    driver.page.wait_for_selector.side_effect = PlaywrightTimeoutError("timeout")
    driver.page.wait_for_url.side_effect = PlaywrightTimeoutError("timeout")
    driver.page.fill.side_effect = PlaywrightTimeoutError("timeout")
    with pytest.raises(ElementTimeoutError):
        await driver.wait_for_selector("form", 100)
    with pytest.raises(NavigationTimeoutError):
        await driver.wait_for_url_pattern("**/tk03/end", 100)
    with pytest.raises(ElementNotFoundError):
        await driver.fill_field("email", "x@example.com")
    driver.page.wait_for_url.assert_awaited_with("**/tk03/end", timeout=100)


@pytest.mark.asyncio
async def test_close_order_and_idempotence():
    driver, closed = make_driver()
    driver.context.close.side_effect = RuntimeError("context already gone")
    await driver.close()
    await driver.close()
    assert driver.page.close.await_count == 1
    assert driver.browser.close.await_count == 1
    assert closed == ["page", "browser"]


@pytest.mark.asyncio
async def test_factory_cleans_up_partial_launch():
    factory = PlaywrightDriverFactory()
    browser = AsyncMock()
    browser.new_context.side_effect = PlaywrightError("context failed")
    factory._playwright = MagicMock()
    factory._playwright.chromium.launch = AsyncMock(return_value=browser)

    with pytest.raises(SessionCreationError) as exc_info:
        await factory.create_driver("vu-4")
    assert exc_info.value.vu_id == "vu-4"
    browser.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_factory_cleans_up_when_cancelled_mid_launch():
    factory = PlaywrightDriverFactory()
    context = AsyncMock()
    browser = AsyncMock()
    started = asyncio.Event()

    async def slow_new_page():
        started.set()
        await asyncio.sleep(10)

    context.new_page.side_effect = slow_new_page
    browser.new_context = AsyncMock(return_value=context)
    factory._playwright = MagicMock()
    factory._playwright.chromium.launch = AsyncMock(return_value=browser)

    task = asyncio.create_task(factory.create_driver("vu-5"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    context.close.assert_awaited_once()
    browser.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_factory_requires_start():
    with pytest.raises(SessionCreationError):
        await PlaywrightDriverFactory().create_driver("vu-1")
