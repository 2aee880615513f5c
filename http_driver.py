"""
Lightweight aiohttp session driver for server-rendered forms.

No JavaScript is executed: pages are fetched with aiohttp, forms are parsed from
the HTML and submitted the way a browser would (radio/text values, submitter
name/value, GET query or POST form body). Each virtual user gets its own
ClientSession and cookie jar; the TCP connector is shared and owned by the
factory.

Supported selectors: `tag`, `[attr]`, `[attr="value"]` and combinations such as
`input[type="radio"][value="a"]`.
"""

from __future__ import annotations
import asyncio
import logging
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode, urljoin, urlparse, urlunparse

import aiohttp

from journey_errors import (
    ElementNotFoundError,
    ElementTimeoutError,
    NavigationError,
    NavigationTimeoutError,
    SessionCreationError,
)
from session_driver import SessionDriver, SessionDriverFactory

logger = logging.getLogger("JourneyRunner.http")

DEFAULT_USER_AGENT = "LoadTest-Runner/aiohttp"
DEFAULT_TIMEOUT_MS = 10000

_selector_regex = re.compile(r'^\s*([a-zA-Z][\w-]*)?((?:\[[^\]]+\])*)\s*$')
_attribute_regex = re.compile(r'\[\s*([\w-]+)\s*(?:=\s*(?:"([^"]*)"|\'([^\']*)\'|([^\]\s]+)))?\s*\]')


# ---------------------------
# HTML model
# ---------------------------
@dataclass
class PageElement:
    tag: str
    attrs: Dict[str, str]
    form_index: Optional[int] = None


@dataclass
class PageForm:
    action: str
    method: str
    values: Dict[str, str] = field(default_factory=dict)


class _PageParser(HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.elements: List[PageElement] = []
        self.forms: List[PageForm] = []
        self._current_form: Optional[int] = None

    def handle_starttag(self, tag, attrs):
        attr_map = {name.lower(): (value if value is not None else "") for name, value in attrs}
        if tag == "button" and "type" not in attr_map:
            attr_map["type"] = "submit"
        if tag == "form":
            self.forms.append(PageForm(action=attr_map.get("action", ""), method=attr_map.get("method", "get").upper()))
            self._current_form = len(self.forms) - 1
        element = PageElement(tag=tag, attrs=attr_map, form_index=self._current_form)
        self.elements.append(element)
        if self._current_form is not None and tag == "input":
            self._collect_default(element)

    def handle_endtag(self, tag):
        if tag == "form":
            self._current_form = None

    def _collect_default(self, element: PageElement):
        name = element.attrs.get("name")
        if not name:
            return
        input_type = element.attrs.get("type", "text").lower()
        form = self.forms[element.form_index]
        if input_type in ("radio", "checkbox"):
            if "checked" in element.attrs:
                form.values[name] = element.attrs.get("value", "on")
        elif input_type not in ("submit", "button", "image", "reset", "file"):
            form.values.setdefault(name, element.attrs.get("value", ""))


def parse_selector(selector: str) -> Tuple[Optional[str], List[Tuple[str, Optional[str]]]]:
    match = _selector_regex.match(selector or "")
    if not match or not selector.strip():
        raise ElementNotFoundError(f"Unsupported selector '{selector}'")
    tag = match.group(1).lower() if match.group(1) else None
    attributes = []
    for attr_match in _attribute_regex.finditer(match.group(2) or ""):
        name = attr_match.group(1).lower()
        value = next((g for g in attr_match.group(2, 3, 4) if g is not None), None)
        attributes.append((name, value))
    return tag, attributes


def glob_to_regex(pattern: str) -> re.Pattern:
    """Playwright-style URL glob: '**' matches anything, '*' anything but '/'."""
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


# ---------------------------
# Driver
# ---------------------------
class HttpSessionDriver(SessionDriver):
    def __init__(self, vu_id: str, session: aiohttp.ClientSession, timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.vu_id = vu_id
        self.session = session
        self.timeout_ms = timeout_ms  # for navigations not given an explicit bound
        self._url: Optional[str] = None
        self._elements: List[PageElement] = []
        self._forms: List[PageForm] = []

    @property
    def current_url(self) -> Optional[str]:
        return self._url

    def _load_page(self, url: str, html: str):
        parser = _PageParser()
        parser.feed(html)
        parser.close()
        self._url = url
        self._elements = parser.elements
        self._forms = parser.forms

    def find(self, selector: str) -> List[PageElement]:
        tag, attributes = parse_selector(selector)
        matches = []
        for element in self._elements:
            if tag and element.tag != tag:
                continue
            if all(
                name in element.attrs and (value is None or element.attrs[name] == value)
                for name, value in attributes
            ):
                matches.append(element)
        return matches

    def _find_one(self, selector: str) -> PageElement:
        matches = self.find(selector)
        if not matches:
            raise ElementNotFoundError(f"Element '{selector}' not found on {self._url}")
        return matches[0]

    async def _request(self, method: str, url: str, timeout_ms: int, data: Optional[Dict[str, str]] = None):
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000.0)
        try:
            async with self.session.request(method, url, data=data, timeout=timeout, allow_redirects=True) as resp:
                body = await resp.text(errors="replace")
                status = resp.status
                final_url = str(resp.url)
        except asyncio.TimeoutError as e:
            raise NavigationTimeoutError(f"{method} {url} timed out after {timeout_ms}ms") from e
        except aiohttp.ClientError as e:
            raise NavigationError(f"{method} {url} failed: {type(e).__name__}: {e}") from e

        log_level = logging.WARNING if status >= 400 else logging.DEBUG
        logger.log(log_level, f"VU {self.vu_id}: {status} {method} {url} -> {final_url}")
        if status >= 400:
            raise NavigationError(f"{method} {url} returned HTTP {status}")
        self._load_page(final_url, body)

    async def navigate(self, url: str, timeout_ms: int) -> None:
        await self._request("GET", url, timeout_ms)

    async def wait_for_url_pattern(self, pattern: str, timeout_ms: int) -> None:
        # Without scripts the URL only changes through a navigation, so this is a check.
        if self._url is None or not glob_to_regex(pattern).match(self._url):
            raise NavigationTimeoutError(
                f"URL did not match '{pattern}' within {timeout_ms}ms (current: {self._url})"
            )

    async def wait_for_load_state(self, state: str = "networkidle", timeout_ms: int = 10000) -> None:
        # The response body is fully read by the time a navigation returns.
        if self._url is None:
            raise NavigationError("No page loaded")

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> None:
        if not self.find(selector):
            raise ElementTimeoutError(f"Selector '{selector}' not found within {timeout_ms}ms on {self._url}")

    async def fill_field(self, name: str, value: str) -> None:
        candidates = [
            element for element in self._elements
            if element.tag in ("input", "textarea") and element.attrs.get("name") == name
        ]
        if not candidates or candidates[0].form_index is None:
            raise ElementNotFoundError(f"Field '{name}' not found on {self._url}")
        self._forms[candidates[0].form_index].values[name] = value

    async def click(self, selector: str) -> None:
        element = self._find_one(selector)
        input_type = element.attrs.get("type", "").lower()
        if element.tag == "input" and input_type in ("radio", "checkbox"):
            name = element.attrs.get("name")
            if name and element.form_index is not None:
                self._forms[element.form_index].values[name] = element.attrs.get("value", "on")
            return
        if self._is_navigation_trigger(element):
            await self._follow(element, self.timeout_ms)

    async def click_and_wait_for_navigation(self, selector: str, timeout_ms: int) -> None:
        element = self._find_one(selector)
        if not self._is_navigation_trigger(element):
            raise NavigationTimeoutError(f"No navigation after clicking '{selector}' within {timeout_ms}ms")
        await self._follow(element, timeout_ms)

    @staticmethod
    def _is_navigation_trigger(element: PageElement) -> bool:
        if element.tag == "a" and element.attrs.get("href"):
            return True
        is_submit = element.attrs.get("type", "").lower() in ("submit", "image")
        return element.tag in ("button", "input") and is_submit and element.form_index is not None

    async def _follow(self, element: PageElement, timeout_ms: int):
        if element.tag == "a":
            await self._request("GET", urljoin(self._url, element.attrs["href"]), timeout_ms)
            return

        form = self._forms[element.form_index]
        values = dict(form.values)
        if element.attrs.get("name"):
            values[element.attrs["name"]] = element.attrs.get("value", "")
        action = urljoin(self._url, form.action) if form.action else self._url
        if form.method == "POST":
            await self._request("POST", action, timeout_ms, data=values)
        else:
            parsed = urlparse(action)
            await self._request("GET", urlunparse(parsed._replace(query=urlencode(values))), timeout_ms)

    async def close(self) -> None:
        if not self.session.closed:
            await self.session.close()
            logger.debug(f"VU {self.vu_id}: HTTP session closed.")


class HttpDriverFactory(SessionDriverFactory):
    """Shares one TCP connector; every driver gets its own ClientSession and cookie jar."""

    def __init__(self, max_connections: int = 100, user_agent: str = DEFAULT_USER_AGENT, timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.max_connections = max_connections
        self.timeout_ms = timeout_ms
        self.user_agent = user_agent
        self._connector: Optional[aiohttp.TCPConnector] = None

    async def start(self) -> None:
        if self._connector is None:
            self._connector = aiohttp.TCPConnector(limit=max(100, self.max_connections), limit_per_host=max(50, self.max_connections))
            logger.debug(f"Created shared TCPConnector (limit={self._connector.limit})")

    async def shutdown(self) -> None:
        if self._connector is not None and not self._connector.closed:
            await self._connector.close()
        self._connector = None

    async def create_driver(self, vu_id: str) -> HttpSessionDriver:
        if self._connector is None:
            raise SessionCreationError("HTTP driver factory is not started", vu_id=vu_id)
        session = aiohttp.ClientSession(
            connector=self._connector,
            connector_owner=False,  # Connector is shared and closed by shutdown()
            cookie_jar=aiohttp.CookieJar(unsafe=True),  # unsafe: keep cookies for IP-address hosts
            headers={"User-Agent": self.user_agent},
        )
        return HttpSessionDriver(vu_id, session, timeout_ms=self.timeout_ms)
