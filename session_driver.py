"""
Session Driver interface for the journey runner.

A driver performs the actual page interactions for ONE virtual user. Concrete
drivers must **sub-class `SessionDriver`** and implement every abstract method;
a matching **`SessionDriverFactory`** creates one isolated driver per virtual
user (independent cookies / storage from all others).

● Waiting calls (all bounded by `timeout_ms`):
    - `navigate(url, timeout_ms)`
    - `wait_for_url_pattern(pattern, timeout_ms)`   : glob, e.g. `**/tk03/end`
    - `wait_for_selector(selector, timeout_ms)`
    - `click_and_wait_for_navigation(selector, timeout_ms)`
    - `wait_for_load_state(state, timeout_ms)`
● Immediate calls:
    - `fill_field(name, value)`, `click(selector)`
● Teardown:
    - `close()` : release page → context → browser (closest scope first).

Drivers report failures with the exceptions in `journey_errors`
(NavigationTimeoutError, ElementTimeoutError, NavigationError,
ElementNotFoundError); anything else is classified as Unknown.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional


class SessionDriver(ABC):
    """One isolated, driver-backed browsing context owned by a single virtual user."""

    # ---------- navigation ------------------------------------------------ #
    @abstractmethod
    async def navigate(self, url: str, timeout_ms: int) -> None: ...

    @abstractmethod
    async def wait_for_url_pattern(self, pattern: str, timeout_ms: int) -> None: ...

    @abstractmethod
    async def wait_for_load_state(self, state: str = "networkidle", timeout_ms: int = 10000) -> None: ...

    # ---------- elements -------------------------------------------------- #
    @abstractmethod
    async def wait_for_selector(self, selector: str, timeout_ms: int) -> None: ...

    @abstractmethod
    async def fill_field(self, name: str, value: str) -> None: ...

    @abstractmethod
    async def click(self, selector: str) -> None: ...

    @abstractmethod
    async def click_and_wait_for_navigation(self, selector: str, timeout_ms: int) -> None:
        """Click `selector` and wait until the resulting navigation has finished."""

    # ---------- state / teardown ----------------------------------------- #
    @property
    @abstractmethod
    def current_url(self) -> Optional[str]: ...

    @abstractmethod
    async def close(self) -> None:
        """Idempotent teardown of every resource owned by this driver."""


class SessionDriverFactory(ABC):
    """Creates isolated SessionDrivers. Shared, long-lived resources live here."""

    async def start(self) -> None:
        """Optional hook run once before the first virtual user is spawned."""

    async def shutdown(self) -> None:
        """Optional hook run once after every virtual user has terminated."""

    @abstractmethod
    async def create_driver(self, vu_id: str) -> SessionDriver:
        """
        Allocate a new isolated driver for `vu_id`.
        Must release anything it allocated before raising; failures should be
        raised as (or will be wrapped into) SessionCreationError.
        """
