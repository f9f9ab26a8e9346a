"""Browser automation primitives using Playwright."""
from abc import ABC, abstractmethod
from typing import Optional, Dict
import re

from playwright.sync_api import (
    sync_playwright,
    Browser,
    BrowserContext,
    Locator,
    Page,
    Playwright,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeout,
)

from intentflow.errors import (
    AutomationError,
    ActionTimeoutError,
    ElementNotFoundError,
    InteractionBlockedError,
    NavigationFailedError,
    NetworkError,
    ScriptError,
)
from intentflow.utils.config import config
from intentflow.utils.logger import setup_logger
from intentflow.utils.safety_guard import safety_guard


class BrowserPrimitives(ABC):
    """
    The browser collaborator: primitive page actions.

    Every method raises a typed AutomationError subclass on failure.
    Locators are Playwright selector strings (css, `text=`, `role=`,
    `xpath=`, chained with ` >> `) plus `label=<text>` for label lookup.
    """

    @abstractmethod
    def goto(self, url: str): ...

    @abstractmethod
    def click(self, locator: str, timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def fill(self, locator: str, value: str, timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def select(self, locator: str, value: str, timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def wait_for(self, locator: str, timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def press(self, key: str, locator: Optional[str] = None): ...

    @abstractmethod
    def screenshot(self) -> bytes: ...

    # ----- recovery helpers ----------------------------------------------

    @abstractmethod
    def hover(self, locator: str, timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def reload(self): ...

    @abstractmethod
    def wait_for_load_state(self, state: str = "load", timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def wait_for_timeout(self, ms: int): ...

    @abstractmethod
    def scroll_into_view(self, locator: str, timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def force_click(self, locator: str, timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def clear(self, locator: str, timeout_ms: Optional[int] = None): ...

    @abstractmethod
    def page_context(self) -> Dict[str, str]:
        """Live page state for the reasoning engine: pageTitle, url, domSummary."""

    @property
    def current_url(self) -> str:
        return ""


# Playwright message fragments -> typed failure
_NETWORK_MARKERS = ("net::ERR_INTERNET_DISCONNECTED", "net::ERR_CONNECTION", "net::ERR_NAME_NOT_RESOLVED",
                    "net::ERR_NETWORK", "net::ERR_TIMED_OUT", "ECONNREFUSED", "ECONNRESET")
_BLOCKED_MARKERS = ("intercepts pointer events", "element is not visible", "element is not enabled",
                    "element is outside of the viewport", "element is not stable")


def translate_error(error: Exception, action: str, locator: Optional[str] = None,
                    url: Optional[str] = None) -> AutomationError:
    """Map a Playwright exception onto the intentflow error taxonomy."""
    message = str(error).strip().splitlines()[0] if str(error).strip() else type(error).__name__
    text = str(error)

    if any(marker in text for marker in _NETWORK_MARKERS):
        return NetworkError(message, selector=locator, url=url, action=action)

    if any(marker in text for marker in _BLOCKED_MARKERS):
        return InteractionBlockedError(message, selector=locator, url=url, action=action)

    if isinstance(error, PlaywrightTimeout):
        if action == "goto":
            return ActionTimeoutError(message, selector=locator, url=url, action=action)
        if locator and ("waiting for locator" in text or "waiting for selector" in text):
            return ElementNotFoundError(f"Element not found: {locator} ({message})", selector=locator, url=url, action=action)
        return ActionTimeoutError(message, selector=locator, url=url, action=action)

    if action in ("goto", "reload") and "net::ERR" in text:
        return NavigationFailedError(message, selector=locator, url=url, action=action)

    if "Execution context was destroyed" in text or "Evaluation failed" in text:
        return ScriptError(message, selector=locator, url=url, action=action)

    # Untyped: the categorizer classifies it from the message
    return AutomationError(message, selector=locator, url=url, action=action)


class PlaywrightBrowser(BrowserPrimitives):
    """
    Controls one browser page using the Playwright sync API.

    One instance per run; Playwright sync objects must stay on the thread
    that created them.
    """

    def __init__(self, headless: Optional[bool] = None, action_timeout_ms: Optional[int] = None):
        self.logger = setup_logger("PlaywrightBrowser")
        self.headless = config.browser_headless if headless is None else headless
        self.action_timeout_ms = action_timeout_ms or config.action_timeout_ms

        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    def launch(self, url: Optional[str] = None) -> Page:
        """
        Launch browser and optionally navigate to URL.

        Returns:
            Playwright Page object
        """
        self.logger.info(f"Launching {config.browser_type} (headless={self.headless})...")
        self.playwright = sync_playwright().start()

        browser_type = getattr(self.playwright, config.browser_type)
        self.browser = browser_type.launch(
            headless=self.headless,
            args=["--disable-dev-shm-usage"] if config.browser_type == "chromium" else None
        )
        self.context = self.browser.new_context(
            viewport={"width": config.viewport_width, "height": config.viewport_height}
        )
        self.page = self.context.new_page()
        self.page.set_default_timeout(self.action_timeout_ms)

        if url:
            self.goto(url)
        return self.page

    def _require_page(self) -> Page:
        if not self.page:
            raise AutomationError("Browser not launched")
        return self.page

    def _resolve(self, locator: str) -> Locator:
        """Turn a locator string into a Playwright Locator."""
        page = self._require_page()
        head, sep, rest = locator.partition(" >> ")
        match = re.match(r'^label=(?:"(.*)"|(.*))$', head)
        if match:
            resolved = page.get_by_label(match.group(1) or match.group(2), exact=match.group(1) is not None)
            return resolved.locator(rest) if sep else resolved
        return page.locator(locator)

    def _timeout(self, timeout_ms: Optional[int]) -> int:
        return timeout_ms or self.action_timeout_ms

    # ----- primitives ------------------------------------------------------

    def goto(self, url: str):
        check = safety_guard.check_url(url)
        if not check.allowed:
            raise NavigationFailedError(check.reason, url=url)
        try:
            self._require_page().goto(url, wait_until="domcontentloaded")
            self.logger.debug(f"Navigated to: {url}")
        except PlaywrightError as e:
            raise translate_error(e, "goto", url=url) from e

    def click(self, locator: str, timeout_ms: Optional[int] = None):
        try:
            self._resolve(locator).click(timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "click", locator, self.current_url) from e

    def fill(self, locator: str, value: str, timeout_ms: Optional[int] = None):
        try:
            self._resolve(locator).fill(value, timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "fill", locator, self.current_url) from e

    def select(self, locator: str, value: str, timeout_ms: Optional[int] = None):
        try:
            self._resolve(locator).select_option(value, timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "select", locator, self.current_url) from e

    def wait_for(self, locator: str, timeout_ms: Optional[int] = None):
        try:
            self._resolve(locator).first.wait_for(state="visible", timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "wait_for", locator, self.current_url) from e

    def press(self, key: str, locator: Optional[str] = None):
        try:
            if locator:
                self._resolve(locator).press(key, timeout=self.action_timeout_ms)
            else:
                self._require_page().keyboard.press(key)
        except PlaywrightError as e:
            raise translate_error(e, "press", locator, self.current_url) from e

    def screenshot(self) -> bytes:
        try:
            return self._require_page().screenshot(type="png")
        except PlaywrightError as e:
            raise translate_error(e, "screenshot", url=self.current_url) from e

    def hover(self, locator: str, timeout_ms: Optional[int] = None):
        try:
            self._resolve(locator).hover(timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "hover", locator, self.current_url) from e

    def reload(self):
        try:
            self._require_page().reload(wait_until="domcontentloaded")
        except PlaywrightError as e:
            raise translate_error(e, "reload", url=self.current_url) from e

    def wait_for_load_state(self, state: str = "load", timeout_ms: Optional[int] = None):
        try:
            self._require_page().wait_for_load_state(state, timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "wait_for_load_state", url=self.current_url) from e

    def wait_for_timeout(self, ms: int):
        try:
            self._require_page().wait_for_timeout(ms)
        except PlaywrightError as e:
            raise translate_error(e, "wait_for_timeout", url=self.current_url) from e

    def scroll_into_view(self, locator: str, timeout_ms: Optional[int] = None):
        try:
            self._resolve(locator).scroll_into_view_if_needed(timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "scroll_into_view", locator, self.current_url) from e

    def force_click(self, locator: str, timeout_ms: Optional[int] = None):
        try:
            self._resolve(locator).click(force=True, timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "force_click", locator, self.current_url) from e

    def clear(self, locator: str, timeout_ms: Optional[int] = None):
        try:
            self._resolve(locator).clear(timeout=self._timeout(timeout_ms))
        except PlaywrightError as e:
            raise translate_error(e, "clear", locator, self.current_url) from e

    # ----- page state ------------------------------------------------------

    @property
    def current_url(self) -> str:
        return self.page.url if self.page else ""

    def page_context(self) -> Dict[str, str]:
        page = self._require_page()
        try:
            title = page.title()
            # Accessibility-style outline of interactive elements, truncated
            dom_summary = page.locator("body").aria_snapshot(timeout=self.action_timeout_ms)
        except PlaywrightError as e:
            self.logger.debug(f"Could not summarize page: {e}")
            title, dom_summary = "", ""
        return {
            "pageTitle": title,
            "url": page.url,
            "domSummary": dom_summary[:config.dom_summary_chars],
        }

    def close(self):
        """Close browser and cleanup."""
        for name in ("page", "context", "browser"):
            resource = getattr(self, name)
            if resource is not None:
                try:
                    resource.close()
                except PlaywrightError as e:
                    self.logger.debug(f"Error closing {name}: {e}")
                setattr(self, name, None)

        if self.playwright:
            self.playwright.stop()
            self.playwright = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
