"""
Forum Sniper - Browser Driver
Abstract browsing session consumed by the probe engine, and its Playwright
implementation (remote Browserless over CDP, or a local Chromium).
"""

import abc
import logging
import random
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from playwright.sync_api import sync_playwright

from .config import Config

logger = logging.getLogger("ForumSniper.Browser")

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4_1) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
]

STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
    Object.defineProperty(navigator, 'languages', { get: () => ['fr-FR', 'fr', 'en-US', 'en'] });
"""


class BrowserSession(abc.ABC):
    """One exclusively-owned page; released with close()"""

    @abc.abstractmethod
    def navigate(self, url: str, timeout_ms: int) -> Optional[int]:
        """Load url; returns the HTTP status or None when no response was received"""

    @abc.abstractmethod
    def content(self) -> str: ...

    @abc.abstractmethod
    def title(self) -> str: ...

    @abc.abstractmethod
    def current_url(self) -> str: ...

    @abc.abstractmethod
    def body_text(self) -> str: ...

    @abc.abstractmethod
    def evaluate(self, script: str, arg: Any = None) -> Any: ...

    @abc.abstractmethod
    def count(self, selector: str) -> int: ...

    @abc.abstractmethod
    def fill(self, selector: str, value: str, timeout_ms: int = 5000) -> None: ...

    @abc.abstractmethod
    def toggle(self, selector: str, timeout_ms: int = 5000) -> None: ...

    @abc.abstractmethod
    def click(self, selector: str, timeout_ms: int = 10000) -> None: ...

    @abc.abstractmethod
    def is_disabled(self, selector: str) -> bool: ...

    @abc.abstractmethod
    def frame_urls(self) -> List[str]: ...

    @abc.abstractmethod
    def add_cookies(self, cookies: List[Dict[str, Any]]) -> None: ...

    @abc.abstractmethod
    def set_extra_headers(self, headers: Dict[str, str]) -> None: ...

    @abc.abstractmethod
    def wait(self, ms: int) -> None: ...

    @abc.abstractmethod
    def wait_for_load(self, timeout_ms: int = 10000) -> None: ...

    @abc.abstractmethod
    def screenshot(self, path: str) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...


class BrowserDriver(abc.ABC):
    """Factory of browsing sessions"""

    @abc.abstractmethod
    def open(self) -> BrowserSession: ...

    @contextmanager
    def session(self) -> Iterator[BrowserSession]:
        """Scoped acquisition: the session is closed on every exit path"""
        session = self.open()
        try:
            yield session
        finally:
            try:
                session.close()
            except Exception as e:
                logger.warning(f"[BROWSER] Session close failed: {e}")


# ==================== Playwright ====================

class PlaywrightSession(BrowserSession):

    def __init__(self, endpoint: str = "", headless: bool = True, args: Optional[List[str]] = None):
        self._playwright = sync_playwright().start()
        try:
            if endpoint:
                logger.info(f"[BROWSER] Connecting to Browserless at {endpoint}...")
                self._browser = self._playwright.chromium.connect_over_cdp(endpoint)
            else:
                self._browser = self._playwright.chromium.launch(
                    headless=headless,
                    args=args or [],
                    timeout=60000
                )
            self._context = self._browser.new_context(
                user_agent=random.choice(USER_AGENTS),
                viewport={"width": 1366 + random.randint(0, 50), "height": 768 + random.randint(0, 30)},
                locale="fr-FR",
                ignore_https_errors=True
            )
            self._context.add_init_script(STEALTH_SCRIPT)
            self._page = self._context.new_page()
        except Exception:
            self._playwright.stop()
            raise

    def navigate(self, url: str, timeout_ms: int) -> Optional[int]:
        response = self._page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
        return response.status if response else None

    def content(self) -> str:
        return self._page.content()

    def title(self) -> str:
        return self._page.title()

    def current_url(self) -> str:
        return self._page.url

    def body_text(self) -> str:
        return self._page.inner_text("body", timeout=5000)

    def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return self._page.evaluate(script)
        return self._page.evaluate(script, arg)

    def count(self, selector: str) -> int:
        return self._page.locator(selector).count()

    def fill(self, selector: str, value: str, timeout_ms: int = 5000) -> None:
        self._page.locator(selector).first.fill(value, timeout=timeout_ms)

    def toggle(self, selector: str, timeout_ms: int = 5000) -> None:
        self._page.locator(selector).first.check(timeout=timeout_ms)

    def click(self, selector: str, timeout_ms: int = 10000) -> None:
        self._page.locator(selector).first.click(timeout=timeout_ms)

    def is_disabled(self, selector: str) -> bool:
        return bool(self._page.locator(selector).first.evaluate(
            "el => el.disabled || el.hasAttribute('disabled')"
        ))

    def frame_urls(self) -> List[str]:
        return [frame.url for frame in self._page.frames]

    def add_cookies(self, cookies: List[Dict[str, Any]]) -> None:
        self._context.add_cookies(cookies)

    def set_extra_headers(self, headers: Dict[str, str]) -> None:
        self._context.set_extra_http_headers(headers)

    def wait(self, ms: int) -> None:
        self._page.wait_for_timeout(ms)

    def wait_for_load(self, timeout_ms: int = 10000) -> None:
        self._page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)

    def screenshot(self, path: str) -> None:
        self._page.screenshot(path=path, full_page=True)

    def close(self) -> None:
        for name, closer in (("page", self._page.close), ("context", self._context.close),
                             ("browser", self._browser.close), ("playwright", self._playwright.stop)):
            try:
                closer()
            except Exception as e:
                logger.debug(f"[BROWSER] Failed to close {name}: {e}")


class PlaywrightDriver(BrowserDriver):

    def __init__(self, endpoint: Optional[str] = None, headless: Optional[bool] = None,
                 args: Optional[List[str]] = None):
        self.endpoint = Config.browser_endpoint() if endpoint is None else endpoint
        self.headless = Config.HEADLESS if headless is None else headless
        self.args = Config.BROWSER_ARGS if args is None else args

    def open(self) -> BrowserSession:
        return PlaywrightSession(self.endpoint, self.headless, self.args)
