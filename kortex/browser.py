"""
Browser session adapter for Kortex.

Owns one Playwright browser and one page and implements the action
contract operations against it. Playwright's sync API is bound to the
thread that started it, so every call must come from that thread.
"""

import logging
from typing import Optional

from playwright.sync_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    sync_playwright,
)

from .errors import BrowserError, ElementNotFound, NavigationError, SessionNotReady
from .snapshot import (
    OVERLAY_ATTRIBUTE,
    SNAPSHOT_SCRIPT,
    build_tree,
    script_args,
    serialize_tree,
)
from .utils import normalize_url


# Get logger for this module
logger = logging.getLogger(__name__)


HIGHLIGHT_SCRIPT = """
(el, { message, overlayAttr }) => {
    // Remove previous overlays and restore the previously outlined element
    document.querySelectorAll('[' + overlayAttr + ']').forEach(e => e.remove());
    document.querySelectorAll('[data-kortex-highlighted]').forEach(prev => {
        prev.style.outline = prev.dataset.kortexOutline || '';
        prev.style.boxShadow = prev.dataset.kortexShadow || '';
        delete prev.dataset.kortexOutline;
        delete prev.dataset.kortexShadow;
        prev.removeAttribute('data-kortex-highlighted');
    });

    el.dataset.kortexOutline = el.style.outline;
    el.dataset.kortexShadow = el.style.boxShadow;
    el.setAttribute('data-kortex-highlighted', '');
    el.style.outline = '4px solid #00E5FF';
    el.style.boxShadow = '0 0 20px rgba(0, 229, 255, 0.6)';
    el.scrollIntoView({ block: 'center' });

    const tip = document.createElement('div');
    tip.setAttribute(overlayAttr, '');
    tip.setAttribute('aria-hidden', 'true');
    tip.innerText = message;
    Object.assign(tip.style, {
        position: 'absolute',
        background: '#333',
        color: '#fff',
        padding: '5px 10px',
        borderRadius: '4px',
        zIndex: '2147483647',
        fontSize: '12px',
        pointerEvents: 'none',
    });
    const rect = el.getBoundingClientRect();
    tip.style.left = (rect.left + window.scrollX) + 'px';
    tip.style.top = (rect.bottom + window.scrollY + 5) + 'px';
    document.body.appendChild(tip);
}
"""


class BrowserSession:
    """Single-page Playwright browser implementing the action contract.

    Usage:
        with BrowserSession() as session:
            session.init(headless=True)
            session.navigate("example.com")
            print(session.get_snapshot())
    """

    def __init__(
        self,
        navigation_timeout: int = 30000,
        action_timeout: int = 10000,
        name_max_chars: int = 50,
        snapshot_max_depth: int = 256,
    ):
        """Initialize the session (no browser is launched yet).

        Args:
            navigation_timeout: Page load budget in milliseconds
            action_timeout: Element wait budget in milliseconds
            name_max_chars: Maximum length of snapshot node names
            snapshot_max_depth: Snapshot depth guard
        """
        self.navigation_timeout = navigation_timeout
        self.action_timeout = action_timeout
        self.name_max_chars = name_max_chars
        self.snapshot_max_depth = snapshot_max_depth

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page: Optional[Page] = None
        self._closed = False

    @classmethod
    def from_config(cls, config) -> "BrowserSession":
        """Create a session using the timeouts and limits of a KortexConfig."""
        return cls(
            navigation_timeout=config.navigation_timeout,
            action_timeout=config.action_timeout,
            name_max_chars=config.name_max_chars,
            snapshot_max_depth=config.snapshot_max_depth,
        )

    def init(self, headless: bool = False) -> None:
        """Start Playwright, launch Chromium and open one page.

        Raises:
            RuntimeError: If called twice or after close()
        """
        if self._closed:
            raise RuntimeError("Browser session has been closed")
        if self._page is not None:
            raise RuntimeError("Browser session already initialized")

        logger.debug(f"BrowserSession: launching Chromium (headless={headless})")
        self._playwright = sync_playwright().start()
        try:
            self._browser = self._playwright.chromium.launch(headless=headless)
            self._page = self._browser.new_page(viewport={"width": 1280, "height": 800})
        except Exception:
            self.close()
            raise
        logger.debug("BrowserSession: browser ready")

    @property
    def is_ready(self) -> bool:
        """True once init() succeeded and close() has not been called."""
        return self._page is not None and not self._closed

    @property
    def page(self) -> Page:
        """The active page.

        Raises:
            SessionNotReady: If the session is not initialized
        """
        if not self.is_ready:
            raise SessionNotReady()
        return self._page

    def navigate(self, url: str) -> str:
        """Load a URL and wait for the load event.

        Raises:
            NavigationError: If the load does not settle within the budget
        """
        page = self.page
        target = normalize_url(url)
        try:
            page.goto(target, wait_until="load", timeout=self.navigation_timeout)
        except PlaywrightTimeoutError:
            raise NavigationError(
                target, f"load did not settle within {self.navigation_timeout}ms"
            )
        except PlaywrightError as e:
            raise NavigationError(target, str(e).splitlines()[0])
        return f"Navigated to {target}"

    def click(self, selector: str) -> str:
        """Click an element once it is actionable.

        Raises:
            ElementNotFound: If the selector does not resolve within the wait budget
        """
        page = self.page
        try:
            page.click(selector, timeout=self.action_timeout)
        except PlaywrightTimeoutError:
            raise ElementNotFound(selector, self.action_timeout)
        except PlaywrightError as e:
            logger.debug(f"click({selector!r}) failed: {e}")
            raise ElementNotFound(selector)
        return f"Clicked {selector}"

    def type_text(self, selector: str, text: str) -> str:
        """Replace the content of a field with ``text``.

        Raises:
            ElementNotFound: If the selector does not resolve within the wait budget
        """
        page = self.page
        try:
            page.fill(selector, text, timeout=self.action_timeout)
        except PlaywrightTimeoutError:
            raise ElementNotFound(selector, self.action_timeout)
        except PlaywrightError as e:
            logger.debug(f"fill({selector!r}) failed: {e}")
            raise ElementNotFound(selector)
        return f"Typed into {selector}"

    def highlight(self, selector: str, message: str = "") -> str:
        """Outline an element and label it with ``message``.

        At most one highlight is active at a time. The page's own
        semantics are untouched.

        Raises:
            ElementNotFound: If the selector does not resolve within the wait budget
        """
        page = self.page
        try:
            handle = page.wait_for_selector(selector, timeout=self.action_timeout)
        except PlaywrightTimeoutError:
            raise ElementNotFound(selector, self.action_timeout)
        except PlaywrightError as e:
            logger.debug(f"wait_for_selector({selector!r}) failed: {e}")
            raise ElementNotFound(selector)
        if handle is None:
            raise ElementNotFound(selector, self.action_timeout)

        try:
            handle.evaluate(
                HIGHLIGHT_SCRIPT,
                {"message": message, "overlayAttr": OVERLAY_ATTRIBUTE},
            )
        except PlaywrightError as e:
            raise BrowserError(f"Failed to draw highlight on {selector}: {e}")
        finally:
            handle.dispose()
        return f"Highlighted {selector}"

    def get_snapshot(self) -> str:
        """Serialize the visible page structure as an indented tree.

        Raises:
            SessionNotReady: If no page is open
            BrowserError: If the page cannot be inspected
        """
        page = self.page
        try:
            records = page.evaluate(SNAPSHOT_SCRIPT, script_args(self.name_max_chars))
        except PlaywrightError as e:
            raise BrowserError(f"Failed to evaluate snapshot script: {e}")

        root = build_tree(
            records or [],
            name_max_chars=self.name_max_chars,
            max_depth=self.snapshot_max_depth,
        )
        return serialize_tree(root)

    def close(self) -> None:
        """Close browser and cleanup resources.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True

        if self._browser:
            try:
                self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"BrowserSession: error closing browser: {e}")
            self._browser = None

        if self._playwright:
            try:
                self._playwright.stop()
            except PlaywrightError as e:
                logger.debug(f"BrowserSession: error stopping playwright: {e}")
            self._playwright = None

        self._page = None

    def __enter__(self) -> "BrowserSession":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - ensures cleanup."""
        self.close()
