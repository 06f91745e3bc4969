"""Page renderers: turn a URL into the HTML the crawler parses.

``HttpPageRenderer`` issues plain GET requests with httpx and suits
server-rendered sites. ``PlaywrightPageRenderer`` drives headless Chromium
for sites that build their content in the browser.
"""

from dataclasses import dataclass
from typing import Protocol

import httpx
import structlog
from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from sitekb.errors import FetchError

_HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


@dataclass(frozen=True)
class RenderedPage:
    url: str
    final_url: str
    html: str
    status_code: int | None = None


class PageRenderer(Protocol):
    async def render(self, url: str) -> RenderedPage:
        """Fetch and render a page. Raises FetchError when no content is available."""
        ...


class HttpPageRenderer:
    """Fetches pages over HTTP with retries on transport errors.

    Non-2xx responses and non-HTML content raise ``FetchError`` right away;
    connection errors and timeouts are retried with exponential backoff.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_attempts: int = 3,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._client = client
        self._max_attempts = max(1, max_attempts)
        self._logger = logger or structlog.get_logger(__name__)

    async def render(self, url: str) -> RenderedPage:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=0.5, max=5),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise FetchError(url, str(exc) or type(exc).__name__) from exc

        if not response.is_success:
            raise FetchError(url, f"HTTP {response.status_code}", status_code=response.status_code)

        content_type = response.headers.get("content-type", "text/html").split(";")[0].strip().lower()
        if content_type not in _HTML_CONTENT_TYPES:
            raise FetchError(url, f"unsupported content type {content_type}", status_code=response.status_code)

        return RenderedPage(
            url=url,
            final_url=str(response.url),
            html=response.text,
            status_code=response.status_code,
        )


class PlaywrightPageRenderer:
    """Renders pages in headless Chromium.

    After navigation it waits for ``content_wait_selector`` when configured,
    otherwise for network idle. A wait that times out is logged and the
    current DOM is used anyway.

    Use as an async context manager, or call ``start()`` / ``stop()``.
    """

    def __init__(
        self,
        content_wait_selector: str | None = None,
        timeout_ms: int = 15000,
        user_agent: str | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._selector = content_wait_selector
        self._timeout_ms = timeout_ms
        self._user_agent = user_agent
        self._logger = logger or structlog.get_logger(__name__)
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    async def start(self) -> None:
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=True)
        self._logger.info("browser_started")

    async def stop(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._logger.info("browser_stopped")

    async def __aenter__(self) -> "PlaywrightPageRenderer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def render(self, url: str) -> RenderedPage:
        if self._browser is None:
            raise RuntimeError("PlaywrightPageRenderer not started. Call start() first.")

        try:
            page = await self._browser.new_page(user_agent=self._user_agent)
        except PlaywrightError as exc:
            raise FetchError(url, f"could not open page: {exc}") from exc

        try:
            try:
                response = await page.goto(url, wait_until="domcontentloaded", timeout=self._timeout_ms)
            except PlaywrightError as exc:
                raise FetchError(url, str(exc)) from exc

            status_code = response.status if response is not None else None
            if status_code is not None and status_code >= 400:
                raise FetchError(url, f"HTTP {status_code}", status_code=status_code)

            await self._wait_for_content(page, url)

            try:
                html = await page.content()
            except PlaywrightError as exc:
                raise FetchError(url, f"could not read page content: {exc}") from exc

            return RenderedPage(url=url, final_url=page.url, html=html, status_code=status_code)
        finally:
            await page.close()

    async def _wait_for_content(self, page: Page, url: str) -> None:
        """Best-effort wait for client-side content. Failures leave the page as rendered so far."""
        try:
            if self._selector:
                await page.wait_for_selector(self._selector, timeout=self._timeout_ms)
            else:
                await page.wait_for_load_state("networkidle", timeout=self._timeout_ms)
        except PlaywrightTimeoutError:
            self._logger.warning(
                "page_wait_timed_out",
                url=url,
                selector=self._selector,
                timeout_ms=self._timeout_ms,
            )
        except PlaywrightError as exc:
            self._logger.warning("page_wait_failed", url=url, selector=self._selector, error=str(exc))
