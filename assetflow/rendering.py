# assetflow/rendering.py
"""
Render capability for bookmarks.

Each worker job builds its own BrowserRenderer, which starts Chromium lazily
on the first page and closes it when the job ends. Each page gets its own
isolated browser context.
`render_pdf` and `capture_screenshots` operate on a RenderedPage handle so
they can be exercised without a browser.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeout,
    async_playwright,
)

from assetflow.errors import InfrastructureError

logger = logging.getLogger(__name__)

IMAGE_GRACE_MS = 10000

PDF_OPTIONS = {
    "format": "A4",
    "print_background": True,
    "margin": {"top": "0.5in", "right": "0.5in", "bottom": "0.5in", "left": "0.5in"},
}

_WAIT_FOR_IMAGES_JS = """
() => Promise.all(
  Array.from(document.images)
    .filter((img) => !img.complete)
    .map((img) => new Promise((resolve) => { img.onload = img.onerror = resolve; }))
)
"""


class RenderedPage:
    """Navigated page handle. Playwright errors are raised as InfrastructureError."""

    def __init__(self, page: Page, image_grace_ms: int = IMAGE_GRACE_MS):
        self.page = page
        self.image_grace_ms = image_grace_ms

    @property
    def final_url(self) -> str:
        return self.page.url

    async def wait_for_images(self) -> None:
        # images that never settle are abandoned after the grace period
        try:
            await asyncio.wait_for(self.page.evaluate(_WAIT_FOR_IMAGES_JS), timeout=self.image_grace_ms / 1000)
        except asyncio.TimeoutError:
            logger.debug("Images still loading after %sms on %s", self.image_grace_ms, self.final_url)

    async def wait(self, ms: int) -> None:
        await self.page.wait_for_timeout(ms)

    async def emulate_screen_media(self) -> None:
        await self.page.emulate_media(media="screen")

    async def render_pdf(self, options: Optional[Dict[str, Any]] = None) -> bytes:
        try:
            return await self.page.pdf(**(options or PDF_OPTIONS))
        except PlaywrightTimeout as e:
            raise InfrastructureError(f"PDF render timed out for {self.final_url}") from e

    async def content(self) -> str:
        return await self.page.content()

    async def screenshot(self, full_page: bool = False, quality: int = 80) -> bytes:
        try:
            return await self.page.screenshot(full_page=full_page, type="jpeg", quality=quality)
        except PlaywrightTimeout as e:
            raise InfrastructureError(f"Screenshot timed out for {self.final_url}") from e


@dataclass
class Screenshots:
    screenshot: bytes
    thumbnail: bytes


async def render_pdf(page, settle_ms: int = 3000) -> bytes:
    """Wait for images, settle, switch to screen media, then print A4 with half-inch margins."""
    await page.wait_for_images()
    await page.wait(settle_ms)
    await page.emulate_screen_media()
    return await page.render_pdf(PDF_OPTIONS)


async def capture_screenshots(page) -> Screenshots:
    full = await page.screenshot(full_page=True)
    thumb = await page.screenshot(full_page=False, quality=60)
    return Screenshots(screenshot=full, thumbnail=thumb)


class BrowserRenderer:
    def __init__(self, headless: bool = True, user_agent: Optional[str] = None,
                 timeout_ms: int = 45000, viewport_width: int = 1280, viewport_height: int = 800):
        self.headless = headless
        self.user_agent = user_agent
        self.timeout_ms = timeout_ms
        self.viewport = {"width": viewport_width, "height": viewport_height}
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        async with self._lock:
            if self._browser is not None:
                return
            logger.info("Launching Chromium (headless=%s)", self.headless)
            try:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=["--disable-gpu", "--disable-dev-shm-usage", "--no-sandbox"],
                )
            except Exception as e:
                logger.exception("Failed to launch Chromium")
                await self._stop_playwright()
                raise InfrastructureError(f"Browser unavailable: {e}") from e

    async def _stop_playwright(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            await self._stop_playwright()

    @asynccontextmanager
    async def open_page(self, url: str) -> AsyncIterator[RenderedPage]:
        await self.start()
        context: Optional[BrowserContext] = None
        try:
            context = await self._browser.new_context(
                viewport=self.viewport,
                user_agent=self.user_agent,
                java_script_enabled=True,
            )
            page = await context.new_page()
            page.set_default_timeout(self.timeout_ms)
            logger.info("Navigating to %s", url)
            try:
                response = await page.goto(url, timeout=self.timeout_ms, wait_until="networkidle")
            except PlaywrightTimeout as e:
                raise InfrastructureError(f"Page load timeout after {self.timeout_ms}ms: {url}") from e
            if response is not None and response.status >= 400:
                raise InfrastructureError(f"HTTP {response.status} for {url}")
            yield RenderedPage(page)
        except InfrastructureError:
            raise
        except PlaywrightTimeout as e:
            raise InfrastructureError(f"Timeout rendering {url}: {e}") from e
        finally:
            if context is not None:
                try:
                    await context.close()
                except Exception as e:
                    logger.warning("Error closing browser context: %s", e)
