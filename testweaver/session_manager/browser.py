"""Live Playwright browser for direct request/response actions.

Independent of the scheduler: one shared browser, context, and page, launched
lazily on the first action and relaunched when a different browser kind is
requested. Actions are serialized on the shared page. Network monitors
subscribe to the page's request and response events.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import sys
import time
from typing import Any, Callable, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Request,
    Response,
    async_playwright,
)

from ..config import BROWSER_HEADLESS, BROWSER_TIMEOUT
from ..constants import BROWSER_ACTIONS, SUPPORTED_BROWSERS

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

LAUNCH_ARGS = ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]

NetworkSink = Callable[[dict[str, Any]], None]


def _require(params: dict[str, Any], key: str) -> Any:
    value = params.get(key)
    if value in (None, ""):
        raise ValueError(f"'{key}' is required")
    return value


class BrowserSession:
    """Shared browser/page handle driven by ``browser_action`` messages."""

    def __init__(self, headless: Optional[bool] = None):
        self.headless = BROWSER_HEADLESS if headless is None else headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._kind: Optional[str] = None
        self._lock = asyncio.Lock()
        self._monitors: dict[str, NetworkSink] = {}

    @property
    def is_running(self) -> bool:
        return self._page is not None

    @property
    def browser_kind(self) -> Optional[str]:
        return self._kind

    async def start(self, browser_kind: str = "chromium") -> Page:
        """Launch (or reuse) the browser and return the shared page."""
        if browser_kind not in SUPPORTED_BROWSERS:
            raise ValueError(f"Unsupported browser: {browser_kind}")
        if self.is_running and self._kind == browser_kind:
            return self._page
        if self._browser or self._playwright:
            logger.info(f"[BROWSER] Restarting ({self._kind} -> {browser_kind})")
            await self.stop()

        logger.info(f"[BROWSER] Launching {browser_kind} (headless={self.headless})...")
        try:
            self._playwright = await async_playwright().start()
            launcher = getattr(self._playwright, browser_kind)
            args = LAUNCH_ARGS if browser_kind == "chromium" else []
            self._browser = await launcher.launch(headless=self.headless, args=args)
            self._context = await self._browser.new_context(viewport={"width": 1280, "height": 720})
            self._page = await self._context.new_page()
            self._page.set_default_timeout(BROWSER_TIMEOUT)
        except Exception:
            await self.stop()
            raise

        self._page.on("pageerror", lambda error: logger.warning(f"[BROWSER] Page error: {error}"))
        self._page.on("crash", self._on_crash)
        self._page.on("request", self._on_request)
        self._page.on("response", self._on_response)
        self._kind = browser_kind
        return self._page

    def _on_crash(self, page: Page):
        logger.error("[BROWSER] Page crashed, it will be recreated on the next action")
        self._page = None

    # ── Network Monitoring ───────────────────────────────────────────────────

    @property
    def monitor_count(self) -> int:
        return len(self._monitors)

    def start_network_monitor(self, owner_id: str, sink: NetworkSink):
        """Forward request/response events of the shared page to ``sink``.

        Raises:
            ValueError: No page is open yet.
        """
        if not self.is_running:
            raise ValueError("No active page for network monitoring")
        self._monitors[owner_id] = sink
        logger.info(f"[BROWSER] Network monitor started for {owner_id}")

    def stop_network_monitor(self, owner_id: str) -> bool:
        if self._monitors.pop(owner_id, None) is None:
            return False
        logger.info(f"[BROWSER] Network monitor stopped for {owner_id}")
        return True

    def _emit(self, event: dict[str, Any]):
        for owner_id, sink in list(self._monitors.items()):
            try:
                sink(event)
            except Exception as e:
                logger.warning(f"[BROWSER] Network monitor {owner_id} failed: {e}")

    def _on_request(self, request: Request):
        self._emit(
            {
                "type": "request",
                "url": request.url,
                "method": request.method,
                "headers": request.headers,
                "timestamp": int(time.time() * 1000),
            }
        )

    def _on_response(self, response: Response):
        self._emit(
            {
                "type": "response",
                "url": response.url,
                "status": response.status,
                "headers": response.headers,
                "timestamp": int(time.time() * 1000),
            }
        )

    # ── Actions ──────────────────────────────────────────────────────────────

    async def perform(
        self, action: str, params: Optional[dict[str, Any]] = None, browser_kind: str = "chromium"
    ) -> dict[str, Any]:
        """Run one action against the shared page.

        Raises:
            ValueError: Unknown action or missing parameter. Checked before the
                browser is launched.
        """
        params = params or {}
        if action not in BROWSER_ACTIONS:
            raise ValueError(f"Unknown browser action: {action}")
        if action == "pdf" and browser_kind != "chromium":
            raise ValueError("pdf is only supported on chromium")

        if action == "navigate":
            _require(params, "url")
        elif action in ("click", "wait_for_selector"):
            _require(params, "selector")
        elif action in ("fill", "select"):
            _require(params, "selector")
            _require(params, "value")
        elif action == "evaluate":
            _require(params, "script")

        async with self._lock:
            page = await self.start(browser_kind)
            logger.info(f"[BROWSER] {action}")
            return await self._run(page, action, params)

    async def _run(self, page: Page, action: str, params: dict[str, Any]) -> dict[str, Any]:

        if action == "navigate":
            await page.goto(params["url"], wait_until=params.get("waitUntil", "load"))
            return {"url": page.url, "title": await page.title()}

        if action == "screenshot":
            image = await page.screenshot(full_page=bool(params.get("fullPage", False)))
            encoded = base64.b64encode(image).decode()
            return {"screenshot": f"data:image/png;base64,{encoded}"}

        if action == "get_title":
            return {"title": await page.title()}

        if action == "get_url":
            return {"url": page.url}

        if action == "get_content":
            return {"content": await page.content()}

        if action == "evaluate":
            return {"result": await page.evaluate(params["script"])}

        if action == "click":
            await page.click(params["selector"])
            return {"clicked": params["selector"]}

        if action == "fill":
            await page.fill(params["selector"], str(params["value"]))
            return {"filled": params["selector"]}

        if action == "select":
            selected = await page.select_option(params["selector"], params["value"])
            return {"selected": selected}

        if action == "wait_for_selector":
            await page.wait_for_selector(
                params["selector"],
                state=params.get("state", "visible"),
                timeout=params.get("timeout", BROWSER_TIMEOUT),
            )
            return {"found": params["selector"]}

        # pdf
        document = await page.pdf(format=params.get("format", "A4"))
        return {"pdf": f"data:application/pdf;base64,{base64.b64encode(document).decode()}"}

    async def stop(self):
        """Close the page, context, browser, and Playwright driver."""
        if self._browser or self._playwright:
            logger.info("[BROWSER] Stopping browser...")

        try:
            if self._context:
                await self._context.close()
        except Exception as e:
            logger.warning(f"[BROWSER] Error closing context: {e}")
        finally:
            self._context = None
            self._page = None

        try:
            if self._browser:
                await self._browser.close()
        except Exception as e:
            logger.warning(f"[BROWSER] Error closing browser: {e}")
        finally:
            self._browser = None

        try:
            if self._playwright:
                await self._playwright.stop()
        except Exception as e:
            logger.warning(f"[BROWSER] Error stopping playwright: {e}")
        finally:
            self._playwright = None
            self._kind = None
