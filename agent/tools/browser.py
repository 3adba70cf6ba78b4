"""
Browser tool - based on Playwright.
"""
import base64
from typing import Any, Dict, Optional

from loguru import logger

BROWSER_INPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {
            "type": "string",
            "enum": ["navigate", "screenshot", "click", "fill", "extract", "close"],
            "description": "The browser action to perform",
        },
        "url": {"type": "string", "description": "URL to navigate to (for navigate action)"},
        "selector": {"type": "string", "description": "CSS selector for click/fill/extract actions"},
        "value": {"type": "string", "description": "Value to fill into an input"},
    },
    "required": ["action"],
}

EXTRACT_LIMIT = 5000


class BrowserTool:
    """Drives one lazily-launched headless Chromium page."""

    name = "browser"
    description = (
        "Control a web browser. Navigate pages, take screenshots, click elements, "
        "fill forms, and extract content."
    )
    input_schema = BROWSER_INPUT_SCHEMA

    def __init__(self, headless: bool = True):
        self.headless = headless
        self.playwright = None
        self.browser = None
        self.page = None

    async def execute(self, tool_input: Dict[str, Any]) -> str:
        action = tool_input.get("action")
        try:
            if action == "navigate":
                return await self._navigate(tool_input["url"])
            if action == "screenshot":
                return await self._screenshot()
            if action == "click":
                return await self._click(tool_input["selector"])
            if action == "fill":
                return await self._fill(tool_input["selector"], tool_input.get("value", ""))
            if action == "extract":
                return await self._extract(tool_input.get("selector"))
            if action == "close":
                return await self.close()
            return f"Unknown action: {action}"
        except KeyError as e:
            return f"Browser error: missing parameter {e}"
        except Exception as e:
            logger.warning(f"Browser action {action} failed: {e}")
            return f"Browser error: {e}"

    async def _ensure_page(self):
        if self.browser is None:
            from playwright.async_api import async_playwright

            self.playwright = await async_playwright().start()
            self.browser = await self.playwright.chromium.launch(headless=self.headless)
            logger.info("Browser launched")
        if self.page is None:
            self.page = await self.browser.new_page()
        return self.page

    async def _navigate(self, url: str) -> str:
        page = await self._ensure_page()
        await page.goto(url, wait_until="domcontentloaded", timeout=30000)
        title = await page.title()
        return f'Navigated to {url}. Page title: "{title}"'

    async def _screenshot(self) -> str:
        page = await self._ensure_page()
        data = await page.screenshot(type="png", full_page=False)
        encoded = base64.b64encode(data).decode("ascii")
        return f"Screenshot captured ({len(data)} bytes). Base64: data:image/png;base64,{encoded[:100]}..."

    async def _click(self, selector: str) -> str:
        page = await self._ensure_page()
        await page.click(selector, timeout=10000)
        return f"Clicked element: {selector}"

    async def _fill(self, selector: str, value: str) -> str:
        page = await self._ensure_page()
        await page.fill(selector, value)
        return f'Filled "{selector}" with value'

    async def _extract(self, selector: Optional[str] = None) -> str:
        page = await self._ensure_page()
        if selector:
            text = await page.text_content(selector)
            return text or "(empty)"
        return await page.evaluate(
            "() => { const main = document.querySelector('main') || "
            "document.querySelector('article') || document.body; "
            f"return (main && main.innerText || '').slice(0, {EXTRACT_LIMIT}); }}"
        )

    async def close(self) -> str:
        if self.browser is not None:
            await self.browser.close()
            self.browser = None
            self.page = None
        if self.playwright is not None:
            await self.playwright.stop()
            self.playwright = None
        return "Browser closed"
