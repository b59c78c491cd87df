import asyncio

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page

from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import get_logger

SPINNER_SELECTORS = [
    ".loading",
    ".spinner",
    ".ms-Spinner",
    '[aria-label*="로딩"]',
    '[aria-label*="Loading"]',
    ".dyn-loading",
    ".loadingSpinner",
]

LOADING_INDICATORS = ", ".join(SPINNER_SELECTORS + ['[data-loading="true"]'])

GRID_SELECTORS = [
    '[data-dyn-controlname*="Grid"]',
    ".dyn-grid",
    'div[role="grid"]',
    'table[role="grid"]',
    '[class*="grid"]',
    "table",
]

ROW_SELECTOR = 'tr, [role="row"], [data-dyn-row]'

PAGE_SETTLE = 0.3
CLICKABLE_POLL = 0.1

PAGE_READY_SCRIPT = """(indicators) => {
    if (document.readyState !== 'complete') return false;
    const visible = (el) => {
        const style = window.getComputedStyle(el);
        return style.display !== 'none' && style.visibility !== 'hidden' && el.offsetParent !== null;
    };
    return !Array.from(document.querySelectorAll(indicators)).some(visible);
}"""

SPINNER_SCRIPT = """(selectors) => {
    for (const selector of selectors) {
        for (const el of document.querySelectorAll(selector)) {
            const style = window.getComputedStyle(el);
            if (style.display !== 'none' && style.visibility !== 'hidden' && style.opacity !== '0') {
                return true;
            }
        }
    }
    return false;
}"""

GRID_SCRIPT = """({grids, rows}) => {
    for (const selector of grids) {
        for (const grid of document.querySelectorAll(selector)) {
            if (grid.querySelectorAll(rows).length >= 1) return true;
        }
    }
    return false;
}"""

TEXT_SCRIPT = """(text) => !!document.body && document.body.innerText.includes(text)"""


class SmartWait:
    """Bounded polling helpers. Timeouts come back as ``False``/``None``, never as exceptions."""

    def __init__(self, page: Page, settings: Settings | None = None):
        self.page = page
        self.settings = settings or Settings()
        self.log = get_logger("SmartWait")

    async def _sleep(self, seconds: float):
        await asyncio.sleep(self.settings.scaled(seconds))

    def _as_locator(self, target: str | Locator) -> Locator:
        if isinstance(target, str):
            return self.page.locator(target).first
        return target

    async def for_element(self, selector: str, timeout: float = 5.0) -> bool:
        try:
            await self.page.wait_for_selector(selector, state="visible", timeout=timeout * 1000)
            return True
        except PlaywrightError:
            return False

    async def for_attached(self, selector: str, timeout: float = 5.0) -> bool:
        try:
            await self.page.wait_for_selector(selector, state="attached", timeout=timeout * 1000)
            return True
        except PlaywrightError:
            return False

    async def for_clickable(self, target: str | Locator, timeout: float = 5.0) -> bool:
        locator = self._as_locator(target)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            await locator.wait_for(state="visible", timeout=timeout * 1000)
        except PlaywrightError:
            return False

        while True:
            remaining_ms = max(1.0, (deadline - loop.time()) * 1000)
            try:
                if await locator.is_enabled(timeout=remaining_ms):
                    box = await locator.bounding_box(timeout=remaining_ms)
                    if box and box["width"] > 0 and box["height"] > 0:
                        return True
            except PlaywrightError as e:
                self.log.debug("Element went away while checking clickability", error=str(e))
                return False
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(CLICKABLE_POLL)

    async def for_page_ready(self, timeout: float = 8.0) -> bool:
        try:
            await self.page.wait_for_function(
                PAGE_READY_SCRIPT, arg=LOADING_INDICATORS, timeout=timeout * 1000
            )
        except PlaywrightError:
            self.log.debug("Page not ready within timeout", timeout=timeout)
            return False
        await self._sleep(PAGE_SETTLE)
        return True

    async def for_any_element(self, selectors: list[str], timeout: float = 5.0) -> str | None:
        """Race one visibility wait per selector and return the first winner."""
        if not selectors:
            return None

        tasks = {
            asyncio.ensure_future(self.for_element(selector, timeout)): selector
            for selector in selectors
        }
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.result():
                        return tasks[task]
            return None
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def for_text(self, text: str, timeout: float = 5.0) -> bool:
        try:
            await self.page.wait_for_function(TEXT_SCRIPT, arg=text, timeout=timeout * 1000)
            return True
        except PlaywrightError:
            return False

    async def for_network_idle(self, timeout: float = 10.0) -> bool:
        try:
            await self.page.wait_for_load_state("networkidle", timeout=timeout * 1000)
            return True
        except PlaywrightError:
            return False

    async def for_data_table(self, timeout: float | None = None) -> bool:
        """Wait out the loading spinner, stabilize once, then look for a grid with rows."""
        timeout = self.settings.data_table_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        stabilized = False

        self.log.info("⏳ Waiting for data table", timeout=timeout)
        while loop.time() < deadline:
            try:
                spinning = await self.page.evaluate(SPINNER_SCRIPT, SPINNER_SELECTORS)
            except PlaywrightError as e:
                self.log.debug("Page changed while checking the spinner", error=str(e))
                await self._sleep(self.settings.poll_interval)
                continue
            if spinning:
                self.log.debug("Loading indicator still visible")
                await self._sleep(self.settings.poll_interval)
                continue

            if not stabilized:
                stabilized = True
                remaining = max(0.0, deadline - loop.time())
                delay = min(self.settings.scaled(self.settings.stabilization_delay), remaining)
                self.log.info("   Loading finished, letting the grid stabilize", seconds=round(delay, 1))
                await asyncio.sleep(delay)
                continue

            try:
                loaded = await self.page.evaluate(GRID_SCRIPT, {"grids": GRID_SELECTORS, "rows": ROW_SELECTOR})
            except PlaywrightError as e:
                self.log.debug("Page changed while checking the grid", error=str(e))
                loaded = False
            if loaded:
                self.log.info("   ✅ Data table loaded")
                return True
            await self._sleep(self.settings.poll_interval)

        self.log.warning("   ⚠️  Data table did not appear in time", timeout=timeout)
        return False
