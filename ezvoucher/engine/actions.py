import asyncio
import time
from pathlib import Path

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page

from ezvoucher.engine.errors import ElementNotFoundError
from ezvoucher.engine.models import ActionResult, LogCallback
from ezvoucher.engine.resolver import ElementResolver, Resolution
from ezvoucher.engine.waits import SmartWait
from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import get_logger

FOCUS_SETTLE = 0.5
ESCAPE_SETTLE = 1.0
CLICKABLE_TIMEOUT = 3.0
CHOOSER_TIMEOUT = 10.0
MODAL_ID = "ezv-modal"

SET_VALUE_SCRIPT = """(el, value) => {
    el.focus();
    el.value = value;
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
    return el.value === value;
}"""

CLICK_SCRIPT = """(el) => { el.click(); return true; }"""

CONTEXT_MENU_SCRIPT = """(el) => {
    const rect = el.getBoundingClientRect();
    el.dispatchEvent(new MouseEvent('contextmenu', {
        bubbles: true,
        cancelable: true,
        button: 2,
        clientX: rect.left + rect.width / 2,
        clientY: rect.top + rect.height / 2,
    }));
    return true;
}"""

MODAL_SCRIPT = """({id, title, message, level}) => {
    const previous = document.getElementById(id);
    if (previous) previous.remove();
    const colors = {info: '#2563eb', warning: '#d97706', error: '#dc2626', success: '#059669'};
    const overlay = document.createElement('div');
    overlay.id = id;
    overlay.style.cssText = 'position:fixed;inset:0;z-index:2147483647;display:flex;'
        + 'align-items:flex-start;justify-content:center;padding-top:12vh;pointer-events:none;'
        + 'font-family:Segoe UI,Malgun Gothic,sans-serif';
    const box = document.createElement('div');
    box.style.cssText = 'pointer-events:auto;background:#fff;color:#0f172a;border-radius:10px;'
        + 'min-width:360px;max-width:560px;padding:20px 24px;box-shadow:0 12px 32px rgba(0,0,0,.35);'
        + 'border-top:6px solid ' + (colors[level] || colors.info);
    const heading = document.createElement('div');
    heading.style.cssText = 'font-size:16px;font-weight:700;margin-bottom:8px';
    heading.textContent = title;
    const body = document.createElement('div');
    body.style.cssText = 'font-size:14px;white-space:pre-wrap;line-height:1.5';
    body.textContent = message;
    const button = document.createElement('button');
    button.textContent = 'OK';
    button.style.cssText = 'margin-top:16px;padding:6px 20px;border:0;border-radius:6px;'
        + 'background:#0f172a;color:#fff;cursor:pointer';
    button.onclick = () => overlay.remove();
    box.append(heading, body, button);
    overlay.append(box);
    document.body.append(overlay);
    return true;
}"""

DISMISS_MODAL_SCRIPT = """(id) => { const el = document.getElementById(id); if (el) el.remove(); return !!el; }"""


class Actions:
    """Browser actions built on the resolver: every action walks the target's tiers."""

    def __init__(self, page: Page, resolver: ElementResolver, waits: SmartWait,
                 settings: Settings | None = None, log_callback: LogCallback | None = None):
        self.page = page
        self.resolver = resolver
        self.waits = waits
        self.settings = settings or Settings()
        self.log = get_logger("Actions")
        self.log_callback = log_callback

    async def _emit_log(self, level: str, message: str, **kwargs):
        getattr(self.log, level if level in ("debug", "warning", "error") else "info")(message, **kwargs)
        if self.log_callback:
            try:
                await self.log_callback(level, message, **kwargs)
            except Exception:
                pass

    async def _sleep(self, seconds: float):
        await asyncio.sleep(self.settings.scaled(seconds))

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    async def _click_resolution(self, resolution: Resolution, button: str = "left") -> str | None:
        if not await self.waits.for_clickable(resolution.locator, CLICKABLE_TIMEOUT):
            self.log.debug("Candidate not clickable yet, clicking anyway",
                           target=resolution.target, tier=resolution.tier)
        try:
            await resolution.locator.click(button=button, timeout=CLICKABLE_TIMEOUT * 1000)
            return "native"
        except PlaywrightError as e:
            self.log.debug("Native click failed", target=resolution.target, tier=resolution.tier, error=str(e))

        if button != "left":
            return None
        try:
            await resolution.locator.evaluate(CLICK_SCRIPT)
            return "script"
        except PlaywrightError as e:
            self.log.debug("Scripted click failed", target=resolution.target, tier=resolution.tier, error=str(e))
        return None

    async def click(self, target: str) -> ActionResult:
        started = time.monotonic()
        tried = []
        async for resolution in self.resolver.candidates(target):
            tried.append(resolution.tier)
            method = await self._click_resolution(resolution)
            if method:
                await self._emit_log("info", f"   ✅ Clicked {target}", tier=resolution.tier, method=method)
                return ActionResult("click", target, True, resolution.tier, method, self._elapsed_ms(started))
        raise ElementNotFoundError(target, tried or [tier.name for tier in self.resolver.tiers_for(target)])

    async def _type_native(self, locator: Locator, text: str, clear: bool, delay_ms: int):
        await locator.click(timeout=CLICKABLE_TIMEOUT * 1000)
        await self._sleep(FOCUS_SETTLE)
        if clear:
            await locator.fill("", timeout=CLICKABLE_TIMEOUT * 1000)
        await locator.press_sequentially(text, delay=delay_ms, timeout=CLICKABLE_TIMEOUT * 1000)

    async def set_value(self, locator: Locator, text: str) -> bool:
        """Set the value by script and fire input/change for fields that ignore keystrokes."""
        return bool(await locator.evaluate(SET_VALUE_SCRIPT, text))

    async def type_text(self, target: str, text: str, clear: bool = True, delay_ms: int = 0,
                        press: str | None = None, secret: bool = False) -> ActionResult:
        started = time.monotonic()
        shown = "***" if secret else text
        tried = []

        async for resolution in self.resolver.candidates(target):
            tried.append(resolution.tier)
            method = None
            if resolution.input_mode == "native":
                try:
                    await self._type_native(resolution.locator, text, clear, delay_ms)
                    method = "native"
                except PlaywrightError as e:
                    self.log.debug("Native typing failed, trying script", target=target,
                                   tier=resolution.tier, error=str(e))
            if method is None:
                try:
                    if await self.set_value(resolution.locator, text):
                        method = "script"
                except PlaywrightError as e:
                    self.log.debug("Scripted value failed", target=target, tier=resolution.tier, error=str(e))
            if method is None:
                continue

            if press:
                await self.page.keyboard.press(press)
            await self._emit_log("info", f"   ✅ Entered '{shown}' into {target}",
                                 tier=resolution.tier, method=method)
            return ActionResult("type", target, True, resolution.tier, method, self._elapsed_ms(started))

        raise ElementNotFoundError(target, tried or [tier.name for tier in self.resolver.tiers_for(target)])

    async def press_key(self, key: str):
        await self.page.keyboard.press(key)

    async def select_file(self, trigger: str, file_input: str, path: str | Path,
                          manual_wait: float | None = None) -> ActionResult:
        """File chooser first, then the hidden file input, then a human."""
        started = time.monotonic()
        path = Path(path)

        try:
            resolution = await self.resolver.resolve(trigger)
            async with self.page.expect_file_chooser(timeout=CHOOSER_TIMEOUT * 1000) as chooser_info:
                await resolution.locator.click(timeout=CLICKABLE_TIMEOUT * 1000)
            chooser = await chooser_info.value
            await chooser.set_files(str(path))
            await self._emit_log("info", f"   ✅ File chosen through the file dialog: {path.name}")
            return ActionResult("select_file", trigger, True, resolution.tier, "file_chooser",
                                self._elapsed_ms(started))
        except (ElementNotFoundError, PlaywrightError) as e:
            await self._emit_log("warning", f"   ⚠️  File dialog not intercepted: {e}")

        await self.page.keyboard.press("Escape")
        await self._sleep(ESCAPE_SETTLE)
        try:
            resolution = await self.resolver.resolve(file_input)
            await resolution.locator.set_input_files(str(path))
            await self._emit_log("info", f"   ✅ File attached to the file input: {path.name}")
            return ActionResult("select_file", file_input, True, resolution.tier, "file_input",
                                self._elapsed_ms(started))
        except (ElementNotFoundError, PlaywrightError) as e:
            await self._emit_log("warning", f"   ⚠️  File input not usable: {e}")

        await self.manual_intervention(
            f"Select this file manually in the upload dialog:\n{path}",
            manual_wait if manual_wait is not None else self.settings.manual_wait,
        )
        return ActionResult("select_file", trigger, True, None, "manual", self._elapsed_ms(started))

    async def context_menu_select(self, target: str, entry_text: str, menu_selectors: list[str],
                                  entry_selector: str, timeout: float = 5.0) -> ActionResult:
        """Right-click ``target`` and pick ``entry_text`` from the popup that opens."""
        started = time.monotonic()
        resolution = await self.resolver.resolve(target)

        try:
            await resolution.locator.click(button="right", timeout=CLICKABLE_TIMEOUT * 1000)
        except PlaywrightError:
            await resolution.locator.evaluate(CONTEXT_MENU_SCRIPT)

        scope = await self.waits.for_any_element(menu_selectors, timeout)
        if scope is None:
            raise ElementNotFoundError(f"context menu of {target}", [resolution.tier])

        entry = self.page.locator(scope).locator(entry_selector).filter(has_text=entry_text).first
        if not await self.waits.for_clickable(entry, timeout):
            raise ElementNotFoundError(f"'{entry_text}' in context menu of {target}", [scope])
        await entry.click(timeout=CLICKABLE_TIMEOUT * 1000)
        await self._emit_log("info", f"   ✅ Context menu: {entry_text}", scope=scope)
        return ActionResult("context_menu", target, True, resolution.tier, "native", self._elapsed_ms(started))

    async def show_modal(self, title: str, message: str, level: str = "info") -> bool:
        try:
            await self.page.evaluate(MODAL_SCRIPT, {
                "id": MODAL_ID, "title": title, "message": message, "level": level,
            })
            return True
        except PlaywrightError as e:
            self.log.warning("Could not show in-page notice", error=str(e))
            return False

    async def dismiss_modal(self):
        try:
            await self.page.evaluate(DISMISS_MODAL_SCRIPT, MODAL_ID)
        except PlaywrightError as e:
            self.log.debug("Could not dismiss in-page notice", error=str(e))

    async def manual_intervention(self, message: str, seconds: float):
        await self._emit_log("warning", "")
        await self._emit_log("warning", "═" * 50)
        await self._emit_log("warning", "⚠️  MANUAL ACTION REQUIRED")
        await self._emit_log("warning", f"   {message}")
        await self._emit_log("warning", f"   Continuing automatically in {int(seconds)}s")
        await self._emit_log("warning", "═" * 50)

        await self.show_modal("Manual action required", f"{message}\n\nContinuing in {int(seconds)}s.", "warning")
        await self._sleep(seconds)
        await self.dismiss_modal()
