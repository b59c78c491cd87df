import asyncio
from dataclasses import dataclass
from pathlib import Path

from playwright.async_api import BrowserContext, Dialog, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ezvoucher.engine.actions import Actions
from ezvoucher.engine.errors import AuthenticationError, ConfigurationError, ConnectivityError
from ezvoucher.engine.models import Credentials, LogCallback
from ezvoucher.engine.resolver import ElementResolver, Tier, load_targets
from ezvoucher.engine.waits import SmartWait
from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import get_logger

LOGIN_MARKERS = ['input[type="email"]', "#userNameInput"]
LOGIN_DETECT_TIMEOUT = 3.0


@dataclass
class SessionState:
    playwright: Playwright | None = None
    context: BrowserContext | None = None
    page: Page | None = None
    connected: bool = False
    is_logged_in: bool = False
    owns_browser: bool = False


class BrowserSession:
    """One browser, one page, owned by a single run for its whole duration."""

    def __init__(self, settings: Settings, credentials: Credentials | None = None,
                 targets: dict[str, list[Tier]] | None = None, log_callback: LogCallback | None = None):
        self.settings = settings
        self.credentials = credentials
        self.targets = targets if targets is not None else load_targets(settings.workflows_dir / "targets.yaml")
        self.log_callback = log_callback
        self.log = get_logger("BrowserSession")
        self.state = SessionState()
        self.waits: SmartWait | None = None
        self.resolver: ElementResolver | None = None
        self.actions: Actions | None = None

    async def _emit_log(self, level: str, message: str, **kwargs):
        getattr(self.log, level if level in ("debug", "warning", "error") else "info")(message, **kwargs)
        if self.log_callback:
            try:
                await self.log_callback(level, message, **kwargs)
            except Exception:
                pass

    @property
    def page(self) -> Page | None:
        return self.state.page

    @property
    def is_open(self) -> bool:
        return self.state.page is not None

    def attach(self, page: Page, context: BrowserContext | None = None):
        """Adopt an existing page (and optionally its context) without owning the browser."""
        self.state.page = page
        self.state.context = context
        self.waits = SmartWait(page, self.settings)
        self.resolver = ElementResolver(page, self.waits, self.targets)
        self.actions = Actions(page, self.resolver, self.waits, self.settings, self.log_callback)
        page.on("dialog", self._accept_dialog)

    async def open(self):
        if self.is_open:
            return

        await self._emit_log("info", "🚀 Launching browser", headless=self.settings.headless)
        Path(self.settings.browser_data_dir).mkdir(parents=True, exist_ok=True)
        self.state.playwright = await async_playwright().start()
        self.state.owns_browser = True
        try:
            context = await self.state.playwright.chromium.launch_persistent_context(
                user_data_dir=str(self.settings.browser_data_dir),
                headless=self.settings.headless,
                accept_downloads=True,
                ignore_https_errors=True,
                no_viewport=True,
                args=["--start-maximized", "--ignore-certificate-errors"],
            )
            self.state.context = context
            page = context.pages[0] if context.pages else await context.new_page()
        except PlaywrightError:
            await self.close()
            raise
        self.attach(page, context)

    async def _accept_dialog(self, dialog: Dialog):
        await self._emit_log("info", f"💬 Accepting page dialog: {dialog.message}")
        try:
            await dialog.accept()
        except PlaywrightError as e:
            self.log.warning("Dialog already handled", error=str(e))

    async def connect(self):
        url = self.settings.app_url
        retries = max(1, self.settings.connect_retries)
        last_error = ""

        for attempt in range(1, retries + 1):
            await self._emit_log("info", f"🌐 Connecting to {url} (attempt {attempt}/{retries})")
            try:
                await self.page.goto(url, wait_until="domcontentloaded",
                                     timeout=self.settings.connect_timeout * 1000)
                self.state.connected = True
                await self._emit_log("info", "   ✅ Application reached")
                return
            except PlaywrightError as e:
                last_error = str(e).splitlines()[0] if str(e) else type(e).__name__
                await self._emit_log("warning", f"   ⚠️  Connection attempt {attempt} failed: {last_error}")
                if attempt < retries:
                    await asyncio.sleep(self.settings.scaled(self.settings.connect_backoff))

        raise ConnectivityError(url, retries, last_error)

    async def needs_login(self) -> bool:
        marker = await self.waits.for_any_element(LOGIN_MARKERS, LOGIN_DETECT_TIMEOUT)
        return marker is not None

    async def ensure_logged_in(self) -> bool:
        """Log in only when the form is showing; returns ``True`` when credentials were submitted."""
        if self.state.is_logged_in:
            await self._emit_log("info", "🔐 Session already authenticated, skipping login")
            return False

        if not await self.needs_login():
            await self._emit_log("info", "🔐 No login form detected")
            self.state.is_logged_in = True
            return False

        if not self.credentials:
            raise ConfigurationError("Login is required but no credentials are configured")

        await self._emit_log("info", f"🔐 Signing in as {self.credentials.username}")
        await self.actions.type_text("login_username", self.credentials.username)
        await self.actions.type_text("login_password", self.credentials.password, secret=True)
        submit = await self.resolver.resolve("login_submit")
        try:
            async with self.page.expect_navigation(timeout=self.settings.login_timeout * 1000):
                await submit.locator.click(timeout=self.settings.login_timeout * 1000)
        except PlaywrightError as e:
            raise AuthenticationError(
                f"Login did not complete: {e}. Check the username and password."
            ) from e

        self.state.is_logged_in = True
        await self._emit_log("info", "   ✅ Signed in")
        return True

    async def reload(self):
        await self._emit_log("info", "🔄 Reloading application")
        await self.page.reload(wait_until="networkidle", timeout=self.settings.reload_timeout * 1000)
        await asyncio.sleep(self.settings.scaled(self.settings.reload_settle))

    async def notify(self, title: str, message: str, level: str = "info") -> bool:
        if not self.settings.show_modals or self.actions is None:
            return False
        return await self.actions.show_modal(title, message, level)

    async def screenshot(self, path: str | Path, full_page: bool = True) -> Path | None:
        if not self.is_open:
            return None
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self.page.screenshot(path=str(path), full_page=full_page)
        except PlaywrightError as e:
            self.log.warning("Screenshot failed", path=str(path), error=str(e))
            return None
        return path

    async def wait_until_closed(self):
        """Block until the operator closes the browser window."""
        if self.is_open:
            await self.page.wait_for_event("close", timeout=0)

    async def close(self, keep_open: bool = False):
        if keep_open and self.is_open:
            await self._emit_log("info", "🪟 Leaving the browser open for inspection")
            return

        if self.state.owns_browser:
            if self.state.context:
                try:
                    await self.state.context.close()
                except PlaywrightError as e:
                    self.log.warning("Browser context already closed", error=str(e))
            if self.state.playwright:
                await self.state.playwright.stop()
        self.state = SessionState()
