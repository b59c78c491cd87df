import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from playwright.async_api import Error as PlaywrightError

from ezvoucher.engine.docx_report import generate_docx_report
from ezvoucher.engine.errors import AutomationError, ConfigurationError, LabelExtractionError
from ezvoucher.engine.files import build_task
from ezvoucher.engine.macro_bridge import MacroBridge
from ezvoucher.engine.models import Credentials, LogCallback, StatusCallback, WorkflowResult
from ezvoucher.engine.report_generator import WorkflowReportGenerator
from ezvoucher.engine.session import BrowserSession
from ezvoucher.engine.workflow_engine import WorkflowEngine
from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import get_logger

VOUCHER_WORKFLOW = "voucher_upload"
INVOICE_WORKFLOW = "invoice_processing"

SessionFactory = Callable[[], BrowserSession]
EngineFactory = Callable[[str, BrowserSession, dict[str, Any]], WorkflowEngine]


class BatchRunner:
    """Drives the top-level operations: a voucher range, a single voucher, the invoice run."""

    def __init__(self, settings: Settings, credentials: Credentials | None = None,
                 session_factory: SessionFactory | None = None,
                 engine_factory: EngineFactory | None = None,
                 bridge: MacroBridge | None = None,
                 log_callback: LogCallback | None = None,
                 status_callback: StatusCallback | None = None):
        self.settings = settings
        self.credentials = credentials
        self.session_factory = session_factory or self._default_session
        self.engine_factory = engine_factory or self._default_engine
        self.bridge = bridge
        self.log_callback = log_callback
        self.status_callback = status_callback
        self.log = get_logger("BatchRunner")
        self.report = WorkflowReportGenerator()
        self.session: BrowserSession | None = None
        self.report_paths: list[str] = []

    def _default_session(self) -> BrowserSession:
        return BrowserSession(self.settings, self.credentials, log_callback=self.log_callback)

    def _default_engine(self, workflow: str, session: BrowserSession, variables: dict[str, Any]) -> WorkflowEngine:
        return WorkflowEngine(self.settings.workflows_dir / f"{workflow}.yaml", session,
                              self.settings, variables, self.bridge)

    async def _emit_log(self, level: str, message: str, **kwargs):
        getattr(self.log, level if level in ("debug", "warning", "error") else "info")(message, **kwargs)
        if self.log_callback:
            try:
                await self.log_callback(level, message, **kwargs)
            except Exception:
                pass

    async def _emit_status(self, task: str, status: str, message: str):
        if self.status_callback:
            try:
                await self.status_callback(task, status, message)
            except Exception:
                pass

    def _validate(self, requires_work_dir: bool = True):
        if requires_work_dir:
            if not self.settings.work_dir:
                raise ConfigurationError("Working folder is not set")
            if not Path(self.settings.work_dir).is_dir():
                raise ConfigurationError(f"Working folder does not exist: {self.settings.work_dir}")
        if not self.credentials:
            raise ConfigurationError("Login credentials are not set")

    def _engine(self, workflow: str, session: BrowserSession, variables: dict[str, Any]) -> WorkflowEngine:
        engine = self.engine_factory(workflow, session, variables)
        engine.log_callback = self.log_callback
        engine.status_callback = self.status_callback
        return engine

    async def _start_session(self) -> BrowserSession:
        session = self.session_factory()
        self.session = session
        await session.open()
        await session.connect()
        if await session.ensure_logged_in():
            await asyncio.sleep(self.settings.scaled(self.settings.post_login_settle))
        return session

    async def _close_session(self, keep_open: bool = False):
        if self.session is None:
            return
        try:
            await self.session.close(keep_open=keep_open)
        except PlaywrightError as e:
            self.log.warning("Browser already gone while closing", error=str(e))
        if not keep_open:
            self.session = None

    async def _reload(self, session: BrowserSession):
        try:
            await session.reload()
        except PlaywrightError as e:
            await self._emit_log("warning", f"⚠️  Reload failed, continuing with the next file: {e}")

    def _write_reports(self, prefix: str) -> list[str]:
        if not self.settings.write_reports:
            return []
        output_dir = Path(self.settings.output_dir)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        paths = []
        try:
            paths.append(self.report.generate_html_report(output_dir / f"{prefix}_report_{timestamp}.html"))
            paths.append(self.report.generate_json_report(output_dir / f"{prefix}_report_{timestamp}.json"))
            paths.append(generate_docx_report(self.report.events, output_dir / f"{prefix}_summary_{timestamp}.docx",
                                              title=f"{self.report.workflow_name} Summary"))
        except OSError as e:
            self.log.warning("Could not write reports", error=str(e))
        for path in paths:
            self.log.info("Report written", path=path)
        self.report_paths = paths
        return paths

    async def _run_item(self, session: BrowserSession, number: int) -> tuple[str, bool]:
        """Run one numbered file.

        Returns the outcome (``success``, ``failed`` or ``skipped``) and whether the page was used.
        """
        try:
            task = build_task(self.settings.work_dir, number)
        except LabelExtractionError as e:
            await self._emit_log("error", f"❌ File {number}: {e}")
            self.report.log_item(number, Path(e.path).name, "", "failed", str(e))
            return "failed", False

        if task is None:
            await self._emit_log("warning", f"⏭️  File {number} not found, skipping")
            self.report.log_item(number, "", "", "skipped", "File not found")
            return "skipped", False

        await self._emit_log("info", f"📄 File {number}: {task.file_name} (label {task.label})")
        await self._emit_status(VOUCHER_WORKFLOW, "running", f"Processing file {number}: {task.file_name}")

        engine = self._engine(VOUCHER_WORKFLOW, session, task.as_variables())
        engine.notify_on_finish = False
        engine.status_callback = None
        try:
            result = await engine.run()
        except Exception as e:
            self.log.exception("Unexpected error at item boundary", number=number)
            result = WorkflowResult.fail(f"{type(e).__name__}: {e}")
        finally:
            self.report.merge(engine.report)

        status = "success" if result.success else "failed"
        self.report.log_item(number, task.file_name, task.label, status, result.message)
        if result.success:
            await self._emit_log("success", f"✅ File {number} uploaded")
        else:
            await self._emit_log("error", f"❌ File {number} failed: {result.message}")
        return status, True

    async def _setup_failed(self, error: Exception, range_label: str) -> WorkflowResult:
        if isinstance(error, PlaywrightError):
            message, error_type = f"Browser error: {error}", "BrowserError"
        else:
            message, error_type = str(error), type(error).__name__
        await self._emit_log("error", f"❌ Setup failed: {message}")
        self.report.log_error("setup", message, fatal=True)
        self.report.end_workflow("failed")
        self._write_reports("voucher")
        await self._emit_status(VOUCHER_WORKFLOW, "error", message)
        result = WorkflowResult.fail(message, errorType=error_type, skippedCount=0, range=range_label)
        result.success_count = result.fail_count = 0
        return result

    async def run_range(self, start: int, end: int) -> WorkflowResult:
        range_label = f"{start}-{end}"
        await self._emit_status(VOUCHER_WORKFLOW, "running", f"Voucher upload {range_label} started")

        try:
            if start > end:
                raise ConfigurationError(f"Invalid range: start {start} is after end {end}")
            self._validate()
        except ConfigurationError as e:
            await self._emit_log("error", f"❌ {e}")
            await self._emit_status(VOUCHER_WORKFLOW, "error", str(e))
            return WorkflowResult.fail(str(e), errorType="ConfigurationError")

        self.report = WorkflowReportGenerator()
        self.report.start_workflow("Voucher Upload", f"Files {range_label}")
        success_count = fail_count = skipped_count = 0

        await self._emit_log("info", "")
        await self._emit_log("info", "╔" + "═" * 58 + "╗")
        await self._emit_log("info", f"║  📦 Voucher batch: files {range_label}")
        await self._emit_log("info", "╚" + "═" * 58 + "╝")

        try:
            try:
                session = await self._start_session()
            except (AutomationError, PlaywrightError) as e:
                return await self._setup_failed(e, range_label)

            for number in range(start, end + 1):
                outcome, used_page = await self._run_item(session, number)
                if outcome == "skipped":
                    skipped_count += 1
                elif outcome == "success":
                    success_count += 1
                else:
                    fail_count += 1
                if used_page and number < end:
                    await self._reload(session)

            message = f"Voucher upload finished: {success_count} succeeded, {fail_count} failed"
            if skipped_count:
                message += f", {skipped_count} skipped"
            result = WorkflowResult(
                success=fail_count == 0 and success_count > 0,
                message=message,
                success_count=success_count,
                fail_count=fail_count,
                details={"skippedCount": skipped_count, "range": range_label},
            )

            await self._emit_log("info", "")
            await self._emit_log("info", "╔" + "═" * 58 + "╗")
            await self._emit_log("info", f"║  📊 {message}")
            await self._emit_log("info", "╚" + "═" * 58 + "╝")
            await session.notify("Voucher upload finished", message, "success" if result.success else "warning")

            self.report.end_workflow("completed" if result.success else "failed",
                                     {"range": range_label, "success": success_count,
                                      "failed": fail_count, "skipped": skipped_count})
            result.details["reports"] = self._write_reports("voucher")
            await self._emit_status(VOUCHER_WORKFLOW, "done" if result.success else "error", message)
            return result
        finally:
            await self._close_session()

    async def run_single_file(self, number: int) -> WorkflowResult:
        """One-item batch whose inputs are checked before any browser opens."""
        try:
            self._validate()
            task = build_task(self.settings.work_dir, number)
            if task is None:
                raise ConfigurationError(f"File {number} not found in {self.settings.work_dir}")
        except (ConfigurationError, LabelExtractionError) as e:
            await self._emit_log("error", f"❌ {e}")
            await self._emit_status(VOUCHER_WORKFLOW, "error", str(e))
            return WorkflowResult.fail(str(e), errorType=type(e).__name__)

        result = await self.run_range(number, number)
        if result.success:
            result.message = f"File {number} uploaded: {task.file_name}"
        return result

    async def run_invoices(self) -> WorkflowResult:
        await self._emit_status(INVOICE_WORKFLOW, "running", "Invoice processing started")
        try:
            self._validate(requires_work_dir=False)
        except ConfigurationError as e:
            await self._emit_log("error", f"❌ {e}")
            await self._emit_status(INVOICE_WORKFLOW, "error", str(e))
            return WorkflowResult.fail(str(e), errorType="ConfigurationError")

        self.report = WorkflowReportGenerator()
        session = self.session_factory()
        self.session = session
        engine = self._engine(INVOICE_WORKFLOW, session, {})
        keep_open = False
        try:
            result = await engine.run()
            keep_open = engine.keep_browser_open and session.is_open
        finally:
            self.report.merge(engine.report)
            self.report.workflow_name = engine.name
            await self._close_session(keep_open=keep_open)

        result.details["reports"] = self._write_reports("invoice")
        return result

    async def close(self):
        """Close a session left open for inspection."""
        await self._close_session()
