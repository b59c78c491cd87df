import asyncio
import json
import os
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from playwright.async_api import Error as PlaywrightError

from ezvoucher.engine.errors import (
    AutomationError,
    ConfigurationError,
    ConnectivityError,
    ElementNotFoundError,
    MacroError,
    StepFailedError,
)
from ezvoucher.engine.files import find_latest_download
from ezvoucher.engine.macro_bridge import MacroBridge, create_bridge, read_filter_keys
from ezvoucher.engine.models import ActionResult, StatusCallback, WorkflowResult
from ezvoucher.engine.report_generator import WorkflowReportGenerator
from ezvoucher.engine.session import BrowserSession
from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import get_logger

SEARCH_OPEN_WAIT = 1.0
SEARCH_RESULTS_WAIT = 2.0
SEARCH_RESULT_TIMEOUT = 2.0
DOWNLOAD_FALLBACK_WAIT = 8.0

REMEDIATION = {
    "ConnectivityError": "Check the internet connection or VPN and try again.",
    "AuthenticationError": "Check the login ID and password.",
    "ConfigurationError": "Check the working folder and login settings.",
    "BrowserError": "Close other browser windows using the profile and try again.",
}


class Phase(str, Enum):
    INIT = "init"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    NAVIGATING = "navigating"
    PERFORMING = "performing"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class WorkflowState:
    variables: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    current_step: str | None = None
    completed_steps: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    phase: Phase = Phase.INIT
    phases: list[str] = field(default_factory=list)
    actions: list[ActionResult] = field(default_factory=list)


def us_date(value: date) -> str:
    """M/D/YYYY without zero padding, the format the ERP date fields expect."""
    return f"{value.month}/{value.day}/{value.year}"


def month_bounds(today: date | None = None) -> tuple[date, date]:
    today = today or date.today()
    first = today.replace(day=1)
    if today.month == 12:
        next_first = date(today.year + 1, 1, 1)
    else:
        next_first = date(today.year, today.month + 1, 1)
    return first, date.fromordinal(next_first.toordinal() - 1)


class WorkflowEngine:
    def __init__(self, workflow_path: Path, session: BrowserSession, settings: Settings | None = None,
                 variables: dict[str, Any] | None = None, bridge: MacroBridge | None = None,
                 env_vars: dict[str, str] | None = None):
        self.workflow_path = Path(workflow_path)
        self.workflow = self._load_workflow()
        self.session = session
        self.settings = settings or session.settings
        self.env_vars = env_vars if env_vars is not None else dict(os.environ)
        self.bridge = bridge
        self.log = get_logger("WorkflowEngine")
        self.state = WorkflowState(variables=dict(variables or {}))
        self.log_callback = None
        self.status_callback: StatusCallback | None = None
        self.report = WorkflowReportGenerator()
        self.notify_on_finish = True

    @property
    def name(self) -> str:
        return self.workflow.get("name", self.workflow_path.stem)

    @property
    def keep_browser_open(self) -> bool:
        return bool(self.workflow.get("keep_browser_open", False))

    async def _emit_log(self, level: str, message: str, **kwargs):
        if level in ("warning", "error", "debug"):
            getattr(self.log, level)(message, **kwargs)
        else:
            self.log.info(message, **kwargs)
        if self.log_callback:
            try:
                await self.log_callback(level, message, **kwargs)
            except Exception:
                pass

    async def _emit_status(self, status: str, message: str):
        if self.status_callback:
            try:
                await self.status_callback(self.name, status, message)
            except Exception:
                pass

    async def _store_variable(self, key: str, value: Any):
        self.state.variables[key] = value
        if key in ("label", "file_name", "filter_key", "from_date", "to_date"):
            self.report.log_filter(key, str(value))

    def _load_workflow(self) -> dict:
        with open(self.workflow_path, encoding="utf-8") as f:
            if self.workflow_path.suffix in (".yaml", ".yml"):
                return yaml.safe_load(f) or {}
            return json.load(f)

    def _transition(self, phase: Phase):
        self.state.phase = phase
        self.state.phases.append(phase.value)
        self.log.debug("Phase", workflow=self.name, phase=phase.value)

    async def _sleep_ms(self, milliseconds: float | None):
        if milliseconds:
            await asyncio.sleep(self.settings.scaled(milliseconds / 1000))

    def _resolve_variable(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value

        today_pattern = r"\$\{TODAY(?::([^}]+))?\}"

        def replace_today(match):
            fmt = match.group(1)
            return datetime.now().strftime(fmt) if fmt else us_date(date.today())

        value = re.sub(today_pattern, replace_today, value)

        month_pattern = r"\$\{MONTH_(START|END)(?::([^}]+))?\}"

        def replace_month(match):
            first, last = month_bounds()
            chosen = first if match.group(1) == "START" else last
            fmt = match.group(2)
            return chosen.strftime(fmt) if fmt else us_date(chosen)

        value = re.sub(month_pattern, replace_month, value)

        pattern = r"\$\{(\w+)\}"

        def replace(match):
            var_name = match.group(1)
            if var_name in self.state.variables:
                return str(self.state.variables[var_name])
            return self.env_vars.get(var_name, "")

        return re.sub(pattern, replace, value)

    def _validate(self):
        if self.workflow.get("requires_work_dir") and not self.settings.work_dir:
            raise ConfigurationError("Working folder is not set")
        if not self.session.credentials and not self.session.state.is_logged_in:
            raise ConfigurationError("Login credentials are not set")
        if not self.workflow.get("steps"):
            raise ConfigurationError(f"Workflow {self.name} has no steps")

    def _record(self, result: ActionResult):
        self.state.actions.append(result)
        self.report.log_action(self.state.current_step or "", result.action, result.target,
                               result.tier, result.method, result.duration_ms)

    # Step handlers

    async def _execute_click(self, step: dict):
        target = step["target"]
        await self._emit_log("info", f"🖱️  Clicking {target}")
        try:
            self._record(await self.session.actions.click(target))
        except ElementNotFoundError:
            fallback = step.get("manual_fallback")
            if not fallback:
                raise
            await self.session.actions.manual_intervention(
                self._resolve_variable(fallback.get("message", f"Click {target} manually")),
                fallback.get("wait", 20000) / 1000,
            )

    async def _execute_type(self, step: dict):
        target = step["target"]
        value = self._resolve_variable(step.get("value", ""))
        if not value and step.get("required", True):
            raise StepFailedError(f"No value to enter into {target}")
        if step.get("save_as"):
            await self._store_variable(step["save_as"], value)
        await self._sleep_ms(step.get("wait_before"))
        await self._emit_log("info", f"⌨️  Entering '{value}' into {target}")
        self._record(await self.session.actions.type_text(
            target, value,
            clear=step.get("clear", True),
            delay_ms=step.get("delay", 0),
            press=step.get("press"),
        ))

    async def _execute_press_key(self, step: dict):
        key = step.get("key", "Enter")
        await self._emit_log("info", f"⌨️  Pressing key: '{key}'")
        await self.session.actions.press_key(key)

    async def _execute_wait_for_any(self, step: dict):
        selectors = [self._resolve_variable(s) for s in step.get("selectors", [])]
        timeout = step.get("timeout", 5000) / 1000
        await self._emit_log("info", "⏳ Waiting for page element to appear...")
        matched = await self.session.waits.for_any_element(selectors, timeout)
        if matched is None:
            raise StepFailedError(f"None of the expected elements appeared: {selectors}")
        await self._emit_log("info", f"   ✅ Found {matched}")
        if step.get("save_as"):
            await self._store_variable(step["save_as"], matched)

    async def _execute_wait_for_page_ready(self, step: dict):
        await self._emit_log("info", "⏳ Waiting for page to settle...")
        if not await self.session.waits.for_page_ready(step.get("timeout", 8000) / 1000):
            await self._emit_log("warning", "   ⚠️  Page still busy, continuing")

    async def _execute_wait_for_text(self, step: dict):
        text = self._resolve_variable(step["text"])
        if not await self.session.waits.for_text(text, step.get("timeout", 5000) / 1000):
            raise StepFailedError(f"Text did not appear: {text}")

    async def _execute_wait_for_network_idle(self, step: dict):
        if not await self.session.waits.for_network_idle(step.get("timeout", 10000) / 1000):
            await self._emit_log("warning", "   ⚠️  Network did not go idle, continuing")

    async def _execute_wait_for_data_table(self, step: dict):
        timeout = step.get("timeout")
        loaded = await self.session.waits.for_data_table(timeout / 1000 if timeout else None)
        if not loaded:
            grace = step.get("grace", 5000)
            await self._emit_log("warning", f"   ⚠️  Data table not confirmed, waiting {grace / 1000:.0f}s more")
            await self._sleep_ms(grace)

    async def _execute_sleep(self, step: dict):
        await self._sleep_ms(step.get("duration", 1000))

    async def _execute_select_file(self, step: dict):
        path = Path(self._resolve_variable(step.get("file", "${file_path}")))
        if not path.is_file():
            raise StepFailedError(f"File to upload does not exist: {path}")
        await self._emit_log("info", f"📎 Selecting file: {path.name}")
        manual_wait = step.get("manual_wait")
        self._record(await self.session.actions.select_file(
            step["trigger"], step["input"], path,
            manual_wait / 1000 if manual_wait else None,
        ))

    async def _execute_context_menu(self, step: dict):
        entry = self._resolve_variable(step["entry"])
        await self._emit_log("info", f"📋 Context menu on {step['target']}: {entry}")
        self._record(await self.session.actions.context_menu_select(
            step["target"], entry, step.get("menu", []),
            step.get("entry_selector", ".button-label"),
            step.get("timeout", 5000) / 1000,
        ))

    async def _execute_navigate_search(self, step: dict):
        query = self._resolve_variable(step["query"])
        await self._emit_log("info", f"🔎 Navigating via search: {query}")
        self._record(await self.session.actions.click(step["button"]))
        await asyncio.sleep(self.settings.scaled(SEARCH_OPEN_WAIT))
        self._record(await self.session.actions.type_text(
            step["input"], query, clear=True, delay_ms=step.get("delay", 100),
        ))
        await asyncio.sleep(self.settings.scaled(SEARCH_RESULTS_WAIT))

        page = self.session.page
        for container in step.get("results", []):
            result = page.locator(container).get_by_text(query).first
            if await self.session.waits.for_clickable(result, SEARCH_RESULT_TIMEOUT):
                await result.click(timeout=SEARCH_RESULT_TIMEOUT * 1000)
                await self._emit_log("info", "   ✅ Search result clicked", container=container)
                return
        await self._emit_log("info", "   ↩️  No clickable search result, pressing Enter")
        await self.session.actions.press_key("Enter")

    async def _execute_download(self, step: dict):
        save_dir = Path(self._resolve_variable(step.get("save_to", "")) or self.settings.downloads_dir)
        save_dir.mkdir(parents=True, exist_ok=True)
        timeout = step.get("timeout", 60000)
        started = time.time()

        await self._emit_log("info", "📥 Waiting for download to start...")
        try:
            async with self.session.page.expect_download(timeout=timeout) as download_info:
                self._record(await self.session.actions.click(step["target"]))
            download = await download_info.value
            failure = await download.failure()
            if failure:
                raise StepFailedError(f"Download failed: {failure}")
            file_path = save_dir / download.suggested_filename
            await download.save_as(str(file_path))
        except PlaywrightError as e:
            await self._emit_log("warning", f"   ⚠️  Download not captured ({e}), checking the downloads folder")
            await asyncio.sleep(self.settings.scaled(DOWNLOAD_FALLBACK_WAIT))
            file_path = find_latest_download(self.settings.downloads_dir, since=started - 1)
            if file_path is None:
                file_path = find_latest_download(self.settings.downloads_dir)
            if file_path is None:
                raise StepFailedError("No downloaded spreadsheet was found") from e

        await self._store_variable(step.get("save_as", "downloaded_file"), str(file_path))
        self.report.log_download(file_path.name, str(file_path))
        await self._emit_log("info", f"   ✅ Download saved: {file_path}")

    async def _execute_run_macro(self, step: dict):
        source = Path(self._resolve_variable(step.get("file", "${downloaded_file}")))
        if self.bridge is None:
            self.bridge = create_bridge(self.settings)

        await self._emit_log("info", f"🧮 Transforming spreadsheet: {source.name}")
        result = await self.bridge.run_transformation(source)
        self.report.log_macro(str(source), result.success, result.error)

        processed = source
        if result.success:
            processed = result.output_path or source
            await self._emit_log("info", f"   ✅ Spreadsheet processed: {processed.name}")
        else:
            await self._emit_log("warning", f"   ⚠️  Spreadsheet macro failed, continuing: {result.error}")
            self.state.errors.append({"step": self.state.current_step, "error": result.error, "fatal": False})
        await self._store_variable("processed_file", str(processed))

        try:
            keys = await asyncio.to_thread(read_filter_keys, processed, self.settings.filter_group)
        except MacroError as e:
            await self._emit_log("warning", f"   ⚠️  Could not read filter keys: {e}")
            keys = []
        await self._emit_log("info", f"   🔑 {len(keys)} filter keys for group {self.settings.filter_group}",
                             keys=keys)
        await self._store_variable(step.get("save_as", "filter_keys"), keys)

    async def _execute_loop_items(self, step: dict):
        items = self.state.variables.get(step.get("items", "filter_keys")) or []
        item_var = step.get("as", "filter_key")
        if not items:
            await self._emit_log("warning", "⚠️  Nothing to iterate, skipping loop")
            self.report.log_skip("No filter keys", self.state.current_step or "")
            return

        processed = failed = 0
        loop_step_id = self.state.current_step
        for index, item in enumerate(items, 1):
            await self._emit_log("info", f"🔁 [{index}/{len(items)}] {item}")
            await self._store_variable(item_var, item)
            try:
                for sub_step in step.get("sub_steps", []):
                    await self._execute_step(sub_step)
                processed += 1
            except StepFailedError as e:
                failed += 1
                await self._emit_log("warning", f"   ⚠️  Skipping '{item}': {e}")
                self.state.errors.append({"step": loop_step_id, "item": item, "error": str(e), "fatal": False})
            await self._sleep_ms(step.get("wait_between"))

        self.state.current_step = loop_step_id
        self.state.results[loop_step_id] = {"processed": processed, "failed": failed}
        await self._emit_log("info", f"   📊 Loop finished: {processed} processed, {failed} failed")

    async def _execute_manual_intervention(self, step: dict):
        await self.session.actions.manual_intervention(
            self._resolve_variable(step.get("message", "Manual action required")),
            step.get("wait", self.settings.manual_wait * 1000) / 1000,
        )

    async def _execute_capture_state(self, step: dict):
        name = self._resolve_variable(step.get("screenshot", "")) or f"{self.state.current_step}.png"
        path = Path(self.settings.output_dir) / name
        await self._emit_log("info", "📸 Capturing page state...")
        saved = await self.session.screenshot(path)
        if saved:
            await self._emit_log("info", f"   🖼️  Screenshot saved: {saved}")

    async def _execute_notify(self, step: dict):
        await self.session.notify(
            self._resolve_variable(step.get("title", self.name)),
            self._resolve_variable(step.get("message", "")),
            step.get("level", "info"),
        )

    async def _execute_step(self, step: dict):
        action = step.get("action")
        step_id = step.get("id", action)
        description = step.get("description", "")
        self.state.current_step = step_id

        if description:
            await self._emit_log("info", "")
            await self._emit_log("info", f"▶️  {description}")

        handlers = {
            "click": self._execute_click,
            "type": self._execute_type,
            "press_key": self._execute_press_key,
            "wait_for_any": self._execute_wait_for_any,
            "wait_for_page_ready": self._execute_wait_for_page_ready,
            "wait_for_text": self._execute_wait_for_text,
            "wait_for_network_idle": self._execute_wait_for_network_idle,
            "wait_for_data_table": self._execute_wait_for_data_table,
            "sleep": self._execute_sleep,
            "select_file": self._execute_select_file,
            "context_menu": self._execute_context_menu,
            "navigate_search": self._execute_navigate_search,
            "download": self._execute_download,
            "run_macro": self._execute_run_macro,
            "loop_items": self._execute_loop_items,
            "manual_intervention": self._execute_manual_intervention,
            "capture_state": self._execute_capture_state,
            "notify": self._execute_notify,
        }

        handler = handlers.get(action)
        if not handler:
            raise ConfigurationError(f"Unknown action '{action}' in step {step_id}")

        try:
            await handler(step)
        except (ElementNotFoundError, StepFailedError, PlaywrightError) as e:
            if step.get("optional"):
                await self._emit_log("warning", f"   ⚠️  Optional step skipped: {e}")
                self.report.log_step(step_id, action, description, "skipped")
                self.report.log_skip(str(e), step_id)
                return
            await self._emit_log("error", f"   ❌ Step failed: {e}")
            self.report.log_step(step_id, action, description, "error")
            self.report.log_error(step_id, str(e), fatal=True)
            if isinstance(e, StepFailedError):
                raise
            raise StepFailedError(f"{step_id}: {e}") from e

        self.state.completed_steps.append(step_id)
        self.report.log_step(step_id, action, description, "success")
        await self._sleep_ms(step.get("wait_after"))

    async def _connect(self):
        if self.session.state.connected:
            return
        self._transition(Phase.CONNECTING)
        await self.session.open()
        await self.session.connect()

    async def _authenticate(self):
        if self.session.state.is_logged_in:
            return
        self._transition(Phase.AUTHENTICATING)
        await self.session.ensure_logged_in()
        settle = self.workflow.get("post_login_wait")
        if settle:
            await self._sleep_ms(settle)

    async def run(self) -> WorkflowResult:
        workflow_description = self.workflow.get("description", "")
        self.report.start_workflow(self.name, str(self.state.variables.get("file_name", "")))

        await self._emit_log("info", "")
        await self._emit_log("info", "╔" + "═" * 58 + "╗")
        await self._emit_log("info", f"║  🚀 Starting Workflow: {self.name}")
        if workflow_description:
            await self._emit_log("info", f"║  📝 {workflow_description[:50]}")
        await self._emit_log("info", "╚" + "═" * 58 + "╝")
        await self._emit_status("running", f"{self.name} started")

        try:
            self._transition(Phase.INIT)
            self._validate()
            await self._connect()
            await self._authenticate()

            for step in self.workflow.get("steps", []):
                phase = Phase.NAVIGATING if step.get("phase") == "navigate" else Phase.PERFORMING
                if self.state.phase != phase:
                    self._transition(phase)
                await self._execute_step(step)

            message = self._resolve_variable(self.workflow.get("success_message", f"{self.name} completed"))
            result = WorkflowResult.ok(message)
        except AutomationError as e:
            self.state.errors.append({"step": self.state.current_step, "error": str(e), "fatal": True})
            result = WorkflowResult.fail(str(e), failedStep=self.state.current_step,
                                         phase=self.state.phase.value, errorType=type(e).__name__)
        except PlaywrightError as e:
            self.state.errors.append({"step": self.state.current_step, "error": str(e), "fatal": True})
            result = WorkflowResult.fail(f"Browser error: {e}", failedStep=self.state.current_step,
                                         phase=self.state.phase.value, errorType="BrowserError")

        await self._finish(result)
        return result

    async def _finish(self, result: WorkflowResult):
        failed_phase = self.state.phase
        self._transition(Phase.REPORTING)
        result.details.setdefault("workflow", self.name)
        if self.keep_browser_open:
            result.details["browserKeptOpen"] = True

        if result.success:
            await self._emit_log("info", "")
            await self._emit_log("info", "╔" + "═" * 58 + "╗")
            await self._emit_log("success", f"║  ✅ Workflow Complete: {self.name}")
            await self._emit_log("info", f"║  📊 Steps completed: {len(self.state.completed_steps)}")
            await self._emit_log("info", "╚" + "═" * 58 + "╝")
        else:
            await self._emit_log("info", "")
            await self._emit_log("info", "╔" + "═" * 58 + "╗")
            await self._emit_log("error", f"║  ❌ Workflow Failed: {self.name}")
            await self._emit_log("error", f"║  💥 {result.message[:80]}")
            await self._emit_log("info", "╚" + "═" * 58 + "╝")
            if self.session.is_open and failed_phase not in (Phase.INIT, Phase.CONNECTING):
                stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                shot = await self.session.screenshot(
                    self.settings.output_dir / f"debug_{self.state.current_step}_{stamp}.png")
                if shot:
                    await self._emit_log("warning", f"   Debug screenshot saved: {shot}")
                    result.details["screenshot"] = str(shot)

        if self.notify_on_finish and self.session.is_open:
            if result.success:
                await self.session.notify(self.name, result.message, "success")
            else:
                hint = REMEDIATION.get(result.details.get("errorType", ""), "")
                await self.session.notify(f"{self.name} failed",
                                          f"{result.message}\n{hint}".strip(), "error")

        self.report.end_workflow("completed" if result.success else "failed", dict(self.state.variables))
        self._transition(Phase.DONE if result.success else Phase.FAILED)
        await self._emit_status("done" if result.success else "error", result.message)

    async def close(self):
        await self.session.close(keep_open=self.keep_browser_open)


async def run_workflow(workflow_path: Path, settings: Settings, session: BrowserSession,
                       variables: dict[str, Any] | None = None) -> WorkflowResult:
    """Run one workflow on a caller-owned session; the session is not closed."""
    engine = WorkflowEngine(workflow_path, session, settings, variables)
    return await engine.run()
