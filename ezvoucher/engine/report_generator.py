import json
from datetime import datetime
from html import escape
from pathlib import Path

ITEM_STATUS_CLASS = {
    "success": "status-yes",
    "failed": "status-no",
    "skipped": "status-skip",
}


class WorkflowReportGenerator:
    def __init__(self):
        self.events: list[dict] = []
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.workflow_name: str = ""
        self.subject: str = ""

    def _add(self, event_type: str, **fields):
        now = datetime.now()
        self.events.append({
            "type": event_type,
            **fields,
            "timestamp": now.isoformat(),
            "time": now.strftime("%H:%M:%S"),
        })

    def start_workflow(self, workflow_name: str, subject: str = ""):
        self.workflow_name = workflow_name
        self.subject = subject
        if self.start_time is None:
            self.start_time = datetime.now()
        self._add("workflow_start", workflow=workflow_name, subject=subject)

    def log_step(self, step_id: str, action: str, description: str, status: str, details: dict | None = None):
        self._add("step", step_id=step_id, action=action, description=description,
                  status=status, details=details or {})

    def log_action(self, step_id: str, action: str, target: str, tier: str | None,
                   method: str | None, duration_ms: int = 0):
        self._add("action", step_id=step_id, action=action, target=target,
                  tier=tier, method=method, duration_ms=duration_ms)

    def log_filter(self, filter_name: str, value: str):
        self._add("filter", filter_name=filter_name, value=value)

    def log_download(self, filename: str, path: str):
        self._add("download", filename=filename, path=path)

    def log_macro(self, path: str, success: bool, error: str | None = None):
        self._add("macro", path=path, success=success, error=error)

    def log_skip(self, reason: str, context: str = ""):
        self._add("skip", reason=reason, context=context)

    def log_error(self, step_id: str, error: str, fatal: bool = False):
        self._add("error", step_id=step_id, error=error, fatal=fatal)

    def log_item(self, number: int, file_name: str, label: str, status: str, message: str = ""):
        """One batch entry: a numbered file and how it ended."""
        self._add("file", number=number, file_name=file_name, label=label, status=status, message=message)

    def end_workflow(self, status: str, variables: dict | None = None):
        self.end_time = datetime.now()
        duration = (self.end_time - self.start_time).total_seconds() if self.start_time else 0
        self._add("workflow_end", status=status, variables=variables or {}, duration_seconds=duration)

    def merge(self, other: "WorkflowReportGenerator"):
        """Fold a per-item report into this one, keeping event order."""
        self.events.extend(other.events)
        if other.start_time and (self.start_time is None or other.start_time < self.start_time):
            self.start_time = other.start_time

    def summary(self) -> dict:
        items = [e for e in self.events if e["type"] == "file"]
        steps = [e for e in self.events if e["type"] == "step"]
        return {
            "workflow": self.workflow_name,
            "items": len(items),
            "success": sum(1 for e in items if e["status"] == "success"),
            "failed": sum(1 for e in items if e["status"] == "failed"),
            "skipped": sum(1 for e in items if e["status"] == "skipped"),
            "steps_completed": sum(1 for s in steps if s["status"] == "success"),
            "steps_failed": sum(1 for s in steps if s["status"] == "error"),
            "downloads": sum(1 for e in self.events if e["type"] == "download"),
            "errors": sum(1 for e in self.events if e["type"] == "error"),
        }

    def generate_json_report(self, output_path: str | Path) -> str:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_text(
            json.dumps({"summary": self.summary(), "events": self.events}, indent=2, ensure_ascii=False, default=str),
            encoding="utf-8",
        )
        return str(output_path)

    def generate_html_report(self, output_path: str | Path | None = None) -> str:
        if not output_path:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_path = f"reports/workflow_report_{timestamp}.html"

        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_text(self._build_html(), encoding="utf-8")
        return str(output_path)

    def _build_html(self) -> str:
        workflow_start = next((e for e in self.events if e["type"] == "workflow_start"), {})
        workflow_end = next((e for e in reversed(self.events) if e["type"] == "workflow_end"), {})
        summary = self.summary()

        if self.start_time and self.end_time:
            duration = (self.end_time - self.start_time).total_seconds()
        else:
            duration = workflow_end.get("duration_seconds", 0)
        duration_str = f"{int(duration // 60)}m {int(duration % 60)}s" if duration >= 60 else f"{duration:.1f}s"

        if summary["items"]:
            cards = [
                ("success", summary["success"], "Files Succeeded"),
                ("error", summary["failed"], "Files Failed"),
                ("skip", summary["skipped"], "Files Skipped"),
            ]
        else:
            cards = [
                ("success", summary["steps_completed"], "Steps Completed"),
                ("error", summary["steps_failed"], "Errors"),
                ("skip", sum(1 for e in self.events if e["type"] == "skip"), "Skipped"),
            ]
        cards += [
            ("info", summary["downloads"], "Downloads"),
            ("info", duration_str, "Duration"),
        ]
        stats = "".join(
            f'<div class="stat-card {cls}"><div class="value">{value}</div><div class="label">{label}</div></div>'
            for cls, value, label in cards
        )

        title = escape(self.workflow_name or workflow_start.get("workflow", "Unknown"))
        subject = escape(self.subject or workflow_start.get("subject", ""))

        return f'''<!DOCTYPE html>
<html lang="ko">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Automation Report - {title}</title>
    <style>
        * {{ margin: 0; padding: 0; box-sizing: border-box; }}
        body {{
            font-family: 'Segoe UI', 'Malgun Gothic', sans-serif;
            background: #0f172a;
            color: #e2e8f0;
            padding: 2rem;
        }}
        .container {{ max-width: 1400px; margin: 0 auto; }}
        .header {{
            background: linear-gradient(135deg, #1e293b 0%, #334155 100%);
            border-radius: 16px;
            padding: 2rem;
            margin-bottom: 2rem;
            border: 1px solid #475569;
        }}
        .header h1 {{ font-size: 1.75rem; margin-bottom: 0.5rem; color: #f8fafc; }}
        .header .subtitle {{ color: #94a3b8; font-size: 0.95rem; }}
        .stats {{
            display: grid;
            grid-template-columns: repeat(auto-fit, minmax(150px, 1fr));
            gap: 1rem;
            margin-bottom: 2rem;
        }}
        .stat-card {{
            background: #1e293b;
            border-radius: 12px;
            padding: 1.25rem;
            text-align: center;
            border: 1px solid #334155;
        }}
        .stat-card .value {{ font-size: 2rem; font-weight: 700; }}
        .stat-card .label {{ color: #94a3b8; font-size: 0.85rem; margin-top: 0.25rem; }}
        .stat-card.success .value {{ color: #4ade80; }}
        .stat-card.error .value {{ color: #f87171; }}
        .stat-card.skip .value {{ color: #fbbf24; }}
        .stat-card.info .value {{ color: #60a5fa; }}
        .section {{
            background: #1e293b;
            border-radius: 16px;
            padding: 1.5rem;
            margin-bottom: 1.5rem;
            border: 1px solid #334155;
        }}
        .section h2 {{ font-size: 1.1rem; margin-bottom: 1rem; color: #f8fafc; }}
        .timeline-item {{
            display: grid;
            grid-template-columns: 80px 110px 1fr;
            gap: 1rem;
            padding: 0.6rem 0.75rem;
            border-bottom: 1px solid #334155;
            font-size: 0.875rem;
        }}
        .timeline-item .time {{ color: #64748b; }}
        .tag {{
            display: inline-block;
            padding: 0.125rem 0.5rem;
            border-radius: 4px;
            font-size: 0.7rem;
            font-weight: 600;
            text-transform: uppercase;
        }}
        .tag.success {{ background: #166534; color: #4ade80; }}
        .tag.error {{ background: #991b1b; color: #f87171; }}
        .tag.skip {{ background: #92400e; color: #fbbf24; }}
        .tag.info {{ background: #1e40af; color: #60a5fa; }}
        .summary-table {{ width: 100%; border-collapse: collapse; margin-top: 0.5rem; }}
        .summary-table th {{
            background: #334155;
            color: #f8fafc;
            padding: 0.75rem 1rem;
            text-align: left;
            font-size: 0.85rem;
        }}
        .summary-table td {{ padding: 0.75rem 1rem; border-bottom: 1px solid #334155; font-size: 0.9rem; }}
        .status-yes {{ color: #4ade80; font-weight: 600; }}
        .status-no {{ color: #f87171; font-weight: 600; }}
        .status-skip {{ color: #fbbf24; font-weight: 600; }}
        .var-item {{ color: #94a3b8; font-size: 0.85rem; padding: 0.25rem 0; word-break: break-all; }}
        .var-item b {{ color: #f8fafc; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>📊 Automation Report</h1>
            <div class="subtitle">
                {title}
                {f" • {subject}" if subject else ""}
                • {workflow_start.get("time", "")} - {workflow_end.get("time", "")}
            </div>
        </div>

        <div class="stats">{stats}</div>

        {self._build_items_section()}

        {self._build_errors_section()}

        {self._build_timeline_section()}

        {self._build_variables_section(workflow_end.get("variables", {}))}
    </div>
</body>
</html>'''

    def _build_items_section(self) -> str:
        items = [e for e in self.events if e["type"] == "file"]
        if not items:
            return ""

        rows = ""
        for item in items:
            status_class = ITEM_STATUS_CLASS.get(item["status"], "status-no")
            rows += f'''
                <tr>
                    <td>{item["number"]}</td>
                    <td>{escape(item["file_name"] or "-")}</td>
                    <td>{escape(item["label"] or "-")}</td>
                    <td class="{status_class}">{escape(item["status"].upper())}</td>
                    <td>{escape(item["message"])}</td>
                </tr>'''

        return f'''
        <div class="section">
            <h2>📋 Files</h2>
            <table class="summary-table">
                <thead>
                    <tr><th>No.</th><th>File</th><th>Label</th><th>Status</th><th>Message</th></tr>
                </thead>
                <tbody>{rows}</tbody>
            </table>
        </div>'''

    def _build_errors_section(self) -> str:
        errors = [e for e in self.events if e["type"] == "error"]
        if not errors:
            return ""

        rows = "".join(
            f'<div class="timeline-item"><div class="time">{e["time"]}</div>'
            f'<div><span class="tag {"error" if e["fatal"] else "skip"}">'
            f'{"fatal" if e["fatal"] else "warning"}</span></div>'
            f'<div>{escape(e["step_id"] or "")}: {escape(e["error"])}</div></div>'
            for e in errors
        )
        return f'''
        <div class="section">
            <h2>❌ Errors</h2>
            {rows}
        </div>'''

    def _describe(self, event: dict) -> tuple[str, str] | None:
        kind = event["type"]
        if kind == "workflow_start":
            return "info", f"Started: {event['workflow']} {event.get('subject', '')}"
        if kind == "workflow_end":
            tag = "success" if event["status"] == "completed" else "error"
            return tag, f"Finished: {event['status']} ({event['duration_seconds']:.1f}s)"
        if kind == "step":
            tag = {"success": "success", "error": "error"}.get(event["status"], "skip")
            return tag, event.get("description") or event["step_id"]
        if kind == "action":
            return "info", f"{event['action']} {event['target']} via {event['tier'] or 'manual'} ({event['method']})"
        if kind == "filter":
            return "info", f"{event['filter_name']} = {event['value']}"
        if kind == "download":
            return "success", f"Downloaded {event['filename']}"
        if kind == "macro":
            if event["success"]:
                return "success", f"Spreadsheet processed: {Path(event['path']).name}"
            return "error", f"Spreadsheet macro failed: {event['error']}"
        if kind == "skip":
            return "skip", f"Skipped: {event['reason']}"
        if kind == "file":
            tag = {"success": "success", "failed": "error"}.get(event["status"], "skip")
            return tag, f"File {event['number']}: {event['status']} {event['message']}"
        return None

    def _build_timeline_section(self) -> str:
        items = ""
        for event in self.events:
            described = self._describe(event)
            if described is None:
                continue
            tag, text = described
            items += (f'<div class="timeline-item"><div class="time">{event["time"]}</div>'
                      f'<div><span class="tag {tag}">{event["type"]}</span></div>'
                      f'<div>{escape(text)}</div></div>')

        return f'''
        <div class="section">
            <h2>🕒 Execution Timeline</h2>
            {items}
        </div>'''

    def _build_variables_section(self, variables: dict) -> str:
        if not variables:
            return ""

        items = ""
        for k, v in variables.items():
            val = str(v)[:100] + "..." if len(str(v)) > 100 else str(v)
            items += f'<div class="var-item"><b>{escape(k)}</b>: {escape(val)}</div>'

        return f'''
        <div class="section">
            <h2>📦 Captured Variables</h2>
            {items}
        </div>'''
