from datetime import datetime
from pathlib import Path

from docx import Document
from docx.enum.table import WD_TABLE_ALIGNMENT
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.oxml.ns import qn
from docx.shared import Cm, Inches, Pt, RGBColor

COLOR_HEADER_TEXT = RGBColor(0xFF, 0xFF, 0xFF)
COLOR_SUCCESS = RGBColor(0x05, 0x96, 0x69)
COLOR_FAILED = RGBColor(0xDC, 0x26, 0x26)
COLOR_SKIPPED = RGBColor(0xD9, 0x77, 0x06)
COLOR_MUTED = RGBColor(0x64, 0x74, 0x8B)
COLOR_DARK = RGBColor(0x0F, 0x17, 0x2A)

STATUS_COLORS = {
    "SUCCESS": COLOR_SUCCESS,
    "FAILED": COLOR_FAILED,
    "SKIPPED": COLOR_SKIPPED,
}


def _set_cell_shading(cell, color_hex: str):
    shading = cell._tc.get_or_add_tcPr()
    shading_el = shading.makeelement(qn('w:shd'), {
        qn('w:fill'): color_hex,
        qn('w:val'): 'clear',
    })
    shading.append(shading_el)


def _format_duration(seconds: float) -> str:
    if seconds >= 60:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{seconds:.1f}s"


def _extract_runs(events: list) -> list[dict]:
    """Workflow runs in event order, each with its outcome and the filters it set."""
    runs = []
    current = None

    for event in events:
        if event["type"] == "workflow_start":
            current = {
                "workflow": event.get("workflow", ""),
                "subject": event.get("subject", ""),
                "start_time": event.get("time", ""),
                "end_time": "",
                "duration": 0,
                "filters": {},
                "status": "running",
            }
            runs.append(current)
        elif current is None:
            continue
        elif event["type"] == "filter":
            current["filters"][event["filter_name"]] = event["value"]
        elif event["type"] == "error" and event.get("fatal"):
            current["status"] = "failed"
        elif event["type"] == "workflow_end":
            current["end_time"] = event.get("time", "")
            current["duration"] = event.get("duration_seconds", 0)
            if current["status"] != "failed":
                current["status"] = event.get("status", "completed")

    return runs


def _add_table(doc, headers: list[str], widths: list, rows: list[list[str]], status_col: int | None = None):
    table = doc.add_table(rows=1, cols=len(headers))
    table.alignment = WD_TABLE_ALIGNMENT.CENTER
    table.style = 'Table Grid'

    for i, (header, width) in enumerate(zip(headers, widths)):
        cell = table.rows[0].cells[i]
        cell.width = width
        cell.text = ''
        p = cell.paragraphs[0]
        p.alignment = WD_ALIGN_PARAGRAPH.CENTER
        run = p.add_run(header)
        run.bold = True
        run.font.size = Pt(8.5)
        run.font.color.rgb = COLOR_HEADER_TEXT
        _set_cell_shading(cell, '1E293B')

    for row_idx, values in enumerate(rows):
        row = table.add_row()
        if row_idx % 2 == 1:
            for cell in row.cells:
                _set_cell_shading(cell, 'F1F5F9')

        for col_idx, value in enumerate(values):
            cell = row.cells[col_idx]
            cell.width = widths[col_idx]
            cell.text = ''
            run = cell.paragraphs[0].add_run(str(value))
            run.font.size = Pt(8.5)
            if col_idx == status_col:
                cell.paragraphs[0].alignment = WD_ALIGN_PARAGRAPH.CENTER
                run.bold = True
                run.font.color.rgb = STATUS_COLORS.get(str(value), COLOR_MUTED)

    return table


def generate_docx_report(events: list, output_path: str | Path | None = None,
                         title: str = "Execution Summary Report") -> str:
    if not output_path:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_path = f"reports/execution_summary_{timestamp}.docx"

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)

    doc = Document()

    style = doc.styles['Normal']
    style.font.name = 'Calibri'
    style.font.size = Pt(10)
    style.paragraph_format.space_after = Pt(4)

    for section in doc.sections:
        section.top_margin = Cm(1.5)
        section.bottom_margin = Cm(1.5)
        section.left_margin = Cm(1.5)
        section.right_margin = Cm(1.5)

    heading = doc.add_heading(title, level=0)
    heading.alignment = WD_ALIGN_PARAGRAPH.CENTER
    for run in heading.runs:
        run.font.color.rgb = COLOR_DARK
        run.font.size = Pt(22)

    chain_start = next((e for e in events if e["type"] == "workflow_start"), {})
    chain_end = next((e for e in reversed(events) if e["type"] == "workflow_end"), {})

    meta = doc.add_paragraph()
    meta.alignment = WD_ALIGN_PARAGRAPH.CENTER
    meta_run = meta.add_run(
        f"Generated: {datetime.now().strftime('%Y-%m-%d')}  |  "
        f"Run: {chain_start.get('time', 'N/A')} - {chain_end.get('time', 'N/A')}"
    )
    meta_run.font.size = Pt(9)
    meta_run.font.color.rgb = COLOR_MUTED

    doc.add_paragraph()

    items = [e for e in events if e["type"] == "file"]
    runs = _extract_runs(events)

    if not items and not runs:
        p = doc.add_paragraph()
        run = p.add_run("No workflows were executed in this run.")
        run.font.color.rgb = COLOR_MUTED
        run.font.italic = True
        doc.save(output_path)
        return str(output_path)

    if items:
        counts = {status: sum(1 for e in items if e["status"] == status) for status in ("success", "failed", "skipped")}
        doc.add_heading("Batch", level=2)
        _add_table(
            doc,
            ["Run", "Files", "Success", "Failed", "Skipped", "Duration"],
            [Inches(2.2), Inches(0.9), Inches(0.9), Inches(0.9), Inches(0.9), Inches(1.0)],
            [[chain_start.get("subject") or chain_start.get("workflow", ""),
              len(items), counts["success"], counts["failed"], counts["skipped"],
              _format_duration(chain_end.get("duration_seconds", 0))]],
        )
        doc.add_paragraph()

        doc.add_heading("Files", level=2)
        _add_table(
            doc,
            ["No.", "File", "Label", "Status", "Message"],
            [Inches(0.5), Inches(2.2), Inches(1.2), Inches(0.9), Inches(2.4)],
            [[e["number"], e["file_name"] or "-", e["label"] or "-", e["status"].upper(), e["message"] or "-"]
             for e in items],
            status_col=3,
        )
        doc.add_paragraph()

    doc.add_heading("Workflow Runs", level=2)
    rows = []
    for entry in runs:
        filters = ", ".join(f"{k}: {v}" for k, v in entry["filters"].items()) or "-"
        status = {"completed": "SUCCESS", "failed": "FAILED"}.get(entry["status"], entry["status"].upper())
        rows.append([entry["workflow"], filters, entry["start_time"], entry["end_time"],
                     _format_duration(entry["duration"]), status])
    _add_table(
        doc,
        ["Workflow", "Values", "Start", "End", "Duration", "Status"],
        [Inches(1.5), Inches(2.6), Inches(0.8), Inches(0.8), Inches(0.8), Inches(0.8)],
        rows,
        status_col=5,
    )

    doc.save(output_path)
    return str(output_path)
