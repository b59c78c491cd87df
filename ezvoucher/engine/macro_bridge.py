"""
Spreadsheet transformation bridge.

The invoice export is grouped by purchase order and vendor, totals are computed per group
and three derived columns are appended. Two interchangeable engines implement
``run_transformation(path) -> MacroResult``:

* ``ExcelMacroBridge`` writes a PowerShell script that injects a VBA module into a running
  Excel instance, executes it and leaves the workbook open for inspection.
* ``OpenpyxlTransformer`` performs the same transformation in process.

``read_filter_keys`` reads the processed workbook back and yields the purchase order
numbers the vendor-invoice screen has to be filtered on.
"""
import asyncio
import calendar
import os
import re
import subprocess
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Protocol

from openpyxl import load_workbook
from openpyxl.styles import Border, Side
from openpyxl.utils import column_index_from_string
from openpyxl.utils.exceptions import InvalidFileException

from ezvoucher.engine.errors import MacroError
from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import get_logger

MACRO_NAME = "GroupBy_I_Z_And_Process"
MODULE_NAME = "GroupProcessModule"
SAVED_MARKER = "SAVED:"
PROCESSED_SUFFIX = "_processed.xlsx"

MATURITY_THRESHOLD = 10_000_000
VAT_FACTOR = 1.1
SORT_WIDTH = column_index_from_string("AG")

VBA_MODULE = """
Sub GroupBy_I_Z_And_Process()
    Dim ws As Worksheet
    Dim lastRow As Long
    Dim i As Long, groupNum As Long, gNum As Long
    Dim key As String
    Dim groupMap As Object, groupSums As Object, groupDesc As Object
    Dim maturityDate As Date, adjustedSum As Double
    Dim maturityCol As Long, descCol As Long, taxDateCol As Long
    Dim gDate As Variant
    Dim currentGroup As Long, nextGroup As Long
    Dim lastCol As Long
    Dim pText As String, jText As String

    Set ws = ActiveSheet
    Set groupMap = CreateObject("Scripting.Dictionary")
    Set groupSums = CreateObject("Scripting.Dictionary")
    Set groupDesc = CreateObject("Scripting.Dictionary")

    Application.ScreenUpdating = False
    Application.Calculation = xlCalculationManual

    lastRow = ws.Cells(ws.Rows.Count, "I").End(xlUp).Row

    ws.Sort.SortFields.Clear
    ws.Sort.SortFields.Add Key:=ws.Range("I2:I" & lastRow), Order:=xlAscending
    ws.Sort.SortFields.Add Key:=ws.Range("Z2:Z" & lastRow), Order:=xlAscending
    With ws.Sort
        .SetRange ws.Range("A1:AG" & lastRow)
        .Header = xlYes
        .Apply
    End With

    ws.Columns("A").Insert Shift:=xlToRight
    ws.Cells(1, 1).Value = "Group Number"

    groupNum = 1
    For i = 2 To lastRow
        key = ws.Cells(i, "I").Value & "|" & ws.Cells(i, "Z").Value
        If Not groupMap.exists(key) Then
            groupMap(key) = groupNum
            groupSums(groupNum) = 0
            gDate = ws.Cells(i, "G").Value
            pText = ws.Cells(i, "P").Value
            jText = ws.Cells(i, "J").Value
            If IsDate(gDate) Then
                groupDesc(groupNum) = Month(gDate) & " month " & pText & "_" & jText
            Else
                groupDesc(groupNum) = "Date Error " & pText & "_" & jText
            End If
            groupNum = groupNum + 1
        End If
        ws.Cells(i, 1).Value = groupMap(key)
        groupSums(groupMap(key)) = groupSums(groupMap(key)) + Val(ws.Cells(i, "AG").Value)
    Next i

    maturityCol = ws.Cells(1, ws.Columns.Count).End(xlToLeft).Column + 1
    ws.Cells(1, maturityCol).Value = "Maturity Date"
    descCol = maturityCol + 1
    ws.Cells(1, descCol).Value = "Invoice Description"
    taxDateCol = descCol + 1
    ws.Cells(1, taxDateCol).Value = "Tax Invoice Date"

    For i = 2 To lastRow
        gNum = ws.Cells(i, 1).Value
        gDate = ws.Cells(i, "G").Value
        If IsDate(gDate) Then
            adjustedSum = groupSums(gNum) * 1.1
            If adjustedSum < 10000000 Then
                maturityDate = WorksheetFunction.EoMonth(gDate, 1)
            Else
                maturityDate = WorksheetFunction.EoMonth(gDate, 2)
            End If
            ws.Cells(i, maturityCol).Value = maturityDate
            ws.Cells(i, taxDateCol).Value = WorksheetFunction.EoMonth(gDate, 0)
        Else
            ws.Cells(i, maturityCol).Value = "Date Error"
            ws.Cells(i, taxDateCol).Value = "Date Error"
        End If
        ws.Cells(i, descCol).Value = groupDesc(gNum)
    Next i

    ws.Range(ws.Cells(2, taxDateCol), ws.Cells(lastRow, taxDateCol)).NumberFormat = "yyyy-mm-dd"

    lastCol = ws.Cells(1, ws.Columns.Count).End(xlToLeft).Column
    For i = 2 To lastRow - 1
        currentGroup = ws.Cells(i, 1).Value
        nextGroup = ws.Cells(i + 1, 1).Value
        If currentGroup <> nextGroup Then
            With ws.Range(ws.Cells(i, 1), ws.Cells(i, lastCol)).Borders(xlEdgeBottom)
                .LineStyle = xlContinuous
                .Weight = xlMedium
                .ColorIndex = xlAutomatic
            End With
        End If
    Next i

    Application.ScreenUpdating = True
    Application.Calculation = xlCalculationAutomatic
End Sub
"""

POWERSHELL_TEMPLATE = """
$ExcelFilePath = '__EXCEL_FILE__'
Write-Host "Target workbook: $ExcelFilePath"

try {
    $excel = New-Object -ComObject Excel.Application
    $excel.Visible = $false
    $excel.DisplayAlerts = $false

    $workbook = $null
    $fileName = Split-Path $ExcelFilePath -Leaf
    foreach ($wb in $excel.Workbooks) {
        if ($wb.Name -eq $fileName) {
            $workbook = $wb
            Write-Host "Reusing open workbook: $fileName"
            break
        }
    }
    if ($workbook -eq $null) {
        if (-not (Test-Path -LiteralPath $ExcelFilePath)) {
            throw "File not found: $ExcelFilePath"
        }
        $workbook = $excel.Workbooks.Open($ExcelFilePath)
        Write-Host "Workbook opened"
    }

    $worksheet = $workbook.Worksheets.Item(1)
    $worksheet.Activate()

    $vbaProject = $workbook.VBProject
    for ($i = $vbaProject.VBComponents.Count; $i -ge 1; $i--) {
        $component = $vbaProject.VBComponents.Item($i)
        if ($component.Type -eq 1) {
            $vbaProject.VBComponents.Remove($component)
            Write-Host "Removed module: $($component.Name)"
        }
    }

    $vbaModule = $vbaProject.VBComponents.Add(1)
    $vbaModule.Name = "__MODULE_NAME__"
    Start-Sleep -Milliseconds 500

    $vbaCode = @'
__VBA_CODE__
'@
    $vbaModule.CodeModule.AddFromString($vbaCode)
    Write-Host "Macro module injected"
    Start-Sleep -Seconds 2

    try {
        $excel.Run("__MACRO_NAME__")
    } catch {
        Write-Host "Unqualified macro call failed: $($_.Exception.Message)"
        $excel.Run("__MODULE_NAME__.__MACRO_NAME__")
    }
    Write-Host "Macro executed"
    Start-Sleep -Seconds 2

    try {
        $workbook.Save()
        Write-Host "__SAVED_MARKER__ $ExcelFilePath"
    } catch {
        Write-Host "Save failed: $($_.Exception.Message)"
        $savePath = $ExcelFilePath -replace '\\.xls[xm]?$', '__PROCESSED_SUFFIX__'
        $workbook.SaveAs($savePath)
        Write-Host "__SAVED_MARKER__ $savePath"
    }

    $excel.Visible = $true
    $excel.DisplayAlerts = $true
} catch {
    Write-Host "Error: $($_.Exception.Message)"
    if ($excel) {
        $excel.Visible = $true
        $excel.DisplayAlerts = $true
    }
    exit 1
}
"""


@dataclass
class MacroResult:
    success: bool
    output_path: Path | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    returncode: int | None = None


class MacroBridge(Protocol):
    async def run_transformation(self, file_path: Path) -> MacroResult:
        ...


def build_powershell_script(file_path: str | Path) -> str:
    escaped = str(file_path).replace("'", "''")
    return (
        POWERSHELL_TEMPLATE
        .replace("__EXCEL_FILE__", escaped)
        .replace("__VBA_CODE__", VBA_MODULE.strip("\n"))
        .replace("__MODULE_NAME__", MODULE_NAME)
        .replace("__MACRO_NAME__", MACRO_NAME)
        .replace("__SAVED_MARKER__", SAVED_MARKER)
        .replace("__PROCESSED_SUFFIX__", PROCESSED_SUFFIX)
    )


def parse_saved_path(stdout: str) -> Path | None:
    for line in reversed(stdout.splitlines()):
        line = line.strip()
        if line.startswith(SAVED_MARKER):
            return Path(line[len(SAVED_MARKER):].strip())
    return None


class ExcelMacroBridge:
    """Runs the grouping macro inside a locally installed Excel through PowerShell."""

    def __init__(self, timeout: float = 60.0, shell: str = "powershell",
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.timeout = timeout
        self.shell = shell
        self.runner = runner
        self.log = get_logger("ExcelMacroBridge")

    def _write_script(self, file_path: Path) -> Path:
        fd, script_path = tempfile.mkstemp(prefix="excel_macro_", suffix=".ps1")
        with os.fdopen(fd, "w", encoding="utf-8-sig") as f:
            f.write(build_powershell_script(file_path))
        return Path(script_path)

    async def run_transformation(self, file_path: Path) -> MacroResult:
        file_path = Path(file_path).resolve()
        script_path = self._write_script(file_path)
        command = [self.shell, "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", str(script_path)]
        self.log.info("🧮 Running spreadsheet macro", file=str(file_path), script=str(script_path))

        try:
            completed = await asyncio.to_thread(
                self.runner, command, capture_output=True, text=True,
                errors="replace", timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            self.log.warning("Spreadsheet macro timed out", timeout=self.timeout)
            return MacroResult(False, stdout=_as_text(e.stdout), stderr=_as_text(e.stderr),
                               error=f"Macro did not finish within {self.timeout:.0f}s")
        except OSError as e:
            self.log.warning("Could not start PowerShell", error=str(e))
            return MacroResult(False, error=f"Could not start {self.shell}: {e}")
        finally:
            try:
                script_path.unlink(missing_ok=True)
            except OSError as e:
                self.log.warning("Could not delete macro script", script=str(script_path), error=str(e))

        if completed.stdout:
            self.log.info("Macro output", output=completed.stdout.strip())
        if completed.stderr:
            self.log.warning("Macro stderr", output=completed.stderr.strip())

        if completed.returncode != 0:
            return MacroResult(False, stdout=completed.stdout, stderr=completed.stderr,
                               error=f"Macro process exited with status {completed.returncode}",
                               returncode=completed.returncode)

        return MacroResult(True, output_path=parse_saved_path(completed.stdout) or file_path,
                           stdout=completed.stdout, stderr=completed.stderr,
                           returncode=completed.returncode)


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value


def _as_date(value) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d", "%Y.%m.%d"):
            try:
                return datetime.strptime(value.strip(), fmt).date()
            except ValueError:
                continue
    return None


def _val(value) -> float:
    """Leading numeric value of a cell, zero when there is none."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.match(r"\s*[-+]?\d+(?:\.\d+)?", value.replace(",", ""))
        return float(match.group()) if match else 0.0
    return 0.0


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    return str(value)


def end_of_month(value: date, months: int = 0) -> datetime:
    year, month = divmod(value.month - 1 + months, 12)
    year += value.year
    month += 1
    return datetime(year, month, calendar.monthrange(year, month)[1])


def _sort_key(value):
    if value is None or value == "":
        return (2, 0, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value, "")
    return (1, 0, _text(value).lower())


def _col(letter: str) -> int:
    return column_index_from_string(letter)


class OpenpyxlTransformer:
    """In-process equivalent of the grouping macro."""

    def __init__(self):
        self.log = get_logger("OpenpyxlTransformer")

    async def run_transformation(self, file_path: Path) -> MacroResult:
        self.log.info("🧮 Transforming workbook in process", file=str(file_path))
        try:
            output = await asyncio.to_thread(self.transform, Path(file_path))
        except MacroError as e:
            self.log.warning("Workbook transformation failed", error=str(e))
            return MacroResult(False, error=str(e))
        return MacroResult(True, output_path=output, stdout=f"{SAVED_MARKER} {output}", returncode=0)

    def transform(self, file_path: Path) -> Path:
        try:
            workbook = load_workbook(file_path)
        except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as e:
            raise MacroError(f"Cannot open workbook {file_path.name}: {e}") from e

        ws = workbook.worksheets[0]
        last_row = self._last_row(ws, _col("I"))
        if last_row < 2:
            raise MacroError(f"No data rows in {file_path.name}")

        self._sort_rows(ws, last_row)
        ws.insert_cols(1)
        ws.cell(row=1, column=1).value = "Group Number"

        groups: dict[str, int] = {}
        sums: dict[int, float] = {}
        descriptions: dict[int, str] = {}
        for row in range(2, last_row + 1):
            key = f"{_text(ws.cell(row, _col('I')).value)}|{_text(ws.cell(row, _col('Z')).value)}"
            if key not in groups:
                number = len(groups) + 1
                groups[key] = number
                sums[number] = 0.0
                g_date = _as_date(ws.cell(row, _col("G")).value)
                p_text = _text(ws.cell(row, _col("P")).value)
                j_text = _text(ws.cell(row, _col("J")).value)
                if g_date:
                    descriptions[number] = f"{g_date.month} month {p_text}_{j_text}"
                else:
                    descriptions[number] = f"Date Error {p_text}_{j_text}"
            number = groups[key]
            ws.cell(row, 1).value = number
            sums[number] += _val(ws.cell(row, _col("AG")).value)

        maturity_col = self._last_header_col(ws) + 1
        desc_col = maturity_col + 1
        tax_col = desc_col + 1
        ws.cell(1, maturity_col).value = "Maturity Date"
        ws.cell(1, desc_col).value = "Invoice Description"
        ws.cell(1, tax_col).value = "Tax Invoice Date"

        for row in range(2, last_row + 1):
            number = ws.cell(row, 1).value
            g_date = _as_date(ws.cell(row, _col("G")).value)
            if g_date:
                months = 1 if sums[number] * VAT_FACTOR < MATURITY_THRESHOLD else 2
                ws.cell(row, maturity_col).value = end_of_month(g_date, months)
                ws.cell(row, maturity_col).number_format = "yyyy-mm-dd"
                ws.cell(row, tax_col).value = end_of_month(g_date, 0)
            else:
                ws.cell(row, maturity_col).value = "Date Error"
                ws.cell(row, tax_col).value = "Date Error"
            ws.cell(row, tax_col).number_format = "yyyy-mm-dd"
            ws.cell(row, desc_col).value = descriptions[number]

        last_col = self._last_header_col(ws)
        separator = Side(style="medium")
        for row in range(2, last_row):
            if ws.cell(row, 1).value != ws.cell(row + 1, 1).value:
                for column in range(1, last_col + 1):
                    cell = ws.cell(row, column)
                    current = cell.border
                    cell.border = Border(left=current.left, right=current.right,
                                         top=current.top, bottom=separator)

        return self._save(workbook, file_path)

    @staticmethod
    def _last_row(ws, column: int) -> int:
        for row in range(ws.max_row, 0, -1):
            if ws.cell(row, column).value not in (None, ""):
                return row
        return 0

    @staticmethod
    def _last_header_col(ws) -> int:
        for column in range(ws.max_column, 0, -1):
            if ws.cell(1, column).value not in (None, ""):
                return column
        return 0

    @staticmethod
    def _sort_rows(ws, last_row: int):
        rows = [
            [ws.cell(row, column).value for column in range(1, SORT_WIDTH + 1)]
            for row in range(2, last_row + 1)
        ]
        rows.sort(key=lambda values: (_sort_key(values[_col("I") - 1]), _sort_key(values[_col("Z") - 1])))
        for offset, values in enumerate(rows):
            for column, value in enumerate(values, start=1):
                ws.cell(2 + offset, column).value = value

    def _save(self, workbook, file_path: Path) -> Path:
        try:
            workbook.save(file_path)
            return file_path
        except PermissionError as e:
            fallback = file_path.with_name(file_path.stem + PROCESSED_SUFFIX)
            self.log.warning("Workbook locked, saving a copy", fallback=str(fallback), error=str(e))
            try:
                workbook.save(fallback)
            except OSError as inner:
                raise MacroError(f"Cannot save workbook: {inner}") from inner
            return fallback


def create_bridge(settings: Settings) -> MacroBridge:
    engine = settings.macro_engine
    if engine == "auto":
        engine = "excel" if settings.is_windows else "openpyxl"
    if engine == "excel":
        return ExcelMacroBridge(timeout=settings.macro_timeout)
    if engine == "openpyxl":
        return OpenpyxlTransformer()
    raise MacroError(f"Unknown macro engine: {settings.macro_engine}")


def _as_group(value) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value) if float(value).is_integer() else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def read_filter_keys(file_path: str | Path, group: int) -> list[str]:
    """Unique column-B values of the rows whose group number (column A) equals ``group``."""
    try:
        workbook = load_workbook(file_path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as e:
        raise MacroError(f"Cannot read filter keys from {Path(file_path).name}: {e}") from e

    keys: list[str] = []
    try:
        ws = workbook.worksheets[0]
        for row in ws.iter_rows(min_row=2, max_col=2, values_only=True):
            if len(row) < 2:
                continue
            group_value, key_value = row[0], row[1]
            key = _text(key_value).strip()
            if _as_group(group_value) == group and key and key not in keys:
                keys.append(key)
    finally:
        workbook.close()
    return keys
