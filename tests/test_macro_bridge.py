"""
Tests for the spreadsheet grouping transformation and the bridges that run it.
"""
import subprocess
from datetime import date, datetime
from pathlib import Path

import pytest
from openpyxl import load_workbook

from ezvoucher.engine.errors import MacroError
from ezvoucher.engine.macro_bridge import (
    MACRO_NAME,
    ExcelMacroBridge,
    OpenpyxlTransformer,
    build_powershell_script,
    create_bridge,
    end_of_month,
    parse_saved_path,
    read_filter_keys,
)
from tests.utils.workbooks import DEFAULT_ROWS, build_receipt_export, receipt_row

MATURITY_COL = 35
DESCRIPTION_COL = 36
TAX_DATE_COL = 37


class FakeRunner:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = []

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        if self.error:
            raise self.error
        return self.result


class TestEndOfMonth:
    @pytest.mark.parametrize("value,months,expected", [
        (date(2024, 3, 10), 0, datetime(2024, 3, 31)),
        (date(2024, 1, 31), 1, datetime(2024, 2, 29)),
        (date(2024, 11, 15), 2, datetime(2025, 1, 31)),
    ])
    def test_end_of_month(self, value, months, expected):
        assert end_of_month(value, months) == expected


class TestOpenpyxlTransformer:
    @pytest.fixture
    def transformed(self, tmp_path: Path):
        path = OpenpyxlTransformer().transform(build_receipt_export(tmp_path / "receipts.xlsx"))
        workbook = load_workbook(path)
        yield workbook.worksheets[0]
        workbook.close()

    def test_groups_sorted_rows(self, transformed):
        assert transformed.cell(1, 1).value == "Group Number"
        assert [transformed.cell(row, 1).value for row in range(2, 6)] == [1, 1, 2, 2]
        assert [transformed.cell(row, 2).value for row in range(2, 6)] == ["PO-1", "PO-1", "PO-2", "PO-2"]

    def test_derived_columns(self, transformed):
        assert transformed.cell(1, MATURITY_COL).value == "Maturity Date"
        assert transformed.cell(1, DESCRIPTION_COL).value == "Invoice Description"
        assert transformed.cell(1, TAX_DATE_COL).value == "Tax Invoice Date"

        assert transformed.cell(2, MATURITY_COL).value == datetime(2024, 4, 30)
        assert transformed.cell(4, MATURITY_COL).value == datetime(2024, 5, 31)
        assert transformed.cell(2, TAX_DATE_COL).value == datetime(2024, 3, 31)
        assert transformed.cell(2, DESCRIPTION_COL).value == "3 month Vendor A_PO-1"
        assert transformed.cell(5, DESCRIPTION_COL).value == "3 month Vendor B_PO-2"

    def test_group_boundary_border(self, transformed):
        assert transformed.cell(3, 1).border.bottom.style == "medium"
        assert transformed.cell(2, 1).border.bottom.style is None

    def test_undated_rows(self, tmp_path: Path):
        rows = DEFAULT_ROWS + [receipt_row("PO-3", "V200", "not a date", 100, "Vendor C")]
        path = OpenpyxlTransformer().transform(build_receipt_export(tmp_path / "receipts.xlsx", rows))
        ws = load_workbook(path).worksheets[0]
        assert ws.cell(6, MATURITY_COL).value == "Date Error"
        assert ws.cell(6, TAX_DATE_COL).value == "Date Error"
        assert ws.cell(6, DESCRIPTION_COL).value == "Date Error Vendor C_PO-3"

    def test_empty_export(self, tmp_path: Path):
        with pytest.raises(MacroError):
            OpenpyxlTransformer().transform(build_receipt_export(tmp_path / "empty.xlsx", []))

    def test_unreadable_file(self, tmp_path: Path):
        path = tmp_path / "broken.xlsx"
        path.write_text("not a workbook")
        with pytest.raises(MacroError):
            OpenpyxlTransformer().transform(path)

    @pytest.mark.asyncio
    async def test_async_result(self, tmp_path: Path):
        path = build_receipt_export(tmp_path / "receipts.xlsx")
        result = await OpenpyxlTransformer().run_transformation(path)
        assert result.success
        assert result.output_path == path
        assert parse_saved_path(result.stdout) == path

    @pytest.mark.asyncio
    async def test_async_failure(self, tmp_path: Path):
        result = await OpenpyxlTransformer().run_transformation(tmp_path / "missing.xlsx")
        assert not result.success
        assert "missing.xlsx" in result.error


class TestReadFilterKeys:
    def test_keys_for_group(self, tmp_path: Path):
        path = OpenpyxlTransformer().transform(build_receipt_export(tmp_path / "receipts.xlsx"))
        assert read_filter_keys(path, 1) == ["PO-1"]
        assert read_filter_keys(path, 2) == ["PO-2"]
        assert read_filter_keys(path, 9) == []

    def test_untransformed_export_has_no_groups(self, tmp_path: Path):
        assert read_filter_keys(build_receipt_export(tmp_path / "raw.xlsx"), 1) == []

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(MacroError):
            read_filter_keys(tmp_path / "missing.xlsx", 1)


class TestExcelMacroBridge:
    def test_script_embeds_macro_and_escaped_path(self):
        script = build_powershell_script("C:/Users/o'neil/Downloads/receipts.xlsx")
        assert "'C:/Users/o''neil/Downloads/receipts.xlsx'" in script
        assert f"Sub {MACRO_NAME}()" in script
        assert "__EXCEL_FILE__" not in script
        assert "__VBA_CODE__" not in script

    def test_parse_saved_path_takes_last_marker(self):
        stdout = "Workbook opened\nSAVED: C:/a.xlsx\nSAVED: C:/a_processed.xlsx\n"
        assert parse_saved_path(stdout) == Path("C:/a_processed.xlsx")
        assert parse_saved_path("Macro executed") is None

    @pytest.mark.asyncio
    async def test_successful_run(self, tmp_path: Path):
        source = tmp_path / "receipts.xlsx"
        runner = FakeRunner(subprocess.CompletedProcess([], 0, stdout=f"Macro executed\nSAVED: {source}\n", stderr=""))
        result = await ExcelMacroBridge(timeout=5, runner=runner).run_transformation(source)

        assert result.success
        assert result.output_path == source
        command, kwargs = runner.calls[0]
        assert command[0] == "powershell" and "-File" in command
        assert kwargs["timeout"] == 5
        assert not Path(command[-1]).exists()

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path: Path):
        runner = FakeRunner(subprocess.CompletedProcess([], 1, stdout="Error: COM failure", stderr=""))
        result = await ExcelMacroBridge(runner=runner).run_transformation(tmp_path / "receipts.xlsx")
        assert not result.success
        assert result.returncode == 1

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path):
        runner = FakeRunner(error=subprocess.TimeoutExpired("powershell", 5, output=b"Workbook opened"))
        result = await ExcelMacroBridge(timeout=5, runner=runner).run_transformation(tmp_path / "receipts.xlsx")
        assert not result.success
        assert "5s" in result.error
        assert result.stdout == "Workbook opened"

    @pytest.mark.asyncio
    async def test_shell_missing(self, tmp_path: Path):
        runner = FakeRunner(error=FileNotFoundError("powershell"))
        result = await ExcelMacroBridge(runner=runner).run_transformation(tmp_path / "receipts.xlsx")
        assert not result.success
        assert "Could not start" in result.error


class TestCreateBridge:
    def test_engines(self, settings):
        settings.macro_engine = "openpyxl"
        assert isinstance(create_bridge(settings), OpenpyxlTransformer)
        settings.macro_engine = "excel"
        assert isinstance(create_bridge(settings), ExcelMacroBridge)

    def test_unknown_engine(self, settings):
        settings.macro_engine = "libreoffice"
        with pytest.raises(MacroError):
            create_bridge(settings)
