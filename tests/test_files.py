"""
Tests for locating numbered voucher files and reading their labels.
"""
import os
import time
from pathlib import Path

import pytest

from ezvoucher.engine.errors import LabelExtractionError
from ezvoucher.engine.files import build_task, extract_label, find_file, find_latest_download, scan_range


class TestFindFile:
    def test_finds_file_by_number_prefix(self, work_dir: Path):
        assert find_file(work_dir, 1).name == "1.급여전표(3월 급여).xlsx"

    def test_number_prefix_does_not_match_longer_numbers(self, tmp_path: Path):
        (tmp_path / "11.other(x).xlsx").write_bytes(b"")
        assert find_file(tmp_path, 1) is None

    def test_ignores_non_spreadsheets(self, tmp_path: Path):
        (tmp_path / "2.notes(x).txt").write_bytes(b"")
        assert find_file(tmp_path, 2) is None

    def test_first_in_name_order_wins(self, tmp_path: Path):
        (tmp_path / "7.b(second).xlsx").write_bytes(b"")
        (tmp_path / "7.a(first).xlsx").write_bytes(b"")
        assert find_file(tmp_path, 7).name == "7.a(first).xlsx"

    def test_missing_number(self, work_dir: Path):
        assert find_file(work_dir, 4) is None

    def test_missing_directory(self, tmp_path: Path):
        assert find_file(tmp_path / "nope", 1) is None


class TestExtractLabel:
    @pytest.mark.parametrize("name,label", [
        ("1.급여전표(3월 급여).xlsx", "3월 급여"),
        ("2.x( padded ).xlsx", "padded"),
        ("3.first(one)(two).xlsx", "one"),
    ])
    def test_label_from_first_parentheses(self, name, label):
        assert extract_label(name) == label

    @pytest.mark.parametrize("name", ["3.no label.xlsx", "4.empty().xlsx", "5.blank(   ).xlsx"])
    def test_missing_label_raises(self, name):
        with pytest.raises(LabelExtractionError) as exc_info:
            extract_label(name)
        assert name in str(exc_info.value)


class TestBuildTask:
    def test_builds_task_with_variables(self, work_dir: Path):
        task = build_task(work_dir, 2)
        assert task.sequence_number == 2
        assert task.label == "3월 상여"
        variables = task.as_variables()
        assert variables["file_number"] == "2"
        assert variables["file_name"] == "2.상여전표(3월 상여).xlsx"
        assert Path(variables["file_path"]).is_absolute()

    def test_absent_file_gives_none(self, work_dir: Path):
        assert build_task(work_dir, 4) is None

    def test_unlabelled_file_raises(self, work_dir: Path):
        with pytest.raises(LabelExtractionError):
            build_task(work_dir, 3)


class TestScanRange:
    def test_describes_every_number(self, work_dir: Path):
        rows = scan_range(work_dir, 1, 5)
        assert [row["number"] for row in rows] == [1, 2, 3, 4, 5]
        assert rows[0]["label"] == "3월 급여"
        assert rows[2]["error"] and rows[2]["label"] is None
        assert rows[3]["file"] is None
        assert rows[4]["label"] == "잡비"


class TestFindLatestDownload:
    def test_newest_spreadsheet_wins(self, tmp_path: Path):
        old = tmp_path / "old.xlsx"
        new = tmp_path / "new.xlsx"
        old.write_bytes(b"")
        new.write_bytes(b"")
        now = time.time()
        os.utime(old, (now - 60, now - 60))
        os.utime(new, (now, now))
        assert find_latest_download(tmp_path) == new

    def test_skips_lock_files_and_other_types(self, tmp_path: Path):
        (tmp_path / "~$export.xlsx").write_bytes(b"")
        (tmp_path / "export.csv").write_bytes(b"")
        assert find_latest_download(tmp_path) is None

    def test_since_filters_older_files(self, tmp_path: Path):
        path = tmp_path / "export.xlsx"
        path.write_bytes(b"")
        os.utime(path, (time.time() - 600, time.time() - 600))
        assert find_latest_download(tmp_path, since=time.time() - 5) is None
        assert find_latest_download(tmp_path) == path
