"""
Tests for environment-driven settings and the JSON log sink.
"""
import json
import logging
from pathlib import Path

import structlog

from ezvoucher.engine.models import Credentials
from ezvoucher.utils.config import DEFAULT_APP_URL, Settings
from ezvoucher.utils.logger import FILE_LOGGER_NAME, JsonFileSink, close_file_logging, get_logger, setup_logging


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.app_url == DEFAULT_APP_URL
        assert settings.work_dir is None
        assert settings.connect_retries == 3
        assert settings.stabilization_delay == 10.0
        assert (settings.batch_start, settings.batch_end) == (1, 17)
        assert settings.macro_engine == "auto"

    def test_overrides(self, tmp_path: Path):
        settings = Settings.from_env({
            "EZV_APP_URL": "https://erp.example.test/",
            "EZV_WORK_DIR": str(tmp_path),
            "EZV_HEADLESS": "yes",
            "EZV_STABILIZATION_DELAY": "2.5",
            "EZV_FILTER_GROUP": "3",
            "EZV_MACRO_ENGINE": " OPENPYXL ",
            "EZV_SHOW_MODALS": "0",
        })
        assert settings.app_url == "https://erp.example.test/"
        assert settings.work_dir == tmp_path
        assert settings.headless is True
        assert settings.stabilization_delay == 2.5
        assert settings.filter_group == 3
        assert settings.macro_engine == "openpyxl"
        assert settings.show_modals is False

    def test_blank_values_keep_defaults(self):
        settings = Settings.from_env({"EZV_HEADLESS": " ", "EZV_CONNECT_RETRIES": ""})
        assert settings.headless is False
        assert settings.connect_retries == 3

    def test_scaled(self):
        assert Settings(delay_scale=0).scaled(10) == 0
        assert Settings(delay_scale=0.5).scaled(10) == 5

    def test_with_work_dir_copies(self, tmp_path: Path):
        settings = Settings()
        updated = settings.with_work_dir(str(tmp_path))
        assert updated.work_dir == tmp_path
        assert settings.work_dir is None


class TestCredentials:
    def test_from_env(self):
        assert Credentials.from_env({"D365_USERNAME": "a", "D365_PASSWORD": "b"}) == Credentials("a", "b")
        assert Credentials.from_env({"D365_USERNAME": "a"}) is None

    def test_password_masked(self):
        assert "secret" not in repr(Credentials("a", "secret"))


class TestJsonFileSink:
    def test_appends_json_lines(self, tmp_path: Path):
        path = tmp_path / "logs" / "rpa.log"
        sink = JsonFileSink(path)
        event = {"event": "📄 File 1", "label": "3월 급여"}
        assert sink(None, "info", event) is event
        sink(None, "warning", {"event": "second"})
        sink.close()

        lines = path.read_text(encoding="utf-8").splitlines()
        assert json.loads(lines[0]) == event
        assert "3월 급여" in lines[0]
        assert len(lines) == 2

    def test_rotates_by_size(self, tmp_path: Path):
        path = tmp_path / "rpa.log"
        sink = JsonFileSink(path, max_bytes=200, backup_count=2)
        for i in range(20):
            sink(None, "info", {"event": f"line {i}", "padding": "x" * 40})
        sink.close()

        assert (tmp_path / "rpa.log.1").exists()
        assert (tmp_path / "rpa.log.2").exists()
        assert not (tmp_path / "rpa.log.3").exists()


class TestSetupLogging:
    def test_reconfiguring_replaces_the_file_handler(self, tmp_path: Path):
        setup_logging(log_file=tmp_path / "first.log")
        setup_logging(log_file=tmp_path / "second.log")

        handlers = logging.getLogger(FILE_LOGGER_NAME).handlers
        assert [Path(h.baseFilename).name for h in handlers] == ["second.log"]

    def test_loggers_after_reset_write_to_the_current_stream(self, tmp_path: Path, capsys):
        setup_logging(log_file=tmp_path / "rpa.log")
        close_file_logging()
        structlog.reset_defaults()

        get_logger("BatchRunner").info("after reset")

        assert "after reset" in capsys.readouterr().out
        assert logging.getLogger(FILE_LOGGER_NAME).handlers == []
