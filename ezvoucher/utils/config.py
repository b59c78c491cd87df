import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_APP_URL = "https://d365.nepes.co.kr/namespaces/AXSF/?cmp=K02&mi=DefaultDashboard"
WORKFLOWS_DIR = Path(__file__).resolve().parent.parent.parent / "workflows"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(env: dict, key: str, default: bool) -> bool:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_float(env: dict, key: str, default: float) -> float:
    value = env.get(key, "").strip()
    return float(value) if value else default


def _env_int(env: dict, key: str, default: int) -> int:
    value = env.get(key, "").strip()
    return int(value) if value else default


def _env_path(env: dict, key: str, default: Path | None) -> Path | None:
    value = env.get(key, "").strip()
    return Path(value).expanduser() if value else default


@dataclass
class Settings:
    app_url: str = DEFAULT_APP_URL
    work_dir: Path | None = None
    downloads_dir: Path = field(default_factory=lambda: Path.home() / "Downloads")
    output_dir: Path = Path("reports")
    browser_data_dir: Path = Path("browser_data")
    workflows_dir: Path = WORKFLOWS_DIR
    log_file: Path | None = Path("rpa.log")

    headless: bool = False
    connect_retries: int = 3
    connect_timeout: float = 60.0
    connect_backoff: float = 2.0
    login_timeout: float = 30.0
    post_login_settle: float = 5.0

    stabilization_delay: float = 10.0
    data_table_timeout: float = 30.0
    poll_interval: float = 2.0
    reload_timeout: float = 60.0
    reload_settle: float = 5.0
    manual_wait: float = 30.0

    macro_engine: str = "auto"
    macro_timeout: float = 60.0
    filter_group: int = 1

    batch_start: int = 1
    batch_end: int = 17

    show_modals: bool = True
    write_reports: bool = True
    delay_scale: float = 1.0

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = dict(os.environ)
        defaults = cls()
        return cls(
            app_url=env.get("EZV_APP_URL", "").strip() or defaults.app_url,
            work_dir=_env_path(env, "EZV_WORK_DIR", None),
            downloads_dir=_env_path(env, "EZV_DOWNLOADS_DIR", defaults.downloads_dir),
            output_dir=_env_path(env, "EZV_OUTPUT_DIR", defaults.output_dir),
            browser_data_dir=_env_path(env, "EZV_BROWSER_DATA_DIR", defaults.browser_data_dir),
            workflows_dir=_env_path(env, "EZV_WORKFLOWS_DIR", defaults.workflows_dir),
            log_file=_env_path(env, "EZV_LOG_FILE", defaults.log_file),
            headless=_env_bool(env, "EZV_HEADLESS", defaults.headless),
            connect_retries=_env_int(env, "EZV_CONNECT_RETRIES", defaults.connect_retries),
            connect_timeout=_env_float(env, "EZV_CONNECT_TIMEOUT", defaults.connect_timeout),
            connect_backoff=_env_float(env, "EZV_CONNECT_BACKOFF", defaults.connect_backoff),
            login_timeout=_env_float(env, "EZV_LOGIN_TIMEOUT", defaults.login_timeout),
            stabilization_delay=_env_float(env, "EZV_STABILIZATION_DELAY", defaults.stabilization_delay),
            data_table_timeout=_env_float(env, "EZV_DATA_TABLE_TIMEOUT", defaults.data_table_timeout),
            reload_settle=_env_float(env, "EZV_RELOAD_SETTLE", defaults.reload_settle),
            manual_wait=_env_float(env, "EZV_MANUAL_WAIT", defaults.manual_wait),
            macro_engine=env.get("EZV_MACRO_ENGINE", "").strip().lower() or defaults.macro_engine,
            macro_timeout=_env_float(env, "EZV_MACRO_TIMEOUT", defaults.macro_timeout),
            filter_group=_env_int(env, "EZV_FILTER_GROUP", defaults.filter_group),
            batch_start=_env_int(env, "EZV_BATCH_START", defaults.batch_start),
            batch_end=_env_int(env, "EZV_BATCH_END", defaults.batch_end),
            show_modals=_env_bool(env, "EZV_SHOW_MODALS", defaults.show_modals),
            write_reports=_env_bool(env, "EZV_WRITE_REPORTS", defaults.write_reports),
            delay_scale=_env_float(env, "EZV_DELAY_SCALE", defaults.delay_scale),
        )

    def scaled(self, seconds: float) -> float:
        """Apply the global delay scale to a fixed wait."""
        return max(0.0, seconds * self.delay_scale)

    def with_work_dir(self, work_dir: str | Path | None) -> "Settings":
        return replace(self, work_dir=Path(work_dir).expanduser() if work_dir else None)

    @property
    def is_windows(self) -> bool:
        return sys.platform.startswith("win")
