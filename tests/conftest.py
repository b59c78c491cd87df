"""
Pytest configuration and fixtures.

Unit tests run against the in-memory page in ``tests/utils/fakes.py``. Tests marked ``e2e``
drive a real browser against the live ERP and only run with ``--live``.
"""
from pathlib import Path
from typing import AsyncGenerator

import pytest
import structlog
from playwright.async_api import async_playwright, BrowserContext, Page

from ezvoucher.engine.models import Credentials
from ezvoucher.utils.config import Settings
from ezvoucher.utils.logger import close_file_logging
from tests.utils.fakes import FakePage, FakeSession

WORKFLOWS_DIR = Path(__file__).parent.parent / "workflows"
BROWSER_DATA_DIR = Path(__file__).parent.parent / "browser_data"
SCREENSHOTS_DIR = Path(__file__).parent / "screenshots"

VOUCHER_FILES = [
    "1.급여전표(3월 급여).xlsx",
    "2.상여전표(3월 상여).xlsx",
    "3.경비전표 라벨없음.xlsx",
    "5.기타전표(잡비).xls",
]


def pytest_addoption(parser):
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests against the live D365 instance (requires a saved login)",
    )


@pytest.fixture(scope="session")
def live_mode(request) -> bool:
    return request.config.getoption("--live")


@pytest.fixture
async def browser_context(live_mode: bool) -> AsyncGenerator[BrowserContext, None]:
    """Persistent browser context reusing the session saved by the app."""
    if not live_mode:
        yield None
        return

    if not BROWSER_DATA_DIR.exists():
        raise RuntimeError(
            f"Browser data directory not found: {BROWSER_DATA_DIR}\n"
            "Please run the app first and log in to D365 to create a session."
        )

    async with async_playwright() as p:
        context = await p.chromium.launch_persistent_context(
            user_data_dir=str(BROWSER_DATA_DIR),
            headless=False,
            viewport={"width": 1920, "height": 1080},
            accept_downloads=True,
            slow_mo=100,
        )
        yield context
        await context.close()


@pytest.fixture
async def page(browser_context: BrowserContext, live_mode: bool) -> AsyncGenerator[Page, None]:
    if not live_mode or browser_context is None:
        yield None
        return

    page = await browser_context.new_page()
    yield page
    await page.close()


@pytest.fixture
def workflows_dir() -> Path:
    return WORKFLOWS_DIR


@pytest.fixture
def screenshots_dir() -> Path:
    SCREENSHOTS_DIR.mkdir(parents=True, exist_ok=True)
    return SCREENSHOTS_DIR


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Working folder with numbered voucher files; number 4 is missing, number 3 has no label."""
    folder = tmp_path / "vouchers"
    folder.mkdir()
    for name in VOUCHER_FILES:
        (folder / name).write_bytes(b"")
    return folder


@pytest.fixture
def settings(tmp_path: Path, work_dir: Path) -> Settings:
    """Settings with every fixed delay scaled to zero and output kept under tmp_path."""
    return Settings(
        app_url="https://erp.example.test/namespaces/AXSF/",
        work_dir=work_dir,
        downloads_dir=tmp_path / "downloads",
        output_dir=tmp_path / "reports",
        browser_data_dir=tmp_path / "browser_data",
        log_file=None,
        connect_retries=2,
        data_table_timeout=0.2,
        manual_wait=0,
        macro_engine="openpyxl",
        write_reports=False,
        delay_scale=0,
    )


@pytest.fixture
def credentials() -> Credentials:
    return Credentials("tester@example.test", "s3cret")


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture
def fake_session(settings: Settings, fake_page: FakePage, credentials: Credentials) -> FakeSession:
    return FakeSession(settings, fake_page, credentials)


@pytest.fixture(autouse=True)
def skip_e2e_without_live(request, live_mode: bool):
    """Auto-skip E2E tests that require --live flag."""
    if request.node.get_closest_marker("e2e") and not live_mode:
        pytest.skip("E2E test requires --live flag")


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop whatever ``setup_logging`` a test ran, so later loggers never write to its streams."""
    yield
    close_file_logging()
    structlog.reset_defaults()
