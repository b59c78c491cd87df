"""
Tests for the bounded wait helpers.
"""
import pytest
from playwright.async_api import Error as PlaywrightError

from ezvoucher.engine.waits import GRID_SCRIPT, LOADING_INDICATORS, SPINNER_SCRIPT, SPINNER_SELECTORS, SmartWait


@pytest.fixture
def waits(fake_page, settings) -> SmartWait:
    return SmartWait(fake_page, settings)


class TestElementWaits:
    @pytest.mark.asyncio
    async def test_visible_element(self, fake_page, waits):
        fake_page.add("#ok")
        assert await waits.for_element("#ok", 0.05) is True

    @pytest.mark.asyncio
    async def test_hidden_element_times_out(self, fake_page, waits):
        fake_page.add("#ok", visible=False)
        assert await waits.for_element("#ok", 0.05) is False
        assert await waits.for_attached("#ok", 0.05) is True

    @pytest.mark.asyncio
    async def test_clickable_needs_enabled_element_with_size(self, fake_page, waits):
        fake_page.add("#enabled")
        fake_page.add("#disabled", enabled=False)
        fake_page.add("#flat", height=0)
        assert await waits.for_clickable("#enabled", 0.05) is True
        assert await waits.for_clickable("#disabled", 0.15) is False
        assert await waits.for_clickable("#flat", 0.15) is False
        assert await waits.for_clickable("#missing", 0.05) is False

    @pytest.mark.asyncio
    async def test_clickable_false_when_element_detaches(self, fake_page, waits):
        fake_page.add("#stale", detached_error="Element is not attached to the DOM")
        assert await waits.for_clickable("#stale", 0.05) is False


class TestForAnyElement:
    @pytest.mark.asyncio
    async def test_returns_the_selector_that_appeared(self, fake_page, waits):
        fake_page.add(".second")
        assert await waits.for_any_element([".first", ".second"], 0.05) == ".second"

    @pytest.mark.asyncio
    async def test_none_when_nothing_appears(self, waits):
        assert await waits.for_any_element([".first", ".second"], 0.05) is None

    @pytest.mark.asyncio
    async def test_empty_list(self, waits):
        assert await waits.for_any_element([], 0.05) is None


class TestPageWaits:
    @pytest.mark.asyncio
    async def test_page_ready(self, fake_page, waits):
        assert await waits.for_page_ready(0.05) is True
        fake_page.ready = False
        assert await waits.for_page_ready(0.05) is False

    def test_page_ready_watches_every_spinner(self):
        for selector in SPINNER_SELECTORS:
            assert selector in LOADING_INDICATORS

    @pytest.mark.asyncio
    async def test_text(self, fake_page, waits):
        fake_page.body_text = "업로드 완료"
        assert await waits.for_text("업로드", 0.05) is True
        assert await waits.for_text("실패", 0.05) is False

    @pytest.mark.asyncio
    async def test_network_idle(self, fake_page, waits):
        assert await waits.for_network_idle(0.05) is True
        fake_page.network_idle = False
        assert await waits.for_network_idle(0.05) is False


class TestForDataTable:
    @pytest.mark.asyncio
    async def test_waits_out_spinner_then_finds_rows(self, fake_page, waits):
        fake_page.script_results[SPINNER_SCRIPT] = [True, True, False]
        fake_page.script_results[GRID_SCRIPT] = True

        assert await waits.for_data_table(1.0) is True
        spinner_checks = [s for s, _ in fake_page.evaluations if s == SPINNER_SCRIPT]
        assert len(spinner_checks) >= 3

    @pytest.mark.asyncio
    async def test_stabilizes_only_once(self, fake_page, waits):
        fake_page.script_results[GRID_SCRIPT] = [False, False, True]

        assert await waits.for_data_table(1.0) is True
        grid_checks = [s for s, _ in fake_page.evaluations if s == GRID_SCRIPT]
        assert len(grid_checks) == 3

    @pytest.mark.asyncio
    async def test_times_out_without_rows(self, fake_page, waits):
        assert await waits.for_data_table(0.1) is False

    @pytest.mark.asyncio
    async def test_default_timeout_from_settings(self, fake_page, waits):
        fake_page.script_results[SPINNER_SCRIPT] = True
        assert await waits.for_data_table() is False

    @pytest.mark.asyncio
    async def test_keeps_polling_through_navigation(self, fake_page, waits):
        fake_page.script_results[SPINNER_SCRIPT] = [
            PlaywrightError("Execution context was destroyed, most likely because of a navigation"),
            False,
        ]
        fake_page.script_results[GRID_SCRIPT] = True
        assert await waits.for_data_table(1.0) is True

    @pytest.mark.asyncio
    async def test_false_when_page_keeps_navigating(self, fake_page, waits):
        fake_page.script_results[SPINNER_SCRIPT] = PlaywrightError("Execution context was destroyed")
        assert await waits.for_data_table(0.2) is False

    @pytest.mark.asyncio
    async def test_grid_check_failure_is_retried(self, fake_page, waits):
        fake_page.script_results[GRID_SCRIPT] = [PlaywrightError("Target page has been closed"), True]
        assert await waits.for_data_table(1.0) is True
