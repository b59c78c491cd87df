"""
Tests for tiered element resolution.
"""
import pytest
from playwright.async_api import Error as PlaywrightError

from ezvoucher.engine.errors import ConfigurationError, ElementNotFoundError
from ezvoucher.engine.resolver import (
    MARKER_ATTRIBUTE,
    ElementResolver,
    Tier,
    build_tier,
    load_targets,
)
from ezvoucher.engine.waits import SmartWait


def make_resolver(page, settings, targets) -> ElementResolver:
    return ElementResolver(page, SmartWait(page, settings), targets)


async def broken_strategy(ctx):
    raise PlaywrightError("Execution context was destroyed")


@pytest.fixture
def tiers():
    return [
        build_tier({"kind": "css", "name": "exact id", "timeout": 50, "selectors": ["#exact"]}),
        build_tier({"kind": "css", "name": "relaxed", "timeout": 50, "selectors": [".maybe", ".relaxed"]}),
        build_tier({"kind": "text", "name": "label text", "timeout": 50, "scope": "span.button-label",
                    "text": "업로드"}),
        build_tier({"kind": "scan", "name": "scan", "tags": "button", "input": "script",
                    "any": [{"attr": "text", "contains": "업로드"}]}),
    ]


class TestBuildTier:
    def test_css_defaults(self):
        tier = build_tier({"selectors": "#one"})
        assert tier.name == "css"
        assert tier.input_mode == "native"

    def test_input_mode_carried(self):
        tier = build_tier({"kind": "largest", "name": "largest input", "tags": "input", "input": "script"})
        assert tier.name == "largest input"
        assert tier.input_mode == "script"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ConfigurationError):
            build_tier({"kind": "xpath", "selectors": ["//input"]})


class TestResolve:
    @pytest.mark.asyncio
    async def test_first_tier_wins(self, fake_page, settings, tiers):
        fake_page.add("#exact")
        fake_page.add(".relaxed")
        resolution = await make_resolver(fake_page, settings, {"upload": tiers}).resolve("upload")
        assert resolution.tier == "exact id"
        assert resolution.selector == "#exact"

    @pytest.mark.asyncio
    async def test_falls_through_to_later_selector(self, fake_page, settings, tiers):
        fake_page.add(".relaxed")
        resolution = await make_resolver(fake_page, settings, {"upload": tiers}).resolve("upload")
        assert resolution.tier == "relaxed"
        assert resolution.selector == ".relaxed"

    @pytest.mark.asyncio
    async def test_text_tier(self, fake_page, settings, tiers):
        fake_page.add("span.button-label >> text=업로드")
        resolution = await make_resolver(fake_page, settings, {"upload": tiers}).resolve("upload")
        assert resolution.tier == "label text"

    @pytest.mark.asyncio
    async def test_scan_tier_marks_element(self, fake_page, settings, tiers):
        fake_page.scan_hits["button"] = fake_page.add("#hidden-upload")
        resolution = await make_resolver(fake_page, settings, {"upload": tiers}).resolve("upload")
        assert resolution.tier == "scan"
        assert resolution.input_mode == "script"
        assert resolution.selector.startswith(f'[{MARKER_ATTRIBUTE}="upload-')
        assert resolution.locator.element is fake_page.elements["#hidden-upload"]

    @pytest.mark.asyncio
    async def test_exhausted_tiers_raise_with_names(self, fake_page, settings, tiers):
        with pytest.raises(ElementNotFoundError) as exc_info:
            await make_resolver(fake_page, settings, {"upload": tiers}).resolve("upload")
        assert exc_info.value.tiers == ["exact id", "relaxed", "label text", "scan"]
        assert "Cannot locate upload" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_erroring_tier_only_moves_forward(self, fake_page, settings, tiers):
        fake_page.add(".relaxed")
        targets = {"upload": [Tier("broken", broken_strategy), *tiers]}
        resolution = await make_resolver(fake_page, settings, targets).resolve("upload")
        assert resolution.tier == "relaxed"

    @pytest.mark.asyncio
    async def test_unknown_target(self, fake_page, settings):
        with pytest.raises(ConfigurationError):
            await make_resolver(fake_page, settings, {}).resolve("nothing")


class TestCandidates:
    @pytest.mark.asyncio
    async def test_yields_every_hit_in_order(self, fake_page, settings, tiers):
        fake_page.add("#exact")
        fake_page.add(".relaxed")
        resolver = make_resolver(fake_page, settings, {"upload": tiers})
        found = [resolution.tier async for resolution in resolver.candidates("upload")]
        assert found == ["exact id", "relaxed"]


class TestTargetsFile:
    def test_every_target_compiles(self, workflows_dir):
        targets = load_targets(workflows_dir / "targets.yaml")
        assert "journal_description" in targets
        assert all(targets[name] for name in targets)

    def test_description_field_has_five_tiers(self, workflows_dir):
        tiers = load_targets(workflows_dir / "targets.yaml")["journal_description"]
        assert len(tiers) == 5
        assert [t.input_mode for t in tiers] == ["native", "native", "script", "script", "script"]
