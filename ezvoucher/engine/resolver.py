"""
Tiered element resolution.

A logical UI target (``"upload_button"``, ``"journal_description"``...) is described by an
ordered list of tiers. Each tier is an async strategy with the signature
``(ResolveContext) -> Resolution | None``. The resolver walks the tiers in order and stops
at the first hit. A tier that finds nothing, or that errors inside Playwright, only moves
the walk forward; running out of tiers raises ``ElementNotFoundError``.

Tiers are normally compiled from ``workflows/targets.yaml``:

    journal_description:
      - kind: css
        name: id selector
        timeout: 3000
        selectors: ['#kpc_..._Txt_input']
      - kind: scan
        name: description heuristic
        tags: 'input[type="text"], textarea'
        any: [{attr: placeholder, contains: 설명}]
        input: script
"""
import itertools
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

import yaml
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page

from ezvoucher.engine.errors import ConfigurationError, ElementNotFoundError
from ezvoucher.engine.waits import SmartWait
from ezvoucher.utils.logger import get_logger

MARKER_ATTRIBUTE = "data-ezv-target"
DEFAULT_TIER_TIMEOUT = 3.0

_marker_ids = itertools.count(1)

SCAN_SCRIPT = """({tags, all, any, closest, largest, visibleOnly, marker, token}) => {
    const visible = (el) => {
        const style = window.getComputedStyle(el);
        const rect = el.getBoundingClientRect();
        return style.display !== 'none' && style.visibility !== 'hidden'
            && rect.width > 0 && rect.height > 0;
    };
    const value = (el, attr) => attr === 'text'
        ? (el.textContent || '').trim()
        : (el.getAttribute(attr) || '');
    const matches = (el, cond) => {
        const actual = value(el, cond.attr);
        if (cond.equals !== undefined && cond.equals !== null) return actual.trim() === cond.equals;
        return actual.toLowerCase().includes(String(cond.contains).toLowerCase());
    };

    let found = Array.from(document.querySelectorAll(tags));
    if (visibleOnly) found = found.filter(visible);
    found = found.filter((el) => all.every((cond) => matches(el, cond)));
    if (any.length) found = found.filter((el) => any.some((cond) => matches(el, cond)));
    if (!found.length) return false;

    let el = found[0];
    if (largest) {
        el = found.reduce((best, cur) =>
            cur.offsetWidth * cur.offsetHeight > best.offsetWidth * best.offsetHeight ? cur : best);
    }
    if (closest) el = el.closest(closest) || el;
    el.setAttribute(marker, token);
    return true;
}"""


@dataclass
class ResolveContext:
    page: Page
    target: str
    waits: SmartWait


@dataclass
class Resolution:
    target: str
    tier: str
    locator: Locator
    selector: str | None = None
    input_mode: str = "native"


Strategy = Callable[[ResolveContext], Awaitable[Resolution | None]]


@dataclass
class Tier:
    name: str
    strategy: Strategy
    input_mode: str = "native"
    description: dict = field(default_factory=dict)


def _seconds(spec: dict, default: float = DEFAULT_TIER_TIMEOUT) -> float:
    if "timeout" in spec:
        return spec["timeout"] / 1000
    return default


def css_strategy(selectors: list[str], timeout: float = DEFAULT_TIER_TIMEOUT,
                 state: str = "visible", name: str = "css") -> Strategy:
    async def strategy(ctx: ResolveContext) -> Resolution | None:
        for selector in selectors:
            if state == "attached":
                found = await ctx.waits.for_attached(selector, timeout)
            else:
                found = await ctx.waits.for_element(selector, timeout)
            if found:
                return Resolution(ctx.target, name, ctx.page.locator(selector).first, selector)
        return None
    return strategy


def text_strategy(scope: str, text: str, timeout: float = DEFAULT_TIER_TIMEOUT,
                  exact: bool = False, name: str = "text") -> Strategy:
    pattern = re.compile(rf"^\s*{re.escape(text)}\s*$") if exact else text

    async def strategy(ctx: ResolveContext) -> Resolution | None:
        locator = ctx.page.locator(scope, has_text=pattern).first
        if await ctx.waits.for_clickable(locator, timeout):
            return Resolution(ctx.target, name, locator, f"{scope} >> text={text}")
        return None
    return strategy


def scan_strategy(tags: str, all_of: list[dict] | None = None, any_of: list[dict] | None = None,
                  closest: str | None = None, largest: bool = False, visible_only: bool = True,
                  name: str = "scan") -> Strategy:
    """Scripted full-document scan that tags the winning element for native follow-up."""
    async def strategy(ctx: ResolveContext) -> Resolution | None:
        token = f"{ctx.target}-{next(_marker_ids)}"
        found = await ctx.page.evaluate(SCAN_SCRIPT, {
            "tags": tags,
            "all": all_of or [],
            "any": any_of or [],
            "closest": closest,
            "largest": largest,
            "visibleOnly": visible_only,
            "marker": MARKER_ATTRIBUTE,
            "token": token,
        })
        if not found:
            return None
        selector = f'[{MARKER_ATTRIBUTE}="{token}"]'
        return Resolution(ctx.target, name, ctx.page.locator(selector).first, selector)
    return strategy


def build_tier(spec: dict) -> Tier:
    """Compile one YAML tier description into a strategy."""
    kind = spec.get("kind", "css")
    name = spec.get("name", kind)
    input_mode = spec.get("input", "native")

    if kind == "css":
        selectors = spec.get("selectors") or []
        if isinstance(selectors, str):
            selectors = [selectors]
        strategy = css_strategy(selectors, _seconds(spec), spec.get("state", "visible"), name)
    elif kind == "text":
        strategy = text_strategy(spec["scope"], spec["text"], _seconds(spec), spec.get("exact", False), name)
    elif kind in ("scan", "largest"):
        strategy = scan_strategy(
            spec["tags"],
            all_of=spec.get("all"),
            any_of=spec.get("any"),
            closest=spec.get("closest"),
            largest=kind == "largest" or spec.get("largest", False),
            visible_only=spec.get("visible_only", True),
            name=name,
        )
    else:
        raise ConfigurationError(f"Unknown locator tier kind: {kind}")

    return Tier(name=name, strategy=strategy, input_mode=input_mode, description=dict(spec))


def load_targets(path: Path) -> dict[str, list[Tier]]:
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    targets = raw.get("targets", raw)
    return {name: [build_tier(tier) for tier in tiers] for name, tiers in targets.items()}


class ElementResolver:
    def __init__(self, page: Page, waits: SmartWait, targets: dict[str, list[Tier]] | None = None):
        self.page = page
        self.waits = waits
        self.targets = targets or {}
        self.log = get_logger("ElementResolver")

    def tiers_for(self, target: str) -> list[Tier]:
        if target not in self.targets:
            raise ConfigurationError(f"No locator tiers defined for target '{target}'")
        return self.targets[target]

    async def _attempt(self, tier: Tier, ctx: ResolveContext) -> Resolution | None:
        try:
            resolution = await tier.strategy(ctx)
        except PlaywrightError as e:
            self.log.debug("Tier errored, moving on", target=ctx.target, tier=tier.name, error=str(e))
            return None
        if resolution is None:
            self.log.debug("Tier exhausted", target=ctx.target, tier=tier.name)
            return None
        resolution.input_mode = tier.input_mode
        return resolution

    async def candidates(self, target: str, tiers: list[Tier] | None = None) -> AsyncIterator[Resolution]:
        """Yield a resolution from every tier that finds something, in tier order."""
        ctx = ResolveContext(self.page, target, self.waits)
        for tier in tiers if tiers is not None else self.tiers_for(target):
            resolution = await self._attempt(tier, ctx)
            if resolution is not None:
                yield resolution

    async def resolve(self, target: str, tiers: list[Tier] | None = None) -> Resolution:
        tiers = tiers if tiers is not None else self.tiers_for(target)
        ctx = ResolveContext(self.page, target, self.waits)
        for tier in tiers:
            resolution = await self._attempt(tier, ctx)
            if resolution is not None:
                self.log.debug("Resolved target", target=target, tier=tier.name, selector=resolution.selector)
                return resolution
        raise ElementNotFoundError(target, [tier.name for tier in tiers])
