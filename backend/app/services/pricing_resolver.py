"""
PricingResolver — overhead, pre-profit cost and sale price resolution.

Two profit models are supported:

  margin   sale = cost / (1 - t)       profit is t of the sale price
  markup   sale = cost * (1 + t)       profit is t of the cost

Both report the resolved margin_pct *and* markup_pct so a snapshot can be read
under either model.  Money is rounded half-up to 2 decimals, percentages to 4.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional

from app.services.formula_engine import coerce_number
from app.services.takeoff_engine import MONEY_LIMIT, check_money, round_money, round_ratio


MODE_MARGIN = "margin"
MODE_MARKUP = "markup"
PRICING_MODES = (MODE_MARGIN, MODE_MARKUP)

OVERHEAD_PERCENT = "percent"
OVERHEAD_FIXED = "fixed"
OVERHEAD_BOTH = "both"
OVERHEAD_NONE = "none"
OVERHEAD_TYPES = (OVERHEAD_PERCENT, OVERHEAD_FIXED, OVERHEAD_BOTH, OVERHEAD_NONE)

DEFAULT_MODE: str = os.getenv("PRICING_DEFAULT_MODE", MODE_MARGIN).lower()
DEFAULT_TARGET_PCT: Decimal = Decimal(os.getenv("PRICING_DEFAULT_TARGET_PCT", "0.30"))
DEFAULT_CURRENCY: str = os.getenv("PRICING_DEFAULT_CURRENCY", "USD").upper()

_ZERO = Decimal("0")
_ONE = Decimal("1")

# markup_pct is stored as Numeric(8,4); larger markups are reported as None.
MARKUP_PCT_LIMIT = Decimal("10000")


@dataclass
class PriceResolution:
    mode: str
    cost_pre_profit: Decimal
    sale_price: Decimal
    profit: Decimal
    margin_pct: Optional[Decimal]
    markup_pct: Optional[Decimal]


@dataclass
class CostBreakdown:
    materials: Decimal
    labor: Decimal
    overhead: Decimal
    cost_pre_profit: Decimal


def resolve_overhead(
    materials: Decimal,
    labor: Decimal,
    overhead_config: Optional[Mapping[str, Any]],
) -> Decimal:
    """
    Overhead from the template's overhead config.

    ``type`` percent/both adds round((materials + labor) * percent, 2);
    ``type`` fixed/both adds round(fixed, 2).  Anything else is 0.
    """
    config = overhead_config or {}
    kind = str(config.get("type") or OVERHEAD_NONE).lower()
    overhead = _ZERO

    try:
        if kind in (OVERHEAD_PERCENT, OVERHEAD_BOTH):
            percent = coerce_number(config.get("percent"))
            overhead += round_money((materials + labor) * percent)
        if kind in (OVERHEAD_FIXED, OVERHEAD_BOTH):
            overhead += round_money(coerce_number(config.get("fixed")))
    except ArithmeticError:
        overhead = MONEY_LIMIT
    return overhead


def build_cost(
    materials: Decimal,
    labor: Decimal,
    overhead_config: Optional[Mapping[str, Any]],
) -> CostBreakdown:
    materials = round_money(materials)
    labor = round_money(labor)
    overhead = resolve_overhead(materials, labor, overhead_config)
    return CostBreakdown(
        materials=check_money("materials", materials),
        labor=check_money("labor", labor),
        overhead=check_money("overhead", overhead),
        cost_pre_profit=check_money("cost_pre_profit", round_money(materials + labor + overhead)),
    )


def normalize_mode(mode: Optional[str]) -> str:
    """Lower-cased pricing mode; ValueError unless it is margin or markup."""
    mode = (mode or "").lower()
    if mode not in PRICING_MODES:
        raise ValueError(f"Unknown pricing mode {mode!r}; expected one of {PRICING_MODES}")
    return mode


def resolve_price(cost_pre_profit: Decimal, mode: str, target_pct: Any) -> PriceResolution:
    """
    Derive sale price and profit from ``cost_pre_profit``.

    margin mode with target_pct >= 1 is degenerate: the sale price equals the
    cost and markup_pct is None; so is a markup_pct of MARKUP_PCT_LIMIT or
    more.  markup mode with a zero sale price leaves margin_pct as None.
    Raises AmountOutOfRange if the sale price cannot be stored.
    """
    mode = normalize_mode(mode)
    cost = round_money(coerce_number(cost_pre_profit))
    target = coerce_number(target_pct)

    if mode == MODE_MARGIN:
        remainder = _ONE - target
        if remainder <= _ZERO:
            sale = cost
            markup = None
        else:
            sale = round_money(cost / remainder)
            check_money("sale_price", sale)
            markup = round_ratio(target / remainder)
            if markup >= MARKUP_PCT_LIMIT:
                markup = None
        profit = round_money(sale - cost)
        return PriceResolution(
            mode=mode,
            cost_pre_profit=cost,
            sale_price=sale,
            profit=profit,
            margin_pct=round_ratio(target),
            markup_pct=markup,
        )

    sale = round_money(cost * (_ONE + target))
    check_money("sale_price", sale)
    profit = round_money(sale - cost)
    margin = round_ratio(profit / sale) if sale != _ZERO else None
    return PriceResolution(
        mode=mode,
        cost_pre_profit=cost,
        sale_price=sale,
        profit=profit,
        margin_pct=margin,
        markup_pct=round_ratio(target),
    )
