"""
TakeoffEngine — converts a measurement payload into priced line items.

Covers:
  - per-item quantity from the item's formula, with waste factor and a zero floor
  - line totals rounded to currency precision
  - materials total, and the formula variables the payload does not supply
  - storage-range guards: oversized quantities become 0, oversized money raises
  - labor from measured squares, rate per square and complexity multipliers

Everything here is pure computation over Decimals; persistence of the
resulting line items lives in estimate_pricing_service.
"""

import decimal
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, List, Mapping, Optional

from app.services.formula_engine import coerce_number, evaluate, formula_variables
from app.services.pricing_errors import AmountOutOfRange, MalformedFormula

logger = logging.getLogger("roofing-pricing.takeoff")

_ZERO = Decimal("0")
_ONE = Decimal("1")
_CENT = Decimal("0.01")
_QTY_STEP = Decimal("0.0001")

# Magnitudes the Numeric(14,4) quantity/squares and Numeric(12,2) money columns cannot hold.
QUANTITY_LIMIT = Decimal("1E10")
MONEY_LIMIT = Decimal("1E10")

# Measurement field carrying the total roof area in square feet.
ROOF_AREA_FIELD = "roof_area_sqft"
SQFT_PER_SQUARE = Decimal("100")

# Complexity multipliers read from template.labor["complexity"].
COMPLEXITY_FACTORS = ("pitch_factor", "stories_factor", "tear_off_factor")


def _quantize(value: Decimal, step: Decimal) -> Decimal:
    if not value.is_finite():
        return _ZERO
    # Widen precision so large values round instead of raising InvalidOperation.
    with decimal.localcontext() as ctx:
        ctx.prec = max(ctx.prec, value.adjusted() + 8)
        return value.quantize(step, rounding=ROUND_HALF_UP)


def round_money(value: Decimal) -> Decimal:
    return _quantize(value, _CENT)


def round_ratio(value: Decimal) -> Decimal:
    return _quantize(value, _QTY_STEP)


def derive_squares(payload: Optional[Mapping[str, Any]]) -> Decimal:
    """Roofing squares (100 sq ft each) from the payload's roof area."""
    area = _ZERO
    for key, value in (payload or {}).items():
        if str(key).lower() == ROOF_AREA_FIELD:
            area = coerce_number(value)
            break
    return round_ratio(area / SQFT_PER_SQUARE)


@dataclass
class TakeoffLine:
    template_item_id: Optional[str]
    item_name: str
    unit: str
    sort_order: int
    quantity: Decimal
    unit_cost: Decimal
    line_total: Decimal


@dataclass
class TakeoffResult:
    lines: List[TakeoffLine] = field(default_factory=list)
    materials_total: Decimal = _ZERO
    labor_total: Decimal = _ZERO
    squares: Decimal = _ZERO
    # Formula identifiers with no value in the measurement payload (evaluated as 0).
    missing_variables: List[str] = field(default_factory=list)


def check_money(label: str, value: Decimal) -> Decimal:
    """Raise AmountOutOfRange when ``value`` does not fit a money column."""
    if abs(value) >= MONEY_LIMIT:
        raise AmountOutOfRange(
            f"{label} of {value} exceeds the largest storable amount",
            field=label,
            value=str(value),
        )
    return value


def item_quantity(formula: str, measurements: Mapping[str, Any], waste_pct: Any) -> Decimal:
    """
    quantity = max(0, evaluate(formula) * (1 + waste_pct))

    A quantity too large for the quantity column is treated like any other
    indeterminate formula result and becomes 0.
    """
    raw = evaluate(formula, measurements)
    try:
        quantity = raw * (_ONE + coerce_number(waste_pct))
    except ArithmeticError:
        quantity = QUANTITY_LIMIT
    if quantity >= QUANTITY_LIMIT:
        logger.warning(
            "Quantity out of range, priced as 0",
            extra={"formula": formula, "quantity": str(quantity)},
        )
        return _ZERO
    return quantity if quantity > _ZERO else _ZERO


def labor_total(squares: Any, labor_config: Optional[Mapping[str, Any]]) -> Decimal:
    """
    labor = round(squares * rate_per_square * pitch * stories * tear_off, 2)

    A missing rate counts as 0; missing or empty multipliers count as 1.
    Raises AmountOutOfRange if the result cannot be stored.
    """
    config = labor_config or {}
    rate = coerce_number(config.get("rate_per_square"))
    complexity = config.get("complexity") or {}

    try:
        total = coerce_number(squares) * rate
        for factor in COMPLEXITY_FACTORS:
            value = complexity.get(factor)
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            total *= coerce_number(value)
    except ArithmeticError:
        total = MONEY_LIMIT
    return check_money("labor", round_money(total))


def _sort_key(item):
    return (item.sort_order or 0, item.name or "")


def _missing_variables(formula: str, present: set) -> List[str]:
    try:
        names = formula_variables(formula or "")
    except MalformedFormula:
        return []
    return [name for name in names if name not in present]


def run_takeoff(
    items: Iterable[Any],
    measurements: Mapping[str, Any],
    labor_config: Optional[Mapping[str, Any]] = None,
    squares: Optional[Decimal] = None,
) -> TakeoffResult:
    """
    Evaluate every active template item against ``measurements``.

    ``items`` are TemplateItem-like objects (id, name, unit, waste_pct,
    unit_cost, formula, sort_order, active).  Inactive items are skipped;
    the rest are processed in sort_order.  A line total too large to store
    raises AmountOutOfRange.
    """
    if squares is None:
        squares = derive_squares(measurements)

    result = TakeoffResult(squares=squares)
    active = sorted((i for i in items if i.active), key=_sort_key)
    present = {str(key).lower() for key, value in (measurements or {}).items() if value is not None}

    for item in active:
        quantity = item_quantity(item.formula, measurements, item.waste_pct)
        unit_cost = coerce_number(item.unit_cost)
        try:
            line_total = round_money(quantity * unit_cost)
        except ArithmeticError:
            line_total = MONEY_LIMIT
        check_money(f"line total for {item.name!r}", line_total)
        result.lines.append(TakeoffLine(
            template_item_id=item.id,
            item_name=item.name,
            unit=item.unit,
            sort_order=item.sort_order or 0,
            quantity=quantity,
            unit_cost=unit_cost,
            line_total=line_total,
        ))
        result.materials_total += line_total
        for name in _missing_variables(item.formula, present):
            if name not in result.missing_variables:
                result.missing_variables.append(name)

    result.labor_total = labor_total(squares, labor_config)
    return result
