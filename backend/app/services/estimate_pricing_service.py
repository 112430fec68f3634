"""
Estimate pricing service — persistence-facing operations of the pricing engine.

Every operation takes the caller's ``tenant_id`` explicitly and runs inside
the caller's AsyncSession transaction; committing is the caller's job (the
FastAPI ``get_db`` dependency commits on success and rolls back on error).

Operations that write per-estimate rows first take a per-estimate lock so two
recomputations for the same estimate cannot interleave:

  - PostgreSQL: ``pg_advisory_xact_lock`` keyed by the estimate id,
    released at commit/rollback
  - other dialects: ``SELECT ... FOR UPDATE`` on the estimate row

Line items are replaced by generation: the new generation is inserted, then
every older generation for the estimate is deleted, and the pricing snapshot
records the generation it was computed from.  All of it commits together.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.orm_models import (
    ComputedCostItem,
    Estimate,
    EstimateBinding,
    EstimateMeasurement,
    PricingSnapshot,
    Template,
    TemplateItem,
    gen_uuid,
)
from app.services.formula_engine import coerce_number, normalize_and_check
from app.services.perf_monitor import timed_operation
from app.services.pricing_errors import (
    EstimateNotFound,
    FormulaError,
    InvalidMeasurementPayload,
    MeasurementsMissing,
    PricingNotComputed,
    TemplateInactive,
    TemplateItemNotFound,
    TemplateNotBound,
    TemplateNotFound,
)
from app.services.pricing_resolver import (
    DEFAULT_CURRENCY,
    DEFAULT_MODE,
    DEFAULT_TARGET_PCT,
    build_cost,
    normalize_mode,
    resolve_price,
)
from app.services.takeoff_engine import (
    QUANTITY_LIMIT,
    TakeoffResult,
    derive_squares,
    round_money,
    round_ratio,
    run_takeoff,
)

logger = logging.getLogger("roofing-pricing.service")

TEMPLATE_ACTIVE = "active"
_LOCK_NAMESPACE = "estimate-pricing"
_ZERO = Decimal("0")
_ONE = Decimal("1")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Lookups and locking
# ---------------------------------------------------------------------------

async def _get_estimate(session: AsyncSession, tenant_id: str, estimate_id: str) -> Estimate:
    result = await session.execute(
        select(Estimate).where(Estimate.id == estimate_id, Estimate.tenant_id == tenant_id)
    )
    estimate = result.scalar_one_or_none()
    if estimate is None:
        raise EstimateNotFound(f"Estimate {estimate_id} not found", estimate_id=estimate_id)
    return estimate


async def _get_template(session: AsyncSession, tenant_id: str, template_id: str) -> Template:
    result = await session.execute(
        select(Template).where(Template.id == template_id, Template.tenant_id == tenant_id)
    )
    template = result.scalar_one_or_none()
    if template is None:
        raise TemplateNotFound(f"Template {template_id} not found", template_id=template_id)
    return template


async def lock_estimate(session: AsyncSession, estimate_id: str) -> None:
    """Serialize writers of one estimate until the current transaction ends."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtextextended(:key, 0))"),
            {"key": f"{_LOCK_NAMESPACE}:{estimate_id}"},
        )
    else:
        await session.execute(
            select(Estimate.id).where(Estimate.id == estimate_id).with_for_update()
        )


# ---------------------------------------------------------------------------
# Template authoring
# ---------------------------------------------------------------------------

async def create_template(
    session: AsyncSession,
    tenant_id: str,
    name: str,
    labor: Optional[Mapping[str, Any]] = None,
    overhead: Optional[Mapping[str, Any]] = None,
    currency: Optional[str] = None,
) -> Template:
    template = Template(
        id=gen_uuid(),
        tenant_id=tenant_id,
        name=name,
        labor=dict(labor or {}),
        overhead=dict(overhead or {}),
        currency=(currency or DEFAULT_CURRENCY).upper(),
        status=TEMPLATE_ACTIVE,
    )
    session.add(template)
    await session.flush()
    logger.info("Template created", extra={"template_id": template.id, "tenant_id": tenant_id})
    return template


async def upsert_template_items(
    session: AsyncSession,
    tenant_id: str,
    template_id: str,
    items: Sequence[Mapping[str, Any]],
) -> List[TemplateItem]:
    """
    Insert or update template items.

    Items with an ``id`` belonging to this template are updated in place;
    items without one (or with an unseen id) are inserted.  Every formula is
    validated before anything is written, so one bad formula rejects the
    whole batch.
    """
    await _get_template(session, tenant_id, template_id)

    normalized: List[str] = []
    for index, item in enumerate(items):
        try:
            normalized.append(normalize_and_check(item.get("formula")))
        except FormulaError as exc:
            exc.context.setdefault("item_index", index)
            exc.context.setdefault("item_name", item.get("name"))
            raise

    saved: List[TemplateItem] = []
    for item, formula in zip(items, normalized):
        item_id = item.get("id")
        row = await session.get(TemplateItem, str(item_id)) if item_id else None
        if row is not None and row.template_id != template_id:
            raise TemplateItemNotFound(
                f"Template item {item_id} does not belong to template {template_id}",
                template_item_id=str(item_id),
            )
        if row is None:
            row = TemplateItem(id=str(item_id) if item_id else gen_uuid(), template_id=template_id)
            session.add(row)

        row.name = item["name"]
        row.unit = item["unit"]
        row.waste_pct = coerce_number(item.get("waste_pct"))
        row.unit_cost = coerce_number(item.get("unit_cost"))
        row.formula = formula
        row.sort_order = int(item.get("sort_order") or 0)
        row.active = True if item.get("active") is None else bool(item.get("active"))
        row.updated_at = _now()
        saved.append(row)

    await session.flush()
    logger.info(
        "Template items upserted",
        extra={"template_id": template_id, "item_count": len(saved)},
    )
    return saved


# ---------------------------------------------------------------------------
# Estimate inputs
# ---------------------------------------------------------------------------

async def bind_template(
    session: AsyncSession,
    tenant_id: str,
    estimate_id: str,
    template_id: str,
    bound_by: Optional[str] = None,
) -> EstimateBinding:
    estimate = await _get_estimate(session, tenant_id, estimate_id)
    template = await _get_template(session, tenant_id, template_id)
    if template.status != TEMPLATE_ACTIVE:
        raise TemplateInactive(
            f"Template {template_id} is {template.status}; only active templates can be bound",
            template_id=template_id,
        )

    await lock_estimate(session, estimate.id)
    binding = await session.get(EstimateBinding, estimate.id)
    if binding is None:
        binding = EstimateBinding(estimate_id=estimate.id, tenant_id=tenant_id)
        session.add(binding)
    binding.template_id = template.id
    binding.bound_by = bound_by
    binding.bound_at = _now()
    await session.flush()

    logger.info(
        "Template bound",
        extra={"estimate_id": estimate.id, "template_id": template.id},
    )
    return binding


def _clean_payload(payload: Any) -> Dict[str, Any]:
    """
    Flat map of field -> number | numeric string | None, JSON-safe.

    Values must be finite and smaller in magnitude than QUANTITY_LIMIT so
    derived squares and quantities fit their columns.
    """
    if not isinstance(payload, Mapping):
        raise InvalidMeasurementPayload("Measurement payload must be an object of numeric fields")

    cleaned: Dict[str, Any] = {}
    for key, value in payload.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            cleaned[str(key)] = None
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
            raise InvalidMeasurementPayload(
                f"Measurement {key!r} must be numeric, got {type(value).__name__}",
                field=str(key),
            )
        try:
            number = Decimal(value.strip() if isinstance(value, str) else str(value))
        except ArithmeticError:
            raise InvalidMeasurementPayload(
                f"Measurement {key!r} is not a number: {value!r}", field=str(key)
            )
        if not number.is_finite() or abs(number) >= QUANTITY_LIMIT:
            raise InvalidMeasurementPayload(
                f"Measurement {key!r} is out of range: {value!r}", field=str(key)
            )
        cleaned[str(key)] = str(value) if isinstance(value, Decimal) else value
    return cleaned


async def ingest_measurements(
    session: AsyncSession,
    tenant_id: str,
    estimate_id: str,
    payload: Mapping[str, Any],
) -> EstimateMeasurement:
    """Replace the estimate's measurement payload wholesale."""
    cleaned = _clean_payload(payload)
    estimate = await _get_estimate(session, tenant_id, estimate_id)

    await lock_estimate(session, estimate.id)
    row = await session.get(EstimateMeasurement, estimate.id)
    if row is None:
        row = EstimateMeasurement(estimate_id=estimate.id, tenant_id=tenant_id)
        session.add(row)
    row.payload = cleaned
    row.squares = derive_squares(cleaned)
    row.updated_at = _now()
    await session.flush()

    logger.info(
        "Measurements ingested",
        extra={"estimate_id": estimate.id, "field_count": len(cleaned)},
    )
    return row


# ---------------------------------------------------------------------------
# Takeoff + pricing
# ---------------------------------------------------------------------------

async def _run_takeoff(
    session: AsyncSession, estimate: Estimate
) -> Tuple[Template, TakeoffResult]:
    """Read-only takeoff; the caller must already hold the estimate lock."""
    binding = await session.get(EstimateBinding, estimate.id)
    if binding is None:
        raise TemplateNotBound(
            f"No template bound to estimate {estimate.id}", estimate_id=estimate.id
        )
    measurement = await session.get(EstimateMeasurement, estimate.id)
    if measurement is None:
        raise MeasurementsMissing(
            f"Measurements missing for estimate {estimate.id}", estimate_id=estimate.id
        )

    template = await session.get(Template, binding.template_id)
    result = await session.execute(
        select(TemplateItem)
        .where(TemplateItem.template_id == binding.template_id, TemplateItem.active.is_(True))
        .order_by(TemplateItem.sort_order, TemplateItem.name)
    )
    template_items = list(result.scalars().all())

    takeoff = run_takeoff(
        template_items,
        measurement.payload or {},
        labor_config=template.labor,
        squares=measurement.squares,
    )
    if takeoff.missing_variables:
        logger.warning(
            "Formula variables missing from measurements; evaluated as 0",
            extra={"estimate_id": estimate.id, "variables": takeoff.missing_variables},
        )
    return template, takeoff


async def _replace_line_items(
    session: AsyncSession, estimate: Estimate, takeoff: TakeoffResult
) -> Tuple[List[ComputedCostItem], str]:
    """Insert a new generation of line items, then delete every older one."""
    generation_id = gen_uuid()
    computed_at = _now()
    rows = [
        ComputedCostItem(
            id=gen_uuid(),
            estimate_id=estimate.id,
            template_item_id=line.template_item_id,
            generation_id=generation_id,
            item_name=line.item_name,
            unit=line.unit,
            sort_order=line.sort_order,
            quantity=round_ratio(line.quantity),
            unit_cost=round_money(line.unit_cost),
            line_total=line.line_total,
            computed_at=computed_at,
        )
        for line in takeoff.lines
    ]
    session.add_all(rows)
    await session.flush()
    await session.execute(
        delete(ComputedCostItem).where(
            ComputedCostItem.estimate_id == estimate.id,
            ComputedCostItem.generation_id != generation_id,
        )
    )
    return rows, generation_id


@timed_operation("recompute_line_items")
async def recompute_line_items(
    session: AsyncSession, tenant_id: str, estimate_id: str
) -> List[ComputedCostItem]:
    """Regenerate the estimate's line items from its bound template."""
    estimate = await _get_estimate(session, tenant_id, estimate_id)
    await lock_estimate(session, estimate.id)
    _, takeoff = await _run_takeoff(session, estimate)
    rows, generation_id = await _replace_line_items(session, estimate, takeoff)

    logger.info(
        "Line items recomputed",
        extra={
            "estimate_id": estimate.id,
            "generation_id": generation_id,
            "item_count": len(rows),
            "materials_total": str(takeoff.materials_total),
        },
    )
    return rows


@timed_operation("compute_pricing")
async def compute_pricing(
    session: AsyncSession,
    tenant_id: str,
    estimate_id: str,
    mode: str = DEFAULT_MODE,
    target_pct: Any = DEFAULT_TARGET_PCT,
    currency: Optional[str] = None,
) -> PricingSnapshot:
    """
    Run the takeoff, resolve overhead and profit, and upsert the snapshot.

    ``mode`` and ``target_pct`` (within [0, 1]) are checked before anything
    is read or written; every amount is resolved before the line items are
    replaced.  ``currency`` defaults to the bound template's currency.
    """
    mode = normalize_mode(mode)
    target = coerce_number(target_pct)
    if not _ZERO <= target <= _ONE:
        raise ValueError(f"target_pct must be within [0, 1], got {target_pct!r}")

    estimate = await _get_estimate(session, tenant_id, estimate_id)
    await lock_estimate(session, estimate.id)
    template, takeoff = await _run_takeoff(session, estimate)

    cost = build_cost(takeoff.materials_total, takeoff.labor_total, template.overhead)
    price = resolve_price(cost.cost_pre_profit, mode, target)
    rows, generation_id = await _replace_line_items(session, estimate, takeoff)

    snapshot = await session.get(PricingSnapshot, estimate.id)
    if snapshot is None:
        snapshot = PricingSnapshot(estimate_id=estimate.id, tenant_id=tenant_id)
        session.add(snapshot)
    snapshot.generation_id = generation_id
    snapshot.currency = (currency or template.currency or DEFAULT_CURRENCY).upper()
    snapshot.materials = cost.materials
    snapshot.labor = cost.labor
    snapshot.overhead = cost.overhead
    snapshot.cost_pre_profit = cost.cost_pre_profit
    snapshot.mode = price.mode
    snapshot.margin_pct = price.margin_pct
    snapshot.markup_pct = price.markup_pct
    snapshot.sale_price = price.sale_price
    snapshot.profit = price.profit
    snapshot.computed_at = _now()
    await session.flush()

    logger.info(
        "Pricing computed",
        extra={
            "estimate_id": estimate.id,
            "generation_id": generation_id,
            "mode": price.mode,
            "item_count": len(rows),
            "cost_pre_profit": str(cost.cost_pre_profit),
            "sale_price": str(price.sale_price),
        },
    )
    return snapshot


async def get_pricing(
    session: AsyncSession, tenant_id: str, estimate_id: str
) -> Tuple[PricingSnapshot, List[ComputedCostItem]]:
    """Current snapshot plus the estimate's current line items."""
    estimate = await _get_estimate(session, tenant_id, estimate_id)
    snapshot = await session.get(PricingSnapshot, estimate.id)
    if snapshot is None:
        raise PricingNotComputed(
            f"Pricing not yet computed for estimate {estimate.id}", estimate_id=estimate.id
        )
    result = await session.execute(
        select(ComputedCostItem)
        .where(ComputedCostItem.estimate_id == estimate.id)
        .order_by(ComputedCostItem.sort_order, ComputedCostItem.item_name)
    )
    return snapshot, list(result.scalars().all())
