"""
Estimate Pricing API Routes

POST /api/pricing/templates                          — create a pricing template
PUT  /api/pricing/templates/{id}/items               — upsert template items (formulas validated)
PUT  /api/pricing/estimates/{id}/template            — bind a template to an estimate
PUT  /api/pricing/estimates/{id}/measurements        — replace the measurement payload
POST /api/pricing/estimates/{id}/line-items          — regenerate line items only
POST /api/pricing/estimates/{id}/compute             — run takeoff + pricing, upsert snapshot
GET  /api/pricing/estimates/{id}                     — current snapshot + line items
"""
import logging
import uuid
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.api.deps import get_current_user, get_tenant_id, require_template_author
from app.models.orm_models import ComputedCostItem, PricingSnapshot, User
from app.services import estimate_pricing_service as pricing
from app.services.pricing_errors import (
    EstimateNotFound,
    FormulaError,
    AmountOutOfRange,
    InvalidMeasurementPayload,
    MeasurementsMissing,
    PricingError,
    PricingNotComputed,
    TemplateInactive,
    TemplateItemNotFound,
    TemplateNotBound,
    TemplateNotFound,
)
from app.services.pricing_resolver import DEFAULT_MODE, DEFAULT_TARGET_PCT

router = APIRouter(prefix="/api/pricing", tags=["Estimate Pricing"])
logger = logging.getLogger("roofing-pricing.routes")


# ── Pydantic Models ─────────────────────────────────────────────────────────

class ComplexityConfig(BaseModel):
    pitch_factor: Optional[Decimal] = Field(default=None, ge=0)
    stories_factor: Optional[Decimal] = Field(default=None, ge=0)
    tear_off_factor: Optional[Decimal] = Field(default=None, ge=0)


class LaborConfig(BaseModel):
    rate_per_square: Decimal = Field(default=Decimal("0"), ge=0)
    complexity: ComplexityConfig = Field(default_factory=ComplexityConfig)


class OverheadConfig(BaseModel):
    type: Literal["percent", "fixed", "both", "none"] = "none"
    percent: Decimal = Field(default=Decimal("0"), ge=0)
    fixed: Decimal = Field(default=Decimal("0"), ge=0)


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    labor: LaborConfig = Field(default_factory=LaborConfig)
    overhead: OverheadConfig = Field(default_factory=OverheadConfig)
    currency: str = Field(default="USD", pattern=r"^[A-Za-z]{3}$")


class TemplateItemIn(BaseModel):
    id: Optional[uuid.UUID] = None
    name: str = Field(min_length=1)
    unit: str = Field(min_length=1)
    waste_pct: Decimal = Field(default=Decimal("0"), ge=0, le=Decimal("9.9999"))
    unit_cost: Decimal = Field(default=Decimal("0"), ge=0, lt=Decimal("1E10"))
    formula: str
    sort_order: int = 0
    active: bool = True


class TemplateItemsUpsertRequest(BaseModel):
    items: List[TemplateItemIn]


class BindTemplateRequest(BaseModel):
    template_id: uuid.UUID


class MeasurementsRequest(BaseModel):
    payload: Dict[str, Union[Decimal, str, None]]


class ComputePricingRequest(BaseModel):
    mode: Literal["margin", "markup"] = DEFAULT_MODE
    target_pct: Decimal = Field(default=DEFAULT_TARGET_PCT, ge=0, le=1)
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Za-z]{3}$")


class CostItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    template_item_id: Optional[str]
    item_name: str
    unit: Optional[str]
    sort_order: int
    quantity: Decimal
    unit_cost: Decimal
    line_total: Decimal


class PricingSnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    estimate_id: str
    currency: str
    materials: Decimal
    labor: Decimal
    overhead: Decimal
    cost_pre_profit: Decimal
    mode: str
    margin_pct: Optional[Decimal]
    markup_pct: Optional[Decimal]
    sale_price: Decimal
    profit: Decimal


class PricingResponse(BaseModel):
    snapshot: PricingSnapshotOut
    items: List[CostItemOut]
    is_current: bool


# ── Helpers ─────────────────────────────────────────────────────────────────

_STATUS_BY_ERROR = (
    ((EstimateNotFound, TemplateNotFound, TemplateItemNotFound), status.HTTP_404_NOT_FOUND),
    ((TemplateNotBound, MeasurementsMissing, TemplateInactive, PricingNotComputed), status.HTTP_409_CONFLICT),
    ((FormulaError, InvalidMeasurementPayload, AmountOutOfRange), status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def _http_error(exc: PricingError) -> HTTPException:
    for error_types, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_types):
            break
    else:
        code = status.HTTP_400_BAD_REQUEST
    detail = {"error": type(exc).__name__, "message": exc.message}
    detail.update({k: v for k, v in exc.context.items() if v is not None})
    logger.info(f"Pricing request rejected ({code}): {exc.message}", extra={"error": type(exc).__name__})
    return HTTPException(status_code=code, detail=detail)


def _pricing_response(snapshot: PricingSnapshot, items: List[ComputedCostItem]) -> PricingResponse:
    return PricingResponse(
        snapshot=PricingSnapshotOut.model_validate(snapshot),
        items=[CostItemOut.model_validate(i) for i in items],
        is_current=all(i.generation_id == snapshot.generation_id for i in items),
    )


# ── Templates ───────────────────────────────────────────────────────────────

@router.post("/templates", status_code=status.HTTP_201_CREATED)
async def create_template(
    req: TemplateCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    author: User = Depends(require_template_author),
    db: AsyncSession = Depends(get_db),
):
    template = await pricing.create_template(
        db,
        tenant_id,
        req.name,
        labor=req.labor.model_dump(mode="json", exclude_none=True),
        overhead=req.overhead.model_dump(mode="json"),
        currency=req.currency,
    )
    return {"template_id": template.id}


@router.put("/templates/{template_id}/items")
async def upsert_template_items(
    template_id: uuid.UUID,
    req: TemplateItemsUpsertRequest,
    tenant_id: str = Depends(get_tenant_id),
    author: User = Depends(require_template_author),
    db: AsyncSession = Depends(get_db),
):
    items = [
        {**item.model_dump(exclude={"id"}), "id": str(item.id) if item.id else None}
        for item in req.items
    ]
    try:
        saved = await pricing.upsert_template_items(db, tenant_id, str(template_id), items)
    except PricingError as exc:
        raise _http_error(exc)
    return {"item_ids": [row.id for row in saved]}


# ── Estimates ───────────────────────────────────────────────────────────────

@router.put("/estimates/{estimate_id}/template", status_code=status.HTTP_204_NO_CONTENT)
async def bind_template(
    estimate_id: uuid.UUID,
    req: BindTemplateRequest,
    tenant_id: str = Depends(get_tenant_id),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await pricing.bind_template(
            db, tenant_id, str(estimate_id), str(req.template_id), bound_by=user.id
        )
    except PricingError as exc:
        raise _http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/estimates/{estimate_id}/measurements")
async def ingest_measurements(
    estimate_id: uuid.UUID,
    req: MeasurementsRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        row = await pricing.ingest_measurements(db, tenant_id, str(estimate_id), req.payload)
    except PricingError as exc:
        raise _http_error(exc)
    return {"estimate_id": row.estimate_id, "squares": row.squares}


@router.post("/estimates/{estimate_id}/line-items", response_model=List[CostItemOut])
async def recompute_line_items(
    estimate_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        rows = await pricing.recompute_line_items(db, tenant_id, str(estimate_id))
    except PricingError as exc:
        raise _http_error(exc)
    return [CostItemOut.model_validate(r) for r in rows]


@router.post("/estimates/{estimate_id}/compute", response_model=PricingResponse)
async def compute_pricing(
    estimate_id: uuid.UUID,
    req: ComputePricingRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        await pricing.compute_pricing(
            db, tenant_id, str(estimate_id),
            mode=req.mode, target_pct=req.target_pct, currency=req.currency,
        )
        snapshot, items = await pricing.get_pricing(db, tenant_id, str(estimate_id))
    except PricingError as exc:
        raise _http_error(exc)
    return _pricing_response(snapshot, items)


@router.get("/estimates/{estimate_id}", response_model=PricingResponse)
async def get_pricing(
    estimate_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        snapshot, items = await pricing.get_pricing(db, tenant_id, str(estimate_id))
    except PricingError as exc:
        raise _http_error(exc)
    return _pricing_response(snapshot, items)
