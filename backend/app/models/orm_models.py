"""ORM Models for the roofing estimate pricing engine — SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy import (
    JSON, String, Text, Boolean, Integer, Numeric, DateTime,
    ForeignKey, Index, Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# JSONB on PostgreSQL, plain JSON elsewhere
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


# ── TENANTS ──────────────────────────────────────────────────────────────────
class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    users: Mapped[list["User"]] = relationship("User", back_populates="tenant")


# ── AUTH ──────────────────────────────────────────────────────────────────────
class Role(Base):
    __tablename__ = "roles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    users: Mapped[list["User"]] = relationship("User", back_populates="role")


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[Optional[str]] = mapped_column(Uuid(as_uuid=False), ForeignKey("tenants.id"))
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    role_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("roles.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    tenant: Mapped[Optional["Tenant"]] = relationship("Tenant", back_populates="users")
    role: Mapped[Optional["Role"]] = relationship("Role", back_populates="users")


# ── ESTIMATES ─────────────────────────────────────────────────────────────────
class Estimate(Base):
    __tablename__ = "estimates"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("tenants.id"), nullable=False, index=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(50), default="Draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ── TEMPLATES ─────────────────────────────────────────────────────────────────
class Template(Base):
    """
    Manager-authored pricing blueprint.

    labor:    {"rate_per_square": 85.0,
               "complexity": {"pitch_factor": 1.1, "stories_factor": 1.0, "tear_off_factor": 1.2}}
    overhead: {"type": "percent" | "fixed" | "both" | "none", "percent": 0.10, "fixed": 250}
    """
    __tablename__ = "templates"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("tenants.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    labor: Mapped[dict] = mapped_column(JSONPayload, nullable=False, default=dict)
    overhead: Mapped[dict] = mapped_column(JSONPayload, nullable=False, default=dict)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")  # active | archived
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    items: Mapped[list["TemplateItem"]] = relationship(
        "TemplateItem", back_populates="template", cascade="all, delete-orphan",
        order_by="TemplateItem.sort_order",
    )


class TemplateItem(Base):
    __tablename__ = "template_items"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    template_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("templates.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str] = mapped_column(String(50), nullable=False)
    waste_pct: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False, default=Decimal("0"))
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    formula: Mapped[str] = mapped_column(Text, nullable=False)  # normalized (lower-case, trimmed)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    template: Mapped["Template"] = relationship("Template", back_populates="items")
    __table_args__ = (Index("ix_template_items_template_sort", "template_id", "sort_order"),)


# ── PER-ESTIMATE INPUTS ──────────────────────────────────────────────────────
class EstimateMeasurement(Base):
    """Latest measurement payload for an estimate; replaced on every ingest."""
    __tablename__ = "estimate_measurements"
    estimate_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("estimates.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSONPayload, nullable=False)
    squares: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EstimateBinding(Base):
    """The one template currently bound to an estimate."""
    __tablename__ = "estimate_bindings"
    estimate_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("estimates.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False, index=True)
    template_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("templates.id", ondelete="RESTRICT"), nullable=False
    )
    bound_by: Mapped[Optional[str]] = mapped_column(Uuid(as_uuid=False))  # user_id
    bound_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── DERIVED OUTPUTS ──────────────────────────────────────────────────────────
class ComputedCostItem(Base):
    """
    One evaluated line for an estimate/template-item pair.
    Regenerated on every computation; rows of older generations are deleted
    in the same transaction that inserts the new generation.
    """
    __tablename__ = "computed_cost_items"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    estimate_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False
    )
    template_item_id: Mapped[Optional[str]] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("template_items.id", ondelete="SET NULL")
    )
    generation_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(50))
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (
        Index("ix_computed_cost_items_estimate_generation", "estimate_id", "generation_id"),
    )


class PricingSnapshot(Base):
    """Current pricing result for an estimate — overwritten, not versioned."""
    __tablename__ = "pricing_snapshots"
    estimate_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("estimates.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False, index=True)
    generation_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    materials: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    labor: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    overhead: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    cost_pre_profit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    mode: Mapped[str] = mapped_column(String(10), nullable=False, default="margin")
    margin_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4))
    markup_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))
    sale_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    profit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
