"""pricing_engine_schema

Revision ID: 001_pricing_engine
Revises:
Create Date: 2026-10-18

Adds tables for:
- templates, template_items (manager-authored pricing blueprints)
- estimate_measurements, estimate_bindings (per-estimate inputs)
- computed_cost_items (generation-tagged takeoff lines)
- pricing_snapshots (current price per estimate)

tenants / roles / users / estimates belong to the surrounding platform and are
only created here when missing (fresh dev databases).

All DDL uses IF NOT EXISTS patterns so the migration is idempotent — safe to
run even when Base.metadata.create_all() already created the tables.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import JSONB

revision = '001_pricing_engine'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

_UUID = sa.Uuid(as_uuid=False)
_JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def _create(conn, table_name: str, *columns, **kwargs) -> None:
    if _table_exists(conn, table_name):
        logger.info(f"Table {table_name} already exists — skipping create")
        return
    op.create_table(table_name, *columns, **kwargs)
    logger.info(f"Created table: {table_name}")


def _money(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=False, server_default='0')


def upgrade() -> None:
    conn = op.get_bind()

    # ── platform tables ───────────────────────────────────────────────────────
    _create(
        conn, 'tenants',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    _create(
        conn, 'roles',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(50), unique=True, nullable=False),
    )
    _create(
        conn, 'users',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column('tenant_id', _UUID, sa.ForeignKey('tenants.id')),
        sa.Column('email', sa.String(255), unique=True, nullable=False),
        sa.Column('full_name', sa.String(255)),
        sa.Column('role_id', sa.Integer, sa.ForeignKey('roles.id')),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    _create(
        conn, 'estimates',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column('tenant_id', _UUID, sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('name', sa.String(255)),
        sa.Column('status', sa.String(50), server_default='Draft'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── templates ─────────────────────────────────────────────────────────────
    _create(
        conn, 'templates',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column('tenant_id', _UUID, sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('labor', _JSON, nullable=False),
        sa.Column('overhead', _JSON, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    _create(
        conn, 'template_items',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column('template_id', _UUID, sa.ForeignKey('templates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('unit', sa.String(50), nullable=False),
        sa.Column('waste_pct', sa.Numeric(5, 4), nullable=False, server_default='0'),
        sa.Column('unit_cost', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('formula', sa.Text, nullable=False),
        sa.Column('sort_order', sa.Integer, nullable=False, server_default='0'),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Index('ix_template_items_template_sort', 'template_id', 'sort_order'),
    )

    # ── per-estimate inputs ───────────────────────────────────────────────────
    _create(
        conn, 'estimate_measurements',
        sa.Column('estimate_id', _UUID, sa.ForeignKey('estimates.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tenant_id', _UUID, nullable=False, index=True),
        sa.Column('payload', _JSON, nullable=False),
        sa.Column('squares', sa.Numeric(14, 4), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    _create(
        conn, 'estimate_bindings',
        sa.Column('estimate_id', _UUID, sa.ForeignKey('estimates.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tenant_id', _UUID, nullable=False, index=True),
        sa.Column('template_id', _UUID, sa.ForeignKey('templates.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('bound_by', _UUID, nullable=True),
        sa.Column('bound_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── derived outputs ───────────────────────────────────────────────────────
    _create(
        conn, 'computed_cost_items',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column('estimate_id', _UUID, sa.ForeignKey('estimates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('template_item_id', _UUID, sa.ForeignKey('template_items.id', ondelete='SET NULL')),
        sa.Column('generation_id', _UUID, nullable=False),
        sa.Column('item_name', sa.Text, nullable=False),
        sa.Column('unit', sa.String(50)),
        sa.Column('sort_order', sa.Integer, nullable=False, server_default='0'),
        sa.Column('quantity', sa.Numeric(14, 4), nullable=False, server_default='0'),
        _money('unit_cost'),
        _money('line_total'),
        sa.Column('computed_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Index('ix_computed_cost_items_estimate_generation', 'estimate_id', 'generation_id'),
    )
    _create(
        conn, 'pricing_snapshots',
        sa.Column('estimate_id', _UUID, sa.ForeignKey('estimates.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tenant_id', _UUID, nullable=False, index=True),
        sa.Column('generation_id', _UUID, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        _money('materials'),
        _money('labor'),
        _money('overhead'),
        _money('cost_pre_profit'),
        sa.Column('mode', sa.String(10), nullable=False, server_default='margin'),
        sa.Column('margin_pct', sa.Numeric(5, 4), nullable=True),
        sa.Column('markup_pct', sa.Numeric(8, 4), nullable=True),
        _money('sale_price'),
        _money('profit'),
        sa.Column('computed_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    conn = op.get_bind()

    # Platform tables are left in place.
    for table_name in [
        'pricing_snapshots', 'computed_cost_items', 'estimate_bindings',
        'estimate_measurements', 'template_items', 'templates',
    ]:
        if _table_exists(conn, table_name):
            op.drop_table(table_name)
