"""
test_pricing_routes.py — HTTP tests for /api/pricing.

Tests cover:
  - full flow: template -> items -> bind -> measurements -> compute -> read
  - error mapping: 404 unknown/foreign estimate, 409 preconditions, 422 formulas
  - is_current flag after a line-item-only regeneration
  - bearer-token auth via get_current_user, token tenant claim, template-author role
  - /health and /metrics

The app runs in-process over httpx's ASGI transport; get_db is overridden to
use the in-memory test database.
"""

from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
from jose import jwt

from app.api.deps import ALGORITHM, SECRET_KEY, get_current_user
from app.db import get_db
from app.main import app
from app.models.orm_models import gen_uuid


@pytest_asyncio.fixture
async def client(session_factory, seeded):
    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _override_user():
        return SimpleNamespace(
            id=seeded.user_id, tenant_id=seeded.tenant_id, role_id=seeded.role_id, is_active=True
        )

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_current_user] = _override_user
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


TEMPLATE_BODY = {
    "name": "Standard shingle re-roof",
    "labor": {"rate_per_square": "80.00", "complexity": {"pitch_factor": "1.10"}},
    "overhead": {"type": "percent", "percent": "0.10"},
}

ITEMS_BODY = {
    "items": [
        {"name": "Architectural Shingles", "unit": "SQ", "waste_pct": "0.10",
         "unit_cost": "120.00", "formula": "roof_area_sqft / 100", "sort_order": 1},
        {"name": "Ridge Cap", "unit": "BDL", "unit_cost": "55.00",
         "formula": "ridge_lf / 20", "sort_order": 2},
    ]
}


async def _setup_estimate(client, estimate_id):
    resp = await client.post("/api/pricing/templates", json=TEMPLATE_BODY)
    assert resp.status_code == 201
    template_id = resp.json()["template_id"]

    resp = await client.put(f"/api/pricing/templates/{template_id}/items", json=ITEMS_BODY)
    assert resp.status_code == 200
    assert len(resp.json()["item_ids"]) == 2

    resp = await client.put(
        f"/api/pricing/estimates/{estimate_id}/template", json={"template_id": template_id}
    )
    assert resp.status_code == 204

    resp = await client.put(
        f"/api/pricing/estimates/{estimate_id}/measurements",
        json={"payload": {"roof_area_sqft": 2500, "ridge_lf": "40"}},
    )
    assert resp.status_code == 200
    assert Decimal(str(resp.json()["squares"])) == Decimal("25")
    return template_id


# ===========================================================================
# Class 1: Happy path
# ===========================================================================

class TestPricingFlow:

    @pytest.mark.asyncio
    async def test_compute_and_read(self, client, seeded):
        await _setup_estimate(client, seeded.estimate_id)

        resp = await client.post(
            f"/api/pricing/estimates/{seeded.estimate_id}/compute",
            json={"mode": "margin", "target_pct": "0.30"},
        )
        assert resp.status_code == 200
        body = resp.json()
        snapshot = body["snapshot"]
        assert Decimal(snapshot["materials"]) == Decimal("3410.00")
        assert Decimal(snapshot["labor"]) == Decimal("2200.00")
        assert Decimal(snapshot["overhead"]) == Decimal("561.00")
        assert Decimal(snapshot["cost_pre_profit"]) == Decimal("6171.00")
        assert Decimal(snapshot["sale_price"]) == Decimal("8815.71")
        assert Decimal(snapshot["markup_pct"]) == Decimal("0.4286")
        assert snapshot["currency"] == "USD"
        assert body["is_current"] is True
        assert [i["item_name"] for i in body["items"]] == ["Architectural Shingles", "Ridge Cap"]
        assert Decimal(body["items"][0]["line_total"]) == Decimal("3300.00")

        resp = await client.get(f"/api/pricing/estimates/{seeded.estimate_id}")
        assert resp.status_code == 200
        assert resp.json()["snapshot"] == snapshot

    @pytest.mark.asyncio
    async def test_degenerate_margin(self, client, seeded):
        await _setup_estimate(client, seeded.estimate_id)
        resp = await client.post(
            f"/api/pricing/estimates/{seeded.estimate_id}/compute",
            json={"mode": "margin", "target_pct": "1"},
        )
        snapshot = resp.json()["snapshot"]
        assert snapshot["sale_price"] == snapshot["cost_pre_profit"]
        assert Decimal(snapshot["profit"]) == Decimal("0")
        assert snapshot["markup_pct"] is None

    @pytest.mark.asyncio
    async def test_line_items_only_marks_snapshot_stale(self, client, seeded):
        await _setup_estimate(client, seeded.estimate_id)
        await client.post(f"/api/pricing/estimates/{seeded.estimate_id}/compute", json={})

        resp = await client.post(f"/api/pricing/estimates/{seeded.estimate_id}/line-items")
        assert resp.status_code == 200
        assert len(resp.json()) == 2

        resp = await client.get(f"/api/pricing/estimates/{seeded.estimate_id}")
        assert resp.json()["is_current"] is False


# ===========================================================================
# Class 2: Error mapping
# ===========================================================================

class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_unknown_estimate(self, client, seeded):
        resp = await client.get(f"/api/pricing/estimates/{gen_uuid()}")
        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "EstimateNotFound"

    @pytest.mark.asyncio
    async def test_not_yet_computed(self, client, seeded):
        resp = await client.get(f"/api/pricing/estimates/{seeded.estimate_id}")
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "PricingNotComputed"

    @pytest.mark.asyncio
    async def test_compute_without_template(self, client, seeded):
        resp = await client.post(f"/api/pricing/estimates/{seeded.estimate_id}/compute", json={})
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "TemplateNotBound"

    @pytest.mark.asyncio
    async def test_illegal_formula(self, client, seeded):
        resp = await client.post("/api/pricing/templates", json=TEMPLATE_BODY)
        template_id = resp.json()["template_id"]
        body = {"items": [dict(ITEMS_BODY["items"][0], formula="area; DROP TABLE x")]}
        resp = await client.put(f"/api/pricing/templates/{template_id}/items", json=body)
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["error"] == "IllegalCharacter"
        assert detail["item_index"] == 0

    @pytest.mark.asyncio
    async def test_bad_mode_rejected_by_schema(self, client, seeded):
        resp = await client.post(
            f"/api/pricing/estimates/{seeded.estimate_id}/compute", json={"mode": "cost-plus"}
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_non_numeric_measurement(self, client, seeded):
        resp = await client.put(
            f"/api/pricing/estimates/{seeded.estimate_id}/measurements",
            json={"payload": {"roof_area_sqft": "lots"}},
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "InvalidMeasurementPayload"

    @pytest.mark.asyncio
    async def test_failed_rebind_keeps_existing_binding(self, client, seeded):
        await _setup_estimate(client, seeded.estimate_id)
        resp = await client.put(
            f"/api/pricing/estimates/{seeded.estimate_id}/template",
            json={"template_id": gen_uuid()},
        )
        assert resp.status_code == 404
        resp = await client.post(f"/api/pricing/estimates/{seeded.estimate_id}/compute", json={})
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_waste_pct_bounded_by_column(self, client, seeded):
        resp = await client.post("/api/pricing/templates", json=TEMPLATE_BODY)
        template_id = resp.json()["template_id"]
        item = ITEMS_BODY["items"][0]
        resp = await client.put(
            f"/api/pricing/templates/{template_id}/items",
            json={"items": [dict(item, waste_pct="10")]},
        )
        assert resp.status_code == 422
        resp = await client.put(
            f"/api/pricing/templates/{template_id}/items",
            json={"items": [dict(item, waste_pct="9.9999")]},
        )
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_near_total_margin_has_no_markup(self, client, seeded):
        await _setup_estimate(client, seeded.estimate_id)
        resp = await client.post(
            f"/api/pricing/estimates/{seeded.estimate_id}/compute",
            json={"mode": "margin", "target_pct": "0.99999"},
        )
        assert resp.status_code == 200
        snapshot = resp.json()["snapshot"]
        assert Decimal(snapshot["sale_price"]) == Decimal("617100000.00")
        assert snapshot["markup_pct"] is None

    @pytest.mark.asyncio
    async def test_unstorable_amount(self, client, seeded):
        await _setup_estimate(client, seeded.estimate_id)
        resp = await client.put(
            f"/api/pricing/estimates/{seeded.estimate_id}/measurements",
            json={"payload": {"roof_area_sqft": 2500, "ridge_lf": "9999999999"}},
        )
        assert resp.status_code == 200
        resp = await client.post(f"/api/pricing/estimates/{seeded.estimate_id}/compute", json={})
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "AmountOutOfRange"

    @pytest.mark.asyncio
    async def test_out_of_range_measurement(self, client, seeded):
        resp = await client.put(
            f"/api/pricing/estimates/{seeded.estimate_id}/measurements",
            json={"payload": {"roof_area_sqft": "1E+30"}},
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "InvalidMeasurementPayload"

    @pytest.mark.asyncio
    async def test_over_nested_formula(self, client, seeded):
        resp = await client.post("/api/pricing/templates", json=TEMPLATE_BODY)
        template_id = resp.json()["template_id"]
        body = {"items": [dict(ITEMS_BODY["items"][0], formula="(" * 400 + "a" + ")" * 400)]}
        resp = await client.put(f"/api/pricing/templates/{template_id}/items", json=body)
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "MalformedFormula"


# ===========================================================================
# Class 3: Auth and service endpoints
# ===========================================================================

class TestAuthAndService:

    @pytest.mark.asyncio
    async def test_bearer_token_resolves_tenant(self, client, seeded):
        del app.dependency_overrides[get_current_user]
        token = jwt.encode({"sub": seeded.user_id}, SECRET_KEY, algorithm=ALGORITHM)
        resp = await client.get(
            f"/api/pricing/estimates/{seeded.estimate_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_missing_token(self, client, seeded):
        del app.dependency_overrides[get_current_user]
        resp = await client.get(f"/api/pricing/estimates/{seeded.estimate_id}")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client, seeded):
        del app.dependency_overrides[get_current_user]
        resp = await client.get(
            f"/api/pricing/estimates/{seeded.estimate_id}",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_request_id_header(self, client):
        resp = await client.get("/health", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"
        assert "X-Process-Time" in resp.headers

    @pytest.mark.asyncio
    async def test_metrics(self, client, seeded):
        await _setup_estimate(client, seeded.estimate_id)
        await client.post(f"/api/pricing/estimates/{seeded.estimate_id}/compute", json={})
        resp = await client.get("/metrics")
        body = resp.json()
        assert body["calls_by_operation"]["compute_pricing"] >= 1
        assert "uptime_seconds" in body

    @pytest.mark.asyncio
    async def test_token_tenant_claim_must_match(self, client, seeded):
        del app.dependency_overrides[get_current_user]
        token = jwt.encode(
            {"sub": seeded.user_id, "tenant_id": seeded.other_tenant_id}, SECRET_KEY, algorithm=ALGORITHM
        )
        resp = await client.get(
            f"/api/pricing/estimates/{seeded.estimate_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_template_authoring_requires_role(self, client, seeded):
        app.dependency_overrides[get_current_user] = lambda: SimpleNamespace(
            id=seeded.user_id, tenant_id=seeded.tenant_id, role_id=None, is_active=True
        )
        resp = await client.post("/api/pricing/templates", json=TEMPLATE_BODY)
        assert resp.status_code == 403
