"""
Canteen Core HTTP tests

Tests:
  1. Auth enforcement (401 on missing or tampered JWT)
  2. Order placement status codes (201, 402, 409, 422)
  3. Role checks on admin and kitchen routes (403)
  4. Inventory totals, accounting and health
"""
import httpx
import pytest
import pytest_asyncio

from canteen.main import app, init_services

from conftest import make_token


# ─── Fixtures ──────────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def client(engine, seed):
    init_services(app, engine, "transactional")
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://canteen.test") as http:
        yield http


@pytest.fixture
def student_headers(seed):
    return {"Authorization": f"Bearer {make_token(seed.student_id, reg_number='STU-001')}"}


@pytest.fixture
def admin_headers(seed):
    return {"Authorization": f"Bearer {make_token(seed.admin_id, role='admin')}"}


# ─── Auth ──────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_order_without_token_is_rejected(client, seed):
    r = await client.post("/orders", json={"items": [{"product_id": seed.chips_id, "qty": 1}]})
    assert r.status_code == 401, f"Expected 401, got {r.status_code}: {r.text}"
    assert r.json()["kind"] == "unauthorized"


@pytest.mark.asyncio
async def test_tampered_and_expired_tokens_are_rejected(client, seed):
    tampered = make_token(seed.student_id)[:-4] + "abcd"
    r = await client.get(f"/inventory/{seed.chips_id}/total", headers={"Authorization": f"Bearer {tampered}"})
    assert r.status_code == 401

    expired = make_token(seed.student_id, minutes=-5)
    r = await client.get(f"/inventory/{seed.chips_id}/total", headers={"Authorization": f"Bearer {expired}"})
    assert r.status_code == 401


# ─── Orders ────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_place_order_returns_created(client, student_headers, seed):
    r = await client.post(
        "/orders",
        json={"items": [{"product_id": seed.burger_id, "qty": 2, "notes": "extra sauce"}]},
        headers=student_headers,
    )
    assert r.status_code == 201, r.text

    body = r.json()
    assert body["ok"] is True
    assert body["order"]["status"] == "placed"
    assert body["order"]["total"] == "25.00"
    assert body["transaction"]["balance_after"] == "75.00"
    assert body["warnings"] == []
    assert "external_code" not in body

    r = await client.get(f"/orders/code/{body['order']['code']}", headers=student_headers)
    assert r.status_code == 200
    assert r.json()["order"]["id"] == body["order"]["id"]
    assert r.json()["expired"] is False


@pytest.mark.asyncio
async def test_place_order_failures_map_to_status_codes(client, seed):
    poor = {"Authorization": f"Bearer {make_token(seed.poor_student_id)}"}
    r = await client.post("/orders", json={"items": [{"product_id": seed.burger_id, "qty": 1}]}, headers=poor)
    assert r.status_code == 402
    assert r.json()["kind"] == "insufficient_balance"

    r = await client.post("/orders", json={"items": [{"product_id": seed.juice_id, "qty": 1}]}, headers=poor)
    assert r.status_code == 409
    assert r.json()["details"]["product_id"] == seed.juice_id


@pytest.mark.asyncio
async def test_external_orders_require_admin(client, student_headers, admin_headers, seed):
    payload = {"items": [{"product_id": seed.chips_id, "qty": 1}], "issued_to_name": "Parent"}

    r = await client.post("/orders/external", json=payload, headers=student_headers)
    assert r.status_code == 403

    r = await client.post("/orders/external", json=payload, headers=admin_headers)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["external_code"]["code"] == body["order"]["code"]
    assert body["transaction"]["type"] == "external"


@pytest.mark.asyncio
async def test_kitchen_prepare_then_collect(client, student_headers, admin_headers, seed):
    r = await client.post("/orders", json={"items": [{"product_id": seed.burger_id, "qty": 1}]}, headers=student_headers)
    code = r.json()["order"]["code"]

    r = await client.post("/kitchen/prepare", json={"product_name": "burger"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "ready"

    r = await client.post("/orders/collect", json={"code": code, "reg_number": "STU-001"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "collected"


@pytest.mark.asyncio
async def test_kitchen_cancel(client, student_headers, admin_headers, seed):
    r = await client.post("/orders", json={"items": [{"product_id": seed.burger_id, "qty": 1}]}, headers=student_headers)
    code = r.json()["order"]["code"]

    r = await client.post("/kitchen/cancel", json={"code": code, "reason": "no show"}, headers=student_headers)
    assert r.status_code == 403

    r = await client.post("/kitchen/cancel", json={"code": code, "reason": "no show"}, headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json()["order"]["status"] == "cancelled"
    assert r.json()["order"]["meta"]["cancel_reason"] == "no show"

    r = await client.post("/kitchen/cancel", json={"code": code}, headers=admin_headers)
    assert r.status_code == 409
    assert r.json()["kind"] == "invalid_order_state"


@pytest.mark.asyncio
async def test_http_caps_quantity_per_line(client, student_headers, seed):
    r = await client.post("/orders", json={"items": [{"product_id": seed.chips_id, "qty": 51}]}, headers=student_headers)
    assert r.status_code == 422


# ─── Inventory and accounting ──────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_inventory_total_and_listing(client, student_headers, admin_headers, seed):
    r = await client.get(f"/inventory/{seed.burger_id}/total", headers=student_headers)
    assert r.status_code == 200
    assert r.json() == {"product_id": seed.burger_id, "total_quantity": 8, "cached": False}

    r = await client.get("/inventory", headers=student_headers)
    assert r.status_code == 403

    r = await client.get("/inventory", headers=admin_headers)
    assert r.status_code == 200
    assert {p["name"]: p["total_inventory"] for p in r.json()}["Juice"] == 0


@pytest.mark.asyncio
async def test_top_up_and_refund(client, admin_headers, seed):
    r = await client.post(
        "/accounting/topup", json={"user_id_or_reg": "STU-002", "amount": "15.00"}, headers=admin_headers
    )
    assert r.status_code == 200, r.text
    assert r.json()["user"]["balance"] == "20.00"

    r = await client.post(
        "/accounting/refund",
        json={"user_id_or_reg": "STU-002", "amount": "0"},
        headers=admin_headers,
    )
    assert r.status_code == 400
    assert r.json()["kind"] == "validation_error"


# ─── Health ────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_health_is_public_and_reports_mode(client):
    r = await client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["unit_of_work"] == "transactional"
    assert body["dependencies"] == {"database": "ok", "redis": "disabled"}
