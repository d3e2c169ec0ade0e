from datetime import datetime, timedelta, timezone

import pytest

from backend.app.db.models.core_types import Role


@pytest.fixture
def ctx(factory):
    admin = factory.user(Role.admin)
    operator = factory.user(Role.operator)
    viewer = factory.user(Role.viewer)
    return {
        "admin": {"X-User-Id": str(admin.id)},
        "operator": {"X-User-Id": str(operator.id)},
        "viewer": {"X-User-Id": str(viewer.id)},
    }


def _due(days=7):
    return (datetime.now(timezone.utc).date() + timedelta(days=days)).isoformat()


def _setup_stock(client, headers, quantity=10):
    loc = client.post("/v1/locations", json={"code": "ALM", "name": "Central"}, headers=headers).json()
    prod = client.post(
        "/v1/products",
        json={"code": "DRILL", "description": "Drill", "stock_minimum": 2, "cost_price": "150.00"},
        headers=headers,
    ).json()
    r = client.post(
        "/v1/stock/receive",
        json={"product_id": prod["id"], "location_id": loc["id"], "quantity": quantity},
        headers=headers,
    )
    assert r.status_code == 201, r.text
    return loc, prod


def test_health(api_client):
    assert api_client.get("/v1/health").json() == {"status": "ok"}


def test_identity_and_roles(api_client, ctx):
    assert api_client.get("/v1/products").status_code == 401
    assert api_client.get("/v1/products", headers={"X-User-Id": "999"}).status_code == 401
    assert api_client.get("/v1/products", headers=ctx["viewer"]).status_code == 200

    r = api_client.post("/v1/products", json={"code": "X", "description": "X"}, headers=ctx["viewer"])
    assert r.status_code == 403
    assert api_client.get("/v1/users/me", headers=ctx["operator"]).json()["role"] == "operator"


def test_product_crud_and_soft_delete(api_client, ctx):
    h = ctx["operator"]
    loc, prod = _setup_stock(api_client, h, quantity=3)

    dup = api_client.post("/v1/products", json={"code": "DRILL", "description": "again"}, headers=h)
    assert dup.status_code == 409

    r = api_client.patch(f"/v1/products/{prod['id']}", json={"stock_minimum": 5}, headers=h)
    assert r.json()["stock_minimum"] == 5
    assert r.json()["stock_current"] == 3

    # historique de mouvements -> désactivation
    r = api_client.delete(f"/v1/products/{prod['id']}", headers=h)
    assert r.json() == {"id": prod["id"], "deleted": False, "deactivated": True}
    assert api_client.get(f"/v1/products/{prod['id']}", headers=h).json()["active"] is False

    fresh = api_client.post("/v1/products", json={"code": "NEW", "description": "new"}, headers=h).json()
    r = api_client.delete(f"/v1/products/{fresh['id']}", headers=h)
    assert r.json()["deleted"] is True
    assert api_client.get(f"/v1/products/{fresh['id']}", headers=h).status_code == 404


def test_location_delete_blocked_while_stocked(api_client, ctx):
    h = ctx["admin"]
    loc, _ = _setup_stock(api_client, h)

    r = api_client.delete(f"/v1/locations/{loc['id']}", headers=h)
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"

    empty = api_client.post("/v1/locations", json={"code": "EMPTY", "name": "Empty"}, headers=h).json()
    assert api_client.delete(f"/v1/locations/{empty['id']}", headers=h).json()["deleted"] is True


def test_stock_levels_and_ledger_endpoints(api_client, ctx):
    h = ctx["operator"]
    loc, prod = _setup_stock(api_client, h)

    r = api_client.post(
        "/v1/stock/adjust",
        json={"product_id": prod["id"], "location_id": loc["id"], "delta": -3, "reason": "count"},
        headers=h,
    )
    assert r.status_code == 201
    assert r.json()["kind"] == "ADJUSTMENT"

    levels = api_client.get("/v1/stock", params={"product_id": prod["id"]}, headers=h).json()
    assert levels == [
        {"product_id": prod["id"], "location_id": loc["id"], "quantity": 7, "quantity_reserved": 0, "available": 7}
    ]

    ledger = api_client.get("/v1/stock-movements", params={"product_id": prod["id"]}, headers=h).json()
    assert sorted(m["quantity"] for m in ledger) == [-3, 10]
    only_adj = api_client.get("/v1/stock-movements", params={"kind": "ADJUSTMENT"}, headers=h).json()
    assert [m["reference"] for m in only_adj] == ["count"]

    r = api_client.post(
        "/v1/stock/adjust",
        json={"product_id": prod["id"], "location_id": loc["id"], "delta": -50, "reason": "count"},
        headers=h,
    )
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "insufficient_stock"
    assert body["available"] == 7


def test_stock_entry_endpoint(api_client, ctx):
    h = ctx["operator"]
    loc, prod = _setup_stock(api_client, h)
    supplier = api_client.post("/v1/suppliers", json={"name": "ACME"}, headers=h).json()

    r = api_client.post(
        "/v1/stock/entries",
        json={
            "location_id": loc["id"],
            "supplier_id": supplier["id"],
            "document_number": "NF-1",
            "items": [{"product_id": prod["id"], "quantity": 4, "unit_cost": "160.00", "lot": "A1"}],
        },
        headers=h,
    )
    assert r.status_code == 201, r.text
    entry = r.json()
    assert entry["status"] == "COMPLETED"
    assert entry["items"][0]["quantity_received"] == 4
    assert api_client.get(f"/v1/products/{prod['id']}", headers=h).json()["stock_current"] == 14

    # fournisseur référencé -> désactivé
    assert api_client.delete(f"/v1/suppliers/{supplier['id']}", headers=h).json()["deactivated"] is True


def test_loan_flow_over_http(api_client, ctx):
    h = ctx["operator"]
    loc, prod = _setup_stock(api_client, h)
    collab = api_client.post("/v1/collaborators", json={"registration": "123", "name": "Ana"}, headers=h).json()

    r = api_client.post(
        "/v1/loans",
        json={
            "collaborator_id": collab["id"],
            "due_date": _due(),
            "items": [{"product_id": prod["id"], "quantity": 2, "location_id": loc["id"]}],
        },
        headers=h,
    )
    assert r.status_code == 201, r.text
    loan = r.json()
    assert loan["status"] == "OPEN"
    item_id = loan["items"][0]["id"]

    # collaborateur avec prêt en cours : suppression refusée
    assert api_client.delete(f"/v1/collaborators/{collab['id']}", headers=h).status_code == 400

    r = api_client.post(
        f"/v1/loans/{loan['id']}/return",
        json={"items": [{"item_id": item_id, "quantity": 5}]},
        headers=h,
    )
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"

    r = api_client.post(
        f"/v1/loans/{loan['id']}/return",
        json={"items": [{"item_id": item_id, "quantity": 2, "condition": "NEW"}]},
        headers=h,
    )
    assert r.json()["status"] == "RETURNED"

    r = api_client.post(f"/v1/loans/{loan['id']}/lost", json={}, headers=ctx["admin"])
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_state"

    assert [l["id"] for l in api_client.get("/v1/loans", params={"status": "RETURNED"}, headers=h).json()] == [
        loan["id"]
    ]
    assert api_client.delete(f"/v1/collaborators/{collab['id']}", headers=h).json()["deactivated"] is True


def test_loan_lost_by_operator_is_forbidden(api_client, ctx):
    h = ctx["operator"]
    loc, prod = _setup_stock(api_client, h)
    collab = api_client.post("/v1/collaborators", json={"registration": "9", "name": "Rui"}, headers=h).json()
    loan = api_client.post(
        "/v1/loans",
        json={"collaborator_id": collab["id"], "due_date": _due(), "items": [{"product_id": prod["id"], "quantity": 1}]},
        headers=h,
    ).json()

    r = api_client.post(f"/v1/loans/{loan['id']}/lost", json={"note": "gone"}, headers=h)
    assert r.status_code == 403
    assert r.json()["code"] == "permission_denied"

    r = api_client.post(f"/v1/loans/{loan['id']}/lost", json={"note": "gone"}, headers=ctx["admin"])
    assert r.json()["status"] == "LOST"


def test_transfer_flow_over_http(api_client, ctx):
    h = ctx["operator"]
    loc, prod = _setup_stock(api_client, h)
    dest = api_client.post("/v1/locations", json={"code": "OBRA", "name": "Site"}, headers=h).json()

    same = api_client.post(
        "/v1/transfers",
        json={"source_location_id": loc["id"], "destination_location_id": loc["id"],
              "items": [{"product_id": prod["id"], "quantity": 1}]},
        headers=h,
    )
    assert same.status_code == 400

    t = api_client.post(
        "/v1/transfers",
        json={"source_location_id": loc["id"], "destination_location_id": dest["id"],
              "items": [{"product_id": prod["id"], "quantity": 4}]},
        headers=h,
    ).json()
    assert t["status"] == "PENDING"

    assert api_client.post(f"/v1/transfers/{t['id']}/approve", headers=h).status_code == 403
    assert api_client.post(f"/v1/transfers/{t['id']}/approve", headers=ctx["admin"]).json()["status"] == "APPROVED"
    assert api_client.post(f"/v1/transfers/{t['id']}/dispatch", headers=h).json()["status"] == "IN_TRANSIT"
    done = api_client.post(f"/v1/transfers/{t['id']}/complete", headers=h).json()
    assert done["status"] == "COMPLETED"

    r = api_client.post(f"/v1/transfers/{t['id']}/cancel", json={"reason": "late"}, headers=h)
    assert r.status_code == 409

    levels = {
        l["location_id"]: l["quantity"]
        for l in api_client.get("/v1/stock", params={"product_id": prod["id"]}, headers=h).json()
    }
    assert levels == {loc["id"]: 6, dest["id"]: 4}
    assert api_client.get("/v1/reports/consistency", headers=h).json() == []


def test_reports_and_audit_endpoints(api_client, ctx):
    _setup_stock(api_client, ctx["admin"], quantity=2)

    dash = api_client.get("/v1/reports/dashboard", headers=ctx["viewer"]).json()
    assert dash["products_low_stock"] == 1

    position = api_client.get("/v1/reports/stock-position", headers=ctx["viewer"]).json()
    assert position[0]["status"] == "CRITICAL"

    assert api_client.get("/v1/audit", headers=ctx["operator"]).status_code == 403
    actions = [a["action"] for a in api_client.get("/v1/audit", headers=ctx["admin"]).json()]
    assert {"LOCATION_CREATED", "PRODUCT_CREATED", "STOCK_RECEIVED"} <= set(actions)

    purged = api_client.post("/v1/audit/purge", headers=ctx["admin"]).json()
    assert purged == {"deleted": 0, "older_than_days": 180}


def test_unknown_loan_is_404(api_client, ctx):
    r = api_client.get("/v1/loans/12345", headers=ctx["viewer"])
    assert r.status_code == 404
    assert r.json() == {"error": "Loan not found (id=12345)", "code": "not_found"}
