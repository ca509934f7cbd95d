from datetime import datetime, timezone

from posbill import order_numbers
from posbill.dates import get_timezone, utc_now
from posbill.order_numbers import format_date_key


def _order_payload(**overrides) -> dict:
    payload = {
        "items": [
            {"name": "Paneer Tikka", "quantity": 2, "price": 240.0},
            {"name": "Butter Naan", "quantity": 4, "price": 40.0},
        ],
        "discount": 20.0,
        "table_number": "T4",
    }
    payload.update(overrides)
    return payload


def test_read_root(client) -> None:
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_health_check_carries_request_id(client) -> None:
    response = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert response.headers["X-Request-ID"] == "abc123"


def test_login_me_and_logout(client, make_user) -> None:
    make_user("manager", password="hunter22", email="mgr@posbill.test")

    response = client.post("/api/auth/login", json={"email": "MGR@posbill.test", "password": "hunter22"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["user"]["role"] == "manager"
    assert "view_reports" in data["user"]["permissions"]
    assert data["user"]["last_login"] is not None
    headers = {"Authorization": f"Bearer {data['token']}"}

    me = client.get("/api/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "mgr@posbill.test"
    assert me.json()["meta"]["request_id"].startswith("req_")

    assert client.post("/api/auth/logout", headers=headers).status_code == 200
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_login_rejects_bad_password(client, make_user) -> None:
    make_user("staff", email="staff@posbill.test")
    response = client.post("/api/auth/login", json={"email": "staff@posbill.test", "password": "nope"})
    assert response.status_code == 401


def test_protected_routes_require_a_token(client) -> None:
    assert client.get("/api/orders").status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get("/api/orders", headers=bad).status_code == 401


def test_order_lifecycle(client, auth_headers) -> None:
    headers = auth_headers("admin")

    created = client.post("/api/orders", json=_order_payload(), headers=headers)
    assert created.status_code == 201
    order = created.json()["data"]
    today_key = format_date_key(utc_now(), get_timezone())
    assert order["order_number"] == f"1-{today_key}"
    assert order["total_amount"] == 640.0
    assert order["final_amount"] == 620.0
    assert [item["name"] for item in order["items"]] == ["Paneer Tikka", "Butter Naan"]

    second = client.post("/api/orders", json=_order_payload(table_number="T5"), headers=headers)
    assert second.json()["data"]["order_number"] == f"2-{today_key}"

    listed = client.get("/api/orders", headers=headers)
    assert listed.status_code == 200
    assert [o["table_number"] for o in listed.json()["data"]] == ["T5", "T4"]

    by_number = client.get(f"/api/orders/{order['order_number']}", headers=headers)
    assert by_number.json()["data"]["order_id"] == order["order_id"]

    updated = client.put(
        f"/api/orders/{order['order_id']}",
        json={"status": "Paid", "payment_status": "Paid", "items": [{"name": "Lassi", "quantity": 1, "price": 60}]},
        headers=headers,
    )
    assert updated.status_code == 200
    body = updated.json()["data"]
    assert body["status"] == "Paid"
    assert body["order_number"] == order["order_number"]
    assert body["items"] == [{"name": "Lassi", "quantity": 1, "price": 60.0}]

    paid = client.get("/api/orders", params={"status": "Paid"}, headers=headers)
    assert len(paid.json()["data"]) == 1

    deleted = client.delete(f"/api/orders/{order['order_id']}", headers=headers)
    assert deleted.json()["data"]["deleted"] is True
    assert client.get(f"/api/orders/{order['order_id']}", headers=headers).status_code == 404


def test_explicit_duplicate_order_number_is_rejected(client, auth_headers) -> None:
    headers = auth_headers("staff")
    first = client.post("/api/orders", json=_order_payload(order_number="5-20250920"), headers=headers)
    assert first.status_code == 201
    again = client.post("/api/orders", json=_order_payload(order_number="5-20250920"), headers=headers)
    assert again.status_code == 400


def test_order_number_exhaustion_is_a_server_error(client, auth_headers, monkeypatch) -> None:
    headers = auth_headers("staff")

    def exhausted(db, order, now=None):
        raise order_numbers.OrderNumberExhausted("no free order number")

    monkeypatch.setattr(order_numbers, "insert_order", exhausted)
    response = client.post("/api/orders", json=_order_payload(), headers=headers)
    assert response.status_code == 500
    assert response.json()["detail"] == "failed to allocate order number"


def test_order_list_rejects_unknown_range(client, auth_headers) -> None:
    response = client.get("/api/orders", params={"date_range": "decade"}, headers=auth_headers("staff"))
    assert response.status_code == 400


def test_cash_note_crud_and_paging(client, auth_headers) -> None:
    headers = auth_headers("manager")
    for day in (18, 19, 20):
        response = client.post(
            "/api/cash-notes",
            json={"type": "debit", "amount": 100 + day, "description": " Vegetables ", "date": f"2025-09-{day}T10:00:00+05:30"},
            headers=headers,
        )
        assert response.status_code == 201
    note = response.json()["data"]
    assert note["description"] == "Vegetables"
    assert note["date"] == "2025-09-20T04:30:00+00:00"

    page = client.get("/api/cash-notes", params={"page": 1, "page_size": 2}, headers=headers)
    data = page.json()["data"]
    assert data["total"] == 3
    assert [n["amount"] for n in data["notes"]] == [120.0, 119.0]
    assert page.json()["meta"]["page"] == {"page": 1, "page_size": 2, "total": 3}

    updated = client.put(f"/api/cash-notes/{note['id']}", json={"type": "credit", "amount": 500}, headers=headers)
    assert updated.json()["data"]["type"] == "credit"
    assert updated.json()["data"]["amount"] == 500.0

    assert client.delete(f"/api/cash-notes/{note['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/cash-notes/{note['id']}", headers=headers).status_code == 404


def test_cash_note_rejects_negative_amount(client, auth_headers) -> None:
    response = client.post(
        "/api/cash-notes",
        json={"type": "credit", "amount": -5, "date": "2025-09-20T10:00:00+05:30"},
        headers=auth_headers("staff"),
    )
    assert response.status_code == 422


def test_reports_route_returns_rollup(client, auth_headers, add_order, add_note) -> None:
    headers = auth_headers("manager")
    add_order(datetime(2025, 9, 20, 4, 0, tzinfo=timezone.utc), 100, items=[("Thali", 1, 100)])
    add_order(datetime(2025, 9, 20, 8, 0, tzinfo=timezone.utc), 150, items=[("Thali", 1, 150)])
    add_note(datetime(2025, 9, 20, 9, 0, tzinfo=timezone.utc), "debit", 20)

    response = client.get(
        "/api/reports",
        params={"dateRange": "custom", "startDate": "2025-09-20", "endDate": "2025-09-20"},
        headers=headers,
    )

    assert response.status_code == 200
    report = response.json()
    assert set(report) == {"dailySales", "topItems", "summary", "cashFlow", "recentCashNotes", "dateRange"}
    assert report["dailySales"] == [
        {"date": "2025-09-20", "revenue": 250.0, "orders": 2, "credits": 0.0, "debits": 20.0, "netProfit": 230.0}
    ]
    assert report["summary"]["netProfit"] == 230.0
    assert report["summary"]["topSellingItem"] == "Thali"
    assert report["dateRange"]["days"] == 1


def test_reports_route_rejects_bad_ranges(client, auth_headers) -> None:
    headers = auth_headers("admin")
    reversed_range = {"startDate": "2025-09-20", "endDate": "2025-09-01"}
    assert client.get("/api/reports", params=reversed_range, headers=headers).status_code == 400
    assert client.get("/api/reports", params={"dateRange": "custom"}, headers=headers).status_code == 400
    assert client.get("/api/reports", params={"dateRange": "forever"}, headers=headers).status_code == 400


def test_reports_need_permission(client, auth_headers) -> None:
    assert client.get("/api/reports", headers=auth_headers("staff")).status_code == 403


def test_dashboard_counts_today(client, auth_headers, add_order, add_note) -> None:
    headers = auth_headers("staff")
    now = utc_now()
    add_order(now, 300, status="Pending")
    add_order(now, 200, status="Paid")
    add_note(now, "debit", 50)

    response = client.get("/api/dashboard", headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["today_orders"] == {"count": 2, "pending": 1}
    assert data["today_earnings"]["amount"] == 500.0
    assert data["today_debit"] == {"amount": 50.0, "count": 1}
    assert data["total_menu_items"]["count"] == 0


def test_menu_flow(client, auth_headers) -> None:
    headers = auth_headers("manager")

    category = client.post("/api/categories", json={"name": " Thali ", "description": "Meals"}, headers=headers)
    assert category.status_code == 201
    category_id = category.json()["data"]["category_id"]
    assert category.json()["data"]["name"] == "Thali"
    assert client.post("/api/categories", json={"name": "Thali"}, headers=headers).status_code == 400

    sub = client.post(
        "/api/subcategories",
        json={"main_category_id": category_id, "name": "Veg Thali", "price": 180, "base_price": 120},
        headers=headers,
    )
    assert sub.status_code == 201
    sub_id = sub.json()["data"]["subcategory_id"]
    assert sub.json()["data"]["main_category_name"] == "Thali"

    missing_parent = client.post(
        "/api/subcategories",
        json={"main_category_id": 999, "name": "Ghost", "price": 1, "base_price": 1},
        headers=headers,
    )
    assert missing_parent.status_code == 400

    listed = client.get("/api/subcategories", params={"category_id": category_id})
    assert [s["name"] for s in listed.json()["data"]] == ["Veg Thali"]

    blocked = client.delete(f"/api/categories/{category_id}", headers=headers)
    assert blocked.status_code == 400

    repriced = client.put(f"/api/subcategories/{sub_id}", json={"price": 200}, headers=headers)
    assert repriced.json()["data"]["price"] == 200.0

    assert client.delete(f"/api/subcategories/{sub_id}", headers=headers).status_code == 200
    assert client.delete(f"/api/categories/{category_id}", headers=headers).status_code == 200
    assert client.get(f"/api/categories/{category_id}").status_code == 404


def test_menu_changes_need_permission(client, auth_headers) -> None:
    response = client.post("/api/categories", json={"name": "Snacks"}, headers=auth_headers("staff"))
    assert response.status_code == 403


def test_user_management(client, auth_headers, make_user) -> None:
    headers = auth_headers("admin")

    created = client.post(
        "/api/users",
        json={"name": "Ravi", "email": "Ravi@posbill.test", "password": "secret123", "role": "staff"},
        headers=headers,
    )
    assert created.status_code == 201
    user = created.json()["data"]
    assert user["email"] == "ravi@posbill.test"
    assert "manage_users" not in user["permissions"]

    duplicate = client.post(
        "/api/users",
        json={"name": "Ravi", "email": "ravi@posbill.test", "password": "secret123"},
        headers=headers,
    )
    assert duplicate.status_code == 400

    promoted = client.put(f"/api/users/{user['user_id']}", json={"role": "manager"}, headers=headers)
    assert "view_reports" in promoted.json()["data"]["permissions"]

    assert client.delete(f"/api/users/{user['user_id']}", headers=headers).status_code == 200
    assert client.get(f"/api/users/{user['user_id']}", headers=headers).status_code == 404

    owner = make_user("admin", is_super=True)
    assert client.delete(f"/api/users/{owner.id}", headers=headers).status_code == 403


def test_users_with_history_cannot_be_deleted(client, engine, auth_headers, make_user, add_order) -> None:
    with engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")
    headers = auth_headers("admin")

    order = add_order(datetime(2025, 9, 20, 8, 0, tzinfo=timezone.utc), 100)
    cashier_headers = auth_headers("staff")
    cashier_id = client.get("/api/auth/me", headers=cashier_headers).json()["data"]["user_id"]
    client.post(
        "/api/cash-notes",
        json={"type": "debit", "amount": 40, "date": "2025-09-20T10:00:00+05:30"},
        headers=cashier_headers,
    )

    for owner_id in (order.created_by, cashier_id):
        response = client.delete(f"/api/users/{owner_id}", headers=headers)
        assert response.status_code == 400
        assert client.get(f"/api/users/{owner_id}", headers=headers).status_code == 200

    idle = make_user("staff")
    login = client.post(
        "/api/auth/login", json={"email": idle.email, "password": "secret123"}
    )
    assert login.status_code == 200
    assert client.delete(f"/api/users/{idle.id}", headers=headers).status_code == 200


def test_users_need_permission(client, auth_headers) -> None:
    assert client.get("/api/users", headers=auth_headers("manager")).status_code == 403


def test_settings_defaults_and_update(client, auth_headers) -> None:
    headers = auth_headers("admin")

    current = client.get("/api/settings", headers=headers)
    assert current.status_code == 200
    assert current.json()["data"]["currency"] == "INR"
    assert current.json()["data"]["metadata"]["payment_methods"]["cash"] is True

    updated = client.put(
        "/api/settings",
        json={"restaurant_name": "Udupi Corner", "tax_rate": 5, "metadata": {"theme": "dark"}},
        headers=headers,
    )
    assert updated.status_code == 200
    data = updated.json()["data"]
    assert data["restaurant_name"] == "Udupi Corner"
    assert data["tax_rate"] == 5.0
    assert data["metadata"] == {"theme": "dark"}

    bad_phone = client.put("/api/settings", json={"phone": "12ab"}, headers=headers)
    assert bad_phone.status_code == 422


def test_settings_update_needs_permission(client, auth_headers) -> None:
    response = client.put("/api/settings", json={"restaurant_name": "X"}, headers=auth_headers("manager"))
    assert response.status_code == 403
