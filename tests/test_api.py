from datetime import datetime, timezone

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pos_backend import notifications
from pos_backend.db import Base
from pos_backend.main import app, get_db


def _make_client() -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _create_supplier(client: TestClient, name: str = "Metro Distributors") -> int:
    resp = client.post("/api/v1/suppliers", json={"name": name, "contact_info": "0917-555-0101"})
    assert resp.status_code == 200
    return resp.json()["data"]["supplier_id"]


def _create_product(client: TestClient, **overrides) -> dict:
    payload = {
        "sku": "BEV-001",
        "name": "Cola 1L",
        "price": "100.00",
        "cost_price": "60.00",
        "stock_qty": 10,
        "reorder_level": 2,
        "reorder_qty": 20,
    }
    payload.update(overrides)
    resp = client.post("/api/v1/products", json=payload)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _create_customer(client: TestClient, name: str = "Maria Santos", email: str = "maria@example.com") -> int:
    resp = client.post("/api/v1/customers", json={"name": name, "email": email})
    assert resp.status_code == 200
    return resp.json()["data"]["customer_id"]


def _create_sale(client: TestClient, product_id: int, quantity: int, **extra) -> dict:
    payload = {"items": [{"product_id": product_id, "quantity": quantity, "tax_percent": "0"}]}
    payload.update(extra)
    resp = client.post("/api/v1/sales", json=payload)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _stock(client: TestClient, product_id: int) -> int:
    return client.get(f"/api/v1/products/{product_id}").json()["data"]["stock_qty"]


def test_root_and_health() -> None:
    client = _make_client()
    with client:
        assert client.get("/").json() == {"status": "ok"}
        assert client.get("/health").json() == {"status": "healthy"}


def test_category_names_are_unique_and_deactivation_conflicts() -> None:
    client = _make_client()
    with client:
        resp = client.post("/api/v1/categories", json={"name": "Beverages"})
        assert resp.status_code == 200
        category_id = resp.json()["data"]["category_id"]

        dup = client.post("/api/v1/categories", json={"name": "beverages"})
        assert dup.status_code == 409

        first = client.post(f"/api/v1/categories/{category_id}/deactivate")
        assert first.status_code == 200
        assert first.json()["data"]["is_active"] is False
        second = client.post(f"/api/v1/categories/{category_id}/deactivate")
        assert second.status_code == 409

        missing = client.get("/api/v1/categories/999")
        assert missing.status_code == 404


def test_product_catalog_operations() -> None:
    client = _make_client()
    with client:
        supplier_id = _create_supplier(client)
        product = _create_product(client, barcode="4800016644290", supplier_id=supplier_id)
        product_id = product["product_id"]
        assert product["stock_qty"] == 10

        opening = client.get("/api/v1/inventory-movements", params={"product_id": product_id}).json()["data"]
        assert [(m["movement_type"], m["qty_change"]) for m in opening] == [("adjustment", 10)]

        dup = client.post("/api/v1/products", json={"sku": "bev-001", "name": "Other", "price": "1"})
        assert dup.status_code == 409
        bad_ref = client.post("/api/v1/products", json={"sku": "X-1", "name": "X", "price": "1", "category_id": 42})
        assert bad_ref.status_code == 404
        negative = client.post("/api/v1/products", json={"sku": "X-2", "name": "X", "price": "-1"})
        assert negative.status_code == 422

        by_barcode = client.get("/api/v1/products/barcode/4800016644290")
        assert by_barcode.json()["data"]["product_id"] == product_id
        assert client.get("/api/v1/products/barcode/000").status_code == 404

        sku_check = client.get("/api/v1/products/sku-availability", params={"sku": "BEV-001"})
        assert sku_check.json()["data"]["available"] is False
        own_sku = client.get("/api/v1/products/sku-availability", params={"sku": "BEV-001", "exclude_id": product_id})
        assert own_sku.json()["data"]["available"] is True

        availability = client.get(f"/api/v1/products/{product_id}/availability", params={"quantity": 11})
        assert availability.json()["data"]["available"] is False

        updated = client.patch(
            f"/api/v1/products/{product_id}",
            json={"price": "120.00", "price_change_reason": "supplier increase"},
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["price"] == 120.0

        bulk = client.post(
            "/api/v1/products/bulk-price-update",
            json={"product_ids": [product_id], "mode": "percentage", "value": "-10"},
        )
        assert bulk.status_code == 200
        assert bulk.json()["data"]["products"][0]["price"] == 108.0

        history = client.get(f"/api/v1/products/{product_id}/price-history").json()["data"]
        assert [row["change_type"] for row in history] == ["decrease", "increase"]
        assert history[1]["old_price"] == 100.0

        adjusted = client.post(
            f"/api/v1/products/{product_id}/stock-adjustments",
            json={"quantity_change": -9, "notes": "damaged"},
        )
        assert adjusted.status_code == 200
        assert adjusted.json()["data"]["product"]["stock_qty"] == 1
        too_much = client.post(f"/api/v1/products/{product_id}/stock-adjustments", json={"quantity_change": -2})
        assert too_much.status_code == 409

        low = client.get("/api/v1/products/low-stock").json()["data"]
        assert [row["product_id"] for row in low] == [product_id]
        searched = client.get("/api/v1/products", params={"search": "cola", "low_stock": True}).json()["data"]
        assert len(searched) == 1

        assert client.post(f"/api/v1/products/{product_id}/deactivate").status_code == 200
        assert client.post(f"/api/v1/products/{product_id}/deactivate").status_code == 409


def test_sale_pay_and_refund_flow() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        customer_id = _create_customer(client)

        sale = _create_sale(client, product_id, 2, customer_id=customer_id)
        assert sale["status"] == "initiated"
        assert sale["reference_no"].startswith("SALE-")
        assert sale["reference_no"].endswith("-0001")
        assert sale["total_amount"] == 200.0
        assert _stock(client, product_id) == 10

        short = client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={"amount_tendered": "150"})
        assert short.status_code == 400

        paid = client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={"amount_tendered": "250"})
        assert paid.status_code == 200
        paid_data = paid.json()["data"]
        assert paid_data["status"] == "paid"
        assert paid_data["change_due"] == 50.0
        assert paid_data["points_earned"] == 4
        assert _stock(client, product_id) == 8

        customer = client.get(f"/api/v1/customers/{customer_id}").json()["data"]
        assert customer["loyalty_points_balance"] == 4
        assert customer["lifetime_points_earned"] == 4

        again = client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={"amount_tendered": "250"})
        assert again.status_code == 409

        receipt = client.get(f"/api/v1/sales/{sale['sale_id']}/receipt").json()["data"]
        assert receipt["company_name"] == "POS Management"
        assert receipt["lines"][0]["sku"] == "BEV-001"
        assert receipt["change_due"] == 50.0

        refunded = client.post(f"/api/v1/sales/{sale['sale_id']}/refund", json={"reason": "wrong flavour"})
        assert refunded.status_code == 200
        assert refunded.json()["data"]["status"] == "refunded"
        assert _stock(client, product_id) == 10

        customer = client.get(f"/api/v1/customers/{customer_id}").json()["data"]
        assert customer["loyalty_points_balance"] == 0
        types = [
            row["transaction_type"]
            for row in client.get("/api/v1/loyalty/transactions", params={"customer_id": customer_id}).json()["data"]
        ]
        assert types == ["earn", "refund"]

        movements = client.get("/api/v1/inventory-movements", params={"sale_id": sale["sale_id"]}).json()["data"]
        assert [(m["movement_type"], m["qty_change"]) for m in movements] == [("sale", -2), ("refund", 2)]

        assert client.post(f"/api/v1/sales/{sale['sale_id']}/refund", json={}).status_code == 409

        history = client.get(f"/api/v1/customers/{customer_id}/purchases").json()["data"]
        assert [row["status"] for row in history] == ["refunded"]


def test_sale_rejects_insufficient_stock_and_inactive_products() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client, stock_qty=1)["product_id"]
        resp = client.post("/api/v1/sales", json={"items": [{"product_id": product_id, "quantity": 2}]})
        assert resp.status_code == 409

        client.post(f"/api/v1/products/{product_id}/deactivate")
        resp = client.post("/api/v1/sales", json={"items": [{"product_id": product_id, "quantity": 1}]})
        assert resp.status_code == 400

        empty = client.post("/api/v1/sales", json={"items": []})
        assert empty.status_code == 422


def test_void_restores_stock_only_for_paid_sales() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]

        unpaid = _create_sale(client, product_id, 3)
        voided = client.post(f"/api/v1/sales/{unpaid['sale_id']}/void", json={"reason": "customer left"})
        assert voided.json()["data"]["status"] == "voided"
        assert _stock(client, product_id) == 10

        paid = _create_sale(client, product_id, 3, payment_method="card")
        client.post(f"/api/v1/sales/{paid['sale_id']}/pay", json={})
        assert _stock(client, product_id) == 7
        client.post(f"/api/v1/sales/{paid['sale_id']}/void", json={})
        assert _stock(client, product_id) == 10
        movements = client.get("/api/v1/inventory-movements", params={"sale_id": paid["sale_id"]}).json()["data"]
        assert [m["movement_type"] for m in movements] == ["sale", "adjustment"]

        assert client.post(f"/api/v1/sales/{paid['sale_id']}/void", json={}).status_code == 409


def test_initiated_sales_can_be_edited_and_deleted() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        sale = _create_sale(client, product_id, 1)

        updated = client.patch(f"/api/v1/sales/{sale['sale_id']}", json={"payment_method": "gcash", "notes": "table 4"})
        assert updated.json()["data"]["payment_method"] == "gcash"
        bad_method = client.patch(f"/api/v1/sales/{sale['sale_id']}", json={"payment_method": "barter"})
        assert bad_method.status_code == 400

        assert client.delete(f"/api/v1/sales/{sale['sale_id']}").status_code == 200
        assert client.get(f"/api/v1/sales/{sale['sale_id']}").status_code == 404

        paid = _create_sale(client, product_id, 1)
        client.post(f"/api/v1/sales/{paid['sale_id']}/pay", json={"amount_tendered": "100"})
        assert client.delete(f"/api/v1/sales/{paid['sale_id']}").status_code == 409


def test_loyalty_redemption_and_reversal() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        customer_id = _create_customer(client)

        bonus = client.post(
            f"/api/v1/customers/{customer_id}/loyalty-adjustments",
            json={"points": 100, "transaction_type": "bonus"},
        )
        assert bonus.status_code == 200
        assert bonus.json()["data"]["customer"]["loyalty_points_balance"] == 100

        too_many = client.post(
            "/api/v1/sales",
            json={"items": [{"product_id": product_id, "quantity": 1, "tax_percent": "0"}], "customer_id": customer_id, "loyalty_points": 101},
        )
        assert too_many.status_code == 400

        sale = _create_sale(client, product_id, 1, customer_id=customer_id, loyalty_points=30)
        assert sale["total_amount"] == 70.0
        assert sale["loyalty_redeemed"] == 30

        client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={"payment_method": "card"})
        customer = client.get(f"/api/v1/customers/{customer_id}").json()["data"]
        assert customer["loyalty_points_balance"] == 71

        client.post(f"/api/v1/sales/{sale['sale_id']}/refund", json={})
        customer = client.get(f"/api/v1/customers/{customer_id}").json()["data"]
        assert customer["loyalty_points_balance"] == 100

        stats = client.get("/api/v1/loyalty/stats").json()["data"]
        assert stats["outstanding_points"] == 100
        assert stats["points_redeemed"] == 30
        leaderboard = client.get("/api/v1/loyalty/leaderboard").json()["data"]
        assert leaderboard[0]["customer_id"] == customer_id
        tiers = client.get("/api/v1/loyalty/tiers").json()["data"]
        assert [row["tier"] for row in tiers] == ["regular", "vip", "elite"]

        no_customer = client.post(
            "/api/v1/sales",
            json={"items": [{"product_id": product_id, "quantity": 1}], "loyalty_points": 5},
        )
        assert no_customer.status_code == 400


def test_auto_reorder_creates_one_pending_purchase() -> None:
    client = _make_client()
    with client:
        supplier_id = _create_supplier(client)
        product_id = _create_product(
            client, stock_qty=5, reorder_level=3, reorder_qty=10, supplier_id=supplier_id
        )["product_id"]

        for quantity in (2, 1):
            sale = _create_sale(client, product_id, quantity, payment_method="card")
            assert client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={}).status_code == 200

        purchases = client.get("/api/v1/purchases", params={"status": "pending"}).json()["data"]
        assert len(purchases) == 1
        assert purchases[0]["supplier_id"] == supplier_id
        assert purchases[0]["items"][0]["quantity"] == 10
        assert purchases[0]["items"][0]["unit_cost"] == 60.0
        assert purchases[0]["reference_no"].startswith("PO-")

        titles = [row["title"] for row in client.get("/api/v1/notifications").json()["data"]]
        assert titles.count("Auto reorder created") == 1
        assert "Low stock" in titles


def test_purchase_status_transitions_move_stock() -> None:
    client = _make_client()
    with client:
        supplier_id = _create_supplier(client)
        product_id = _create_product(client, stock_qty=0)["product_id"]

        resp = client.post(
            "/api/v1/purchases",
            json={"supplier_id": supplier_id, "items": [{"product_id": product_id, "quantity": 5, "unit_cost": "10"}]},
        )
        assert resp.status_code == 200
        purchase = resp.json()["data"]
        assert purchase["total_amount"] == 50.0
        purchase_id = purchase["purchase_id"]

        edited = client.patch(
            f"/api/v1/purchases/{purchase_id}",
            json={"items": [{"product_id": product_id, "quantity": 6, "unit_cost": "10"}]},
        )
        assert edited.json()["data"]["total_amount"] == 60.0

        done = client.post(f"/api/v1/purchases/{purchase_id}/status", json={"status": "completed"})
        assert done.status_code == 200
        assert done.json()["data"]["received_at"] is not None
        assert _stock(client, product_id) == 6

        back = client.post(f"/api/v1/purchases/{purchase_id}/status", json={"status": "pending"})
        assert back.status_code == 409
        locked = client.patch(f"/api/v1/purchases/{purchase_id}", json={"notes": "late"})
        assert locked.status_code == 409

        cancelled = client.post(f"/api/v1/purchases/{purchase_id}/status", json={"status": "cancelled"})
        assert cancelled.status_code == 200
        assert _stock(client, product_id) == 0

        reopen = client.post(f"/api/v1/purchases/{purchase_id}/status", json={"status": "completed"})
        assert reopen.status_code == 409


def test_purchase_requires_active_supplier() -> None:
    client = _make_client()
    with client:
        supplier_id = _create_supplier(client)
        product_id = _create_product(client)["product_id"]
        client.post(f"/api/v1/suppliers/{supplier_id}/deactivate")
        resp = client.post(
            "/api/v1/purchases",
            json={"supplier_id": supplier_id, "items": [{"product_id": product_id, "quantity": 1, "unit_cost": "1"}]},
        )
        assert resp.status_code == 400
        missing = client.post(
            "/api/v1/purchases",
            json={"supplier_id": 999, "items": [{"product_id": product_id, "quantity": 1, "unit_cost": "1"}]},
        )
        assert missing.status_code == 404


def test_returns_are_limited_to_sold_quantities() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        other_id = _create_product(client, sku="BEV-002", name="Water")["product_id"]

        unpaid = _create_sale(client, product_id, 1)
        not_paid = client.post(
            "/api/v1/returns", json={"sale_id": unpaid["sale_id"], "items": [{"product_id": product_id, "quantity": 1}]}
        )
        assert not_paid.status_code == 400

        sale = _create_sale(client, product_id, 3, payment_method="card")
        client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={})
        assert _stock(client, product_id) == 7

        wrong_product = client.post(
            "/api/v1/returns", json={"sale_id": sale["sale_id"], "items": [{"product_id": other_id, "quantity": 1}]}
        )
        assert wrong_product.status_code == 400

        first = client.post(
            "/api/v1/returns",
            json={"sale_id": sale["sale_id"], "items": [{"product_id": product_id, "quantity": 2}], "reason": "dented"},
        )
        assert first.status_code == 200
        first_data = first.json()["data"]
        assert first_data["total_amount"] == 200.0
        assert first_data["reference_no"].startswith("RET-")

        over = client.post(
            "/api/v1/returns", json={"sale_id": sale["sale_id"], "items": [{"product_id": product_id, "quantity": 2}]}
        )
        assert over.status_code == 400

        processed = client.post(f"/api/v1/returns/{first_data['return_id']}/status", json={"status": "processed"})
        assert processed.status_code == 200
        assert _stock(client, product_id) == 9

        assert (
            client.post(f"/api/v1/returns/{first_data['return_id']}/status", json={"status": "pending"}).status_code
            == 409
        )
        client.post(f"/api/v1/returns/{first_data['return_id']}/status", json={"status": "cancelled"})
        assert _stock(client, product_id) == 7

        retry = client.post(
            "/api/v1/returns", json={"sale_id": sale["sale_id"], "items": [{"product_id": product_id, "quantity": 3}]}
        )
        assert retry.status_code == 200

        stats = client.get("/api/v1/returns/stats").json()["data"]
        assert stats["by_status"] == {"cancelled": 1, "pending": 1, "processed": 0}
        assert stats["top_returned_products"][0]["quantity"] == 3


def test_settings_drive_tax_and_large_sale_alerts() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]

        default_tax = client.post("/api/v1/sales", json={"items": [{"product_id": product_id, "quantity": 1}]})
        assert default_tax.json()["data"]["tax_amount"] == 12.0

        resp = client.put("/api/v1/settings/TAX_RATE", json={"value": "0", "setting_type": "sales"})
        assert resp.status_code == 200
        assert resp.json()["data"]["key"] == "tax_rate"
        client.put("/api/v1/settings/large_sale_threshold", json={"value": "150", "setting_type": "notification"})

        sale = client.post("/api/v1/sales", json={"items": [{"product_id": product_id, "quantity": 2}]}).json()["data"]
        assert sale["tax_amount"] == 0.0
        assert sale["total_amount"] == 200.0
        client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={"amount_tendered": "200"})

        large = client.get("/api/v1/notifications", params={"type": "sale"}).json()["data"]
        assert [row["title"] for row in large] == ["Large sale"]

        listed = client.get("/api/v1/settings", params={"setting_type": "sales"}).json()["data"]
        assert [row["key"] for row in listed] == ["tax_rate"]
        assert client.delete("/api/v1/settings/tax_rate").status_code == 200
        assert client.get("/api/v1/settings/tax_rate").status_code == 404
        bad_type = client.put("/api/v1/settings/foo", json={"value": "1", "setting_type": "nonsense"})
        assert bad_type.status_code == 400


def test_audit_trail_records_changes_and_can_be_disabled() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        client.patch(f"/api/v1/products/{product_id}", json={"name": "Cola 1.5L"})

        logs = client.get("/api/v1/audit-logs", params={"entity": "Product", "entity_id": product_id}).json()["data"]
        actions = [row["action"] for row in logs]
        assert actions[0] == "CREATE"
        rename = [row for row in logs if row["new_data"] == {"name": "Cola 1.5L"}]
        assert rename and rename[0]["previous_data"] == {"name": "Cola 1L"}

        stats = client.get("/api/v1/audit-logs/stats").json()["data"]
        assert stats["by_action"]["CREATE"] >= 1

        client.put("/api/v1/settings/audit_log_enabled", json={"value": "false", "setting_type": "security"})
        before = len(client.get("/api/v1/audit-logs", params={"limit": 500}).json()["data"])
        client.post("/api/v1/categories", json={"name": "Snacks"})
        after = len(client.get("/api/v1/audit-logs", params={"limit": 500}).json()["data"])
        assert before == after

        purge = client.post("/api/v1/audit-logs/purge").json()["data"]
        assert purge["skipped"] is True

        report = client.get("/api/v1/audit-logs/suspicious").json()["data"]
        assert "risk_assessment" in report


def test_notifications_read_state() -> None:
    client = _make_client()
    with client:
        created = client.post("/api/v1/notifications", json={"title": "Cycle count", "message": "Due Friday"})
        assert created.status_code == 200
        notification_id = created.json()["data"]["notification_id"]
        client.post("/api/v1/notifications", json={"title": "Promo", "message": "Starts Monday", "type": "success"})

        assert client.get("/api/v1/notifications/unread-count").json()["data"]["unread"] == 2
        read = client.post(f"/api/v1/notifications/{notification_id}/read")
        assert read.json()["data"]["is_read"] is True
        assert client.get("/api/v1/notifications/unread-count").json()["data"]["unread"] == 1

        assert client.post("/api/v1/notifications/read-all").json()["data"]["updated"] == 1
        stats = client.get("/api/v1/notifications/stats").json()["data"]
        assert stats == {"total": 2, "unread": 0, "by_type": {"info": 1, "success": 1}}

        bad = client.post("/api/v1/notifications", json={"title": "x", "message": "y", "type": "shout"})
        assert bad.status_code == 400
        assert client.delete(f"/api/v1/notifications/{notification_id}").status_code == 200
        assert client.get(f"/api/v1/notifications/{notification_id}").status_code == 404


def test_reports_summarise_paid_sales() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        customer_id = _create_customer(client)
        sale = _create_sale(client, product_id, 2, customer_id=customer_id, payment_method="card")
        client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={})
        _create_sale(client, product_id, 1)

        daily = client.get("/api/v1/reports/daily-sales").json()["data"]
        assert len(daily) == 30
        today = datetime.now(timezone.utc).date().isoformat()
        assert daily[-1] == {"date": today, "revenue": 200.0, "sales": 1, "average_sale": 200.0}
        assert daily[0]["sales"] == 0

        dashboard = client.get("/api/v1/reports/dashboard").json()["data"]
        assert dashboard["today"] == {"revenue": 200.0, "sales": 1}
        assert dashboard["active_products"] == 1

        stats = client.get("/api/v1/reports/sales-stats").json()["data"]
        assert stats["by_status"] == {"initiated": 1, "paid": 1}
        assert stats["revenue_by_payment_method"] == {"card": 200.0}

        top = client.get("/api/v1/reports/top-products").json()["data"]
        assert top[0]["quantity_sold"] == 2

        financial = client.get("/api/v1/reports/financial").json()["data"]
        assert financial["revenue"] == 200.0
        assert financial["cost_of_goods"] == 120.0
        assert financial["gross_profit"] == 80.0
        assert financial["gross_margin_percent"] == 40.0

        inventory = client.get("/api/v1/reports/inventory").json()["data"]
        assert inventory["total_stock_value"] == 480.0

        insights = client.get("/api/v1/reports/customer-insights").json()["data"]
        assert insights["top_customers"][0]["total_spent"] == 200.0

        customer_stats = client.get(f"/api/v1/customers/{customer_id}/stats").json()["data"]
        assert customer_stats["sales"] == 1
        assert customer_stats["average_sale"] == 200.0


def test_product_update_trims_sku() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        _create_product(client, sku="BEV-002", name="Water")

        resp = client.patch(f"/api/v1/products/{product_id}", json={"sku": "  BEV-009  "})
        assert resp.status_code == 200
        assert resp.json()["data"]["sku"] == "BEV-009"

        clash = client.patch(f"/api/v1/products/{product_id}", json={"sku": " bev-002 "})
        assert clash.status_code == 409
        blank = client.patch(f"/api/v1/products/{product_id}", json={"sku": "   "})
        assert blank.status_code == 400

        found = client.get("/api/v1/products/sku-availability", params={"sku": "BEV-009"}).json()["data"]
        assert found["available"] is False


def test_credit_sales_run_through_the_customer_account() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        customer_id = _create_customer(client)
        assert client.get(f"/api/v1/customers/{customer_id}").json()["data"]["current_balance"] == 0.0

        walk_in = _create_sale(client, product_id, 1, payment_method="credit")
        assert client.post(f"/api/v1/sales/{walk_in['sale_id']}/pay", json={}).status_code == 400
        assert _stock(client, product_id) == 10

        sale = _create_sale(client, product_id, 3, customer_id=customer_id, payment_method="credit")
        assert client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={}).status_code == 200
        account = client.get(f"/api/v1/customers/{customer_id}/account").json()["data"]
        assert account["current_balance"] == 300.0
        assert account["last_30_days"]["charged"] == 300.0

        payment = client.post(
            f"/api/v1/customers/{customer_id}/account/transactions",
            json={"transaction_type": "payment", "amount": "120.00", "description": "cash at counter"},
        )
        assert payment.status_code == 200
        assert payment.json()["data"]["transaction"]["balance_after"] == 180.0
        assert payment.json()["data"]["customer"]["current_balance"] == 180.0

        negative = client.post(
            f"/api/v1/customers/{customer_id}/account/transactions",
            json={"transaction_type": "payment", "amount": "-10"},
        )
        assert negative.status_code == 400
        not_allowed = client.post(
            f"/api/v1/customers/{customer_id}/account/transactions",
            json={"transaction_type": "sale", "amount": "10"},
        )
        assert not_allowed.status_code == 422

        client.post(f"/api/v1/sales/{sale['sale_id']}/refund", json={})
        rows = client.get(f"/api/v1/customers/{customer_id}/account/transactions").json()["data"]
        assert [(row["transaction_type"], row["balance_after"]) for row in rows] == [
            ("sale", 300.0),
            ("payment", 180.0),
            ("credit_note", -120.0),
        ]

        statement = client.get(
            f"/api/v1/customers/{customer_id}/account/statement",
            params={"start": "2000-01-01T00:00:00", "end": "2100-01-01T00:00:00"},
        ).json()["data"]
        assert statement["opening_balance"] == 0.0
        assert [line["running_balance"] for line in statement["lines"]] == [300.0, 180.0, -120.0]
        assert statement["closing_balance"] == -120.0

        assert client.get("/api/v1/customers/999/account").status_code == 404


def test_refund_after_processed_return_cancels_pending_returns() -> None:
    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        sale = _create_sale(client, product_id, 3, payment_method="card")
        client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={})

        first = client.post(
            "/api/v1/returns", json={"sale_id": sale["sale_id"], "items": [{"product_id": product_id, "quantity": 2}]}
        ).json()["data"]
        client.post(f"/api/v1/returns/{first['return_id']}/status", json={"status": "processed"})
        second = client.post(
            "/api/v1/returns", json={"sale_id": sale["sale_id"], "items": [{"product_id": product_id, "quantity": 1}]}
        ).json()["data"]
        assert _stock(client, product_id) == 9

        assert client.post(f"/api/v1/sales/{sale['sale_id']}/refund", json={}).status_code == 200
        assert _stock(client, product_id) == 10
        assert client.get(f"/api/v1/returns/{second['return_id']}").json()["data"]["status"] == "cancelled"
        movements = client.get("/api/v1/inventory-movements", params={"sale_id": sale["sale_id"]}).json()["data"]
        assert [(m["movement_type"], m["qty_change"]) for m in movements] == [
            ("sale", -3),
            ("return", 2),
            ("refund", 1),
        ]

        late = client.post(f"/api/v1/returns/{first['return_id']}/status", json={"status": "cancelled"})
        assert late.status_code == 409
        assert _stock(client, product_id) == 10


def test_refunding_a_multi_item_sale_raises_a_bulk_refund_alert() -> None:
    client = _make_client()
    with client:
        cola_id = _create_product(client)["product_id"]
        water_id = _create_product(client, sku="BEV-002", name="Water")["product_id"]
        sale = client.post(
            "/api/v1/sales",
            json={
                "items": [
                    {"product_id": cola_id, "quantity": 1, "tax_percent": "0"},
                    {"product_id": water_id, "quantity": 1, "tax_percent": "0"},
                ],
                "payment_method": "card",
            },
        ).json()["data"]
        client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={})
        client.post(f"/api/v1/sales/{sale['sale_id']}/refund", json={})

        alerts = [row for row in client.get("/api/v1/notifications").json()["data"] if row["title"] == "Bulk refund"]
        assert len(alerts) == 1
        assert alerts[0]["type"] == "warning"
        assert sale["reference_no"] in alerts[0]["message"]


def test_notification_failure_does_not_undo_the_payment(monkeypatch) -> None:
    def broken_create_notification(*args, **kwargs):
        raise RuntimeError("notification store unavailable")

    client = _make_client()
    with client:
        product_id = _create_product(client)["product_id"]
        client.put("/api/v1/settings/large_sale_threshold", json={"value": "50", "setting_type": "notification"})
        sale = _create_sale(client, product_id, 2, payment_method="card")

        monkeypatch.setattr(notifications, "create_notification", broken_create_notification)
        paid = client.post(f"/api/v1/sales/{sale['sale_id']}/pay", json={})
        assert paid.status_code == 200

        assert client.get(f"/api/v1/sales/{sale['sale_id']}").json()["data"]["status"] == "paid"
        assert _stock(client, product_id) == 8
        assert client.get("/api/v1/notifications", params={"type": "sale"}).json()["data"] == []
