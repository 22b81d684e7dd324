from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pos_backend import accounts, audit, loyalty, purchasing, returns, sales, system_settings
from pos_backend.common import next_reference, utcnow
from pos_backend.exceptions import (
    InsufficientPointsError,
    InsufficientStockError,
    InvalidTransitionError,
    ValidationError,
)
from pos_backend.inventory import apply_stock_change
from pos_backend.models import (
    AuditLog,
    Customer,
    CustomerTransaction,
    LoyaltyTransaction,
    Notification,
    Product,
    Sale,
    Supplier,
    SystemSetting,
)


def _product(db, sku: str = "SKU-1", stock: int = 10, **fields) -> Product:
    product = Product(
        sku=sku,
        name=fields.pop("name", sku),
        price=fields.pop("price", Decimal("100.00")),
        stock_qty=stock,
        reorder_level=fields.pop("reorder_level", 0),
        reorder_qty=fields.pop("reorder_qty", 0),
        is_active=True,
        created_at=utcnow(),
        **fields,
    )
    db.add(product)
    db.flush()
    return product


def _customer(db, name: str = "Ana") -> Customer:
    customer = Customer(
        name=name,
        loyalty_points_balance=0,
        lifetime_points_earned=0,
        status="regular",
        is_active=True,
        created_at=utcnow(),
    )
    db.add(customer)
    db.flush()
    return customer


def test_setting_accessors_parse_and_fall_back(db) -> None:
    db.add_all(
        [
            SystemSetting(key="flag_yes", value="yes"),
            SystemSetting(key="flag_number", value="2"),
            SystemSetting(key="flag_zero", value="0"),
            SystemSetting(key="flag_bad", value="maybe"),
            SystemSetting(key="tax_rate", value="not a number"),
        ]
    )
    db.flush()
    assert system_settings.get_bool(db, "flag_yes", False) is True
    assert system_settings.get_bool(db, "flag_number", False) is True
    assert system_settings.get_bool(db, "flag_zero", True) is False
    assert system_settings.get_bool(db, "flag_bad", True) is True
    assert system_settings.get_bool(db, "missing", False) is False
    assert system_settings.tax_rate(db) == Decimal("12")
    assert system_settings.company_name(db) == "POS Management"


def test_stock_change_records_movement_and_blocks_negative(db) -> None:
    product = _product(db, stock=3)
    movement = apply_stock_change(db, product, -2, "adjustment", notes="damaged")
    assert product.stock_qty == 1
    assert (movement.stock_before, movement.stock_after, movement.qty_change) == (3, 1, -2)

    with pytest.raises(InsufficientStockError):
        apply_stock_change(db, product, -5, "sale")
    assert product.stock_qty == 1

    apply_stock_change(db, product, -5, "adjustment", allow_negative=True)
    assert product.stock_qty == -4


def test_reference_numbers_follow_the_daily_sequence(db) -> None:
    moment = datetime(2026, 3, 9, 15, 0, tzinfo=timezone.utc)
    assert next_reference(db, Sale, "SALE", moment) == "SALE-20260309-0001"
    db.add(
        Sale(
            reference_no="SALE-20260309-0007",
            status="initiated",
            payment_method="cash",
            created_at=moment,
        )
    )
    db.flush()
    assert next_reference(db, Sale, "SALE", moment) == "SALE-20260309-0008"
    assert next_reference(db, Sale, "SALE", moment + timedelta(days=1)) == "SALE-20260310-0001"


def test_reference_numbers_keep_counting_past_four_digits(db) -> None:
    moment = datetime(2026, 3, 9, 15, 0, tzinfo=timezone.utc)
    db.add(Sale(reference_no="SALE-20260309-9999", status="initiated", payment_method="cash", created_at=moment))
    db.flush()
    assert next_reference(db, Sale, "SALE", moment) == "SALE-20260309-10000"

    db.add(Sale(reference_no="SALE-20260309-10000", status="initiated", payment_method="cash", created_at=moment))
    db.flush()
    assert next_reference(db, Sale, "SALE", moment) == "SALE-20260309-10001"


@pytest.mark.parametrize(
    ("lifetime", "tier"),
    [(0, "regular"), (1000, "regular"), (1001, "vip"), (5000, "vip"), (5001, "elite")],
)
def test_determine_tier(lifetime: int, tier: str) -> None:
    assert loyalty.determine_tier(lifetime) == tier


def test_manual_loyalty_adjustments(db) -> None:
    customer = _customer(db)

    with pytest.raises(InsufficientPointsError):
        loyalty.adjust_points(db, customer.id, 10, "redeem")

    entry = loyalty.adjust_points(db, customer.id, 50, "adjustment")
    assert entry.points_change == 50
    assert customer.loyalty_points_balance == 50
    assert customer.lifetime_points_earned == 0

    loyalty.adjust_points(db, customer.id, 2000, "bonus")
    assert customer.loyalty_points_balance == 2050
    assert customer.lifetime_points_earned == 2000
    assert customer.status == "vip"

    entry = loyalty.adjust_points(db, customer.id, 30, "adjustment")
    assert entry.points_change == -2020
    assert customer.loyalty_points_balance == 30


def test_void_of_unpaid_sale_leaves_stock_alone(db) -> None:
    product = _product(db, stock=5)
    sale = sales.create_sale(db, [{"product_id": product.id, "quantity": 2, "tax_percent": 0}])
    sales.void_sale(db, sale.id)
    assert sale.status == "voided"
    assert product.stock_qty == 5

    with pytest.raises(InvalidTransitionError):
        sales.pay_sale(db, sale.id, amount_tendered=Decimal("500"))


def test_paid_sale_earns_points_and_promotes_tier(db) -> None:
    product = _product(db, price=Decimal("1000.00"), stock=5)
    customer = _customer(db)
    customer.lifetime_points_earned = 990
    customer.loyalty_points_balance = 990
    sale = sales.create_sale(
        db, [{"product_id": product.id, "quantity": 1, "tax_percent": 0}], customer_id=customer.id
    )
    sales.pay_sale(db, sale.id, payment_method="card")

    assert sale.points_earned == 20
    assert customer.loyalty_points_balance == 1010
    assert customer.lifetime_points_earned == 1010
    assert customer.status == "vip"
    assert product.stock_qty == 4

    milestone = db.query(Notification).filter(Notification.title == "Loyalty milestone").one()
    assert milestone.type == "success"
    assert customer.name in milestone.message


def test_auto_reorder_skips_when_a_pending_purchase_exists(db) -> None:
    supplier = Supplier(name="Acme", is_active=True, created_at=utcnow())
    db.add(supplier)
    db.flush()
    product = _product(
        db,
        stock=4,
        reorder_level=3,
        reorder_qty=12,
        supplier_id=supplier.id,
        cost_price=Decimal("40.00"),
    )
    for _ in range(2):
        sale = sales.create_sale(db, [{"product_id": product.id, "quantity": 1, "tax_percent": 0}])
        sales.pay_sale(db, sale.id, amount_tendered=Decimal("100"))

    pending = purchasing.purchase_query(db, status="pending").all()
    assert len(pending) == 1
    assert pending[0].items[0].quantity == 12
    assert pending[0].items[0].unit_cost == Decimal("40.00")
    assert purchasing.pending_purchase_exists(db, product.id)


def test_log_update_keeps_only_changed_fields(db) -> None:
    entry = audit.log_update(
        db, "Product", 1, {"price": Decimal("10.00"), "name": "Cola"}, {"price": Decimal("12.00"), "name": "Cola"}
    )
    assert entry.previous_data == {"price": 10.0}
    assert entry.new_data == {"price": 12.0}
    assert audit.log_update(db, "Product", 1, {"name": "Cola"}, {"name": "Cola"}) is None


def test_audit_writes_are_skipped_when_disabled(db) -> None:
    db.add(SystemSetting(key="audit_log_enabled", value="off"))
    db.flush()
    assert audit.log_create(db, "Category", 1, {"name": "Snacks"}) is None
    assert audit.purge_old_logs(db)["skipped"] is True


def test_purge_removes_entries_past_retention(db) -> None:
    now = utcnow()
    db.add_all(
        [
            AuditLog(action="CREATE", entity="Product", performed_by="ana", timestamp=now - timedelta(days=400)),
            AuditLog(action="CREATE", entity="Product", performed_by="ana", timestamp=now - timedelta(days=1)),
        ]
    )
    db.flush()
    result = audit.purge_old_logs(db, now=now)
    assert result == {"skipped": False, "deleted": 1, "retention_days": 365}
    actions = sorted(row.action for row in db.query(AuditLog).all())
    assert actions == ["AUDIT_CLEANUP", "CREATE"]


def test_suspicious_report_flags_late_night_mass_deletes(db) -> None:
    end = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    for second in range(11):
        db.add(
            AuditLog(
                action="DELETE",
                entity="Product",
                entity_id=second,
                performed_by="mallory",
                timestamp=datetime(2026, 3, 9, 23, 0, second, tzinfo=timezone.utc),
            )
        )
    db.add(
        AuditLog(
            action="UPDATE",
            entity="Product",
            entity_id=1,
            performed_by="ana",
            timestamp=datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc),
        )
    )
    db.add(
        AuditLog(
            action="DELETE",
            entity="Product",
            entity_id=99,
            performed_by="mallory",
            timestamp=datetime(2026, 2, 1, 23, 0, tzinfo=timezone.utc),
        )
    )
    db.flush()

    report = audit.suspicious_activity(db, days=7, end=end)
    assert report["total_entries"] == 12
    assert report["suspicious_count"] == 11
    assert report["users_with_many_deletes"] == ["mallory"]
    assert report["risk_assessment"]["overall_risk"] == "high"
    flagged = report["suspicious_activities"][0]
    assert flagged["performed_by"] == "mallory"
    assert {"high_risk_action", "off_hours_activity", "excessive_deletes", "rapid_sequence"} <= set(
        flagged["reasons"]
    )


def test_refund_restores_redeemed_points_before_clawing_back_earned(db) -> None:
    product = _product(db, price=Decimal("250.00"))
    customer = _customer(db)
    customer.loyalty_points_balance = 100
    sale = sales.create_sale(
        db,
        [{"product_id": product.id, "quantity": 1, "tax_percent": 0}],
        customer_id=customer.id,
        loyalty_points=100,
    )
    sales.pay_sale(db, sale.id, payment_method="card")
    assert sale.points_earned == 3
    assert customer.loyalty_points_balance == 3

    loyalty.adjust_points(db, customer.id, 3, "redeem")
    assert customer.loyalty_points_balance == 0

    sales.refund_sale(db, sale.id)
    assert customer.loyalty_points_balance == 97
    reversals = (
        db.query(LoyaltyTransaction)
        .filter(LoyaltyTransaction.sale_id == sale.id, LoyaltyTransaction.transaction_type == "refund")
        .order_by(LoyaltyTransaction.id)
        .all()
    )
    assert [row.points_change for row in reversals] == [100, -3]


def test_refund_after_processed_return_restocks_only_the_rest(db) -> None:
    product = _product(db, stock=10)
    sale = sales.create_sale(db, [{"product_id": product.id, "quantity": 3, "tax_percent": 0}])
    sales.pay_sale(db, sale.id, payment_method="card")
    assert product.stock_qty == 7

    processed = returns.create_return(db, sale.id, [{"product_id": product.id, "quantity": 2}])
    returns.set_return_status(db, processed.id, "processed")
    assert product.stock_qty == 9
    pending = returns.create_return(db, sale.id, [{"product_id": product.id, "quantity": 1}])

    sales.refund_sale(db, sale.id)
    assert product.stock_qty == 10
    assert pending.status == "cancelled"
    assert processed.status == "processed"

    with pytest.raises(InvalidTransitionError):
        returns.set_return_status(db, processed.id, "cancelled")
    assert product.stock_qty == 10


def test_void_after_full_return_leaves_stock_alone(db) -> None:
    product = _product(db, stock=5)
    sale = sales.create_sale(db, [{"product_id": product.id, "quantity": 2, "tax_percent": 0}])
    sales.pay_sale(db, sale.id, payment_method="card")
    row = returns.create_return(db, sale.id, [{"product_id": product.id, "quantity": 2}])
    returns.set_return_status(db, row.id, "processed")
    assert product.stock_qty == 5

    sales.void_sale(db, sale.id)
    assert sale.status == "voided"
    assert product.stock_qty == 5


def test_refund_skips_loyalty_reversal_while_loyalty_is_disabled(db) -> None:
    product = _product(db)
    customer = _customer(db)
    sale = sales.create_sale(
        db, [{"product_id": product.id, "quantity": 2, "tax_percent": 0}], customer_id=customer.id
    )
    sales.pay_sale(db, sale.id, payment_method="card")
    assert customer.loyalty_points_balance == 4

    db.add(SystemSetting(key="loyalty_points_enabled", value="false"))
    db.flush()
    sales.refund_sale(db, sale.id)

    assert sale.status == "refunded"
    assert product.stock_qty == 10
    assert customer.loyalty_points_balance == 4
    assert (
        db.query(LoyaltyTransaction)
        .filter(LoyaltyTransaction.sale_id == sale.id, LoyaltyTransaction.transaction_type == "refund")
        .count()
        == 0
    )


def test_credit_sale_is_charged_to_the_account_and_reversed_on_refund(db) -> None:
    product = _product(db)
    customer = _customer(db)
    sale = sales.create_sale(
        db,
        [{"product_id": product.id, "quantity": 3, "tax_percent": 0}],
        customer_id=customer.id,
        payment_method="credit",
    )
    sales.pay_sale(db, sale.id)
    assert customer.current_balance == Decimal("300.00")
    charge = db.query(CustomerTransaction).filter(CustomerTransaction.sale_id == sale.id).one()
    assert charge.transaction_type == "sale"
    assert charge.balance_before == Decimal("0.00")
    assert charge.balance_after == Decimal("300.00")

    sales.refund_sale(db, sale.id)
    assert customer.current_balance == Decimal("0.00")
    rows = (
        db.query(CustomerTransaction)
        .filter(CustomerTransaction.sale_id == sale.id)
        .order_by(CustomerTransaction.id)
        .all()
    )
    assert [(row.transaction_type, row.amount) for row in rows] == [
        ("sale", Decimal("300.00")),
        ("credit_note", Decimal("300.00")),
    ]


def test_credit_sale_needs_a_customer(db) -> None:
    product = _product(db)
    sale = sales.create_sale(
        db, [{"product_id": product.id, "quantity": 1, "tax_percent": 0}], payment_method="credit"
    )
    with pytest.raises(ValidationError):
        sales.pay_sale(db, sale.id)
    assert sale.status == "initiated"
    assert product.stock_qty == 10


def test_account_transactions_validate_amounts(db) -> None:
    customer = _customer(db)
    with pytest.raises(ValidationError):
        accounts.post_transaction(db, customer, "payment", Decimal("-5"))
    with pytest.raises(ValidationError):
        accounts.post_transaction(db, customer, "debit_note", Decimal("0"))
    with pytest.raises(ValidationError):
        accounts.post_transaction(db, customer, "refund", Decimal("5"))

    accounts.post_transaction(db, customer, "debit_note", Decimal("120.50"))
    entry = accounts.post_transaction(db, customer, "adjustment", Decimal("-20.50"))
    assert entry.amount == Decimal("20.50")
    assert customer.current_balance == Decimal("100.00")


def test_statement_carries_an_opening_and_running_balance(db) -> None:
    customer = _customer(db)
    dated = [
        ("debit_note", Decimal("500"), datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)),
        ("payment", Decimal("200"), datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)),
        ("debit_note", Decimal("50"), datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)),
    ]
    for transaction_type, amount, when in dated:
        entry = accounts.post_transaction(db, customer, transaction_type, amount)
        entry.transaction_date = when
    db.flush()

    report = accounts.statement(
        db,
        customer,
        datetime(2026, 3, 2, tzinfo=timezone.utc),
        datetime(2026, 3, 31, tzinfo=timezone.utc),
    )
    assert report["opening_balance"] == 500.0
    assert [(line["transaction_type"], line["is_credit"], line["running_balance"]) for line in report["lines"]] == [
        ("payment", True, 300.0),
        ("debit_note", False, 350.0),
    ]
    assert report["debit_total"] == 50.0
    assert report["credit_total"] == 200.0
    assert report["closing_balance"] == 350.0

    with pytest.raises(ValidationError):
        accounts.statement(
            db, customer, datetime(2026, 4, 1, tzinfo=timezone.utc), datetime(2026, 3, 1, tzinfo=timezone.utc)
        )
