"""Sale lifecycle: creation, payment, refund and void with their side effects.

Stock is only touched when a sale is paid. A paid sale decrements stock,
may raise auto-reorders, earns and redeems loyalty points, charges credit
sales to the customer account and may raise notifications. Refunding or
voiding it reverses the stock, account and loyalty parts.
All of this happens in the caller's session and is committed by the caller.
"""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from pos_backend import accounts, audit, loyalty, notifications, purchasing, returns, system_settings
from pos_backend.checkout import PAYMENT_METHODS, CartLine, compute_cart, compute_change
from pos_backend.common import ZERO, money, next_reference, utcnow
from pos_backend.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from pos_backend.inventory import apply_stock_change
from pos_backend.models import Customer, LoyaltyTransaction, Product, Sale, SaleItem, Supplier

logger = logging.getLogger(__name__)

SALE_STATUSES = {"initiated", "paid", "refunded", "voided"}
_AUDIT_FIELDS = ["reference_no", "status", "payment_method", "customer_id", "total_amount"]


def get_sale(db: Session, sale_id: int) -> Sale:
    sale = db.get(Sale, sale_id)
    if not sale:
        raise NotFoundError("sale not found")
    return sale


def _floor_points(amount: Decimal, rate: Decimal) -> int:
    if amount <= 0:
        return 0
    return int((amount / rate).to_integral_value(rounding=ROUND_FLOOR))


def create_sale(
    db: Session,
    items: Iterable[dict],
    customer_id: Optional[int] = None,
    payment_method: str = "cash",
    discount_percent: Decimal = ZERO,
    tax_percent: Decimal = ZERO,
    loyalty_points: int = 0,
    notes: Optional[str] = None,
    performed_by: str = "system",
) -> Sale:
    items = list(items)
    if not items:
        raise ValidationError("sale needs at least one item")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"unsupported payment method {payment_method}")

    customer = None
    if customer_id is not None:
        customer = db.get(Customer, customer_id)
        if not customer:
            raise NotFoundError("customer not found")
        if not customer.is_active:
            raise ValidationError("customer is inactive")

    loyalty_points = loyalty_points or 0
    if loyalty_points and customer is None:
        raise ValidationError("redeeming points requires a customer")
    if loyalty_points and not system_settings.loyalty_points_enabled(db):
        raise ValidationError("loyalty points are disabled")

    store_tax = system_settings.tax_rate(db)
    required: dict[int, int] = defaultdict(int)
    lines = []
    products = {}
    for item in items:
        product = db.get(Product, item["product_id"])
        if not product:
            raise NotFoundError(f"product {item['product_id']} not found")
        if not product.is_active:
            raise ValidationError(f"product {product.sku} is inactive")
        products[product.id] = product
        required[product.id] += item["quantity"]
        tax = item.get("tax_percent")
        lines.append(
            CartLine(
                product_id=product.id,
                unit_price=product.price,
                quantity=item["quantity"],
                discount_percent=item.get("discount_percent") or ZERO,
                tax_percent=store_tax if tax is None else tax,
            )
        )
    for product_id, quantity in required.items():
        product = products[product_id]
        if product.stock_qty < quantity:
            raise InsufficientStockError(
                f"insufficient stock for {product.sku}: have {product.stock_qty}, need {quantity}"
            )

    totals = compute_cart(
        lines,
        discount_percent=discount_percent,
        tax_percent=tax_percent,
        points_available=customer.loyalty_points_balance if customer else 0,
        points_to_redeem=loyalty_points,
    )
    now = utcnow()
    sale = Sale(
        reference_no=next_reference(db, Sale, "SALE", now),
        status="initiated",
        payment_method=payment_method,
        customer_id=customer.id if customer else None,
        subtotal=totals.subtotal,
        discount_amount=totals.discount_total,
        tax_amount=totals.tax_total,
        total_amount=totals.grand_total,
        used_loyalty=totals.loyalty_points_used > 0,
        loyalty_redeemed=totals.loyalty_points_used,
        points_earned=0,
        notes=notes,
        performed_by=performed_by,
        created_at=now,
        items=[
            SaleItem(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount=line.discount,
                tax=line.tax,
                line_total=line.line_total,
            )
            for line in totals.lines
        ],
    )
    db.add(sale)
    db.flush()
    audit.log_create(db, "Sale", sale.id, audit.snapshot(sale, _AUDIT_FIELDS), performed_by=performed_by)
    logger.info("sale %s created, total %s", sale.reference_no, sale.total_amount)
    return sale


def update_sale(
    db: Session,
    sale_id: int,
    notes: Optional[str] = None,
    payment_method: Optional[str] = None,
    performed_by: str = "system",
) -> Sale:
    sale = get_sale(db, sale_id)
    if sale.status != "initiated":
        raise InvalidTransitionError(f"sale is {sale.status}, only initiated sales can be edited")
    previous = audit.snapshot(sale, ["notes", "payment_method"])
    if payment_method is not None:
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"unsupported payment method {payment_method}")
        sale.payment_method = payment_method
    if notes is not None:
        sale.notes = notes
    sale.updated_at = utcnow()
    audit.log_update(
        db, "Sale", sale.id, previous, audit.snapshot(sale, ["notes", "payment_method"]),
        performed_by=performed_by,
    )
    return sale


def delete_sale(db: Session, sale_id: int, performed_by: str = "system") -> None:
    sale = get_sale(db, sale_id)
    if sale.status != "initiated":
        raise InvalidTransitionError(f"sale is {sale.status}, only initiated sales can be deleted")
    audit.log_delete(db, "Sale", sale.id, audit.snapshot(sale, _AUDIT_FIELDS), performed_by=performed_by)
    db.delete(sale)
    db.flush()


def pay_sale(
    db: Session,
    sale_id: int,
    payment_method: Optional[str] = None,
    amount_tendered: Optional[Decimal] = None,
    performed_by: str = "system",
) -> Sale:
    sale = get_sale(db, sale_id)
    if sale.status != "initiated":
        raise InvalidTransitionError(f"cannot pay a sale that is {sale.status}")
    method = payment_method or sale.payment_method
    if method == "credit" and sale.customer_id is None:
        raise ValidationError("credit sales need a customer account")
    amount_paid, change_due = compute_change(sale.total_amount, method, amount_tendered)

    logger.info("processing payment for sale %s", sale.reference_no)
    sale.payment_method = method
    sale.amount_paid = amount_paid
    sale.change_due = change_due
    sale.status = "paid"
    sale.paid_at = utcnow()
    sale.updated_at = sale.paid_at
    audit.log_update(
        db, "Sale", sale.id, {"status": "initiated"}, {"status": "paid", "amount_paid": amount_paid},
        performed_by=performed_by,
    )
    _on_paid(db, sale, performed_by)
    db.flush()
    logger.info("sale %s paid", sale.reference_no)
    return sale


def refund_sale(
    db: Session, sale_id: int, reason: Optional[str] = None, performed_by: str = "system"
) -> Sale:
    sale = get_sale(db, sale_id)
    if sale.status != "paid":
        raise InvalidTransitionError(f"cannot refund a sale that is {sale.status}")
    logger.info("processing refund for sale %s", sale.reference_no)
    _reverse(db, sale, "refund", "refund", performed_by)
    sale.status = "refunded"
    sale.updated_at = utcnow()
    if reason:
        sale.notes = f"{sale.notes}\n{reason}" if sale.notes else reason
    audit.log_update(
        db, "Sale", sale.id, {"status": "paid"}, {"status": "refunded"},
        performed_by=performed_by, description=reason,
    )
    _notify_bulk_refund(db, sale, "refunded")
    db.flush()
    logger.info("sale %s refunded", sale.reference_no)
    return sale


def void_sale(
    db: Session, sale_id: int, reason: Optional[str] = None, performed_by: str = "system"
) -> Sale:
    sale = get_sale(db, sale_id)
    if sale.status not in {"initiated", "paid"}:
        raise InvalidTransitionError(f"cannot void a sale that is {sale.status}")
    old_status = sale.status
    logger.info("processing void for sale %s (%s)", sale.reference_no, old_status)
    if old_status == "paid":
        _reverse(db, sale, "adjustment", "void", performed_by)
    sale.status = "voided"
    sale.updated_at = utcnow()
    if reason:
        sale.notes = f"{sale.notes}\n{reason}" if sale.notes else reason
    audit.log_update(
        db, "Sale", sale.id, {"status": old_status}, {"status": "voided"},
        performed_by=performed_by, description=reason,
    )
    if old_status == "paid":
        _notify_bulk_refund(db, sale, "voided")
    db.flush()
    logger.info("sale %s voided", sale.reference_no)
    return sale


def _on_paid(db: Session, sale: Sale, performed_by: str) -> None:
    for item in sale.items:
        apply_stock_change(
            db,
            item.product,
            -item.quantity,
            "sale",
            sale_id=sale.id,
            notes=f"sold on {sale.reference_no}",
            performed_by=performed_by,
        )

    if system_settings.auto_reorder_enabled(db):
        seen = set()
        for item in sale.items:
            if item.product_id not in seen:
                seen.add(item.product_id)
                _check_reorder(db, item.product)

    customer = sale.customer
    if customer is not None and system_settings.loyalty_points_enabled(db):
        _earn_points(db, sale, customer, performed_by)
        if sale.loyalty_redeemed:
            loyalty.record_transaction(
                db,
                customer,
                -sale.loyalty_redeemed,
                "redeem",
                sale_id=sale.id,
                notes=f"redeemed on {sale.reference_no}",
                performed_by=performed_by,
            )

    if sale.payment_method == "credit" and money(sale.total_amount) > 0:
        accounts.post_transaction(
            db,
            customer,
            "sale",
            sale.total_amount,
            sale_id=sale.id,
            description=f"charged on {sale.reference_no}",
            performed_by=performed_by,
        )

    threshold = system_settings.large_sale_threshold(db)
    if money(sale.total_amount) > threshold:
        notifications.notify(
            db,
            "Large sale",
            f"Sale {sale.reference_no} totalled {money(sale.total_amount)}",
            type="sale",
            metadata={"sale_id": sale.id, "total_amount": float(money(sale.total_amount))},
        )


def _earn_points(db: Session, sale: Sale, customer: Customer, performed_by: str) -> None:
    net_spend = money(sale.subtotal) - Decimal(sale.loyalty_redeemed or 0)
    points = _floor_points(net_spend, system_settings.loyalty_point_rate(db))
    if points <= 0:
        return
    lifetime = _floor_points(net_spend, system_settings.lifetime_point_rate(db))
    loyalty.record_transaction(
        db,
        customer,
        points,
        "earn",
        sale_id=sale.id,
        notes=f"earned on {sale.reference_no}",
        performed_by=performed_by,
    )
    old_tier, new_tier = loyalty.add_lifetime_points(customer, lifetime)
    sale.points_earned = points
    if loyalty.is_promotion(old_tier, new_tier):
        notifications.notify(
            db,
            "Loyalty milestone",
            f"{customer.name} reached {new_tier} status",
            type="success",
            metadata={"customer_id": customer.id, "tier": new_tier},
        )


def _check_reorder(db: Session, product: Product) -> None:
    if not product.is_active or product.stock_qty > product.reorder_level:
        return
    notifications.notify(
        db,
        "Low stock",
        f"{product.name} ({product.sku}) is down to {product.stock_qty}",
        type="warning",
        metadata={"product_id": product.id, "stock_qty": product.stock_qty},
    )
    if product.supplier_id is None or product.reorder_level <= 0 or product.reorder_qty <= 0:
        return
    if purchasing.pending_purchase_exists(db, product.id):
        logger.info("pending purchase already open for %s, skipping reorder", product.sku)
        return
    supplier = db.get(Supplier, product.supplier_id)
    if supplier is None or not supplier.is_active:
        logger.warning("supplier for %s unavailable, skipping reorder", product.sku)
        return
    purchase = purchasing.create_purchase(
        db,
        supplier.id,
        [
            {
                "product_id": product.id,
                "quantity": product.reorder_qty,
                "unit_cost": product.cost_price if product.cost_price is not None else product.price,
            }
        ],
        notes=f"auto reorder for {product.sku}",
    )
    notifications.notify(
        db,
        "Auto reorder created",
        f"Purchase {purchase.reference_no} raised for {product.reorder_qty} x {product.name}",
        type="purchase",
        metadata={"purchase_id": purchase.id, "product_id": product.id},
    )


def _reverse(db: Session, sale: Sale, movement_type: str, loyalty_type: str, performed_by: str) -> None:
    """Undo a paid sale's stock, account and loyalty effects.

    Units already taken back by processed returns are not restocked again,
    and pending returns against the sale are cancelled.
    """
    returns.cancel_pending_returns(db, sale.id, performed_by=performed_by)
    already_returned = returns.returned_quantities(db, sale.id, status="processed")
    for item in sale.items:
        settled = min(item.quantity, already_returned.get(item.product_id, 0))
        already_returned[item.product_id] = already_returned.get(item.product_id, 0) - settled
        quantity = item.quantity - settled
        if quantity <= 0:
            continue
        apply_stock_change(
            db,
            item.product,
            quantity,
            movement_type,
            sale_id=sale.id,
            notes=f"{loyalty_type} of {sale.reference_no}",
            performed_by=performed_by,
        )

    accounts.reverse_sale_charges(db, sale.id, performed_by=performed_by)

    if sale.customer_id is None or not system_settings.loyalty_points_enabled(db):
        return
    # Newest first: restore redeemed points before clawing back earned ones.
    entries = (
        db.query(LoyaltyTransaction)
        .filter(
            LoyaltyTransaction.sale_id == sale.id,
            LoyaltyTransaction.transaction_type.in_(["earn", "redeem"]),
        )
        .order_by(LoyaltyTransaction.id.desc())
        .all()
    )
    for entry in entries:
        customer = db.get(Customer, entry.customer_id)
        change = -entry.points_change
        if change < 0 and customer.loyalty_points_balance + change < 0:
            logger.warning(
                "customer %s spent earned points, clawing back %s of %s",
                customer.id,
                customer.loyalty_points_balance,
                -change,
            )
            change = -customer.loyalty_points_balance
        if change == 0:
            continue
        loyalty.record_transaction(
            db,
            customer,
            change,
            loyalty_type,
            sale_id=sale.id,
            notes=f"reversal of {entry.transaction_type} on {sale.reference_no}",
            performed_by=performed_by,
        )


def _notify_bulk_refund(db: Session, sale: Sale, verb: str) -> None:
    if len(sale.items) >= system_settings.bulk_refund_item_count(db):
        notifications.notify(
            db,
            "Bulk refund",
            f"Sale {sale.reference_no} with {len(sale.items)} items was {verb}",
            type="warning",
            metadata={"sale_id": sale.id, "items": len(sale.items)},
        )


def sale_query(
    db: Session,
    status: Optional[str] = None,
    customer_id: Optional[int] = None,
    payment_method: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
):
    query = db.query(Sale)
    if status is not None:
        query = query.filter(Sale.status == status)
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if payment_method is not None:
        query = query.filter(Sale.payment_method == payment_method)
    if date_from is not None:
        query = query.filter(Sale.created_at >= date_from)
    if date_to is not None:
        query = query.filter(Sale.created_at <= date_to)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Sale.reference_no.ilike(pattern), Sale.notes.ilike(pattern)))
    return query
