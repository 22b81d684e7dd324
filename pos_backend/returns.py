import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from pos_backend import audit
from pos_backend.checkout import PAYMENT_METHODS
from pos_backend.common import ZERO, money, next_reference, utcnow
from pos_backend.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from pos_backend.inventory import apply_stock_change
from pos_backend.models import Product, ReturnRefund, ReturnRefundItem, Sale

logger = logging.getLogger(__name__)

RETURN_STATUSES = {"pending", "processed", "cancelled"}
REFUND_METHODS = PAYMENT_METHODS | {"store_credit"}
ALLOWED_TRANSITIONS = {
    "pending": {"processed", "cancelled"},
    "processed": {"cancelled"},
    "cancelled": set(),
}


def get_return(db: Session, return_id: int) -> ReturnRefund:
    row = db.get(ReturnRefund, return_id)
    if not row:
        raise NotFoundError("return not found")
    return row


def returned_quantities(db: Session, sale_id: int, status: Optional[str] = None) -> dict[int, int]:
    """Units returned per product, over non-cancelled returns or those in ``status``."""
    query = (
        db.query(ReturnRefundItem.product_id, func.sum(ReturnRefundItem.quantity))
        .join(ReturnRefund, ReturnRefundItem.return_refund_id == ReturnRefund.id)
        .filter(ReturnRefund.sale_id == sale_id)
    )
    if status is None:
        query = query.filter(ReturnRefund.status != "cancelled")
    else:
        query = query.filter(ReturnRefund.status == status)
    rows = query.group_by(ReturnRefundItem.product_id).all()
    return {product_id: int(quantity or 0) for product_id, quantity in rows}


def cancel_pending_returns(db: Session, sale_id: int, performed_by: str = "system") -> list[ReturnRefund]:
    pending = (
        db.query(ReturnRefund)
        .filter(ReturnRefund.sale_id == sale_id, ReturnRefund.status == "pending")
        .order_by(ReturnRefund.id)
        .all()
    )
    return [set_return_status(db, row.id, "cancelled", performed_by=performed_by) for row in pending]


def create_return(
    db: Session,
    sale_id: int,
    items: Iterable[dict],
    reason: Optional[str] = None,
    refund_method: str = "cash",
    customer_id: Optional[int] = None,
    performed_by: str = "system",
) -> ReturnRefund:
    sale = db.get(Sale, sale_id)
    if not sale:
        raise NotFoundError("sale not found")
    if sale.status != "paid":
        raise ValidationError(f"only paid sales can be returned, sale is {sale.status}")
    if refund_method not in REFUND_METHODS:
        raise ValidationError(f"unsupported refund method {refund_method}")

    sold: dict[int, int] = defaultdict(int)
    sold_price: dict[int, Decimal] = {}
    for item in sale.items:
        sold[item.product_id] += item.quantity
        sold_price.setdefault(item.product_id, item.unit_price)
    already = returned_quantities(db, sale.id)

    requested: dict[int, int] = defaultdict(int)
    rows = []
    for item in items:
        product_id = item["product_id"]
        if product_id not in sold:
            raise ValidationError(f"product {product_id} is not on sale {sale.reference_no}")
        quantity = item["quantity"]
        if quantity is None or quantity <= 0:
            raise ValidationError("return quantity must be positive")
        requested[product_id] += quantity
        unit_price = item.get("unit_price")
        unit_price = money(sold_price[product_id] if unit_price is None else unit_price)
        if unit_price < 0:
            raise ValidationError("unit price cannot be negative")
        rows.append(
            ReturnRefundItem(
                product_id=product_id,
                quantity=quantity,
                unit_price=unit_price,
                subtotal=money(unit_price * quantity),
                reason=item.get("reason"),
            )
        )
    if not rows:
        raise ValidationError("return needs at least one item")
    for product_id, quantity in requested.items():
        remaining = sold[product_id] - already.get(product_id, 0)
        if quantity > remaining:
            raise ValidationError(
                f"cannot return {quantity} of product {product_id}, only {remaining} left to return"
            )

    now = utcnow()
    row = ReturnRefund(
        reference_no=next_reference(db, ReturnRefund, "RET", now),
        sale_id=sale.id,
        customer_id=customer_id if customer_id is not None else sale.customer_id,
        reason=reason,
        refund_method=refund_method,
        status="pending",
        total_amount=sum((item.subtotal for item in rows), ZERO),
        performed_by=performed_by,
        created_at=now,
        items=rows,
    )
    db.add(row)
    db.flush()
    audit.log_create(
        db,
        "ReturnRefund",
        row.id,
        audit.snapshot(row, ["reference_no", "sale_id", "status", "total_amount"]),
        performed_by=performed_by,
    )
    logger.info("return %s created against sale %s", row.reference_no, sale.reference_no)
    return row


def set_return_status(
    db: Session, return_id: int, new_status: str, performed_by: str = "system"
) -> ReturnRefund:
    if new_status not in RETURN_STATUSES:
        raise ValidationError(f"unknown return status {new_status}")
    row = get_return(db, return_id)
    old_status = row.status
    if new_status not in ALLOWED_TRANSITIONS[old_status]:
        raise InvalidTransitionError(f"cannot change return from {old_status} to {new_status}")
    if old_status == "processed" and row.sale.status != "paid":
        # The sale reversal already settled these units.
        raise InvalidTransitionError(f"sale is {row.sale.status}, processed return {row.reference_no} is final")
    if new_status == "processed" and row.sale.status != "paid":
        raise InvalidTransitionError(f"sale is {row.sale.status}, return {row.reference_no} cannot be processed")

    logger.info("processing return %s: %s -> %s", row.reference_no, old_status, new_status)
    if new_status == "processed":
        for item in row.items:
            apply_stock_change(
                db,
                item.product,
                item.quantity,
                "return",
                sale_id=row.sale_id,
                return_refund_id=row.id,
                notes=f"returned on {row.reference_no}",
                performed_by=performed_by,
            )
        row.processed_at = utcnow()
    elif old_status == "processed":
        for item in row.items:
            apply_stock_change(
                db,
                item.product,
                -item.quantity,
                "adjustment",
                sale_id=row.sale_id,
                return_refund_id=row.id,
                notes=f"cancelled {row.reference_no}",
                performed_by=performed_by,
            )

    row.status = new_status
    row.updated_at = utcnow()
    audit.log_update(
        db, "ReturnRefund", row.id, {"status": old_status}, {"status": new_status},
        performed_by=performed_by,
    )
    db.flush()
    logger.info("return %s now %s", row.reference_no, new_status)
    return row


def return_query(
    db: Session,
    status: Optional[str] = None,
    sale_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    query = db.query(ReturnRefund)
    if status is not None:
        query = query.filter(ReturnRefund.status == status)
    if sale_id is not None:
        query = query.filter(ReturnRefund.sale_id == sale_id)
    if customer_id is not None:
        query = query.filter(ReturnRefund.customer_id == customer_id)
    if date_from is not None:
        query = query.filter(ReturnRefund.created_at >= date_from)
    if date_to is not None:
        query = query.filter(ReturnRefund.created_at <= date_to)
    return query


def return_stats(
    db: Session, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None
) -> dict:
    base = return_query(db, date_from=date_from, date_to=date_to).subquery()
    by_status = dict(db.query(base.c.status, func.count(base.c.id)).group_by(base.c.status).all())
    refunded = (
        db.query(func.coalesce(func.sum(base.c.total_amount), 0))
        .filter(base.c.status == "processed")
        .scalar()
    )
    top = (
        db.query(
            Product.id,
            Product.name,
            func.sum(ReturnRefundItem.quantity).label("quantity"),
            func.sum(ReturnRefundItem.subtotal).label("amount"),
        )
        .join(ReturnRefundItem, ReturnRefundItem.product_id == Product.id)
        .join(base, ReturnRefundItem.return_refund_id == base.c.id)
        .filter(base.c.status != "cancelled")
        .group_by(Product.id, Product.name)
        .order_by(func.sum(ReturnRefundItem.quantity).desc())
        .limit(10)
        .all()
    )
    return {
        "total_returns": sum(by_status.values()),
        "by_status": {status: by_status.get(status, 0) for status in sorted(RETURN_STATUSES)},
        "total_refunded": float(money(refunded)),
        "top_returned_products": [
            {
                "product_id": product_id,
                "name": name,
                "quantity": int(quantity or 0),
                "amount": float(money(amount)),
            }
            for product_id, name, quantity, amount in top
        ],
    }
