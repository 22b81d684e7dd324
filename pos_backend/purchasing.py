import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from pos_backend import audit
from pos_backend.common import money, next_reference, utcnow
from pos_backend.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from pos_backend.inventory import apply_stock_change
from pos_backend.models import Product, Purchase, PurchaseItem, Supplier

logger = logging.getLogger(__name__)

PURCHASE_STATUSES = {"pending", "completed", "cancelled"}
ALLOWED_TRANSITIONS = {
    "pending": {"completed", "cancelled"},
    "completed": {"cancelled"},
    "cancelled": set(),
}


def get_purchase(db: Session, purchase_id: int) -> Purchase:
    purchase = db.get(Purchase, purchase_id)
    if not purchase:
        raise NotFoundError("purchase not found")
    return purchase


def _build_items(db: Session, items: Iterable[dict]) -> list[PurchaseItem]:
    rows = []
    for item in items:
        product = db.get(Product, item["product_id"])
        if not product:
            raise NotFoundError(f"product {item['product_id']} not found")
        quantity = item["quantity"]
        if quantity is None or quantity <= 0:
            raise ValidationError("purchase quantity must be positive")
        unit_cost = Decimal(str(item["unit_cost"]))
        if unit_cost < 0:
            raise ValidationError("unit cost cannot be negative")
        rows.append(
            PurchaseItem(
                product_id=product.id,
                quantity=quantity,
                unit_cost=money(unit_cost),
                subtotal=money(unit_cost * quantity),
            )
        )
    if not rows:
        raise ValidationError("purchase needs at least one item")
    return rows


def create_purchase(
    db: Session,
    supplier_id: int,
    items: Iterable[dict],
    notes: Optional[str] = None,
    performed_by: str = "system",
    order_date: Optional[datetime] = None,
) -> Purchase:
    supplier = db.get(Supplier, supplier_id)
    if not supplier:
        raise NotFoundError("supplier not found")
    if not supplier.is_active:
        raise ValidationError(f"supplier {supplier.name} is inactive")
    rows = _build_items(db, items)
    now = utcnow()
    purchase = Purchase(
        reference_no=next_reference(db, Purchase, "PO", now),
        supplier_id=supplier.id,
        status="pending",
        order_date=order_date or now,
        total_amount=sum((row.subtotal for row in rows), Decimal("0")),
        notes=notes,
        performed_by=performed_by,
        items=rows,
    )
    db.add(purchase)
    db.flush()
    audit.log_create(
        db,
        "Purchase",
        purchase.id,
        audit.snapshot(purchase, ["reference_no", "supplier_id", "status", "total_amount"]),
        performed_by=performed_by,
    )
    logger.info("purchase %s created for supplier %s", purchase.reference_no, supplier.id)
    return purchase


def update_purchase(
    db: Session,
    purchase_id: int,
    items: Optional[Iterable[dict]] = None,
    notes: Optional[str] = None,
    performed_by: str = "system",
) -> Purchase:
    purchase = get_purchase(db, purchase_id)
    if purchase.status != "pending":
        raise InvalidTransitionError(f"purchase is {purchase.status}, only pending purchases can be edited")
    previous = audit.snapshot(purchase, ["total_amount", "notes"])
    if items is not None:
        purchase.items = _build_items(db, items)
        purchase.total_amount = sum((row.subtotal for row in purchase.items), Decimal("0"))
    if notes is not None:
        purchase.notes = notes
    purchase.updated_at = utcnow()
    db.flush()
    audit.log_update(
        db,
        "Purchase",
        purchase.id,
        previous,
        audit.snapshot(purchase, ["total_amount", "notes"]),
        performed_by=performed_by,
    )
    return purchase


def set_purchase_status(
    db: Session, purchase_id: int, new_status: str, performed_by: str = "system"
) -> Purchase:
    """Move a purchase through pending -> completed -> cancelled.

    Completing receives the goods into stock; cancelling a completed purchase
    takes them back out, even if that leaves stock negative.
    """
    if new_status not in PURCHASE_STATUSES:
        raise ValidationError(f"unknown purchase status {new_status}")
    purchase = get_purchase(db, purchase_id)
    old_status = purchase.status
    if new_status not in ALLOWED_TRANSITIONS[old_status]:
        raise InvalidTransitionError(f"cannot change purchase from {old_status} to {new_status}")

    logger.info("processing purchase %s: %s -> %s", purchase.reference_no, old_status, new_status)
    if new_status == "completed":
        for item in purchase.items:
            apply_stock_change(
                db,
                item.product,
                item.quantity,
                "purchase",
                purchase_id=purchase.id,
                notes=f"received on {purchase.reference_no}",
                performed_by=performed_by,
            )
        purchase.received_at = utcnow()
    elif old_status == "completed":
        for item in purchase.items:
            apply_stock_change(
                db,
                item.product,
                -item.quantity,
                "adjustment",
                purchase_id=purchase.id,
                notes=f"cancelled {purchase.reference_no}",
                performed_by=performed_by,
                allow_negative=True,
            )

    purchase.status = new_status
    purchase.updated_at = utcnow()
    audit.log_update(
        db,
        "Purchase",
        purchase.id,
        {"status": old_status},
        {"status": new_status},
        performed_by=performed_by,
    )
    db.flush()
    logger.info("purchase %s now %s", purchase.reference_no, new_status)
    return purchase


def pending_purchase_exists(db: Session, product_id: int) -> bool:
    return (
        db.query(PurchaseItem.id)
        .join(Purchase, PurchaseItem.purchase_id == Purchase.id)
        .filter(PurchaseItem.product_id == product_id, Purchase.status == "pending")
        .first()
        is not None
    )


def purchase_query(
    db: Session,
    status: Optional[str] = None,
    supplier_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    query = db.query(Purchase)
    if status is not None:
        query = query.filter(Purchase.status == status)
    if supplier_id is not None:
        query = query.filter(Purchase.supplier_id == supplier_id)
    if date_from is not None:
        query = query.filter(Purchase.order_date >= date_from)
    if date_to is not None:
        query = query.filter(Purchase.order_date <= date_to)
    return query
