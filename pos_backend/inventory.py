import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from pos_backend import audit
from pos_backend.common import utcnow
from pos_backend.exceptions import InsufficientStockError, NotFoundError, ValidationError
from pos_backend.models import InventoryMovement, Product

logger = logging.getLogger(__name__)

MOVEMENT_TYPES = {"sale", "refund", "purchase", "adjustment", "return"}


def apply_stock_change(
    db: Session,
    product: Product,
    qty_change: int,
    movement_type: str,
    sale_id: Optional[int] = None,
    purchase_id: Optional[int] = None,
    return_refund_id: Optional[int] = None,
    notes: Optional[str] = None,
    performed_by: str = "system",
    allow_negative: bool = False,
) -> InventoryMovement:
    """Change a product's stock and record the movement.

    This is the only place ``stock_qty`` is written after a product is
    created. The resulting stock may only go below zero when
    ``allow_negative`` is set, which is reserved for reversing goods that
    were already received.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"unknown movement type {movement_type}")
    if qty_change == 0:
        raise ValidationError("quantity change cannot be zero")
    before = product.stock_qty or 0
    after = before + qty_change
    if after < 0 and not allow_negative:
        raise InsufficientStockError(
            f"insufficient stock for {product.sku}: have {before}, need {-qty_change}"
        )
    if after < 0:
        logger.warning("stock for %s going negative (%s -> %s)", product.sku, before, after)

    product.stock_qty = after
    product.updated_at = utcnow()
    movement = InventoryMovement(
        product_id=product.id,
        sale_id=sale_id,
        purchase_id=purchase_id,
        return_refund_id=return_refund_id,
        movement_type=movement_type,
        qty_change=qty_change,
        stock_before=before,
        stock_after=after,
        notes=notes,
        performed_by=performed_by,
        timestamp=utcnow(),
    )
    db.add(movement)
    audit.log_update(
        db,
        "Product",
        product.id,
        {"stock_qty": before},
        {"stock_qty": after},
        performed_by=performed_by,
        description=f"stock {movement_type} {qty_change:+d}",
    )
    return movement


def get_movement(db: Session, movement_id: int) -> InventoryMovement:
    movement = db.get(InventoryMovement, movement_id)
    if not movement:
        raise NotFoundError("inventory movement not found")
    return movement


def movement_query(
    db: Session,
    product_id: Optional[int] = None,
    sale_id: Optional[int] = None,
    movement_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    query = db.query(InventoryMovement)
    if product_id is not None:
        query = query.filter(InventoryMovement.product_id == product_id)
    if sale_id is not None:
        query = query.filter(InventoryMovement.sale_id == sale_id)
    if movement_type is not None:
        query = query.filter(InventoryMovement.movement_type == movement_type)
    if date_from is not None:
        query = query.filter(InventoryMovement.timestamp >= date_from)
    if date_to is not None:
        query = query.filter(InventoryMovement.timestamp <= date_to)
    return query


def stock_history(db: Session, product_id: int, limit: int = 100) -> list[InventoryMovement]:
    if not db.get(Product, product_id):
        raise NotFoundError("product not found")
    return (
        db.query(InventoryMovement)
        .filter(InventoryMovement.product_id == product_id)
        .order_by(InventoryMovement.timestamp.desc(), InventoryMovement.id.desc())
        .limit(limit)
        .all()
    )


def movement_stats(
    db: Session, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None
) -> dict:
    """Units moved in and out per movement type."""
    stock_in = func.sum(case((InventoryMovement.qty_change > 0, InventoryMovement.qty_change), else_=0))
    stock_out = func.sum(case((InventoryMovement.qty_change < 0, -InventoryMovement.qty_change), else_=0))
    query = db.query(
        InventoryMovement.movement_type,
        func.count(InventoryMovement.id),
        stock_in,
        stock_out,
    )
    if date_from is not None:
        query = query.filter(InventoryMovement.timestamp >= date_from)
    if date_to is not None:
        query = query.filter(InventoryMovement.timestamp <= date_to)
    by_type = {}
    total_in = 0
    total_out = 0
    for movement_type, count, units_in, units_out in query.group_by(InventoryMovement.movement_type).all():
        by_type[movement_type] = {
            "movements": count,
            "units_in": int(units_in or 0),
            "units_out": int(units_out or 0),
        }
        total_in += int(units_in or 0)
        total_out += int(units_out or 0)
    return {
        "by_type": by_type,
        "total_units_in": total_in,
        "total_units_out": total_out,
        "net_change": total_in - total_out,
    }
