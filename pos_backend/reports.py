"""Read-only dashboards and analytics.

Revenue figures only count paid sales. Dates are UTC calendar days.
"""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from pos_backend.common import ZERO, as_utc, money, utcnow
from pos_backend.exceptions import ValidationError
from pos_backend.models import (
    Customer,
    Notification,
    Product,
    Purchase,
    ReturnRefund,
    Sale,
    SaleItem,
)

DEFAULT_DAILY_WINDOW = 30


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _paid_sales(db: Session, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None):
    query = db.query(Sale).filter(Sale.status == "paid")
    if date_from is not None:
        query = query.filter(Sale.created_at >= date_from)
    if date_to is not None:
        query = query.filter(Sale.created_at <= date_to)
    return query


def _revenue(db: Session, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> Decimal:
    query = db.query(func.coalesce(func.sum(Sale.total_amount), 0)).filter(Sale.status == "paid")
    if date_from is not None:
        query = query.filter(Sale.created_at >= date_from)
    if date_to is not None:
        query = query.filter(Sale.created_at <= date_to)
    return money(query.scalar())


def dashboard_summary(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    today = _day_start(now.date())
    month = _day_start(now.date().replace(day=1))
    active_products = db.query(Product).filter(Product.is_active.is_(True))
    return {
        "today": {
            "revenue": float(_revenue(db, today)),
            "sales": _paid_sales(db, today).count(),
        },
        "month_revenue": float(_revenue(db, month)),
        "customers": db.query(func.count(Customer.id)).filter(Customer.is_active.is_(True)).scalar(),
        "active_products": active_products.count(),
        "low_stock": active_products.filter(
            Product.stock_qty <= Product.reorder_level, Product.stock_qty > 0
        ).count(),
        "out_of_stock": active_products.filter(Product.stock_qty <= 0).count(),
        "pending_purchases": db.query(func.count(Purchase.id)).filter(Purchase.status == "pending").scalar(),
        "unread_notifications": (
            db.query(func.count(Notification.id)).filter(Notification.is_read.is_(False)).scalar()
        ),
    }


def daily_sales(db: Session, start: Optional[date] = None, end: Optional[date] = None) -> list[dict]:
    """Revenue per day with empty days filled in, oldest first."""
    end = end or utcnow().date()
    start = start or end - timedelta(days=DEFAULT_DAILY_WINDOW - 1)
    if start > end:
        raise ValidationError("start date must not be after end date")
    days = {
        start + timedelta(days=offset): {"revenue": ZERO, "sales": 0}
        for offset in range((end - start).days + 1)
    }
    sales = _paid_sales(db, _day_start(start), _day_start(end + timedelta(days=1))).all()
    for sale in sales:
        bucket = days.get(as_utc(sale.created_at).date())
        if bucket is None:
            continue
        bucket["revenue"] += money(sale.total_amount)
        bucket["sales"] += 1
    return [
        {
            "date": day.isoformat(),
            "revenue": float(values["revenue"]),
            "sales": values["sales"],
            "average_sale": float(money(values["revenue"] / values["sales"])) if values["sales"] else 0.0,
        }
        for day, values in sorted(days.items())
    ]


def sales_stats(db: Session, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> dict:
    status_query = db.query(Sale.status, func.count(Sale.id))
    if date_from is not None:
        status_query = status_query.filter(Sale.created_at >= date_from)
    if date_to is not None:
        status_query = status_query.filter(Sale.created_at <= date_to)
    by_status = dict(status_query.group_by(Sale.status).all())

    method_query = db.query(Sale.payment_method, func.coalesce(func.sum(Sale.total_amount), 0)).filter(
        Sale.status == "paid"
    )
    if date_from is not None:
        method_query = method_query.filter(Sale.created_at >= date_from)
    if date_to is not None:
        method_query = method_query.filter(Sale.created_at <= date_to)
    by_method = {
        method: float(money(total)) for method, total in method_query.group_by(Sale.payment_method).all()
    }

    revenue = _revenue(db, date_from, date_to)
    paid = by_status.get("paid", 0)
    return {
        "total_revenue": float(revenue),
        "paid_sales": paid,
        "average_sale": float(money(revenue / paid)) if paid else 0.0,
        "by_status": by_status,
        "revenue_by_payment_method": by_method,
    }


def top_products(
    db: Session,
    limit: int = 10,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> list[dict]:
    quantity = func.sum(SaleItem.quantity)
    query = (
        db.query(Product.id, Product.sku, Product.name, quantity, func.sum(SaleItem.line_total))
        .join(SaleItem, SaleItem.product_id == Product.id)
        .join(Sale, SaleItem.sale_id == Sale.id)
        .filter(Sale.status == "paid")
    )
    if date_from is not None:
        query = query.filter(Sale.created_at >= date_from)
    if date_to is not None:
        query = query.filter(Sale.created_at <= date_to)
    rows = query.group_by(Product.id, Product.sku, Product.name).order_by(quantity.desc()).limit(limit).all()
    return [
        {
            "product_id": product_id,
            "sku": sku,
            "name": name,
            "quantity_sold": int(sold or 0),
            "revenue": float(money(revenue)),
        }
        for product_id, sku, name, sold, revenue in rows
    ]


def inventory_report(db: Session) -> dict:
    products = db.query(Product).filter(Product.is_active.is_(True)).order_by(Product.name).all()
    items = []
    total_value = ZERO
    low_stock = []
    out_of_stock = []
    for product in products:
        value = money(Decimal(product.stock_qty) * money(product.cost_price))
        total_value += value
        entry = {
            "product_id": product.id,
            "sku": product.sku,
            "name": product.name,
            "stock_qty": product.stock_qty,
            "reorder_level": product.reorder_level,
            "stock_value": float(value),
        }
        items.append(entry)
        if product.stock_qty <= 0:
            out_of_stock.append(entry)
        elif product.stock_qty <= product.reorder_level:
            low_stock.append(entry)
    return {
        "products": items,
        "low_stock": low_stock,
        "out_of_stock": out_of_stock,
        "total_stock_value": float(total_value),
        "total_units": sum(product.stock_qty for product in products),
    }


def financial_summary(
    db: Session, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None
) -> dict:
    revenue = _revenue(db, date_from, date_to)

    cogs_query = (
        db.query(func.coalesce(func.sum(SaleItem.quantity * func.coalesce(Product.cost_price, 0)), 0))
        .join(Sale, SaleItem.sale_id == Sale.id)
        .join(Product, SaleItem.product_id == Product.id)
        .filter(Sale.status == "paid")
    )
    refunded_query = db.query(func.coalesce(func.sum(Sale.total_amount), 0)).filter(Sale.status == "refunded")
    returns_query = db.query(func.coalesce(func.sum(ReturnRefund.total_amount), 0)).filter(
        ReturnRefund.status == "processed"
    )
    if date_from is not None:
        cogs_query = cogs_query.filter(Sale.created_at >= date_from)
        refunded_query = refunded_query.filter(Sale.created_at >= date_from)
        returns_query = returns_query.filter(ReturnRefund.created_at >= date_from)
    if date_to is not None:
        cogs_query = cogs_query.filter(Sale.created_at <= date_to)
        refunded_query = refunded_query.filter(Sale.created_at <= date_to)
        returns_query = returns_query.filter(ReturnRefund.created_at <= date_to)

    cost_of_goods = money(cogs_query.scalar())
    gross_profit = revenue - cost_of_goods
    refunds = money(refunded_query.scalar()) + money(returns_query.scalar())
    return {
        "revenue": float(revenue),
        "cost_of_goods": float(cost_of_goods),
        "gross_profit": float(gross_profit),
        "gross_margin_percent": float(money(gross_profit * 100 / revenue)) if revenue else 0.0,
        "refunds": float(refunds),
        "net": float(gross_profit - refunds),
    }


def customer_insights(db: Session, limit: int = 10) -> dict:
    spent = func.sum(Sale.total_amount)
    top = (
        db.query(Customer.id, Customer.name, Customer.status, func.count(Sale.id), spent)
        .join(Sale, Sale.customer_id == Customer.id)
        .filter(Sale.status == "paid")
        .group_by(Customer.id, Customer.name, Customer.status)
        .order_by(spent.desc())
        .limit(limit)
        .all()
    )
    segments = dict(db.query(Customer.status, func.count(Customer.id)).group_by(Customer.status).all())
    return {
        "top_customers": [
            {
                "customer_id": customer_id,
                "name": name,
                "status": status,
                "sales": count,
                "total_spent": float(money(total)),
            }
            for customer_id, name, status, count, total in top
        ],
        "segments": {tier: segments.get(tier, 0) for tier in ("regular", "vip", "elite")},
        "total_customers": sum(segments.values()),
    }
