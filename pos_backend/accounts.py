"""Customer charge accounts: what a customer owes the store.

Credit sales and debit notes raise the balance; payments and credit notes
lower it. ``adjustment`` takes a signed amount. Every change is a
``CustomerTransaction`` row carrying the balance before and after.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from pos_backend import audit
from pos_backend.common import ZERO, money, utcnow
from pos_backend.exceptions import NotFoundError, ValidationError
from pos_backend.models import Customer, CustomerTransaction

logger = logging.getLogger(__name__)

DEBIT_TYPES = {"sale", "debit_note"}
CREDIT_TYPES = {"payment", "credit_note"}
ACCOUNT_TRANSACTION_TYPES = DEBIT_TYPES | CREDIT_TYPES | {"adjustment"}


def _balance_change(transaction_type: str, amount: Decimal) -> Decimal:
    if transaction_type not in ACCOUNT_TRANSACTION_TYPES:
        raise ValidationError(f"unknown account transaction type {transaction_type}")
    amount = money(amount)
    if amount == 0:
        raise ValidationError("amount cannot be zero")
    if transaction_type == "adjustment":
        return amount
    if amount < 0:
        raise ValidationError(f"{transaction_type} amount must be positive")
    return amount if transaction_type in DEBIT_TYPES else -amount


def post_transaction(
    db: Session,
    customer: Customer,
    transaction_type: str,
    amount: Decimal,
    sale_id: Optional[int] = None,
    description: Optional[str] = None,
    performed_by: str = "system",
) -> CustomerTransaction:
    change = _balance_change(transaction_type, amount)
    before = money(customer.current_balance)
    after = before + change
    customer.current_balance = after
    customer.updated_at = utcnow()
    transaction = CustomerTransaction(
        customer_id=customer.id,
        sale_id=sale_id,
        transaction_type=transaction_type,
        amount=abs(change),
        balance_before=before,
        balance_after=after,
        description=description or f"account {transaction_type}",
        performed_by=performed_by,
        transaction_date=utcnow(),
    )
    db.add(transaction)
    audit.log_update(
        db,
        "Customer",
        customer.id,
        {"current_balance": before},
        {"current_balance": after},
        performed_by=performed_by,
        description=f"account {transaction_type} {change:+}",
    )
    logger.info("customer %s account %s: %s -> %s", customer.id, transaction_type, before, after)
    return transaction


def reverse_sale_charges(db: Session, sale_id: int, performed_by: str = "system") -> list[CustomerTransaction]:
    """Issue a credit note for every charge a sale put on a customer account."""
    charges = (
        db.query(CustomerTransaction)
        .filter(CustomerTransaction.sale_id == sale_id, CustomerTransaction.transaction_type == "sale")
        .order_by(CustomerTransaction.id)
        .all()
    )
    notes = []
    for charge in charges:
        customer = db.get(Customer, charge.customer_id)
        notes.append(
            post_transaction(
                db,
                customer,
                "credit_note",
                charge.amount,
                sale_id=sale_id,
                description=f"reversal of account charge {charge.id}",
                performed_by=performed_by,
            )
        )
    return notes


def transaction_query(
    db: Session,
    customer_id: int,
    transaction_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    query = db.query(CustomerTransaction).filter(CustomerTransaction.customer_id == customer_id)
    if transaction_type is not None:
        query = query.filter(CustomerTransaction.transaction_type == transaction_type)
    if date_from is not None:
        query = query.filter(CustomerTransaction.transaction_date >= date_from)
    if date_to is not None:
        query = query.filter(CustomerTransaction.transaction_date <= date_to)
    return query


def account_summary(db: Session, customer: Customer, now: Optional[datetime] = None) -> dict:
    since = (now or utcnow()) - timedelta(days=30)
    charged, paid, count = (
        db.query(
            func.coalesce(
                func.sum(case((CustomerTransaction.transaction_type == "sale", CustomerTransaction.amount), else_=0)),
                0,
            ),
            func.coalesce(
                func.sum(case((CustomerTransaction.transaction_type == "payment", CustomerTransaction.amount), else_=0)),
                0,
            ),
            func.count(CustomerTransaction.id),
        )
        .filter(CustomerTransaction.customer_id == customer.id, CustomerTransaction.transaction_date >= since)
        .one()
    )
    last_payment = (
        db.query(func.max(CustomerTransaction.transaction_date))
        .filter(CustomerTransaction.customer_id == customer.id, CustomerTransaction.transaction_type == "payment")
        .scalar()
    )
    return {
        "customer_id": customer.id,
        "current_balance": float(money(customer.current_balance)),
        "last_payment_at": last_payment.isoformat() if last_payment else None,
        "last_30_days": {
            "charged": float(money(charged)),
            "paid": float(money(paid)),
            "transactions": count,
        },
    }


def statement(db: Session, customer: Customer, start: datetime, end: datetime) -> dict:
    """Account activity between ``start`` and ``end`` with a running balance."""
    if start > end:
        raise ValidationError("start must not be after end")
    previous = (
        db.query(CustomerTransaction)
        .filter(CustomerTransaction.customer_id == customer.id, CustomerTransaction.transaction_date < start)
        .order_by(CustomerTransaction.transaction_date.desc(), CustomerTransaction.id.desc())
        .first()
    )
    opening = money(previous.balance_after) if previous else ZERO
    rows = (
        transaction_query(db, customer.id, date_from=start, date_to=end)
        .order_by(CustomerTransaction.transaction_date, CustomerTransaction.id)
        .all()
    )
    running = opening
    debit_total = ZERO
    credit_total = ZERO
    lines = []
    for row in rows:
        change = money(row.balance_after) - money(row.balance_before)
        running += change
        if change > 0:
            debit_total += change
        else:
            credit_total -= change
        lines.append(
            {
                "customer_transaction_id": row.id,
                "transaction_type": row.transaction_type,
                "transaction_date": row.transaction_date.isoformat(),
                "description": row.description,
                "sale_id": row.sale_id,
                "amount": float(money(row.amount)),
                "is_credit": change < 0,
                "running_balance": float(running),
            }
        )
    return {
        "customer_id": customer.id,
        "name": customer.name,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "opening_balance": float(opening),
        "debit_total": float(debit_total),
        "credit_total": float(credit_total),
        "closing_balance": float(opening + debit_total - credit_total),
        "lines": lines,
    }


def get_customer(db: Session, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("customer not found")
    return customer
