import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from pos_backend import audit
from pos_backend.common import utcnow
from pos_backend.exceptions import InsufficientPointsError, NotFoundError, ValidationError
from pos_backend.models import Customer, LoyaltyTransaction

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = {"earn", "redeem", "refund", "void", "adjustment", "bonus"}
TIER_THRESHOLDS = (("elite", 5000), ("vip", 1000))
TIER_RANK = {"regular": 0, "vip": 1, "elite": 2}


def determine_tier(lifetime_points: int) -> str:
    for tier, threshold in TIER_THRESHOLDS:
        if (lifetime_points or 0) > threshold:
            return tier
    return "regular"


def record_transaction(
    db: Session,
    customer: Customer,
    points_change: int,
    transaction_type: str,
    sale_id: Optional[int] = None,
    notes: Optional[str] = None,
    performed_by: str = "system",
) -> LoyaltyTransaction:
    """Move a customer's balance and write the ledger row. No lifetime/tier logic."""
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"unknown loyalty transaction type {transaction_type}")
    before = customer.loyalty_points_balance or 0
    after = before + points_change
    if after < 0:
        raise InsufficientPointsError(
            f"customer {customer.id} has {before} points, cannot remove {-points_change}"
        )
    customer.loyalty_points_balance = after
    customer.updated_at = utcnow()
    transaction = LoyaltyTransaction(
        customer_id=customer.id,
        sale_id=sale_id,
        transaction_type=transaction_type,
        points_change=points_change,
        balance_before=before,
        balance_after=after,
        notes=notes,
        performed_by=performed_by,
        timestamp=utcnow(),
    )
    db.add(transaction)
    audit.log_update(
        db,
        "Customer",
        customer.id,
        {"loyalty_points_balance": before},
        {"loyalty_points_balance": after},
        performed_by=performed_by,
        description=f"loyalty {transaction_type} {points_change:+d}",
    )
    return transaction


def add_lifetime_points(customer: Customer, points: int) -> tuple[str, str]:
    """Increase lifetime points and recompute the tier. Returns (old_tier, new_tier)."""
    old_tier = customer.status or "regular"
    customer.lifetime_points_earned = (customer.lifetime_points_earned or 0) + points
    customer.status = determine_tier(customer.lifetime_points_earned)
    return old_tier, customer.status


def is_promotion(old_tier: str, new_tier: str) -> bool:
    return TIER_RANK.get(new_tier, 0) > TIER_RANK.get(old_tier, 0)


def adjust_points(
    db: Session,
    customer_id: int,
    points: int,
    transaction_type: str,
    notes: Optional[str] = None,
    performed_by: str = "system",
) -> LoyaltyTransaction:
    """Manual loyalty change from the back office.

    ``earn`` and ``bonus`` add ``points``; ``redeem`` removes them;
    ``adjustment`` sets the balance to ``points`` and records the difference.
    """
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("customer not found")
    if transaction_type in {"earn", "bonus"}:
        if points <= 0:
            raise ValidationError("points must be positive")
        transaction = record_transaction(
            db, customer, points, transaction_type, notes=notes, performed_by=performed_by
        )
        add_lifetime_points(customer, points)
    elif transaction_type == "redeem":
        if points <= 0:
            raise ValidationError("points must be positive")
        transaction = record_transaction(
            db, customer, -points, "redeem", notes=notes, performed_by=performed_by
        )
    elif transaction_type == "adjustment":
        if points < 0:
            raise ValidationError("balance cannot be negative")
        difference = points - (customer.loyalty_points_balance or 0)
        if difference == 0:
            raise ValidationError("balance already equals the requested value")
        transaction = record_transaction(
            db, customer, difference, "adjustment", notes=notes, performed_by=performed_by
        )
    else:
        raise ValidationError(f"cannot adjust points with type {transaction_type}")
    logger.info(
        "loyalty %s for customer %s: %s -> %s",
        transaction_type,
        customer.id,
        transaction.balance_before,
        transaction.balance_after,
    )
    return transaction


def transaction_query(
    db: Session,
    customer_id: Optional[int] = None,
    transaction_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    query = db.query(LoyaltyTransaction)
    if customer_id is not None:
        query = query.filter(LoyaltyTransaction.customer_id == customer_id)
    if transaction_type is not None:
        query = query.filter(LoyaltyTransaction.transaction_type == transaction_type)
    if date_from is not None:
        query = query.filter(LoyaltyTransaction.timestamp >= date_from)
    if date_to is not None:
        query = query.filter(LoyaltyTransaction.timestamp <= date_to)
    return query


def loyalty_stats(db: Session) -> dict:
    members_with_points = (
        db.query(func.count(Customer.id)).filter(Customer.loyalty_points_balance > 0).scalar()
    )
    outstanding = db.query(func.coalesce(func.sum(Customer.loyalty_points_balance), 0)).scalar()
    earned = (
        db.query(func.coalesce(func.sum(LoyaltyTransaction.points_change), 0))
        .filter(LoyaltyTransaction.transaction_type.in_(["earn", "bonus"]))
        .scalar()
    )
    redeemed = (
        db.query(func.coalesce(func.sum(LoyaltyTransaction.points_change), 0))
        .filter(LoyaltyTransaction.transaction_type == "redeem")
        .scalar()
    )
    tiers = dict(db.query(Customer.status, func.count(Customer.id)).group_by(Customer.status).all())
    return {
        "members_with_points": members_with_points,
        "outstanding_points": int(outstanding),
        "points_earned": int(earned),
        "points_redeemed": -int(redeemed),
        "tier_counts": {tier: tiers.get(tier, 0) for tier in TIER_RANK},
    }


def tier_overview(db: Session) -> list[dict]:
    rows = {
        status: (count, avg)
        for status, count, avg in db.query(
            Customer.status, func.count(Customer.id), func.avg(Customer.loyalty_points_balance)
        )
        .group_by(Customer.status)
        .all()
    }
    thresholds = dict(TIER_THRESHOLDS)
    overview = []
    for tier in TIER_RANK:
        count, avg = rows.get(tier, (0, None))
        overview.append(
            {
                "tier": tier,
                "min_lifetime_points": thresholds[tier] + 1 if tier in thresholds else 0,
                "members": count,
                "average_balance": round(float(avg or 0), 2),
            }
        )
    return overview


def leaderboard(db: Session, limit: int = 10) -> list[Customer]:
    return (
        db.query(Customer)
        .filter(Customer.is_active.is_(True))
        .order_by(Customer.loyalty_points_balance.desc(), Customer.id)
        .limit(limit)
        .all()
    )
