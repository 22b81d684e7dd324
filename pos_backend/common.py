from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

CENT = Decimal("0.01")
ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def money(value) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_float(value) -> float:
    return float(money(value))


def next_reference(db: Session, model, prefix: str, moment: Optional[datetime] = None) -> str:
    """Next ``PREFIX-YYYYMMDD-NNNN`` number for the day of ``moment``."""
    stem = f"{prefix}-{(moment or utcnow()).strftime('%Y%m%d')}-"
    # Longest first so 10000 sorts after 9999.
    last = (
        db.query(model.reference_no)
        .filter(model.reference_no.like(f"{stem}%"))
        .order_by(func.length(model.reference_no).desc(), model.reference_no.desc())
        .limit(1)
        .scalar()
    )
    sequence = int(last[len(stem):]) + 1 if last else 1
    return f"{stem}{sequence:04d}"
