"""Store settings kept in the ``system_setting`` table.

Every accessor falls back to the matching ``Settings`` value when the row is
missing or holds something that does not parse.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.orm import Session

from pos_backend.common import utcnow
from pos_backend.config import settings
from pos_backend.exceptions import NotFoundError, ValidationError
from pos_backend.models import SystemSetting

logger = logging.getLogger(__name__)

SETTING_TYPES = {"general", "sales", "cashier", "inventory", "loyalty", "notification", "security"}

_TRUE_VALUES = {"true", "yes", "1", "on"}
_FALSE_VALUES = {"false", "no", "0", "off"}


def get_value(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    row = db.query(SystemSetting).filter(SystemSetting.key == key.lower()).first()
    if row is None:
        return default
    return row.value


def get_bool(db: Session, key: str, default: bool) -> bool:
    raw = get_value(db, key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    try:
        return Decimal(value) > 0
    except InvalidOperation:
        logger.warning("setting %s has non-boolean value %r", key, raw)
        return default


def get_decimal(db: Session, key: str, default: Decimal) -> Decimal:
    raw = get_value(db, key)
    if raw is None:
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        logger.warning("setting %s has non-numeric value %r", key, raw)
        return default


def get_int(db: Session, key: str, default: int) -> int:
    raw = get_value(db, key)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("setting %s has non-integer value %r", key, raw)
        return default


def company_name(db: Session) -> str:
    return get_value(db, "company_name", settings.company_name)


def tax_rate(db: Session) -> Decimal:
    return get_decimal(db, "tax_rate", settings.default_tax_rate)


def loyalty_points_enabled(db: Session) -> bool:
    return get_bool(db, "loyalty_points_enabled", settings.loyalty_points_enabled)


def loyalty_point_rate(db: Session) -> Decimal:
    rate = get_decimal(db, "loyalty_point_rate", settings.loyalty_point_rate)
    return rate if rate > 0 else settings.loyalty_point_rate


def lifetime_point_rate(db: Session) -> Decimal:
    rate = get_decimal(db, "lifetime_point_rate", settings.lifetime_point_rate)
    return rate if rate > 0 else settings.lifetime_point_rate


def auto_reorder_enabled(db: Session) -> bool:
    return get_bool(db, "auto_reorder_enabled", settings.auto_reorder_enabled)


def audit_log_enabled(db: Session) -> bool:
    return get_bool(db, "audit_log_enabled", settings.audit_log_enabled)


def log_retention_days(db: Session) -> int:
    return get_int(db, "log_retention_days", settings.audit_log_retention_days)


def large_sale_threshold(db: Session) -> Decimal:
    return get_decimal(db, "large_sale_threshold", settings.large_sale_threshold)


def bulk_refund_item_count(db: Session) -> int:
    return get_int(db, "bulk_refund_item_count", settings.bulk_refund_item_count)


def list_settings(db: Session, setting_type: Optional[str] = None) -> list[SystemSetting]:
    query = db.query(SystemSetting)
    if setting_type is not None:
        query = query.filter(SystemSetting.setting_type == setting_type)
    return query.order_by(SystemSetting.key).all()


def get_setting(db: Session, key: str) -> SystemSetting:
    row = db.query(SystemSetting).filter(SystemSetting.key == key.lower()).first()
    if row is None:
        raise NotFoundError(f"setting {key} not found")
    return row


def upsert_setting(
    db: Session,
    key: str,
    value: str,
    setting_type: str = "general",
    description: Optional[str] = None,
    is_public: bool = False,
) -> tuple[SystemSetting, Optional[str]]:
    """Create or replace a setting. Returns the row and its previous value."""
    key = key.strip().lower()
    if not key:
        raise ValidationError("setting key is required")
    if setting_type not in SETTING_TYPES:
        raise ValidationError(f"unknown setting type {setting_type}")
    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    previous = None
    if row is None:
        row = SystemSetting(key=key)
        db.add(row)
    else:
        previous = row.value
    row.value = value
    row.setting_type = setting_type
    row.description = description if description is not None else row.description
    row.is_public = is_public
    row.updated_at = utcnow()
    db.flush()
    return row, previous


def delete_setting(db: Session, key: str) -> SystemSetting:
    row = get_setting(db, key)
    db.delete(row)
    db.flush()
    return row
