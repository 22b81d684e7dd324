"""Audit trail: writing entries, querying them and watching for odd activity."""

import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from pos_backend import system_settings
from pos_backend.common import as_utc, utcnow
from pos_backend.models import AuditLog

logger = logging.getLogger(__name__)

HIGH_RISK_ACTIONS = {"DELETE", "AUDIT_CLEANUP", "SETTING_CHANGE"}
OFF_HOURS_START = 22
OFF_HOURS_END = 6
DELETE_THRESHOLD = 10
BURST_THRESHOLD = 50
BURST_WINDOW = timedelta(minutes=10)
RAPID_SEQUENCE_THRESHOLD = 10
RAPID_SEQUENCE_WINDOW = timedelta(minutes=1)

_RISK_ORDER = {"low": 1, "medium": 2, "high": 3}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def snapshot(row, fields: Optional[list[str]] = None) -> dict:
    """Column values of an ORM row as a JSON-safe dict."""
    names = fields or [column.key for column in row.__table__.columns]
    return {name: _jsonable(getattr(row, name)) for name in names}


def _write(
    db: Session,
    action: str,
    entity: str,
    entity_id: Optional[int],
    previous_data: Optional[dict],
    new_data: Optional[dict],
    description: Optional[str],
    performed_by: str,
) -> Optional[AuditLog]:
    if not system_settings.audit_log_enabled(db):
        return None
    entry = AuditLog(
        action=action,
        entity=entity,
        entity_id=entity_id,
        previous_data=_jsonable(previous_data) if previous_data is not None else None,
        new_data=_jsonable(new_data) if new_data is not None else None,
        description=description,
        performed_by=performed_by or "system",
        timestamp=utcnow(),
    )
    db.add(entry)
    return entry


def log_create(
    db: Session,
    entity: str,
    entity_id: Optional[int],
    new_data: dict,
    performed_by: str = "system",
    description: Optional[str] = None,
) -> Optional[AuditLog]:
    return _write(db, "CREATE", entity, entity_id, None, new_data, description, performed_by)


def log_update(
    db: Session,
    entity: str,
    entity_id: Optional[int],
    previous_data: dict,
    new_data: dict,
    performed_by: str = "system",
    description: Optional[str] = None,
) -> Optional[AuditLog]:
    """Record only the fields whose value actually changed."""
    previous_data = _jsonable(previous_data)
    new_data = _jsonable(new_data)
    changed = [key for key in new_data if previous_data.get(key) != new_data[key]]
    if not changed:
        return None
    return _write(
        db,
        "UPDATE",
        entity,
        entity_id,
        {key: previous_data.get(key) for key in changed},
        {key: new_data[key] for key in changed},
        description,
        performed_by,
    )


def log_delete(
    db: Session,
    entity: str,
    entity_id: Optional[int],
    previous_data: dict,
    performed_by: str = "system",
    description: Optional[str] = None,
) -> Optional[AuditLog]:
    return _write(db, "DELETE", entity, entity_id, previous_data, None, description, performed_by)


def log_event(
    db: Session,
    action: str,
    entity: str,
    entity_id: Optional[int] = None,
    description: Optional[str] = None,
    data: Optional[dict] = None,
    performed_by: str = "system",
) -> Optional[AuditLog]:
    return _write(db, action, entity, entity_id, None, data, description, performed_by)


def query_logs(
    db: Session,
    entity: Optional[str] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    performed_by: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
):
    query = db.query(AuditLog)
    if entity is not None:
        query = query.filter(AuditLog.entity == entity)
    if entity_id is not None:
        query = query.filter(AuditLog.entity_id == entity_id)
    if action is not None:
        query = query.filter(AuditLog.action == action.upper())
    if performed_by is not None:
        query = query.filter(AuditLog.performed_by == performed_by)
    if date_from is not None:
        query = query.filter(AuditLog.timestamp >= date_from)
    if date_to is not None:
        query = query.filter(AuditLog.timestamp <= date_to)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(AuditLog.description.ilike(pattern), AuditLog.entity.ilike(pattern)))
    return query


def audit_stats(
    db: Session, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None
) -> dict:
    def grouped(column) -> dict:
        query = db.query(column, func.count(AuditLog.id))
        if date_from is not None:
            query = query.filter(AuditLog.timestamp >= date_from)
        if date_to is not None:
            query = query.filter(AuditLog.timestamp <= date_to)
        return {key: count for key, count in query.group_by(column).all()}

    by_action = grouped(AuditLog.action)
    return {
        "total": sum(by_action.values()),
        "by_action": by_action,
        "by_entity": grouped(AuditLog.entity),
        "by_user": grouped(AuditLog.performed_by),
    }


def _elevate(current: str, new: str) -> str:
    return new if _RISK_ORDER[new] > _RISK_ORDER[current] else current


def _count_near(timestamps: list[datetime], moment: datetime, window: timedelta) -> int:
    return sum(1 for ts in timestamps if abs(ts - moment) < window)


def suspicious_activity(
    db: Session,
    days: int = 7,
    end: Optional[datetime] = None,
    performed_by: Optional[str] = None,
) -> dict:
    """Flag audit entries that look unusual over the last ``days`` days.

    An entry is flagged for a high-risk action, activity between 22:00 and
    06:00 UTC, a burst of more than 50 actions by one user within 10 minutes,
    more than 10 repeats of one action within a minute, or when its user
    deleted more than 10 rows in the window.
    """
    end = end or utcnow()
    start = end - timedelta(days=days)
    query = query_logs(db, performed_by=performed_by, date_from=start, date_to=end)
    entries = query.order_by(AuditLog.timestamp.desc()).all()

    by_user: dict[str, list[datetime]] = defaultdict(list)
    by_user_action: dict[tuple[str, str], list[datetime]] = defaultdict(list)
    deletes_per_user: Counter = Counter()
    for entry in entries:
        moment = as_utc(entry.timestamp)
        by_user[entry.performed_by].append(moment)
        by_user_action[(entry.performed_by, entry.action)].append(moment)
        if entry.action == "DELETE":
            deletes_per_user[entry.performed_by] += 1

    flagged = []
    for entry in entries:
        moment = as_utc(entry.timestamp)
        reasons = []
        risk = "low"
        if entry.action in HIGH_RISK_ACTIONS:
            reasons.append("high_risk_action")
            risk = _elevate(risk, "medium")
        if moment.hour >= OFF_HOURS_START or moment.hour < OFF_HOURS_END:
            reasons.append("off_hours_activity")
            risk = _elevate(risk, "medium")
        if deletes_per_user[entry.performed_by] > DELETE_THRESHOLD and entry.action == "DELETE":
            reasons.append("excessive_deletes")
            risk = _elevate(risk, "high")
        if _count_near(by_user[entry.performed_by], moment, BURST_WINDOW) > BURST_THRESHOLD:
            reasons.append("burst_activity")
            risk = _elevate(risk, "high")
        same_action = by_user_action[(entry.performed_by, entry.action)]
        if _count_near(same_action, moment, RAPID_SEQUENCE_WINDOW) > RAPID_SEQUENCE_THRESHOLD:
            reasons.append("rapid_sequence")
            risk = _elevate(risk, "medium")
        if reasons:
            flagged.append(
                {
                    "audit_log_id": entry.id,
                    "action": entry.action,
                    "entity": entry.entity,
                    "entity_id": entry.entity_id,
                    "performed_by": entry.performed_by,
                    "timestamp": moment.isoformat(),
                    "reasons": reasons,
                    "risk_level": risk,
                }
            )

    categories = Counter(item["risk_level"] for item in flagged)
    if categories["high"] > 0:
        overall = "high"
    elif categories["medium"] > 3:
        overall = "medium"
    else:
        overall = "low"
    reason_counts = Counter(reason for item in flagged for reason in item["reasons"])

    flagged.sort(key=lambda item: _RISK_ORDER[item["risk_level"]], reverse=True)
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat(), "days": days},
        "total_entries": len(entries),
        "suspicious_count": len(flagged),
        "suspicious_activities": flagged,
        "risk_assessment": {
            "overall_risk": overall,
            "categories": {level: categories[level] for level in ("high", "medium", "low")},
            "top_reasons": [
                {"reason": reason, "count": count} for reason, count in reason_counts.most_common(5)
            ],
        },
        "users_with_many_deletes": sorted(
            user for user, count in deletes_per_user.items() if count > DELETE_THRESHOLD
        ),
    }


def purge_old_logs(db: Session, now: Optional[datetime] = None) -> dict:
    """Delete entries older than the retention window and record the cleanup."""
    if not system_settings.audit_log_enabled(db):
        logger.info("audit log disabled, skipping retention purge")
        return {"skipped": True, "deleted": 0, "retention_days": None}

    retention_days = system_settings.log_retention_days(db)
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    deleted = (
        db.query(AuditLog)
        .filter(AuditLog.timestamp < cutoff)
        .delete(synchronize_session=False)
    )
    log_event(
        db,
        "AUDIT_CLEANUP",
        "AuditLog",
        description=f"purged {deleted} audit entries older than {retention_days} days",
        data={"retention_days": retention_days, "deleted": deleted, "cutoff": cutoff},
    )
    db.flush()
    logger.info("purged %s audit entries older than %s days", deleted, retention_days)
    return {"skipped": False, "deleted": deleted, "retention_days": retention_days}
