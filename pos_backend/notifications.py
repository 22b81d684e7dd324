import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from pos_backend.common import utcnow
from pos_backend.exceptions import NotFoundError, ValidationError
from pos_backend.models import Notification

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"info", "success", "warning", "error", "sale", "purchase"}


def create_notification(
    db: Session,
    title: str,
    message: str,
    type: str = "info",
    metadata: Optional[dict] = None,
) -> Notification:
    if type not in NOTIFICATION_TYPES:
        raise ValidationError(f"unknown notification type {type}")
    notification = Notification(
        title=title,
        message=message,
        type=type,
        is_read=False,
        metadata_json=metadata,
        created_at=utcnow(),
    )
    db.add(notification)
    db.flush()
    return notification


def notify(
    db: Session,
    title: str,
    message: str,
    type: str = "info",
    metadata: Optional[dict] = None,
) -> Optional[Notification]:
    """Create a notification as a side effect; never fails the caller."""
    db.flush()
    try:
        with db.begin_nested():
            return create_notification(db, title, message, type, metadata)
    except Exception:
        logger.exception("failed to create notification %r", title)
        return None


def get_notification(db: Session, notification_id: int) -> Notification:
    notification = db.get(Notification, notification_id)
    if not notification:
        raise NotFoundError("notification not found")
    return notification


def list_query(db: Session, type: Optional[str] = None, is_read: Optional[bool] = None):
    query = db.query(Notification)
    if type is not None:
        query = query.filter(Notification.type == type)
    if is_read is not None:
        query = query.filter(Notification.is_read == is_read)
    return query


def unread_count(db: Session) -> int:
    return db.query(func.count(Notification.id)).filter(Notification.is_read.is_(False)).scalar()


def mark_read(db: Session, notification_id: int) -> Notification:
    notification = get_notification(db, notification_id)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
    return notification


def mark_all_read(db: Session) -> int:
    return (
        db.query(Notification)
        .filter(Notification.is_read.is_(False))
        .update({"is_read": True, "read_at": utcnow()}, synchronize_session=False)
    )


def delete_notification(db: Session, notification_id: int) -> None:
    db.delete(get_notification(db, notification_id))


def notification_stats(db: Session) -> dict:
    by_type = dict(
        db.query(Notification.type, func.count(Notification.id)).group_by(Notification.type).all()
    )
    return {
        "total": sum(by_type.values()),
        "unread": unread_count(db),
        "by_type": by_type,
    }
