import logging

from pos_backend import audit
from pos_backend.config import configure_logging
from pos_backend.db import Base, SessionLocal, engine

logger = logging.getLogger("purge_audit_logs")


def main() -> None:
    configure_logging()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        result = audit.purge_old_logs(db)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit purge failed")
        raise
    finally:
        db.close()
    if result["skipped"]:
        print("audit log disabled, nothing purged")
    else:
        print(f"purged {result['deleted']} entries older than {result['retention_days']} days")


if __name__ == "__main__":
    main()
