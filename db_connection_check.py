from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from pos_backend.config import settings


def main() -> None:
    database_url = settings.database_url
    print(f"POS_DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            tables = inspect(conn).get_table_names()
        print("DB connection OK")
        print(f"tables: {', '.join(sorted(tables)) or '(none, start the API to create them)'}")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
