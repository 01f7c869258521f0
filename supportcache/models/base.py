"""Database base configuration"""
import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.schema import CreateIndex

from supportcache.config import settings

logger = logging.getLogger(__name__)

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (consistent with source timestamp parsing)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enable_sqlite_wal(bind):
    """Readers must not block on the sync writer; WAL gives concurrent reads in SQLite."""
    if bind.dialect.name != "sqlite" or bind.url.database in (None, "", ":memory:"):
        return
    with bind.begin() as conn:
        conn.exec_driver_sql("PRAGMA journal_mode=WAL")


def _add_missing_columns(bind):
    """
    Schema upgrade for databases created by older versions:
    create_all() never alters existing tables, so any model column that is
    missing from an existing table is added with ALTER TABLE ADD COLUMN.
    Added columns are always created nullable.
    """
    with bind.begin() as conn:
        inspector = inspect(conn)
        existing_tables = set(inspector.get_table_names())
        for table in Base.metadata.sorted_tables:
            if table.name not in existing_tables:
                continue
            present = {col["name"] for col in inspector.get_columns(table.name)}
            for column in table.columns:
                if column.name in present:
                    continue
                col_type = column.type.compile(dialect=conn.dialect)
                conn.exec_driver_sql(
                    f"ALTER TABLE {table.name} ADD COLUMN {column.name} {col_type}"
                )
                logger.info(f"Added missing column {table.name}.{column.name}")


def _ensure_indexes(bind):
    """
    Tables that predate an index declaration keep running without it, because
    create_all() skips existing tables entirely. Create any declared index that
    the database does not have yet.
    """
    with bind.begin() as conn:
        inspector = inspect(conn)
        existing_tables = set(inspector.get_table_names())
        for table in Base.metadata.sorted_tables:
            if table.name not in existing_tables:
                continue
            present = {ix["name"] for ix in inspector.get_indexes(table.name)}
            for index in table.indexes:
                if index.name in present:
                    continue
                conn.execute(CreateIndex(index))
                logger.info(f"Created missing index {index.name}")


def init_db(bind=None):
    """Initialize database (create tables, then migrate existing ones in place)."""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import supportcache.models  # noqa: F401  (import for side-effects)

    bind = bind or engine
    _enable_sqlite_wal(bind)
    Base.metadata.create_all(bind=bind)
    _add_missing_columns(bind)
    _ensure_indexes(bind)
