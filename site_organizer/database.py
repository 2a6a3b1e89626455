import logging

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool, QueuePool

from .config.postgres import USE_POSTGRES, get_sqlalchemy_url, get_pool_config
from .config.settings import SQLITE_URL

logger = logging.getLogger(__name__)

# Database URL detection (PostgreSQL takes precedence)
if USE_POSTGRES:
    DATABASE_URL = get_sqlalchemy_url()
else:
    DATABASE_URL = SQLITE_URL


def make_engine(url: str) -> Engine:
    """
    Create an engine with the pooling strategy matching the backend.

    SQLite connections get foreign keys switched on, so join rows can never
    point at a missing site, category or tag.
    """
    if url.startswith("postgresql"):
        pool_config = get_pool_config()
        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=pool_config["pool_size"],
            max_overflow=pool_config["max_overflow"],
            pool_timeout=pool_config["pool_timeout"],
            pool_recycle=pool_config["pool_recycle"],
            pool_pre_ping=pool_config["pool_pre_ping"],
        )

    new_engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(new_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return new_engine


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

Base = declarative_base()


def get_db():
    """FastAPI dependency: one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_site_columns(bind: Engine = None):
    """
    Add columns introduced after the first schema to an existing 'sites' table.
    Safe to run multiple times; no-op when the table is missing or complete.
    """
    bind = bind or engine
    is_postgres = bind.dialect.name == "postgresql"
    cols_to_add = [
        ("use_case", "TEXT"),
        ("is_needed", "BOOLEAN"),
        ("is_pinned", "BOOLEAN"),
        ("pin_position", "INTEGER"),
        ("import_source", "TEXT"),
        ("legacy_categories", "JSONB" if is_postgres else "TEXT"),
        ("legacy_tags", "JSONB" if is_postgres else "TEXT"),
        ("updated_at", "TIMESTAMP" if is_postgres else "TEXT"),
    ]

    inspector = inspect(bind)
    if "sites" not in inspector.get_table_names():
        return []

    existing = {col["name"] for col in inspector.get_columns("sites")}
    added = []
    with bind.connect() as conn:
        for name, typ in cols_to_add:
            if name not in existing:
                conn.execute(text(f'ALTER TABLE sites ADD COLUMN "{name}" {typ}'))
                conn.commit()
                added.append(name)
    if added:
        logger.info(f"Added missing site columns: {added}")
    return added


def ensure_postgres_indexes(bind: Engine = None):
    """
    Create PostgreSQL-specific indexes for the list and usage-check queries.
    Only runs against a PostgreSQL engine.
    """
    bind = bind or engine
    if bind.dialect.name != "postgresql":
        return

    indexes = [
        ("idx_sites_user_created", "sites", "user_id, created_at DESC"),
        ("idx_sites_import_source", "sites", "import_source"),
        ("idx_sites_pinned", "sites", "is_pinned DESC, pin_position"),
        ("idx_site_categories_category", "site_categories", "category_id"),
        ("idx_site_tags_tag", "site_tags", "tag_id"),
    ]

    with bind.connect() as conn:
        for idx_name, table_name, columns in indexes:
            try:
                conn.execute(text(f"CREATE INDEX IF NOT EXISTS {idx_name} ON {table_name} ({columns})"))
                conn.commit()
            except SQLAlchemyError as e:
                conn.rollback()
                logger.warning(f"Could not create index {idx_name}: {e}")
