"""
PostgreSQL configuration and connection pooling for the site organizer.
SQLite remains the default for local development and tests.
"""

import os
from typing import Optional

# Environment-based configuration
USE_POSTGRES: bool = os.getenv("USE_POSTGRES", "false").lower() == "true"
DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
DATABASE_HOST: Optional[str] = os.getenv("DATABASE_HOST")
DATABASE_PORT: Optional[str] = os.getenv("DATABASE_PORT")
DATABASE_NAME: Optional[str] = os.getenv("DATABASE_NAME")
DATABASE_USER: Optional[str] = os.getenv("DATABASE_USER")
DATABASE_PASSWORD: Optional[str] = os.getenv("DATABASE_PASSWORD")

# Connection pooling settings
POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "5"))
MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "3600"))


def get_database_url() -> str:
    """
    Build PostgreSQL connection string from environment variables.
    Priority: DATABASE_URL env var > DATABASE_HOST/PORT/NAME/USER vars
    """
    if DATABASE_URL:
        return DATABASE_URL
    missing = []
    for var_name, var in zip([
        "DATABASE_HOST", "DATABASE_PORT", "DATABASE_NAME", "DATABASE_USER"
    ], [DATABASE_HOST, DATABASE_PORT, DATABASE_NAME, DATABASE_USER]):
        if not var:
            missing.append(var_name)
    if missing:
        raise RuntimeError(f"Missing required database environment variables: {missing}")
    if DATABASE_PASSWORD:
        return f"postgresql://{DATABASE_USER}:{DATABASE_PASSWORD}@{DATABASE_HOST}:{DATABASE_PORT}/{DATABASE_NAME}"
    return f"postgresql://{DATABASE_USER}@{DATABASE_HOST}:{DATABASE_PORT}/{DATABASE_NAME}"


def get_sqlalchemy_url() -> str:
    """Get SQLAlchemy-compatible PostgreSQL URL with psycopg2 driver."""
    url = get_database_url()
    if url.startswith("postgres://"):
        # Heroku/Render style scheme
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return url


def get_pool_config() -> dict:
    """Return connection pool configuration for the QueuePool engine."""
    return {
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,  # drop stale connections before use
    }


# Endpoint configuration
APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT: int = int(os.getenv("APP_PORT", "8080"))
