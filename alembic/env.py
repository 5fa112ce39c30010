# alembic/env.py
import os
import sys
from logging.config import fileConfig

from sqlalchemy import create_engine, pool
from alembic import context

# make sure project root is on sys.path so `assetflow` imports work without an install
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from assetflow.config import settings  # noqa: E402
from assetflow.models import Base  # noqa: E402

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _to_sync_url(async_url: str) -> str:
    """
    Convert async driver scheme to sync driver for Alembic (asyncpg -> psycopg2, aiosqlite -> pysqlite).
    """
    return async_url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


db_url = os.environ.get("DATABASE_URL") or settings.database_url
if not db_url:
    raise RuntimeError("No database URL found. Set DATABASE_URL.")

if not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", _to_sync_url(db_url))


def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = create_engine(
        config.get_main_option("sqlalchemy.url"),
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
