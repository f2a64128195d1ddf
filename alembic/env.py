"""
Migrations for the closing tables.

Runs against the same URL and SQLite pragmas as the API. SQLite migrations
render in batch mode since it cannot ALTER most columns in place.
"""

import asyncio
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv
from sqlalchemy.engine import Connection

# ENVIRONMENT is read straight from os.environ by the settings module
load_dotenv()

from app.core.config import config as settings  # noqa: E402
from app.core.db import Base  # noqa: E402  registers every model
from app.core.db.engine import build_engine  # noqa: E402

config = context.config

# A URL set on the Config (programmatic runs) wins over DB_URL
db_url = config.get_main_option("sqlalchemy.url") or settings.database_url
is_sqlite = db_url.startswith("sqlite")
if is_sqlite and ":memory:" not in db_url:
    Path(db_url.split(":///", 1)[-1]).parent.mkdir(parents=True, exist_ok=True)

config.set_main_option("sqlalchemy.url", db_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        render_as_batch=is_sqlite,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without a connection."""
    _configure(url=db_url, literal_binds=True, dialect_opts={"paramstyle": "named"})

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = build_engine(db_url)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
