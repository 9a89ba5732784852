from logging.config import fileConfig
from pathlib import Path
import sys

from alembic import context
from sqlalchemy import create_engine, pool

sys.path.append(str(Path(__file__).resolve().parents[1]))
from src.backend.app.db import Base, DATABASE_URL, make_engine  # noqa: E402
from src.backend.app import models  # noqa: E402,F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _get_url() -> str:
    # db.py already loaded .env and normalized postgres:// URLs
    return DATABASE_URL or config.get_main_option("sqlalchemy.url")


def run_migrations_offline():
    context.configure(url=_get_url(), target_metadata=target_metadata, literal_binds=True, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    url = _get_url()
    # sqlite needs the same transaction hooks as the app
    connectable = make_engine(url) if url.startswith("sqlite") else create_engine(url, poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
