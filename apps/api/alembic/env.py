from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from erp.core.config import get_settings
from erp.core.database import Base
from erp.crm import models as crm_models  # noqa: F401
from erp.directory import models as directory_models  # noqa: F401
from erp.invoicing import models as invoicing_models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    # DATABASE_URL (through Settings) wins over the ini default
    ini_url = config.get_main_option("sqlalchemy.url")
    settings_url = get_settings().database_url
    return settings_url or ini_url or ""


def _configure(**kwargs: object) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


def run_migrations_offline() -> None:
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(_database_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
