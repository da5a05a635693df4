from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context
import os

# Load .env for DATABASE_SYNC_URL / DATABASE_URL
from dotenv import load_dotenv
load_dotenv()

# Import all models so Base.metadata is populated
import schemaops.models  # noqa: F401
from schemaops.database import Base, validate_database_url

config = context.config


def _sync_url() -> str:
    explicit = os.getenv("DATABASE_SYNC_URL")
    if explicit:
        return explicit
    # Same checks as the runner, then the sync driver Alembic needs
    url = validate_database_url(os.getenv("DATABASE_URL"))
    return url.set(drivername="postgresql+psycopg2").render_as_string(hide_password=False)


database_url = _sync_url()
config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline():
    context.configure(
        url=database_url, target_metadata=target_metadata, literal_binds=True
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
