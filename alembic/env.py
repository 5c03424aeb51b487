from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool, create_engine

from consultpay.core.config import settings
from consultpay.db.session import Base

# Import all models so Alembic sees them in metadata
from consultpay.models.payment import Payment  # noqa: F401
from consultpay.models.payment_event import PaymentEvent  # noqa: F401
from consultpay.models.webhook_log import WebhookLog  # noqa: F401

config = context.config

# alembic.ini carries no URL; migrations always target the app's DATABASE_URL
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # sqlite needs table rebuilds for ALTERs
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
