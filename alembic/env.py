"""
Alembic environment for the governance workflow schema (Flask-SQLAlchemy metadata)
"""
from logging.config import fileConfig
import sys
from pathlib import Path

from alembic import context

# Add parent directory to path to import the Flask app
sys.path.insert(0, str(Path(__file__).parent.parent))

from server import app, db
from models import User, Asset, PlatformCredential, GovernanceAction, ActionApproval, AuditLog  # noqa: F401

config = context.config

# The app's DATABASE_URL wins over alembic.ini
config.set_main_option('sqlalchemy.url', app.config['SQLALCHEMY_DATABASE_URI'])

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = db.metadata


def run_migrations_offline() -> None:
    """Emit SQL to stdout against the configured URL, without a DBAPI."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run against the Flask app's engine."""
    with app.app_context():
        connectable = db.engine

        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                compare_server_default=True,
                render_as_batch=connection.dialect.name == 'sqlite',
            )

            with context.begin_transaction():
                context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
