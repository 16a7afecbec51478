"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine from
`settings.DATABASE_URL` (a local SQLite file by default) and provides
small helpers used by the application, the websocket relays and tests.
"""

from sqlmodel import SQLModel, create_engine, Session, select

from .config import settings

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=_connect_args)

DEFAULT_ROLES = ("customer", "courier", "partner", "admin")


def create_db_and_tables():
    """Create database tables using SQLModel metadata and seed roles.

    This function is intended for local development and tests;
    deployments apply `migrations/*.sql` with `run_migrations.py` instead.
    """
    from . import models

    SQLModel.metadata.create_all(engine)
    _seed_roles(models)


def _seed_roles(models):
    """Insert the built-in roles that are missing (idempotent)."""
    with Session(engine) as session:
        existing = set(session.exec(select(models.Role.name)).all())
        for name in DEFAULT_ROLES:
            if name not in existing:
                session.add(models.Role(name=name))
        session.commit()


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session
