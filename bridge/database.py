# bridge/database.py
"""
Delivery journal storage: SQLAlchemy over one SQLite file per device.

Each engine owns its device's journal.db; the control API opens the same file
read-only-in-practice to list recent deliveries. All models are imported in
create_tables() so one call creates every table.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def make_engine(db_path: str) -> Engine:
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},   # sessions are used from executor threads
        echo=False,                                  # Set True to log all SQL queries (debug only)
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine: Engine):
    """Creates the journal tables. Safe to call multiple times."""
    from bridge.models.delivered_event import DeliveredEvent   # noqa

    Base.metadata.create_all(bind=engine)
