"""Database setup and session management using SQLAlchemy + SQLite."""

import logging
import os

logger = logging.getLogger(__name__)

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///gps_trust.db")

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
Base = declarative_base()


def init_db(bind=None):
    """Create all tables and seed the default tunables."""
    from models import Config, MovementPoint, RegionalPatternRow, UserFlag  # noqa: F401

    bind = bind or engine
    logger.info("Initializing database at %s", bind.url)
    Base.metadata.create_all(bind=bind)
    _seed_config(sessionmaker(bind=bind))


def _seed_config(session_factory):
    """Insert default algorithm tunables if not present."""
    from config import TUNABLE_DEFAULTS
    from models import Config

    db = session_factory()
    try:
        for key, value in TUNABLE_DEFAULTS.items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=str(value)))
        db.commit()
    finally:
        db.close()
