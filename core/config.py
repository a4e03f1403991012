"""Deployment settings, algorithm tunables, and logging setup.

Log location and level come from the environment (the database URL is read
in database.py). Algorithm tunables default to the module constants below and
can be overridden per deployment through rows in the ``config`` table.
"""

import logging
import logging.handlers
import os

from sqlalchemy.orm import Session

from models import Config

LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# ---------------------------------------------------------------------------
# Algorithm tunables
# ---------------------------------------------------------------------------

TUNABLE_DEFAULTS = {
    "fraud_history_size": 20,
    "smoother_max_gap_s": 30.0,
    "learner_min_data_points": 100,
    "learner_learning_rate": 0.1,
    "learner_optimize_every": 50,
}

# Stored as text; these keys are cast back to int
_INT_TUNABLES = {"fraud_history_size", "learner_min_data_points", "learner_optimize_every"}


def load_tunables(db: Session | None = None) -> dict:
    """Read tunables from the Config table, falling back to module defaults."""
    tunables = dict(TUNABLE_DEFAULTS)
    if db is None:
        return tunables
    rows = db.query(Config).filter(Config.key.in_(tunables.keys())).all()
    for row in rows:
        value = float(row.value)
        tunables[row.key] = int(value) if row.key in _INT_TUNABLES else value
    return tunables


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logging(log_dir: str | None = None, level: str | None = None) -> logging.Logger:
    """Install console + rotating-file handlers on the root logger."""
    log_file = os.path.join(log_dir or LOG_DIR, "gps-trust.log")
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=[
            logging.StreamHandler(),
            logging.handlers.RotatingFileHandler(
                log_file, maxBytes=5 * 1024 * 1024, backupCount=3,
            ),
        ],
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    return logging.getLogger("gpstrust")
