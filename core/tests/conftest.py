"""Shared pytest fixtures: in-memory DB, session factory, engine components."""

import sys
import os

# Add core root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401  (registers tables on Base.metadata)
from smoothing import PositionSmoother
from spoofing import FraudDetector
from thresholds import ThresholdLearner


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    # StaticPool so every session shares the same in-memory DB
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    """Provide a DB session, closed after each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def smoother():
    return PositionSmoother()


@pytest.fixture
def detector():
    return FraudDetector()


@pytest.fixture
def learner():
    return ThresholdLearner()
