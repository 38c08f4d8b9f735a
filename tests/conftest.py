"""
Shared test fixtures: in-memory SQLite database and session.
"""
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from credit_ledger.db.base import Base
from credit_ledger.db.models.subscription import SINGLE_ACTIVE_INDEX_NAME
import credit_ledger.db.models  # noqa: F401


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def without_single_active_index(db):
    """
    Database that predates the single-active index.

    Lets tests seed the duplicate active rows that reconcile() and the
    migration's data step exist to repair.
    """
    db.execute(text(f"DROP INDEX IF EXISTS {SINGLE_ACTIVE_INDEX_NAME}"))
    db.commit()
