"""
Create all tables directly from the models (local development only).

Production schemas are managed by Alembic; see credit_ledger.db.migrate.
"""
import logging

from credit_ledger.db.base import Base
from credit_ledger.db.session import engine
import credit_ledger.db.models  # noqa: F401  registers models on Base.metadata

logger = logging.getLogger(__name__)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
