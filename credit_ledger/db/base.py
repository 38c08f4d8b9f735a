from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Note: Models are imported in credit_ledger.db.models to avoid circular imports
# All models must import Base from this module


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
