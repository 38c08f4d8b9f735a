"""
INSERT ... ON CONFLICT DO NOTHING across the dialects we deploy on.

Used for lazily-created rows (credit accounts, subscription imports) so two
concurrent first touches never race a read-then-insert.
"""
from typing import Any, Dict, List

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session


def insert_ignore(db: Session, model, values: Dict[str, Any], conflict_columns: List[str]) -> int:
    """
    Insert a row unless it conflicts on conflict_columns.

    Returns the number of rows inserted (0 or 1). Does not commit.
    """
    dialect = db.get_bind().dialect.name

    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
        return db.execute(stmt).rowcount

    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
        return db.execute(stmt).rowcount

    # Other backends: savepoint so a conflict does not abort the outer transaction
    try:
        with db.begin_nested():
            db.execute(insert(model).values(**values))
        return 1
    except IntegrityError:
        return 0
