"""Dialect-aware SQL helpers shared by the reconciliation services."""

from sqlalchemy.dialects import postgresql, sqlite

from stagepay.extensions import db

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def insert_or_ignore(model, values, conflict_columns):
    """INSERT a row unless it collides with a unique constraint.

    Executed as one statement (INSERT ... ON CONFLICT DO NOTHING), so two
    concurrent callers can never both observe "not present".
    Returns True if this call inserted the row. Does not commit.
    """
    dialect = db.engine.dialect.name
    try:
        insert = _INSERTS[dialect]
    except KeyError:
        raise RuntimeError(f"Conditional insert not supported on {dialect}")

    stmt = (
        insert(model.__table__)
        .values(**values)
        .on_conflict_do_nothing(index_elements=conflict_columns)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1
