"""Atomic INSERT ... ON CONFLICT helpers for the supported database dialects."""
from sqlalchemy.dialects import postgresql, sqlite
from sportconnect.app import db

_DIALECT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


def _insert_for(model):
    dialect_name = db.session.get_bind().dialect.name
    try:
        insert = _DIALECT_INSERTS[dialect_name]
    except KeyError:
        raise RuntimeError(f'Atomic upserts are not supported on {dialect_name}') from None
    return insert(model)


def upsert(model, values, conflict_columns, update_columns):
    """Insert ``values`` or update ``update_columns`` on a unique-key conflict."""
    stmt = _insert_for(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={column: values[column] for column in update_columns},
    )
    db.session.execute(stmt)


def insert_ignore(model, values, conflict_columns):
    """Insert ``values`` unless the unique key exists. Returns True if a row was inserted."""
    stmt = _insert_for(model).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = db.session.execute(stmt)
    return result.rowcount == 1
