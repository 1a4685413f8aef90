"""MetaSync - Deduplicating Upsert Store.

One natural-key upsert for every table the sync engines write. Each call is a
single transaction; rows are written with ``INSERT ... ON CONFLICT DO UPDATE``
so re-ingesting a key overwrites in place.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence, Type

from sqlalchemy import select, tuple_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel

from metasync.core.errors import PersistenceError
from metasync.core.logging import get_logger
from metasync.models.sync_models import UpsertResult

logger = get_logger("repositories.upsert")

DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dedupe_by_key(
    records: Sequence[Dict[str, Any]], key_fields: Sequence[str]
) -> List[Dict[str, Any]]:
    """Collapse records sharing a natural key; the last occurrence wins."""
    by_key: Dict[tuple, Dict[str, Any]] = {}
    for record in records:
        by_key[tuple(record.get(k) for k in key_fields)] = record
    return list(by_key.values())


class UpsertStore:
    """Idempotent batched writes keyed by a natural key."""

    def __init__(self, session_factory: Callable[[], Session], chunk_size: int = 500):
        self._session_factory = session_factory
        self.chunk_size = chunk_size

    def _count_existing(
        self, session: Session, table: Any, rows: List[Dict[str, Any]], key_fields: Sequence[str]
    ) -> int:
        columns = [table.c[k] for k in key_fields]
        found = 0
        for i in range(0, len(rows), self.chunk_size):
            chunk = rows[i : i + self.chunk_size]
            if len(columns) == 1:
                keys = [r[key_fields[0]] for r in chunk]
                clause = columns[0].in_(keys)
            else:
                keys = [tuple(r[k] for k in key_fields) for r in chunk]
                clause = tuple_(*columns).in_(keys)
            found += len(session.execute(select(*columns).where(clause)).all())
        return found

    def upsert(
        self,
        model: Type[SQLModel],
        records: Sequence[Dict[str, Any]],
        key_fields: Sequence[str],
    ) -> UpsertResult:
        """Insert new keys, overwrite existing ones. Raises ``PersistenceError``."""
        if not records:
            return UpsertResult()

        table = model.__table__
        rows = dedupe_by_key(records, key_fields)
        if "synced_at" in table.c:
            now = datetime.now(timezone.utc)
            rows = [{**r, "synced_at": now} for r in rows]

        with self._session_factory() as session:
            dialect = session.get_bind().dialect.name
            insert = DIALECT_INSERTS.get(dialect)
            if insert is None:
                raise PersistenceError(f"Upsert is not supported on dialect '{dialect}'")
            try:
                existing = self._count_existing(session, table, rows, key_fields)
                for i in range(0, len(rows), self.chunk_size):
                    chunk = rows[i : i + self.chunk_size]
                    stmt = insert(table).values(chunk)
                    update_cols = {
                        c: stmt.excluded[c] for c in chunk[0].keys() if c not in key_fields
                    }
                    if update_cols:
                        stmt = stmt.on_conflict_do_update(
                            index_elements=list(key_fields), set_=update_cols
                        )
                    else:
                        stmt = stmt.on_conflict_do_nothing(index_elements=list(key_fields))
                    session.execute(stmt)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Upsert into {table.name} failed: {e}")
                raise PersistenceError(f"Failed to upsert into {table.name}: {e}") from e

        result = UpsertResult(inserted=len(rows) - existing, updated=existing)
        logger.info(
            f"Upserted {len(rows)} rows into {table.name} "
            f"({result.inserted} inserted, {result.updated} updated)"
        )
        return result
