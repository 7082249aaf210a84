"""
Store gateway - the only code that talks to the database.

Both the ingestion job and the read path go through this class, so they
share one failure vocabulary (StoreError) and one place where writes are
turned into change notifications. No business logic lives here.

Operations:
- query: equality / IN filters, optional extra clauses, ordering, limit
- upsert: INSERT ... ON CONFLICT with a declared conflict key, either
  updating the non-key columns or ignoring duplicates
- update: bulk column update for rows matching equality filters
- subscribe_changes: open a ChangeChannel for one table
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, text, update as sa_update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from fleetwatch.config import DatabaseConfig
from fleetwatch.exceptions import StoreError
from fleetwatch.models.base import build_engine, build_session_factory, session_scope
from fleetwatch.store.changes import ChangeChannel, ChangeEvent, ChangeHandler, ChangeOperation

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    """Outcome of an upsert: affected row count plus any RETURNING rows."""
    rowcount: int
    rows: List[Dict[str, Any]] = field(default_factory=list)


class StoreGateway:
    """
    Thin synchronous interface over the relational store.

    Every write runs in its own transaction. Change events are published
    only after the transaction commits and only when rows were affected,
    so an idempotent ingestion run that inserts nothing stays silent on
    the position table.
    """

    def __init__(self, engine: Engine, session_factory: Optional[sessionmaker] = None):
        self.engine = engine
        self._session_factory = session_factory or build_session_factory(engine)

        self._channels: Dict[str, List[ChangeChannel]] = {}
        self._channels_lock = threading.Lock()

    @classmethod
    def from_config(cls, database: Optional[DatabaseConfig] = None) -> 'StoreGateway':
        """Create a gateway from application configuration."""
        return cls(build_engine(database))

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def query(
        self,
        model,
        filters: Optional[Dict[str, Any]] = None,
        where: Optional[Sequence[Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list:
        """
        Select model instances.

        filters maps column name to a value (equality) or to a list/tuple/set
        of values (IN). where takes extra SQLAlchemy clauses for range
        conditions. Returned instances are detached from the session.
        """
        stmt = select(model)
        for clause in self._filter_clauses(model, filters):
            stmt = stmt.where(clause)
        for clause in where or ():
            stmt = stmt.where(clause)

        if order_by:
            column = getattr(model, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            with session_scope(self._session_factory) as session:
                return list(session.scalars(stmt).all())
        except SQLAlchemyError as e:
            raise StoreError(f'Query on {model.__tablename__} failed: {e}', table=model.__tablename__) from e

    def query_column(self, model, column: str, filters: Optional[Dict[str, Any]] = None) -> list:
        """Select a single column as a flat list of values."""
        stmt = select(getattr(model, column))
        for clause in self._filter_clauses(model, filters):
            stmt = stmt.where(clause)

        try:
            with session_scope(self._session_factory) as session:
                return list(session.scalars(stmt).all())
        except SQLAlchemyError as e:
            raise StoreError(f'Query on {model.__tablename__} failed: {e}', table=model.__tablename__) from e

    def ping(self) -> bool:
        """Check database connectivity."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text('SELECT 1'))
            return True
        except SQLAlchemyError as e:
            logger.error(f'Database health check failed: {e}')
            return False

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert(
        self,
        model,
        rows: List[Dict[str, Any]],
        conflict_keys: Iterable[str],
        ignore_duplicates: bool = False,
        update_columns: Optional[Iterable[str]] = None,
        returning: Optional[Iterable[str]] = None,
    ) -> UpsertResult:
        """
        Insert rows, resolving conflicts on conflict_keys.

        With ignore_duplicates a conflicting row is silently dropped and
        does not count towards rowcount. Otherwise the conflicting row's
        update_columns (default: every non-key column supplied) are
        overwritten with the incoming values.

        All rows must carry the same keys.
        """
        table = model.__tablename__
        if not rows:
            return UpsertResult(rowcount=0)

        conflict_keys = list(conflict_keys)
        stmt = self._insert(model).values(rows)

        if ignore_duplicates:
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_keys)
        else:
            columns = list(update_columns) if update_columns is not None else [
                key for key in rows[0] if key not in conflict_keys
            ]
            stmt = stmt.on_conflict_do_update(
                index_elements=conflict_keys,
                set_={column: stmt.excluded[column] for column in columns},
            )

        if returning:
            stmt = stmt.returning(*[getattr(model, column) for column in returning])

        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(stmt)
                if returning:
                    returned = [dict(row._mapping) for row in result]
                    rowcount = len(returned)
                else:
                    returned = []
                    rowcount = max(result.rowcount, 0)
        except SQLAlchemyError as e:
            raise StoreError(f'Upsert into {table} failed: {e}', table=table) from e

        if rowcount:
            self._publish(ChangeEvent(table=table, operation=ChangeOperation.UPSERT, rowcount=rowcount))
        return UpsertResult(rowcount=rowcount, rows=returned)

    def update(self, model, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        """Update matching rows, returning the number of rows changed."""
        table = model.__tablename__
        stmt = sa_update(model).values(**values)
        for clause in self._filter_clauses(model, filters):
            stmt = stmt.where(clause)

        try:
            with session_scope(self._session_factory) as session:
                rowcount = max(session.execute(stmt).rowcount, 0)
        except SQLAlchemyError as e:
            raise StoreError(f'Update of {table} failed: {e}', table=table) from e

        if rowcount:
            self._publish(ChangeEvent(table=table, operation=ChangeOperation.UPDATE, rowcount=rowcount))
        return rowcount

    # -------------------------------------------------------------------------
    # Change notifications
    # -------------------------------------------------------------------------

    def subscribe_changes(self, table: str, handler: ChangeHandler) -> ChangeChannel:
        """Open a channel delivering every committed change on table."""
        channel = ChangeChannel(table, handler, on_close=self._remove_channel)
        with self._channels_lock:
            self._channels.setdefault(table, []).append(channel)
        logger.debug(f'Change channel for {table} opened')
        return channel

    def open_channel_counts(self) -> Dict[str, int]:
        """Number of open change channels per table."""
        with self._channels_lock:
            return {table: len(channels) for table, channels in self._channels.items()}

    def _remove_channel(self, channel: ChangeChannel) -> None:
        with self._channels_lock:
            channels = self._channels.get(channel.table)
            if channels and channel in channels:
                channels.remove(channel)
                if not channels:
                    del self._channels[channel.table]

    def _publish(self, event: ChangeEvent) -> None:
        with self._channels_lock:
            channels = list(self._channels.get(event.table, ()))

        for channel in channels:
            channel.deliver(event)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _insert(self, model):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        if self.engine.dialect.name == 'postgresql':
            return pg_insert(model)
        return sqlite_insert(model)

    @staticmethod
    def _filter_clauses(model, filters: Optional[Dict[str, Any]]) -> list:
        clauses = []
        for name, value in (filters or {}).items():
            column = getattr(model, name)
            if isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        return clauses

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()
