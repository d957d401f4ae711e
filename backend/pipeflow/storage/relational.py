"""
RelationalBackend: SQLite through SQLAlchemy.

Transaction model:
- pysqlite's implicit transaction handling is disabled on connect and every
  SQLAlchemy transaction emits its own BEGIN (the SQLAlchemy-documented
  recipe), so DDL is transactional too.
- Write transactions start with BEGIN IMMEDIATE so the write lock is taken
  up front instead of being upgraded mid-transaction.
- The write transaction lives on one dedicated connection owned by the
  thread that began it. Reads from that thread go through it (read-your-
  writes); reads from any other thread use their own short-lived
  connection and only see committed data (WAL mode keeps them unblocked).
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from pipeflow.errors import BackendUnavailable, StorageFault
from pipeflow.models import tables

from .base import StorageBackend
from .statements import RANGE_OPERATORS, Select, Insert, Update, Delete

logger = logging.getLogger(__name__)

_WRITE_FLAG = "pipeflow_write_tx"


def _is_lock_error(exc: BaseException) -> bool:
    return isinstance(exc, OperationalError) and "locked" in str(exc).lower()


def _column_shape(column: sa.Column) -> sa.Column:
    default = column.default.arg if column.default is not None and column.default.is_scalar else None
    return sa.Column(column.name, column.type, primary_key=column.primary_key, nullable=column.nullable, default=default)


class RelationalBackend(StorageBackend):
    kind = "relational"

    def __init__(self, url: str, *, metadata: sa.MetaData = tables.metadata, busy_timeout: float = 5.0):
        self._url = url
        self._metadata = metadata
        self._busy_timeout = busy_timeout
        self._engine: sa.Engine | None = None
        self._conn: sa.Connection | None = None
        self._tx = None
        self._owner: int | None = None
        self._columns_cache: dict[str, list[str]] = {}

    @property
    def location(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        if self._engine is not None:
            return

        try:
            url = sa.engine.make_url(self._url)
            if url.get_backend_name() != "sqlite":
                raise BackendUnavailable(f"unsupported relational dialect {url.get_backend_name()!r}", operation="open")
            if not url.database or url.database == ":memory:":
                raise BackendUnavailable("in-memory SQLite cannot isolate readers from the writer", operation="open")

            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

            engine = sa.create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": self._busy_timeout},
            )
            self._install_sqlite_hooks(engine)

            # Smoke test: the file must be a readable, writable SQLite database
            with engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
                tables.store_meta.create(conn, checkfirst=True)
                conn.commit()
        except BackendUnavailable:
            raise
        except (SQLAlchemyError, OSError) as exc:
            raise BackendUnavailable(f"cannot open relational store: {exc}", operation="open") from exc

        self._engine = engine
        logger.info("Relational store opened at %s", self._url)

    @staticmethod
    def _install_sqlite_hooks(engine: sa.Engine) -> None:
        @sa.event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, _record):
            # Take transaction control away from pysqlite
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @sa.event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE" if conn.info.get(_WRITE_FLAG) else "BEGIN")

    def close(self) -> None:
        if self._engine is None:
            return
        if self._tx is not None:
            logger.warning("Closing relational store with an open transaction; rolling back")
            self.rollback()
        self._engine.dispose()
        self._engine = None
        self._columns_cache.clear()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def in_transaction(self) -> bool:
        return self._tx is not None and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        if self._engine is None:
            raise BackendUnavailable("relational store is not open", operation="begin_transaction")
        if self.in_transaction():
            raise StorageFault("transaction already open on this thread", operation="begin_transaction")

        conn = None
        try:
            conn = self._engine.connect()
            conn.info[_WRITE_FLAG] = True
            try:
                tx = conn.begin()
            finally:
                conn.info.pop(_WRITE_FLAG, None)
        except SQLAlchemyError as exc:
            if conn is not None:
                conn.close()
            if _is_lock_error(exc):
                raise StorageFault("relational store is locked", transient=True, operation="begin_transaction") from exc
            raise BackendUnavailable(f"cannot begin transaction: {exc}", operation="begin_transaction") from exc

        self._conn = conn
        self._tx = tx
        self._owner = threading.get_ident()

    def commit(self) -> None:
        if self._tx is None:
            return
        try:
            self._tx.commit()
        except SQLAlchemyError as exc:
            self.rollback()
            raise StorageFault(f"commit failed: {exc}", transient=_is_lock_error(exc), operation="commit") from exc
        self._release()

    def rollback(self) -> None:
        if self._tx is None:
            return
        try:
            self._tx.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback failed; discarding connection")
        finally:
            # DDL may have been undone; forget what we learned about columns
            self._columns_cache.clear()
            self._release()

    def _release(self) -> None:
        conn = self._conn
        self._conn = None
        self._tx = None
        self._owner = None
        if conn is not None:
            conn.close()

    @contextmanager
    def _reader(self):
        if self._engine is None:
            raise StorageFault("relational store is not open", operation="read")
        if self.in_transaction():
            yield self._conn
            return
        with self._engine.connect() as conn:
            yield conn

    @contextmanager
    def _writer(self):
        if self._engine is None:
            raise StorageFault("relational store is not open", operation="write")
        if self.in_transaction():
            yield self._conn
            return
        with self._engine.connect() as conn:
            conn.info[_WRITE_FLAG] = True
            try:
                tx = conn.begin()
            finally:
                conn.info.pop(_WRITE_FLAG, None)
            with tx:
                yield conn

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _table(self, name: str) -> sa.Table:
        try:
            return self._metadata.tables[name]
        except KeyError:
            raise StorageFault(f"unknown table {name!r}") from None

    def _existing_columns(self, conn: sa.Connection, name: str) -> list[str]:
        cached = self._columns_cache.get(name)
        if cached is None:
            cached = [c["name"] for c in sa.inspect(conn).get_columns(name)]
            self._columns_cache[name] = cached
        return cached

    def _stored_shape(self, conn: sa.Connection, table: sa.Table) -> sa.Table:
        """
        The table as it is actually stored. Legacy files read or written
        mid-migration lack later columns, so statements must not name them
        (not even through a column default).
        """
        present = self._existing_columns(conn, table.name)
        if set(present).issuperset(table.columns.keys()):
            return table
        return sa.Table(
            table.name,
            sa.MetaData(),
            *[_column_shape(c) for c in table.columns if c.name in present],
        )

    def run_query(self, statement: Select, params: dict | None = None) -> list[dict]:
        params = params or {}
        table = self._table(statement.table)
        try:
            with self._reader() as conn:
                shape = self._stored_shape(conn, table)
                stmt = sa.select(shape)
                for col in statement.where:
                    stmt = stmt.where(shape.c[col] == params[col])
                for rng in statement.ranges:
                    stmt = stmt.where(RANGE_OPERATORS[rng.op](shape.c[rng.column], params[rng.param]))
                for col, descending in statement.order_by:
                    stmt = stmt.order_by(shape.c[col].desc() if descending else shape.c[col].asc())
                if statement.limit is not None:
                    stmt = stmt.limit(statement.limit)
                return [dict(row._mapping) for row in conn.execute(stmt)]
        except SQLAlchemyError as exc:
            raise StorageFault(
                f"query on {statement.table} failed: {exc}",
                transient=_is_lock_error(exc),
                operation="run_query",
            ) from exc

    @staticmethod
    def _build_mutation(shape: sa.Table, statement: Insert | Update | Delete, params: dict):
        if isinstance(statement, Insert):
            return sa.insert(shape).values(**params)
        if isinstance(statement, Update):
            criteria, values = statement.split(params)
            if not values:
                return None
            stmt = sa.update(shape).values(**values)
            for col, value in criteria.items():
                stmt = stmt.where(shape.c[col] == value)
            return stmt
        if isinstance(statement, Delete):
            stmt = sa.delete(shape)
            for col in statement.where:
                stmt = stmt.where(shape.c[col] == params[col])
            return stmt
        raise TypeError(f"not a mutation: {statement!r}")

    def run_mutation(self, statement: Insert | Update | Delete, params: dict | None = None) -> int:
        params = dict(params or {})
        table = self._table(statement.table)

        try:
            with self._writer() as conn:
                stmt = self._build_mutation(self._stored_shape(conn, table), statement, params)
                if stmt is None:
                    return 0
                return conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise StorageFault(
                f"{type(statement).__name__.lower()} on {statement.table} failed: {exc}",
                transient=_is_lock_error(exc),
                operation="run_mutation",
                entity_id=params.get("id"),
            ) from exc

    # ------------------------------------------------------------------
    # Schema evolution
    # ------------------------------------------------------------------

    def _ddl(self, conn: sa.Connection) -> Operations:
        return Operations(MigrationContext.configure(connection=conn))

    def has_table(self, name: str) -> bool:
        with self._reader() as conn:
            return sa.inspect(conn).has_table(name)

    def create_table(self, table: sa.Table) -> None:
        try:
            with self._writer() as conn:
                table.create(conn, checkfirst=True)
        except SQLAlchemyError as exc:
            raise StorageFault(f"create table {table.name} failed: {exc}", operation="create_table") from exc
        finally:
            self._columns_cache.pop(table.name, None)

    def has_column(self, table_name: str, column_name: str) -> bool:
        with self._reader() as conn:
            return column_name in {c["name"] for c in sa.inspect(conn).get_columns(table_name)}

    def add_column(self, table_name: str, column: sa.Column) -> None:
        try:
            with self._writer() as conn:
                self._ddl(conn).add_column(table_name, column)
        except SQLAlchemyError as exc:
            raise StorageFault(
                f"add column {table_name}.{column.name} failed: {exc}", operation="add_column"
            ) from exc
        finally:
            self._columns_cache.pop(table_name, None)

    def has_index(self, table_name: str, index_name: str) -> bool:
        with self._reader() as conn:
            return index_name in {ix["name"] for ix in sa.inspect(conn).get_indexes(table_name)}

    def create_index(self, table_name: str, index_name: str, columns: list[str]) -> None:
        try:
            with self._writer() as conn:
                self._ddl(conn).create_index(index_name, table_name, columns)
        except SQLAlchemyError as exc:
            raise StorageFault(f"create index {index_name} failed: {exc}", operation="create_index") from exc
