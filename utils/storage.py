from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from utils.errors import NotInitialized, QueryFailed
from utils.kvstore import FlatDocumentStore
from utils.schema import TABLES, Table, get_table

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URI = "sqlite:///instance/school_fees.db"
DEFAULT_SNAPSHOT_KEY = "sqlite-db"

Params = Optional[Mapping[str, Any] | Sequence[Any]]


class StorageAdapter:
    """Uniform statement and collection access over one storage backend.

    Statement API: ``execute``/``query``/``query_one``. Collection API:
    ``load``/``get``/``find``/``save``/``delete``/``replace``/``dump`` on the
    collections declared in :data:`utils.schema.TABLES`. Every call made
    before :meth:`initialize` raises :class:`NotInitialized`.
    """

    backend = "abstract"

    def __init__(self) -> None:
        self._ready = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} backend={self.backend} ready={self._ready}>"

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotInitialized(f"{self.backend} storage used before initialize()")

    def _table(self, collection: str) -> Table:
        try:
            return get_table(collection)
        except KeyError as exc:
            raise QueryFailed(str(exc)) from None

    def _normalize(self, table: Table, record: Mapping[str, Any]) -> dict[str, Any]:
        try:
            return table.normalize(record)
        except (TypeError, ValueError) as exc:
            raise QueryFailed(f"invalid {table.key} record: {exc}") from exc

    def _check_columns(self, table: Table, criteria: Mapping[str, Any]) -> None:
        for column in criteria:
            if not table.has_column(column):
                raise QueryFailed(f"no such column: {table.name}.{column}")

    # statement API
    def initialize(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def execute(self, statement: str, params: Params = None) -> dict[str, Any]:
        raise NotImplementedError

    def query(self, statement: str, params: Params = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def query_one(self, statement: str, params: Params = None) -> Optional[dict[str, Any]]:
        rows = self.query(statement, params)
        return rows[0] if rows else None

    # collection API
    def ensure_tables(self, tables: Sequence[Table]) -> None:
        raise NotImplementedError

    def load(self, collection: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get(self, collection: str, record_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    def find(self, collection: str, criteria: Mapping[str, Any]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def save(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def delete(self, collection: str, record_id: str) -> bool:
        raise NotImplementedError

    def replace(self, collections: Mapping[str, Sequence[Mapping[str, Any]]]) -> None:
        raise NotImplementedError

    def dump(self) -> dict[str, list[dict[str, Any]]]:
        return {key: self.load(key) for key in TABLES}


def _check_unique(table: Table, records: Sequence[Mapping[str, Any]]) -> None:
    for column in ("id",) + table.unique:
        seen: set[Any] = set()
        for record in records:
            value = record.get(column)
            if value is None:
                continue
            if value in seen:
                raise QueryFailed(f"UNIQUE constraint failed: {table.name}.{column} ({value!r})")
            seen.add(value)


def _ensure_sqlite_parent(uri: str) -> None:
    try:
        url = make_url(uri)
    except ArgumentError:
        return
    if url.get_backend_name() != "sqlite":
        return
    database = url.database or ""
    if database and database != ":memory:" and not database.startswith("file:"):
        Path(database).parent.mkdir(parents=True, exist_ok=True)


class SqlEngineAdapter(StorageAdapter):
    """Relational backend on a SQLAlchemy engine (file-resident SQLite by default).

    Each write runs in its own transaction and is committed before the call
    returns. Named parameters use ``:name`` with a mapping, positional ones
    the driver's ``?`` placeholder with a sequence.
    """

    backend = "sqlite"

    def __init__(self, uri: str = DEFAULT_DATABASE_URI, **engine_kwargs: Any):
        super().__init__()
        self.uri = uri
        self._engine_kwargs = engine_kwargs
        self._engine: Optional[Engine] = None

    def _create_engine(self) -> Engine:
        return create_engine(self.uri, **self._engine_kwargs)

    def _restore(self) -> None:
        """Hook for backends that rebuild their state on start-up."""

    def _after_write(self) -> None:
        """Hook run after every committed write."""

    def initialize(self) -> None:
        if self._ready:
            return
        try:
            _ensure_sqlite_parent(self.uri)
            self._engine = self._create_engine()
            with self._engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            self._restore()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Unable to open %s storage: %s", self.backend, exc)
            raise QueryFailed(f"Unable to open {self.backend} storage: {exc}") from exc
        self._ready = True
        logger.info("Storage ready (%s)", self.backend)

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        self._ready = False

    def _run(self, conn: Connection, statement: str, params: Params):
        if isinstance(params, Mapping):
            return conn.execute(text(statement), dict(params))
        if params:
            return conn.exec_driver_sql(statement, tuple(params))
        return conn.exec_driver_sql(statement)

    def _write(self, work: Callable[[Connection], Any]) -> Any:
        self._require_ready()
        try:
            with self._engine.begin() as conn:
                outcome = work(conn)
        except SQLAlchemyError as exc:
            logger.error("Write failed on %s storage: %s", self.backend, exc)
            raise QueryFailed(str(getattr(exc, "orig", None) or exc)) from exc
        self._after_write()
        return outcome

    def _read(self, work: Callable[[Connection], Any]) -> Any:
        self._require_ready()
        try:
            with self._engine.connect() as conn:
                return work(conn)
        except SQLAlchemyError as exc:
            logger.error("Query failed on %s storage: %s", self.backend, exc)
            raise QueryFailed(str(getattr(exc, "orig", None) or exc)) from exc

    def execute(self, statement: str, params: Params = None) -> dict[str, Any]:
        def work(conn: Connection) -> dict[str, Any]:
            result = self._run(conn, statement, params)
            return {"changes": result.rowcount, "lastInsertRowid": getattr(result, "lastrowid", None)}

        return self._write(work)

    def query(self, statement: str, params: Params = None) -> list[dict[str, Any]]:
        def work(conn: Connection) -> list[dict[str, Any]]:
            result = self._run(conn, statement, params)
            return [dict(row) for row in result.mappings()]

        return self._read(work)

    def ensure_tables(self, tables: Sequence[Table]) -> None:
        def work(conn: Connection) -> None:
            for table in tables:
                conn.exec_driver_sql(table.create_sql())
                for statement in table.index_sql():
                    conn.exec_driver_sql(statement)

        self._write(work)

    def _select(self, table: Table, where: str = "") -> str:
        return f"SELECT {', '.join(table.column_names)} FROM {table.name}{where} ORDER BY seq"

    def _upsert_sql(self, table: Table) -> str:
        cols = table.column_names
        placeholders = ", ".join(f":{c}" for c in cols)
        updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c != "id")
        return (
            f"INSERT INTO {table.name} ({', '.join(cols)}) VALUES ({placeholders}) "
            f"ON CONFLICT (id) DO UPDATE SET {updates}"
        )

    def _insert_sql(self, table: Table) -> str:
        cols = table.column_names
        return f"INSERT INTO {table.name} ({', '.join(cols)}) VALUES ({', '.join(f':{c}' for c in cols)})"

    def load(self, collection: str) -> list[dict[str, Any]]:
        table = self._table(collection)
        rows = self._read(lambda conn: conn.execute(text(self._select(table))).mappings().all())
        return [table.from_row(row) for row in rows]

    def get(self, collection: str, record_id: str) -> Optional[dict[str, Any]]:
        table = self._table(collection)
        statement = text(self._select(table, " WHERE id = :id"))
        row = self._read(lambda conn: conn.execute(statement, {"id": record_id}).mappings().first())
        return table.from_row(row) if row is not None else None

    def find(self, collection: str, criteria: Mapping[str, Any]) -> list[dict[str, Any]]:
        table = self._table(collection)
        self._check_columns(table, criteria)
        params = {f"p{i}": value for i, value in enumerate(criteria.values())}
        clauses = " AND ".join(f"{col} = :p{i}" for i, col in enumerate(criteria))
        statement = text(self._select(table, f" WHERE {clauses}" if clauses else ""))
        rows = self._read(lambda conn: conn.execute(statement, params).mappings().all())
        return [table.from_row(row) for row in rows]

    def save(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]:
        table = self._table(collection)
        clean = self._normalize(table, record)
        statement = text(self._upsert_sql(table))
        self._write(lambda conn: conn.execute(statement, table.to_params(clean)))
        return clean

    def delete(self, collection: str, record_id: str) -> bool:
        table = self._table(collection)
        statement = text(f"DELETE FROM {table.name} WHERE id = :id")
        changes = self._write(lambda conn: conn.execute(statement, {"id": record_id}).rowcount)
        return bool(changes)

    def replace(self, collections: Mapping[str, Sequence[Mapping[str, Any]]]) -> None:
        prepared = []
        for key, records in collections.items():
            table = self._table(key)
            clean = [self._normalize(table, record) for record in records]
            _check_unique(table, clean)
            prepared.append((table, clean))

        def work(conn: Connection) -> None:
            for table, clean in prepared:
                conn.exec_driver_sql(f"DELETE FROM {table.name}")
                if clean:
                    conn.execute(text(self._insert_sql(table)), [table.to_params(r) for r in clean])

        self._write(work)


class SnapshotSqlAdapter(SqlEngineAdapter):
    """Memory-resident SQLite whose whole image is persisted after every write.

    The image lives in a :class:`FlatDocumentStore` blob and is loaded back
    at :meth:`initialize`. Each write therefore costs a full serialization.
    """

    backend = "snapshot"

    def __init__(self, store: FlatDocumentStore, key: str = DEFAULT_SNAPSHOT_KEY):
        super().__init__(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        self.store = store
        self.key = key
        self._image: Optional[bytes] = None
        # Every request shares the one StaticPool connection.
        self._lock = threading.RLock()

    def _write(self, work: Callable[[Connection], Any]) -> Any:
        with self._lock:
            return super()._write(work)

    def _read(self, work: Callable[[Connection], Any]) -> Any:
        with self._lock:
            return super()._read(work)

    def _serialize(self) -> bytes:
        fairy = self._engine.raw_connection()
        try:
            return fairy.driver_connection.serialize()
        finally:
            fairy.close()

    def _deserialize(self, image: bytes) -> None:
        fairy = self._engine.raw_connection()
        try:
            fairy.driver_connection.deserialize(image)
        finally:
            fairy.close()

    def _restore(self) -> None:
        image = self.store.get_blob(self.key)
        if image:
            self._deserialize(image)
            logger.info("Restored %s snapshot (%d bytes)", self.key, len(image))
        self._image = image or None

    def _rollback_to_last_image(self) -> None:
        if self._image:
            self._deserialize(self._image)
            return
        self._engine.dispose()
        self._engine = self._create_engine()

    def _after_write(self) -> None:
        image = self._serialize()
        try:
            self.store.set_blob(self.key, image)
        except QueryFailed:
            logger.error("Snapshot %s not persisted; reverting to the last saved image", self.key)
            self._rollback_to_last_image()
            raise
        self._image = image


class FlatDocumentAdapter(StorageAdapter):
    """Fallback backend: one JSON document per collection, no SQL.

    ``execute``/``query`` are not supported; callers go through the
    collection API, which rewrites the whole document on every change.
    """

    backend = "flat"

    def __init__(self, store: FlatDocumentStore):
        super().__init__()
        self.store = store

    def initialize(self) -> None:
        if self._ready:
            return
        try:
            self.store.ensure_directory()
        except OSError as exc:
            logger.error("Unable to open flat storage at %s: %s", self.store.directory, exc)
            raise QueryFailed(f"Unable to open flat storage: {exc}") from exc
        self._ready = True
        logger.info("Storage ready (%s, %s)", self.backend, self.store.directory)

    def close(self) -> None:
        self._ready = False

    def execute(self, statement: str, params: Params = None) -> dict[str, Any]:
        self._require_ready()
        raise QueryFailed("The flat document store does not run SQL statements")

    def query(self, statement: str, params: Params = None) -> list[dict[str, Any]]:
        self._require_ready()
        raise QueryFailed("The flat document store does not run SQL statements")

    def _doc_key(self, table: Table) -> str:
        return table.legacy_key or table.key

    def _read_doc(self, table: Table) -> list[dict[str, Any]]:
        self._require_ready()
        raw = self.store.get(self._doc_key(table), [])
        if not isinstance(raw, list):
            raise QueryFailed(f"Document {self._doc_key(table)} is not a list")
        return [self._normalize(table, item) for item in raw]

    def _write_doc(self, table: Table, records: list[dict[str, Any]]) -> None:
        _check_unique(table, records)
        self.store.set(self._doc_key(table), records)

    def ensure_tables(self, tables: Sequence[Table]) -> None:
        self._require_ready()
        for table in tables:
            if not self.store.has(self._doc_key(table)):
                self.store.set(self._doc_key(table), [])

    def load(self, collection: str) -> list[dict[str, Any]]:
        return self._read_doc(self._table(collection))

    def get(self, collection: str, record_id: str) -> Optional[dict[str, Any]]:
        for record in self.load(collection):
            if record["id"] == record_id:
                return record
        return None

    def find(self, collection: str, criteria: Mapping[str, Any]) -> list[dict[str, Any]]:
        table = self._table(collection)
        self._check_columns(table, criteria)
        return [
            record
            for record in self._read_doc(table)
            if all(record.get(col) == value for col, value in criteria.items())
        ]

    def save(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]:
        table = self._table(collection)
        clean = self._normalize(table, record)
        records = self._read_doc(table)
        for idx, existing in enumerate(records):
            if existing["id"] == clean["id"]:
                records[idx] = clean
                break
        else:
            records.append(clean)
        self._write_doc(table, records)
        return clean

    def delete(self, collection: str, record_id: str) -> bool:
        table = self._table(collection)
        records = self._read_doc(table)
        kept = [record for record in records if record["id"] != record_id]
        if len(kept) == len(records):
            return False
        self._write_doc(table, kept)
        return True

    def replace(self, collections: Mapping[str, Sequence[Mapping[str, Any]]]) -> None:
        self._require_ready()
        prepared = []
        for key, records in collections.items():
            table = self._table(key)
            clean = [self._normalize(table, record) for record in records]
            _check_unique(table, clean)
            prepared.append((table, clean))
        previous = {table.key: self.store.get(self._doc_key(table), []) for table, _ in prepared}
        written: list[Table] = []
        try:
            for table, clean in prepared:
                self.store.set(self._doc_key(table), clean)
                written.append(table)
        except QueryFailed:
            logger.error("Replace interrupted; restoring %d documents", len(written))
            for table in written:
                self.store.set(self._doc_key(table), previous[table.key])
            raise


def build_adapter(config: Mapping[str, Any]) -> StorageAdapter:
    """Create the adapter named by ``FEE_STORAGE_BACKEND`` (not yet initialized)."""
    backend = str(config.get("FEE_STORAGE_BACKEND") or "sqlite").strip().lower()
    if backend in ("sqlite", "file", "sql"):
        return SqlEngineAdapter(config.get("SQLALCHEMY_DATABASE_URI") or DEFAULT_DATABASE_URI)
    data_dir = config.get("DATA_DIRECTORY") or "instance/data"
    if backend == "snapshot":
        return SnapshotSqlAdapter(
            FlatDocumentStore(data_dir),
            key=config.get("SNAPSHOT_KEY") or DEFAULT_SNAPSHOT_KEY,
        )
    if backend == "flat":
        return FlatDocumentAdapter(FlatDocumentStore(data_dir))
    raise ValueError(f"Unknown FEE_STORAGE_BACKEND {backend!r}")
