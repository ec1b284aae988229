from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

from utils.errors import FeeStoreError, QueryFailed, UnsupportedFormat
from utils.records import clean_payment_items
from utils.schema import TABLES, TABLES_BY_NAME, Table
from utils.timezone_helpers import west_africa_now

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
EXPORT_TITLE = "Ecole fees - data export"
FILE_PREFIX = "ecole-fees"
HISTORY_FILE = "history.jsonl"

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?")
_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
_SQL_KEYWORDS = {"NULL": None, "TRUE": True, "FALSE": False}


def _major(version: Any) -> int:
    match = _VERSION_RE.match(version) if isinstance(version, str) else None
    if not match:
        raise UnsupportedFormat(f"missing or malformed export version: {version!r}")
    return int(match.group(1))


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (list, dict)):
        value = json.dumps(value, ensure_ascii=False)
    return "'" + str(value).replace("'", "''") + "'"


def _tokenize(text: str) -> Iterator[tuple[str, Any]]:
    """Yield ``(kind, value)`` tokens of an INSERT-only SQL dump."""
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if text.startswith("--", i):
            end = text.find("\n", i)
            end = n if end == -1 else end
            yield "comment", text[i + 2 : end].strip()
            i = end
            continue
        if ch == "'":
            parts = []
            j = i + 1
            while True:
                k = text.find("'", j)
                if k == -1:
                    raise UnsupportedFormat(f"unterminated string literal at offset {i}")
                parts.append(text[j:k])
                if text.startswith("''", k):
                    parts.append("'")
                    j = k + 2
                    continue
                i = k + 1
                break
            yield "value", "".join(parts)
            continue
        if ch in "(),;":
            yield "punct", ch
            i += 1
            continue
        number = _NUMBER_RE.match(text, i)
        if number:
            raw = number.group(0)
            yield "value", float(raw) if any(c in raw for c in ".eE") else int(raw)
            i = number.end()
            continue
        ident = _IDENT_RE.match(text, i)
        if ident:
            word = ident.group(0)
            if word.upper() in _SQL_KEYWORDS:
                yield "value", _SQL_KEYWORDS[word.upper()]
            else:
                yield "ident", word
            i = ident.end()
            continue
        raise UnsupportedFormat(f"unexpected character {ch!r} at offset {i}")


def parse_sql_dump(text: str) -> tuple[dict[str, str], dict[str, list[dict[str, Any]]]]:
    """Parse a dump made of ``INSERT INTO t (cols) VALUES (...), ...;`` statements.

    Returns the header metadata (``date``/``version`` comments) and the rows
    per table name. Any other statement is rejected.
    """
    meta: dict[str, str] = {}
    tokens: list[tuple[str, Any]] = []
    for kind, value in _tokenize(text):
        if kind == "comment":
            label, sep, rest = value.partition(":")
            if sep and label.strip().lower() in ("date", "version") and label.strip().lower() not in meta:
                meta[label.strip().lower()] = rest.strip()
            continue
        tokens.append((kind, value))

    pos = 0

    def take(kind: str, value: Any = None) -> Any:
        nonlocal pos
        if pos >= len(tokens):
            raise UnsupportedFormat(f"unexpected end of dump, expected {value or kind}")
        tok_kind, tok_value = tokens[pos]
        if tok_kind != kind or (value is not None and str(tok_value).upper() != value):
            raise UnsupportedFormat(f"expected {value or kind}, got {tok_value!r}")
        pos += 1
        return tok_value

    def peek(value: str) -> bool:
        return pos < len(tokens) and tokens[pos] == ("punct", value)

    rows: dict[str, list[dict[str, Any]]] = {}
    while pos < len(tokens):
        take("ident", "INSERT")
        take("ident", "INTO")
        table_name = take("ident")
        if table_name not in TABLES_BY_NAME:
            raise UnsupportedFormat(f"unknown table in dump: {table_name}")
        take("punct", "(")
        columns = [take("ident")]
        while peek(","):
            take("punct", ",")
            columns.append(take("ident"))
        take("punct", ")")
        take("ident", "VALUES")
        while True:
            take("punct", "(")
            values = [take("value")]
            while peek(","):
                take("punct", ",")
                values.append(take("value"))
            take("punct", ")")
            if len(values) != len(columns):
                raise UnsupportedFormat(f"{table_name}: {len(values)} values for {len(columns)} columns")
            rows.setdefault(table_name, []).append(dict(zip(columns, values)))
            if peek(","):
                take("punct", ",")
                continue
            break
        take("punct", ";")
    return meta, rows


def _prepare(collections: Mapping[str, Any]) -> dict[str, list[dict[str, Any]]]:
    """Validate a whole snapshot before anything is written."""
    unknown = sorted(set(collections) - set(TABLES))
    if unknown:
        raise UnsupportedFormat(f"unknown collections in snapshot: {', '.join(unknown)}")
    prepared: dict[str, list[dict[str, Any]]] = {}
    for key, table in TABLES.items():
        rows = collections.get(key) or []
        if not isinstance(rows, list):
            raise UnsupportedFormat(f"{key} must be a list")
        try:
            clean = [table.normalize(row) for row in rows]
            if key == "payments":
                clean = [clean_payment_items(row) for row in clean]
        except (AttributeError, TypeError, ValueError) as exc:
            raise UnsupportedFormat(f"invalid {key} record: {exc}") from exc
        for column in ("id",) + table.unique:
            values = [r[column] for r in clean if r[column] is not None]
            if len(values) != len(set(values)):
                raise UnsupportedFormat(f"duplicate {column} in {key}")
        prepared[key] = clean
    return prepared


class BackupGateway:
    """Export the whole store as a JSON dump or SQL inserts, and restore it.

    Import replaces every collection wholesale; collections absent from the
    snapshot end up empty.
    """

    def __init__(self, adapter, version: str = EXPORT_VERSION, clock: Callable[[], Any] = west_africa_now):
        _major(version)
        self.adapter = adapter
        self.version = version
        self.clock = clock

    def _check_version(self, version: Any) -> None:
        if _major(version) != _major(self.version):
            raise UnsupportedFormat(f"export version {version} is not compatible with {self.version}")

    def export_json(self) -> dict[str, Any]:
        data: dict[str, Any] = self.adapter.dump()
        data["metadata"] = {"exportDate": self.clock().isoformat(), "version": self.version}
        return data

    def export_sql(self) -> str:
        data = self.adapter.dump()
        parts = [
            f"-- {EXPORT_TITLE}\n-- Date: {self.clock().isoformat()}\n-- Version: {self.version}\n\n"
        ]
        for table in TABLES.values():
            parts.append(self._sql_inserts(table, data[table.key]))
        return "".join(parts)

    def _sql_inserts(self, table: Table, rows: list[dict[str, Any]]) -> str:
        if not rows:
            return f"-- Table {table.name}: no data\n\n"
        columns = table.column_names
        values = ",\n".join(
            "  (" + ", ".join(_sql_literal(row.get(col)) for col in columns) + ")" for row in rows
        )
        return f"-- Table: {table.name}\nINSERT INTO {table.name} ({', '.join(columns)}) VALUES\n{values};\n\n"

    def export_database(self, fmt: str = "json") -> dict[str, Any] | str:
        try:
            if fmt == "json":
                snapshot: dict[str, Any] | str = self.export_json()
            elif fmt == "sql":
                snapshot = self.export_sql()
            else:
                raise UnsupportedFormat(f"unknown export format {fmt!r}")
        except FeeStoreError:
            logger.exception("Export (%s) failed", fmt)
            raise
        logger.info("Exported database as %s", fmt)
        return snapshot

    def _apply(self, collections: Mapping[str, Any]) -> dict[str, int]:
        prepared = _prepare(collections)
        self.adapter.replace(prepared)
        counts = {key: len(rows) for key, rows in prepared.items()}
        logger.info("Imported snapshot: %s", counts)
        return counts

    def import_json(self, data: Any) -> dict[str, int]:
        if not isinstance(data, Mapping):
            raise UnsupportedFormat("JSON snapshot must be an object")
        metadata = data.get("metadata")
        if not isinstance(metadata, Mapping):
            raise UnsupportedFormat("JSON snapshot has no metadata")
        self._check_version(metadata.get("version"))
        return self._apply({k: v for k, v in data.items() if k != "metadata"})

    def import_sql(self, text: str) -> dict[str, int]:
        meta, rows = parse_sql_dump(text)
        self._check_version(meta.get("version"))
        return self._apply({TABLES_BY_NAME[name].key: table_rows for name, table_rows in rows.items()})

    def import_database(self, snapshot: Any) -> dict[str, int]:
        """Restore from a JSON mapping, JSON text or SQL dump text (format sniffed)."""
        try:
            if isinstance(snapshot, Mapping):
                return self.import_json(snapshot)
            if isinstance(snapshot, bytes):
                try:
                    snapshot = snapshot.decode("utf-8-sig")
                except UnicodeDecodeError as exc:
                    raise UnsupportedFormat("snapshot is not UTF-8 text") from exc
            if not isinstance(snapshot, str):
                raise UnsupportedFormat(f"cannot import a {type(snapshot).__name__}")
            head = snapshot.lstrip()
            if head.startswith("{"):
                try:
                    return self.import_json(json.loads(head))
                except json.JSONDecodeError as exc:
                    raise UnsupportedFormat(f"invalid JSON snapshot: {exc}") from exc
            if head.startswith("--") or head[:6].upper() == "INSERT":
                return self.import_sql(head)
            raise UnsupportedFormat("snapshot is neither a JSON dump nor a SQL dump")
        except FeeStoreError:
            logger.exception("Import failed")
            raise

    def import_file(self, path: str | Path) -> dict[str, int]:
        source = Path(path)
        if source.suffix.lower() not in (".json", ".sql"):
            logger.error("Import rejected: %s is not a .json or .sql file", source.name)
            raise UnsupportedFormat(f"unsupported file type: {source.name} (use .json or .sql)")
        try:
            text = source.read_text(encoding="utf-8-sig")
        except OSError as exc:
            logger.error("Unable to read %s: %s", source, exc)
            raise QueryFailed(f"Unable to read {source}: {exc}") from exc
        return self.import_database(text)

    def write_export(self, directory: str | Path, fmt: str = "json", keep_days: int = 60) -> dict[str, Any]:
        """Write an export file under ``directory`` and record it in the history."""
        root = Path(directory)
        root.mkdir(parents=True, exist_ok=True)
        timestamp = self.clock()
        snapshot = self.export_database(fmt)
        dest = root / f"{FILE_PREFIX}-{timestamp.strftime('%Y-%m-%dT%H%M%S')}.{fmt}"
        if fmt == "json":
            payload = json.dumps(snapshot, ensure_ascii=False, indent=2)
        else:
            payload = snapshot
        try:
            dest.write_text(payload, encoding="utf-8")
        except OSError as exc:
            logger.error("Unable to write export %s: %s", dest, exc)
            raise QueryFailed(f"Unable to write export {dest}: {exc}") from exc
        removed = cleanup_old_exports(root, keep_days, keep=dest.name)
        entry = {
            "timestamp": timestamp.isoformat(),
            "format": fmt,
            "path": str(dest),
            "size": dest.stat().st_size,
            "removed": removed,
        }
        try:
            with (root / HISTORY_FILE).open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry) + "\n")
        except OSError as exc:
            logger.error("Unable to record export history: %s", exc)
            raise QueryFailed(f"Unable to record export history: {exc}") from exc
        return entry


def cleanup_old_exports(root: Path, keep_days: int, keep: str | None = None) -> list[str]:
    if keep_days <= 0 or not root.exists():
        return []
    removed = []
    cutoff = west_africa_now().timestamp() - (keep_days * 86400)
    for child in root.glob(f"{FILE_PREFIX}-*"):
        if not child.is_file() or child.name == keep:
            continue
        if child.stat().st_mtime < cutoff:
            try:
                child.unlink()
            except OSError as exc:
                logger.warning("Could not remove old export %s: %s", child.name, exc)
                continue
            removed.append(child.name)
    return removed


def get_export_history(directory: str | Path, limit: int = 6) -> list[dict[str, Any]]:
    history_file = Path(directory) / HISTORY_FILE
    if not history_file.exists():
        return []
    entries: list[dict[str, Any]] = []
    with history_file.open("r", encoding="utf-8") as fh:
        for line in fh:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return list(reversed(entries[-limit:]))


def format_bytes(value: Any) -> str:
    try:
        size = float(value or 0)
    except (TypeError, ValueError):
        return "0 B"
    suffixes = ["B", "KB", "MB", "GB", "TB"]
    idx = 0
    while size >= 1024 and idx < len(suffixes) - 1:
        size /= 1024
        idx += 1
    return f"{size:.1f} {suffixes[idx]}"
