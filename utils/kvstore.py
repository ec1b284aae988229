from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from utils.errors import QueryFailed

logger = logging.getLogger(__name__)


class FlatDocumentStore:
    """Directory of named documents, one file per key.

    JSON documents live in ``<key>.json`` and raw blobs in ``<key>.bin``.
    Every write goes to a temporary file in the same directory and is then
    moved over the target, so readers never see a half-written document.
    """

    def __init__(self, directory: str | os.PathLike[str]):
        self.directory = Path(directory)

    def ensure_directory(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def _path(self, key: str, suffix: str) -> Path:
        clean = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "-" for ch in key)
        if not clean or clean.startswith("."):
            raise ValueError(f"invalid document key: {key!r}")
        return self.directory / f"{clean}{suffix}"

    def _write_atomic(self, target: Path, payload: bytes) -> None:
        self.ensure_directory()
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(self.directory))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            logger.error("Unable to write document %s: %s", target.name, exc)
            raise QueryFailed(f"Unable to write document {target.name}: {exc}") from exc

    def has(self, key: str) -> bool:
        return self._path(key, ".json").exists()

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key, ".json")
        if not path.exists():
            return default
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except json.JSONDecodeError as exc:
            logger.error("Document %s is corrupted: %s", key, exc)
            raise QueryFailed(f"Document {key} is corrupted: {exc}") from exc
        except OSError as exc:
            logger.error("Unable to read document %s: %s", key, exc)
            raise QueryFailed(f"Unable to read document {key}: {exc}") from exc

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False, indent=2).encode("utf-8")
        self._write_atomic(self._path(key, ".json"), payload)

    def get_blob(self, key: str) -> bytes | None:
        path = self._path(key, ".bin")
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            logger.error("Unable to read blob %s: %s", key, exc)
            raise QueryFailed(f"Unable to read blob {key}: {exc}") from exc

    def set_blob(self, key: str, data: bytes) -> None:
        self._write_atomic(self._path(key, ".bin"), bytes(data))
