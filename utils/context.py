from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from utils.backup import EXPORT_VERSION, BackupGateway
from utils.errors import QueryFailed
from utils.fee_config import FeeConfigStore
from utils.kvstore import FlatDocumentStore
from utils.ledger import PaymentLedger
from utils.roster import StorageRoster
from utils.schema import ensure_core_tables, run_legacy_import
from utils.storage import FlatDocumentAdapter, StorageAdapter, build_adapter

logger = logging.getLogger(__name__)


def _truthy(val: Any) -> bool:
    if isinstance(val, bool):
        return val
    if not val:
        return False
    return str(val).strip().lower() in {"1", "true", "yes", "on", "y"}


class FeeContext:
    """Everything one process needs, built once and passed around explicitly."""

    def __init__(self, adapter: StorageAdapter, export_version: str = EXPORT_VERSION):
        self.adapter = adapter
        self.fees = FeeConfigStore(adapter)
        self.ledger = PaymentLedger(adapter, self.fees)
        self.roster = StorageRoster(adapter)
        self.backup = BackupGateway(adapter, version=export_version)

    def __repr__(self) -> str:
        return f"<FeeContext {self.adapter!r}>"

    def close(self) -> None:
        self.adapter.close()


def _open_adapter(config: Mapping[str, Any]) -> StorageAdapter:
    backend = str(config.get("FEE_STORAGE_BACKEND") or "sqlite").strip().lower()
    if backend != "auto":
        adapter = build_adapter(config)
        adapter.initialize()
        return adapter
    adapter = build_adapter({**config, "FEE_STORAGE_BACKEND": "sqlite"})
    try:
        adapter.initialize()
        return adapter
    except QueryFailed as exc:
        logger.warning("Relational storage unavailable (%s); falling back to flat documents", exc)
    adapter = FlatDocumentAdapter(FlatDocumentStore(config.get("DATA_DIRECTORY") or "instance/data"))
    adapter.initialize()
    return adapter


def open_context(config: Mapping[str, Any], adapter: Optional[StorageAdapter] = None) -> FeeContext:
    """Initialize storage, create the schema, run the legacy import and seed defaults."""
    if adapter is None:
        adapter = _open_adapter(config)
    elif not adapter.is_ready:
        adapter.initialize()
    ensure_core_tables(adapter)
    if _truthy(config.get("RUN_LEGACY_IMPORT", True)):
        legacy_dir = config.get("LEGACY_DATA_DIRECTORY") or config.get("DATA_DIRECTORY") or "instance/data"
        run_legacy_import(adapter, FlatDocumentStore(legacy_dir))
    context = FeeContext(adapter, export_version=config.get("EXPORT_VERSION") or EXPORT_VERSION)
    if _truthy(config.get("SEED_DEFAULT_SERVICES", False)):
        context.fees.seed_default_services()
    return context
