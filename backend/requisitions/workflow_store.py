from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List

from requisitions.exceptions import ConflictError
from requisitions.services.records import Requisition, requisition_from_dict

STORE_LOCK = threading.Lock()


def _store_enabled() -> bool:
    return os.getenv("OVERSIGHT_WORKFLOW_DEV_STORE", "0") == "1"


def _store_path() -> Path:
    override = os.getenv("OVERSIGHT_WORKFLOW_STORE_PATH", "").strip()
    if override:
        return Path(override)
    base_dir = Path(__file__).resolve().parent.parent
    return base_dir / ".local" / "requisitions_store.json"


def _ensure_store_dir() -> None:
    _store_path().parent.mkdir(parents=True, exist_ok=True)


def _load_store() -> Dict[str, object]:
    if not _store_path().exists():
        return {"requisitions": {}}
    with _store_path().open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _save_store(store: Dict[str, object]) -> None:
    _ensure_store_dir()
    tmp_path = _store_path().with_suffix(".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(store, handle, indent=2, sort_keys=True)
    os.replace(tmp_path, _store_path())


def store_enabled_or_raise() -> None:
    if not _store_enabled():
        raise RuntimeError("workflow_dev_store_disabled")


def _rows(store: Dict[str, object]) -> Dict[str, Dict[str, object]]:
    return store.setdefault("requisitions", {})  # type: ignore[return-value]


def _check_stored_version(
    rows: Dict[str, Dict[str, object]], record: Requisition, expected_version: int
) -> None:
    stored = rows.get(record.id)
    if stored is None:
        raise RuntimeError(f"requisition {record.id} is not in the store")
    actual = int(stored.get("version") or 1)
    if actual != expected_version:
        raise ConflictError(record.transaction_id, expected_version, actual)


def get_record(record_id: str) -> Requisition | None:
    store_enabled_or_raise()
    with STORE_LOCK:
        row = _rows(_load_store()).get(record_id)
    return requisition_from_dict(row) if row is not None else None


def get_record_by_transaction_id(transaction_id: str) -> Requisition | None:
    store_enabled_or_raise()
    with STORE_LOCK:
        rows = list(_rows(_load_store()).values())
    for row in rows:
        if row.get("transaction_id") == transaction_id:
            return requisition_from_dict(row)
    return None


def list_records(predicate: Callable[[Requisition], bool] | None = None) -> List[Requisition]:
    store_enabled_or_raise()
    with STORE_LOCK:
        rows = list(_rows(_load_store()).values())
    records = [requisition_from_dict(row) for row in rows]
    if predicate is None:
        return records
    return [record for record in records if predicate(record)]


def create_record(record: Requisition) -> Requisition:
    store_enabled_or_raise()
    with STORE_LOCK:
        store = _load_store()
        rows = _rows(store)
        if record.id in rows:
            raise RuntimeError(f"requisition {record.id} already exists")
        rows[record.id] = record.to_dict()
        _save_store(store)
    return record


def save(record: Requisition, expected_version: int) -> Requisition:
    """Replace the stored row if it still carries ``expected_version``."""
    store_enabled_or_raise()
    with STORE_LOCK:
        store = _load_store()
        rows = _rows(store)
        _check_stored_version(rows, record, expected_version)
        rows[record.id] = record.to_dict()
        _save_store(store)
    return record


def save_split(
    parent: Requisition,
    children: Iterable[Requisition],
    expected_version: int,
) -> Requisition:
    store_enabled_or_raise()
    with STORE_LOCK:
        store = _load_store()
        rows = _rows(store)
        _check_stored_version(rows, parent, expected_version)
        rows[parent.id] = parent.to_dict()
        for child in children:
            rows[child.id] = child.to_dict()
        _save_store(store)
    return parent
