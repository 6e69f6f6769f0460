"""
Database-backed workflow store for purchase requisitions.

Same interface as the JSON dev store in workflow_store.py, persisted in the
``purchase_requisitions`` table through the Django ORM. Updates are
compare-and-swap on ``version_nbr`` so two users acting on the same
requisition cannot silently overwrite each other.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List

from django.db import transaction

from .exceptions import ConflictError
from .models import PurchaseRequisition
from .services.records import Requisition, requisition_from_dict

logger = logging.getLogger("oversight.audit")

_ROW_FIELDS = (
    "transaction_id",
    "type",
    "request_date",
    "due_date",
    "payment_due_date",
    "items",
    "urgency_level",
    "department",
    "budget_code",
    "project_code",
    "supplier_preference",
    "delivery_location",
    "special_instructions",
    "status",
    "hod_status",
    "finance_status",
    "total_amount",
    "currency",
    "requested_by",
    "requested_by_name",
    "requested_by_role",
    "requested_by_department",
    "history",
    "is_split",
    "original_transaction_id",
    "split_reason",
    "budget_approval",
)


def _record_to_row(record: Requisition) -> Dict[str, object]:
    data = record.to_dict()
    row = {name: data[name] for name in _ROW_FIELDS}
    row["total_amount"] = record.total_amount
    row["created_at"] = record.created_at
    row["updated_at"] = record.updated_at
    row["version_nbr"] = record.version
    return row


def _row_to_record(row: PurchaseRequisition) -> Requisition:
    data = {name: getattr(row, name) for name in _ROW_FIELDS}
    data["id"] = row.id
    data["created_at"] = row.created_at
    data["updated_at"] = row.updated_at
    data["version_nbr"] = row.version_nbr
    return requisition_from_dict(data)


def _stored_version(record_id: str) -> int | None:
    return (
        PurchaseRequisition.objects.filter(id=record_id)
        .values_list("version_nbr", flat=True)
        .first()
    )


def _compare_and_swap(record: Requisition, expected_version: int) -> None:
    row = _record_to_row(record)
    updated = PurchaseRequisition.objects.filter(
        id=record.id, version_nbr=expected_version
    ).update(**row)
    if updated == 1:
        return
    actual = _stored_version(record.id)
    if actual is None:
        raise RuntimeError(f"requisition {record.id} is not in the store")
    logger.warning(
        "requisition_version_conflict",
        extra={
            "event_type": "CONFLICT",
            "transaction_id": record.transaction_id,
            "expected_version": expected_version,
            "actual_version": actual,
        },
    )
    raise ConflictError(record.transaction_id, expected_version, actual)


def store_enabled_or_raise() -> None:
    """
    The database store is always enabled. Kept so callers can treat both
    store implementations the same way.
    """


def get_record(record_id: str) -> Requisition | None:
    row = PurchaseRequisition.objects.filter(id=str(record_id)).first()
    return _row_to_record(row) if row is not None else None


def get_record_by_transaction_id(transaction_id: str) -> Requisition | None:
    row = PurchaseRequisition.objects.filter(transaction_id=str(transaction_id)).first()
    return _row_to_record(row) if row is not None else None


def list_records(predicate: Callable[[Requisition], bool] | None = None) -> List[Requisition]:
    records = [_row_to_record(row) for row in PurchaseRequisition.objects.order_by("-created_at")]
    if predicate is None:
        return records
    return [record for record in records if predicate(record)]


@transaction.atomic
def create_record(record: Requisition) -> Requisition:
    PurchaseRequisition.objects.create(id=record.id, **_record_to_row(record))
    return record


@transaction.atomic
def save(record: Requisition, expected_version: int) -> Requisition:
    _compare_and_swap(record, expected_version)
    return record


@transaction.atomic
def save_split(
    parent: Requisition,
    children: Iterable[Requisition],
    expected_version: int,
) -> Requisition:
    _compare_and_swap(parent, expected_version)
    PurchaseRequisition.objects.bulk_create(
        [PurchaseRequisition(id=child.id, **_record_to_row(child)) for child in children]
    )
    return parent
