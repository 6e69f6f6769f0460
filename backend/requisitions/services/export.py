"""CSV summary of a requisition: one row per line item plus its history."""
from __future__ import annotations

import csv
import io
from typing import List

from requisitions.services.records import Requisition

ITEM_HEADER = [
    "transaction_id",
    "status",
    "requested_by",
    "department",
    "line",
    "description",
    "quantity",
    "unit_price",
    "vat_classification",
    "total_price",
    "currency",
]
HISTORY_HEADER = ["transaction_id", "timestamp", "action", "by", "role", "comments"]


def item_rows(record: Requisition) -> List[List[object]]:
    department = record.requested_by_department or record.department or ""
    return [
        [
            record.transaction_id,
            record.status,
            record.requested_by,
            department,
            index + 1,
            item.description,
            item.quantity,
            str(item.unit_price),
            item.vat_classification,
            str(item.total_price),
            record.currency,
        ]
        for index, item in enumerate(record.items)
    ]


def history_rows(record: Requisition) -> List[List[object]]:
    return [
        [
            record.transaction_id,
            entry.timestamp.isoformat(),
            entry.action,
            entry.by,
            entry.role or "",
            entry.comments or "",
        ]
        for entry in record.history
    ]


def render_csv(record: Requisition) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(ITEM_HEADER)
    writer.writerows(item_rows(record))
    writer.writerow([])
    writer.writerow(["total_amount", str(record.total_amount), record.currency])
    if record.history:
        writer.writerow([])
        writer.writerow(HISTORY_HEADER)
        writer.writerows(history_rows(record))
    return buffer.getvalue()
