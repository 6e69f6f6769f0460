"""
Append-only history attached to each requisition.

The ledger assigns every timestamp itself. A new entry is never dated
before the entry it follows, so one record's history is ordered even if
the clock steps backwards.
"""
from __future__ import annotations

from datetime import datetime

from requisitions.services.records import HistoryEntry, Requisition, utc_now


def _next_timestamp(record: Requisition) -> datetime:
    timestamp = utc_now()
    if record.history and record.history[-1].timestamp > timestamp:
        return record.history[-1].timestamp
    return timestamp


def append(
    record: Requisition,
    action: str,
    by: str,
    role: str | None,
    comments: str | None = None,
) -> Requisition:
    entry = HistoryEntry(
        action=action,
        by=by,
        role=role,
        timestamp=_next_timestamp(record),
        comments=comments,
    )
    return record.with_changes(history=record.history + (entry,), updated_at=entry.timestamp)


def seed(
    record: Requisition,
    action: str,
    by: str,
    role: str | None,
    comments: str | None = None,
) -> Requisition:
    """Start a brand-new record's history with a single entry."""
    if record.history:
        raise ValueError("seed() requires a record without history")
    return append(record, action, by, role, comments)


def last_action(record: Requisition) -> HistoryEntry | None:
    return record.history[-1] if record.history else None
