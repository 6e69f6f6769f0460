"""
Read-only views over a collection of requisitions.

The list functions return a new list ordered newest first and never
mutate their input. ``summarize`` reduces a record set to dashboard figures.
"""
from __future__ import annotations

from collections import Counter
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List

from requisitions import rules
from requisitions.services.records import Requisition, quantize_money, utc_now


def _newest_first(records: Iterable[Requisition]) -> List[Requisition]:
    return sorted(records, key=lambda record: record.created_at, reverse=True)


def own_records(records: Iterable[Requisition], user_id: str) -> List[Requisition]:
    return _newest_first(record for record in records if record.requested_by == user_id)


def department_pending(records: Iterable[Requisition], department: str | None) -> List[Requisition]:
    return _newest_first(
        record
        for record in records
        if record.requested_by_department == department and record.hod_status == rules.PENDING
    )


def finance_pending(records: Iterable[Requisition]) -> List[Requisition]:
    return _newest_first(
        record
        for record in records
        if record.finance_status == rules.PENDING and record.status != rules.STATUS_DECLINED
    )


def all_records(records: Iterable[Requisition]) -> List[Requisition]:
    return _newest_first(records)


def visible_records(
    records: Iterable[Requisition],
    user_role: str | None,
    user_id: str | None,
    department: str | None,
) -> List[Requisition]:
    """Records a signed-in user may list, based on their role."""
    if user_role in rules.FULL_ACCESS_ROLES:
        return all_records(records)
    if user_role == rules.USER_ROLE_HOD:
        if not department:
            return []
        return _newest_first(
            record for record in records if record.requested_by_department == department
        )
    if user_role == rules.USER_ROLE_EMPLOYEE and user_id:
        return own_records(records, user_id)
    return []


def _as_date(value: date | datetime | str | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def filter_records(
    records: Iterable[Requisition],
    *,
    status: str | None = None,
    department: str | None = None,
    requested_by: str | None = None,
    date_from: date | datetime | str | None = None,
    date_to: date | datetime | str | None = None,
) -> List[Requisition]:
    """
    Narrow ``records`` by exact status, department and requester, and by an
    inclusive creation-date range. Raises ``ValueError`` for a malformed date.
    """
    start = _as_date(date_from)
    end = _as_date(date_to)
    selected = []
    for record in records:
        if status and record.status != status:
            continue
        if department and record.requested_by_department != department:
            continue
        if requested_by and record.requested_by != requested_by:
            continue
        created = record.created_at.date()
        if start and created < start:
            continue
        if end and created > end:
            continue
        selected.append(record)
    return _newest_first(selected)


def split_family(records: Iterable[Requisition], transaction_id: str) -> List[Requisition]:
    return _newest_first(
        record for record in records if record.original_transaction_id == transaction_id
    )


def _month_keys(today: date, count: int) -> List[str]:
    year, month = today.year, today.month
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def _breakdown(values: Iterable[str]) -> Dict[str, int]:
    return dict(Counter(values))


def summarize(
    records: Iterable[Requisition],
    *,
    today: date | None = None,
    months: int = 12,
) -> Dict[str, object]:
    """
    Dashboard figures for a set of requisitions.

    Money is returned as 2-dp strings. ``monthly_trends`` covers the last
    ``months`` calendar months up to ``today`` (UTC), oldest first.
    ``avg_processing_days`` averages created-to-last-update time over fully
    approved records.
    """
    selected = list(records)
    total_value = quantize_money(sum((record.total_amount for record in selected), Decimal("0")))
    average = quantize_money(total_value / len(selected)) if selected else Decimal("0.00")

    trends = {
        key: {"count": 0, "value": Decimal("0")}
        for key in _month_keys(today or utc_now().date(), months)
    }
    for record in selected:
        bucket = trends.get(record.created_at.strftime("%Y-%m"))
        if bucket is not None:
            bucket["count"] += 1
            bucket["value"] += record.total_amount

    completed = [
        record
        for record in selected
        if record.hod_status == rules.APPROVED and record.finance_status == rules.APPROVED
    ]
    avg_days = 0.0
    if completed:
        seconds = sum(
            (record.updated_at - record.created_at).total_seconds() for record in completed
        )
        avg_days = round(seconds / len(completed) / 86400, 2)

    return {
        "overview": {
            "total": len(selected),
            "total_value": str(total_value),
            "average_value": str(average),
        },
        "status_breakdown": _breakdown(record.status for record in selected),
        "hod_status_breakdown": _breakdown(record.hod_status for record in selected),
        "finance_status_breakdown": _breakdown(record.finance_status for record in selected),
        "department_breakdown": _breakdown(
            record.department or record.requested_by_department or "Unknown" for record in selected
        ),
        "urgency_breakdown": _breakdown(record.urgency_level for record in selected),
        "monthly_trends": [
            {"month": month, "count": data["count"], "value": str(quantize_money(data["value"]))}
            for month, data in trends.items()
        ],
        "avg_processing_days": avg_days,
    }
