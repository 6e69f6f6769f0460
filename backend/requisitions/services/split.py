"""
Split operator.

Two entry points divide one requisition into independent children plus a
reduced parent:

* ``split`` takes arbitrary child amounts (optionally with their own
  items) and collapses the parent's lines into one "remaining amount" line.
* ``split_by_items`` moves whole line items into children and leaves the
  unselected lines on the parent untouched.

In both modes the children's combined total must stay strictly below the
parent's total, so the parent always keeps a positive remainder.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Sequence, Tuple
from uuid import uuid4

from requisitions import rules
from requisitions.exceptions import ValidationError
from requisitions.services import ledger
from requisitions.services.records import (
    LineItem,
    Requisition,
    check_money_limit,
    generate_transaction_id,
    parse_money,
    quantize_money,
    sum_item_totals,
    utc_now,
)
from requisitions.services.transitions import check_version, ensure_not_terminal, require_text


@dataclass(frozen=True)
class ChildSpec:
    total_amount: Decimal | None = None
    items: Tuple[LineItem, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], index: int) -> "ChildSpec":
        prefix = f"splits[{index}]"
        if not isinstance(payload, Mapping):
            raise ValidationError("Must be an object.", field=prefix)
        raw_items = payload.get("items") or []
        if not isinstance(raw_items, (list, tuple)):
            raise ValidationError("Must be an array of items.", field=f"{prefix}.items")
        items = tuple(
            LineItem.from_payload(raw, field_prefix=f"{prefix}.items[{item_index}]")
            for item_index, raw in enumerate(raw_items)
        )
        raw_total = payload.get("total_amount", payload.get("totalAmount"))
        total = None if raw_total is None else parse_money(raw_total, f"{prefix}.total_amount")
        return cls(total_amount=total, items=items)


@dataclass(frozen=True)
class SplitResult:
    children: Tuple[Requisition, ...]
    updated_parent: Requisition
    child_totals: Tuple[Decimal, ...] = field(default=())


def _resolve_child(spec: ChildSpec, index: int, parent: Requisition) -> Tuple[Tuple[LineItem, ...], Decimal]:
    prefix = f"splits[{index}]"
    if spec.total_amount is not None:
        check_money_limit(spec.total_amount, f"{prefix}.total_amount")
    if spec.items:
        total = sum_item_totals(spec.items)
        if spec.total_amount is not None and quantize_money(spec.total_amount) != total:
            raise ValidationError(
                f"Total {quantize_money(spec.total_amount)} does not match item totals {total}.",
                field=f"{prefix}.total_amount",
            )
        items = spec.items
    else:
        if spec.total_amount is None:
            raise ValidationError("An amount or items are required.", field=f"{prefix}.total_amount")
        total = quantize_money(spec.total_amount)
        items = (LineItem.synthetic(f"Split from {parent.transaction_id}", total),)
    if total <= 0:
        raise ValidationError("Split amount must be greater than zero.", field=f"{prefix}.total_amount")
    return items, total


def _new_child(
    parent: Requisition,
    items: Tuple[LineItem, ...],
    reason: str,
    actor: str,
    role: str | None,
) -> Requisition:
    now = utc_now()
    child = Requisition(
        id=str(uuid4()),
        transaction_id=generate_transaction_id(),
        items=items,
        total_amount=sum_item_totals(items),
        requested_by=parent.requested_by,
        requested_by_department=parent.requested_by_department,
        is_split=True,
        original_transaction_id=parent.transaction_id,
        split_reason=reason,
        requested_by_name=parent.requested_by_name,
        requested_by_role=parent.requested_by_role,
        type=parent.type,
        request_date=parent.request_date,
        due_date=parent.due_date,
        payment_due_date=parent.payment_due_date,
        urgency_level=parent.urgency_level,
        department=parent.department,
        budget_code=parent.budget_code,
        project_code=parent.project_code,
        supplier_preference=parent.supplier_preference,
        delivery_location=parent.delivery_location,
        special_instructions=parent.special_instructions,
        currency=parent.currency,
        created_at=now,
        updated_at=now,
    )
    return ledger.seed(child, rules.ACTION_SPLIT_CREATED, actor, role, reason)


def split(
    record: Requisition,
    child_specs: Sequence[ChildSpec],
    reason: str,
    actor: str,
    *,
    role: str | None = None,
    expected_version: int | None = None,
) -> SplitResult:
    if not child_specs:
        raise ValidationError("At least one split is required.", field="splits")
    reason_text = require_text(reason, "reason", "A reason for the split is required.")
    actor_name = require_text(actor, "actor", "Acting user is required.")
    check_version(record, expected_version)
    ensure_not_terminal(record, "splitting")

    resolved = [_resolve_child(spec, index, record) for index, spec in enumerate(child_specs)]
    split_total = quantize_money(sum((total for _, total in resolved), Decimal("0")))
    if split_total >= record.total_amount:
        raise ValidationError(
            f"Split total {split_total} must be less than the requisition total "
            f"{record.total_amount} of {record.transaction_id}.",
            field="splits",
        )

    children = tuple(
        _new_child(record, items, reason_text, actor_name, role) for items, _ in resolved
    )
    remainder = record.total_amount - split_total
    parent = record.with_changes(
        items=(
            LineItem.synthetic(
                f"Remaining amount from split PR {record.transaction_id}",
                remainder,
                f"Original PR split into {len(children)} separate requisitions",
            ),
        ),
        total_amount=quantize_money(remainder),
        is_split=True,
        split_reason=reason_text,
        version=record.version + 1,
    )
    parent = ledger.append(parent, rules.ACTION_SPLIT_PROCESSED, actor_name, role, reason_text)
    return SplitResult(
        children=children,
        updated_parent=parent,
        child_totals=tuple(total for _, total in resolved),
    )


def _parse_indices(selected_indices: Iterable[object], item_count: int) -> List[int]:
    parsed: List[int] = []
    for position, raw in enumerate(selected_indices):
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValidationError(
                f"Invalid index at position {position}.", field="selected_indices"
            )
        if raw < 0 or raw >= item_count:
            raise ValidationError(
                f"Index {raw} is out of range.", field="selected_indices"
            )
        if raw in parsed:
            raise ValidationError(f"Index {raw} is selected twice.", field="selected_indices")
        parsed.append(raw)
    return parsed


def split_by_items(
    record: Requisition,
    selected_indices: Sequence[int],
    actor: str,
    *,
    reason: str | None = None,
    role: str | None = None,
    expected_version: int | None = None,
) -> SplitResult:
    if not isinstance(selected_indices, (list, tuple)):
        raise ValidationError("Must be an array of item indexes.", field="selected_indices")
    actor_name = require_text(actor, "actor", "Acting user is required.")
    check_version(record, expected_version)
    ensure_not_terminal(record, "splitting")

    indices = _parse_indices(selected_indices, len(record.items))
    if not indices:
        raise ValidationError("Select at least one item to split.", field="selected_indices")
    if len(indices) == len(record.items):
        raise ValidationError(
            "Leave at least one item in the original requisition.", field="selected_indices"
        )
    for index in indices:
        if record.items[index].total_price <= 0:
            raise ValidationError(
                f"Item {index} has no value to split.", field="selected_indices"
            )

    selected = set(indices)
    remaining_items = tuple(item for i, item in enumerate(record.items) if i not in selected)
    remaining_total = sum_item_totals(remaining_items)
    if remaining_total <= 0:
        raise ValidationError(
            f"The items left on {record.transaction_id} must keep a positive total.",
            field="selected_indices",
        )

    reason_text = str(reason).strip() if reason is not None else ""
    children = []
    for index in indices:
        item = record.items[index]
        child_reason = reason_text or f'Split from original PR: Item "{item.description}"'
        children.append(_new_child(record, (item,), child_reason, actor_name, role))

    parent_reason = reason_text or (
        f"Split {len(children)} item(s) into separate requisitions: "
        + ", ".join(record.items[index].description for index in indices)
    )
    parent = record.with_changes(
        items=remaining_items,
        total_amount=remaining_total,
        is_split=True,
        split_reason=parent_reason,
        version=record.version + 1,
    )
    parent = ledger.append(parent, rules.ACTION_SPLIT_PROCESSED, actor_name, role, parent_reason)
    return SplitResult(
        children=tuple(children),
        updated_parent=parent,
        child_totals=tuple(record.items[index].total_price for index in indices),
    )


def _description_parts(description: str) -> List[str]:
    lowered = description.lower()
    for separator in rules.AUTO_SPLIT_SEPARATORS:
        if separator in lowered:
            parts = re.split(re.escape(separator), description, flags=re.IGNORECASE)
            cleaned = [part.strip() for part in parts if part.strip()]
            if len(cleaned) > 1:
                return cleaned
            break
    return [description]


def suggest_auto_split(record: Requisition) -> Tuple[List[ChildSpec], str]:
    """
    Propose child amounts that leave a remainder on the parent.

    When the first line's description names several things ("chairs and
    desks"), one child per thing shares 80% of the total; otherwise two
    children share 70%.
    """
    description = record.items[0].description if record.items else "Items"
    parts = _description_parts(description)
    total = record.total_amount
    if len(parts) > 1:
        amount = quantize_money(total * rules.AUTO_SPLIT_SHARE_BY_PARTS / len(parts))
        specs = [
            ChildSpec(items=(LineItem.synthetic(part, amount, f"Split item: {part}"),))
            for part in parts
        ]
        reason = (
            f"Automatic split detected {len(parts)} items from description - showing remainder"
        )
    else:
        amount = quantize_money(total * rules.AUTO_SPLIT_SHARE_DEFAULT / 2)
        specs = [
            ChildSpec(
                items=(
                    LineItem.synthetic(
                        f"{description} (Split {number})",
                        amount,
                        "Auto-split for separate processing",
                    ),
                )
            )
            for number in (1, 2)
        ]
        reason = "Automatic split for different suppliers/categories - showing remainder"
    specs = [spec for spec in specs if spec.items[0].total_price > 0]
    # Rounding can push tiny totals over the parent's amount.
    while specs and sum(spec.items[0].total_price for spec in specs) >= total:
        specs.pop()
    return specs, reason
