"""
Purchase requisition record model.

Records and line items are immutable values. Every workflow operation
returns a new ``Requisition``; persistence is the store's concern.
"""
from __future__ import annotations

import math
import random
import re
import string
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Tuple
from uuid import uuid4

from requisitions import rules
from requisitions.exceptions import ValidationError

_TRANSACTION_ID_PATTERN = re.compile(r"^[A-Z]{2,}-\d{8}-\d{13}-[A-Z0-9]{6}$")
_RANDOM_ALPHABET = string.ascii_uppercase + string.digits


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(rules.MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def parse_money(value: Any, field_name: str) -> Decimal:
    """Parse a non-negative monetary amount or raise ``ValidationError``."""
    if value is None or isinstance(value, bool):
        raise ValidationError("A numeric amount is required.", field=field_name)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError("Must be a finite number.", field=field_name)
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Must be a number.", field=field_name) from None
    if not amount.is_finite():
        raise ValidationError("Must be a finite number.", field=field_name)
    if amount < 0:
        raise ValidationError("Must not be negative.", field=field_name)
    check_money_limit(amount, field_name)
    return amount


def check_money_limit(amount: Decimal, field_name: str) -> None:
    if amount > rules.MAX_MONEY:
        raise ValidationError(f"Must not exceed {rules.MAX_MONEY}.", field=field_name)


def parse_quantity(value: Any, field_name: str) -> int:
    if value is None or isinstance(value, (bool, float)):
        raise ValidationError("Must be an integer.", field=field_name)
    if isinstance(value, str):
        stripped = value.strip()
        if not re.fullmatch(r"[+-]?\d+", stripped):
            raise ValidationError("Must be an integer.", field=field_name)
        value = stripped
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Must be an integer.", field=field_name) from None
    if quantity < 1:
        raise ValidationError("Must be at least 1.", field=field_name)
    return quantity


def compute_item_total(quantity: int, unit_price: Decimal, vat_classification: str) -> Decimal:
    return quantize_money(Decimal(quantity) * unit_price * rules.vat_multiplier(vat_classification))


def _checked_item_total(
    quantity: int, unit_price: Decimal, vat_classification: str, field_name: str
) -> Decimal:
    # Check before quantizing: quantize raises once the value outgrows the context precision.
    check_money_limit(
        Decimal(quantity) * unit_price * rules.vat_multiplier(vat_classification), field_name
    )
    return compute_item_total(quantity, unit_price, vat_classification)


def sum_item_totals(items: Iterable["LineItem"]) -> Decimal:
    return quantize_money(sum((item.total_price for item in items), Decimal("0")))


def generate_transaction_id(prefix: str = rules.TRANSACTION_PREFIX) -> str:
    """Format: PREFIX-YYYYMMDD-<epoch millis>-<6 random chars>."""
    now = utc_now()
    millis = str(int(time.time() * 1000)).zfill(13)
    suffix = "".join(random.choices(_RANDOM_ALPHABET, k=6))
    return f"{prefix}-{now.strftime('%Y%m%d')}-{millis}-{suffix}"


def validate_transaction_id(value: object) -> bool:
    return isinstance(value, str) and bool(_TRANSACTION_ID_PATTERN.match(value))


def _parse_datetime(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _clean_text(value: object) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: int
    unit_price: Decimal
    vat_classification: str
    total_price: Decimal
    technical_specs: str | None = None
    business_justification: str | None = None

    @classmethod
    def build(
        cls,
        description: object,
        quantity: object,
        unit_price: object,
        vat_classification: object = rules.VAT_APPLICABLE,
        technical_specs: object = None,
        business_justification: object = None,
        field_prefix: str = "item",
    ) -> "LineItem":
        text = str(description or "").strip()
        if not text:
            raise ValidationError("Description is required.", field=f"{field_prefix}.description")
        parsed_quantity = parse_quantity(quantity, f"{field_prefix}.quantity")
        price = parse_money(unit_price, f"{field_prefix}.unit_price")
        vat = str(vat_classification or "").strip().upper()
        if vat not in rules.VAT_CLASSIFICATIONS:
            raise ValidationError(
                f"Must be one of: {', '.join(rules.VAT_CLASSIFICATIONS)}.",
                field=f"{field_prefix}.vat_classification",
            )
        return cls(
            description=text,
            quantity=parsed_quantity,
            unit_price=price,
            vat_classification=vat,
            total_price=_checked_item_total(
                parsed_quantity, price, vat, f"{field_prefix}.total_price"
            ),
            technical_specs=_clean_text(technical_specs),
            business_justification=_clean_text(business_justification),
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], field_prefix: str = "item") -> "LineItem":
        if not isinstance(payload, Mapping):
            raise ValidationError("Must be an object.", field=field_prefix)
        return cls.build(
            description=payload.get("description"),
            quantity=payload.get("quantity"),
            unit_price=payload.get("unit_price", payload.get("unitPrice")),
            vat_classification=payload.get(
                "vat_classification", payload.get("vatClassification", rules.VAT_APPLICABLE)
            ),
            technical_specs=payload.get("technical_specs", payload.get("technicalSpecs")),
            business_justification=payload.get(
                "business_justification", payload.get("businessJustification")
            ),
            field_prefix=field_prefix,
        )

    @classmethod
    def synthetic(cls, description: str, amount: Decimal, justification: str | None = None) -> "LineItem":
        """Single NO_VAT line whose total is exactly ``amount``."""
        return cls(
            description=description,
            quantity=1,
            unit_price=quantize_money(amount),
            vat_classification=rules.NO_VAT,
            total_price=quantize_money(amount),
            business_justification=justification,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "vat_classification": self.vat_classification,
            "total_price": str(self.total_price),
            "technical_specs": self.technical_specs,
            "business_justification": self.business_justification,
        }


@dataclass(frozen=True)
class HistoryEntry:
    action: str
    by: str
    role: str | None
    timestamp: datetime
    comments: str | None = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "action": self.action,
            "by": self.by,
            "role": self.role,
            "timestamp": self.timestamp.isoformat(),
            "comments": self.comments,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoryEntry":
        timestamp = _parse_datetime(data.get("timestamp") or data.get("date"))
        return cls(
            action=str(data.get("action") or data.get("status") or ""),
            by=str(data.get("by") or data.get("by_user") or ""),
            role=_clean_text(data.get("role")),
            timestamp=timestamp or datetime.fromtimestamp(0, tz=timezone.utc),
            comments=_clean_text(data.get("comments")),
        )


@dataclass(frozen=True)
class Requisition:
    id: str
    transaction_id: str
    items: Tuple[LineItem, ...]
    total_amount: Decimal
    requested_by: str
    requested_by_department: str | None
    hod_status: str = rules.PENDING
    finance_status: str = rules.PENDING
    status: str = rules.STATUS_PENDING_HOD
    history: Tuple[HistoryEntry, ...] = ()
    is_split: bool = False
    original_transaction_id: str | None = None
    split_reason: str | None = None
    requested_by_name: str | None = None
    requested_by_role: str | None = None
    type: str = rules.REQUISITION_TYPE
    request_date: str | None = None
    due_date: str | None = None
    payment_due_date: str | None = None
    urgency_level: str = rules.DEFAULT_URGENCY
    department: str | None = None
    budget_code: str | None = None
    project_code: str | None = None
    supplier_preference: str | None = None
    delivery_location: str | None = None
    special_instructions: str | None = None
    currency: str = "ZAR"
    budget_approval: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return rules.is_terminal(self.status)

    def with_changes(self, **changes: Any) -> "Requisition":
        """Copy with ``changes`` applied; ``status`` is always re-derived."""
        changes.pop("status", None)
        updated = replace(self, **changes)
        return replace(
            updated,
            status=rules.derive_status(updated.hod_status, updated.finance_status),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "type": self.type,
            "request_date": self.request_date,
            "due_date": self.due_date,
            "payment_due_date": self.payment_due_date,
            "items": [item.to_dict() for item in self.items],
            "urgency_level": self.urgency_level,
            "department": self.department,
            "budget_code": self.budget_code,
            "project_code": self.project_code,
            "supplier_preference": self.supplier_preference,
            "delivery_location": self.delivery_location,
            "special_instructions": self.special_instructions,
            "status": self.status,
            "hod_status": self.hod_status,
            "finance_status": self.finance_status,
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "requested_by": self.requested_by,
            "requested_by_name": self.requested_by_name,
            "requested_by_role": self.requested_by_role,
            "requested_by_department": self.requested_by_department,
            "history": [entry.to_dict() for entry in self.history],
            "is_split": self.is_split,
            "original_transaction_id": self.original_transaction_id,
            "split_reason": self.split_reason,
            "budget_approval": self.budget_approval,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "version": self.version,
        }


def _stored_item(data: Mapping[str, Any]) -> LineItem:
    # Rows written by the browser client use camelCase item keys.
    return LineItem.from_payload(data, field_prefix="items")


def requisition_from_dict(data: Mapping[str, Any]) -> Requisition:
    """Rebuild a record from its stored row shape; status and totals are re-derived."""
    items = tuple(_stored_item(item) for item in data.get("items") or [])
    history = tuple(HistoryEntry.from_dict(entry) for entry in data.get("history") or [])
    hod_status = str(data.get("hod_status") or rules.PENDING)
    finance_status = str(data.get("finance_status") or rules.PENDING)
    created_at = _parse_datetime(data.get("created_at")) or utc_now()
    return Requisition(
        id=str(data.get("id")),
        transaction_id=str(data.get("transaction_id")),
        items=items,
        total_amount=sum_item_totals(items),
        requested_by=str(data.get("requested_by") or ""),
        requested_by_department=_clean_text(data.get("requested_by_department")),
        hod_status=hod_status,
        finance_status=finance_status,
        status=rules.derive_status(hod_status, finance_status),
        history=history,
        is_split=bool(data.get("is_split")),
        original_transaction_id=_clean_text(data.get("original_transaction_id")),
        split_reason=_clean_text(data.get("split_reason")),
        requested_by_name=_clean_text(data.get("requested_by_name")),
        requested_by_role=_clean_text(data.get("requested_by_role")),
        type=str(data.get("type") or rules.REQUISITION_TYPE),
        request_date=_clean_text(data.get("request_date")),
        due_date=_clean_text(data.get("due_date")),
        payment_due_date=_clean_text(data.get("payment_due_date")),
        urgency_level=str(data.get("urgency_level") or rules.DEFAULT_URGENCY),
        department=_clean_text(data.get("department")),
        budget_code=_clean_text(data.get("budget_code")),
        project_code=_clean_text(data.get("project_code")),
        supplier_preference=_clean_text(data.get("supplier_preference")),
        delivery_location=_clean_text(data.get("delivery_location")),
        special_instructions=_clean_text(data.get("special_instructions")),
        currency=str(data.get("currency") or "ZAR"),
        budget_approval=_clean_text(data.get("budget_approval")),
        created_at=created_at,
        updated_at=_parse_datetime(data.get("updated_at")) or created_at,
        version=int(data.get("version") or data.get("version_nbr") or 1),
    )


_DETAIL_FIELDS = (
    "requested_by_name",
    "requested_by_role",
    "request_date",
    "due_date",
    "payment_due_date",
    "department",
    "budget_code",
    "project_code",
    "supplier_preference",
    "delivery_location",
    "special_instructions",
)


def build_items(raw_items: object) -> Tuple[LineItem, ...]:
    if not isinstance(raw_items, (list, tuple)) or not raw_items:
        raise ValidationError("At least one item is required.", field="items")
    built: List[LineItem] = []
    for index, raw in enumerate(raw_items):
        built.append(LineItem.from_payload(raw, field_prefix=f"items[{index}]"))
    check_money_limit(sum((item.total_price for item in built), Decimal("0")), "items")
    return tuple(built)


def build_requisition(
    items: object,
    requested_by: object,
    requested_by_department: object,
    *,
    currency: str | None = None,
    urgency_level: object = None,
    **details: object,
) -> Requisition:
    """
    Submission: validate the whole payload, then build a fresh record
    pending HOD approval. Nothing is built when any field is invalid.
    """
    owner = str(requested_by or "").strip()
    if not owner:
        raise ValidationError("Requesting user is required.", field="requested_by")
    built_items = build_items(items)

    urgency = str(urgency_level or rules.DEFAULT_URGENCY).strip().upper()
    if urgency not in rules.URGENCY_LEVELS:
        raise ValidationError(
            f"Must be one of: {', '.join(rules.URGENCY_LEVELS)}.", field="urgency_level"
        )
    unknown = sorted(set(details) - set(_DETAIL_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown field: {unknown[0]}.", field=unknown[0])

    now = utc_now()
    return Requisition(
        id=str(uuid4()),
        transaction_id=generate_transaction_id(),
        items=built_items,
        total_amount=sum_item_totals(built_items),
        requested_by=owner,
        requested_by_department=_clean_text(requested_by_department),
        urgency_level=urgency,
        currency=(str(currency or "").strip().upper() or "ZAR"),
        created_at=now,
        updated_at=now,
        **{name: _clean_text(value) for name, value in details.items()},
    )
