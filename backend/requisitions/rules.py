import os
from decimal import Decimal
from typing import Dict, FrozenSet, Tuple

VAT_APPLICABLE = "VAT_APPLICABLE"
NO_VAT = "NO_VAT"
VAT_CLASSIFICATIONS = (VAT_APPLICABLE, NO_VAT)

DEFAULT_VAT_RATE = Decimal("0.15")
MONEY_QUANTUM = Decimal("0.01")
# Largest amount the purchase_requisitions.total_amount column (14, 2) holds.
MAX_MONEY = Decimal("999999999999.99")

PENDING = "Pending"
APPROVED = "Approved"
DECLINED = "Declined"
DECISION_STATUSES = (PENDING, APPROVED, DECLINED)

STATUS_PENDING_HOD = "PENDING_HOD_APPROVAL"
STATUS_PENDING_FINANCE = "PENDING_FINANCE_APPROVAL"
STATUS_APPROVED = "APPROVED"
STATUS_DECLINED = "DECLINED"
# Legacy rows may still carry this label; it is never derived.
STATUS_SPLIT = "Split"
STATUSES = (
    STATUS_PENDING_HOD,
    STATUS_PENDING_FINANCE,
    STATUS_APPROVED,
    STATUS_DECLINED,
    STATUS_SPLIT,
)
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_DECLINED})

ROLE_HOD = "HOD"
ROLE_FINANCE = "Finance"
DECISION_ROLES = (ROLE_HOD, ROLE_FINANCE)

DECISION_APPROVE = "approve"
DECISION_DECLINE = "decline"
DECISIONS = (DECISION_APPROVE, DECISION_DECLINE)

ACTION_SPLIT_CREATED = "Split Created"
ACTION_SPLIT_PROCESSED = "Split Processed"

BUDGET_APPROVAL_CHOICES = (
    "BUDGET_CONFIRMED",
    "BUDGET_ALLOCATED",
    "BUDGET_APPROVED",
    "BUDGET_PENDING",
)

URGENCY_LEVELS = ("LOW", "NORMAL", "HIGH", "URGENT")
DEFAULT_URGENCY = "NORMAL"
REQUISITION_TYPE = "PURCHASE_REQUISITION"
TRANSACTION_PREFIX = "PR"

USER_ROLE_EMPLOYEE = "Employee"
USER_ROLE_HOD = "HOD"
USER_ROLE_FINANCE = "Finance"
USER_ROLE_ADMIN = "Admin"
USER_ROLE_SUPERUSER = "SuperUser"
USER_ROLES = (
    USER_ROLE_EMPLOYEE,
    USER_ROLE_HOD,
    USER_ROLE_FINANCE,
    USER_ROLE_ADMIN,
    USER_ROLE_SUPERUSER,
)
FULL_ACCESS_ROLES = frozenset({USER_ROLE_FINANCE, USER_ROLE_ADMIN, USER_ROLE_SUPERUSER})

# Which decision roles a signed-in user may act as.
DECISION_ROLES_BY_USER_ROLE: Dict[str, FrozenSet[str]] = {
    USER_ROLE_HOD: frozenset({ROLE_HOD}),
    USER_ROLE_FINANCE: frozenset({ROLE_FINANCE}),
    USER_ROLE_ADMIN: frozenset({ROLE_HOD, ROLE_FINANCE}),
    USER_ROLE_SUPERUSER: frozenset({ROLE_HOD, ROLE_FINANCE}),
}

AUTO_SPLIT_SEPARATORS = (" and ", " & ", ", ", " + ", " plus ")
AUTO_SPLIT_SHARE_BY_PARTS = Decimal("0.8")
AUTO_SPLIT_SHARE_DEFAULT = Decimal("0.7")

_STATUS_TABLE: Dict[Tuple[str, str], str] = {
    (PENDING, PENDING): STATUS_PENDING_HOD,
    (PENDING, APPROVED): STATUS_PENDING_HOD,
    (APPROVED, PENDING): STATUS_PENDING_FINANCE,
    (APPROVED, APPROVED): STATUS_APPROVED,
}


def get_vat_rate() -> Decimal:
    raw = os.getenv("OVERSIGHT_VAT_RATE")
    if raw is None or raw.strip() == "":
        return DEFAULT_VAT_RATE
    try:
        rate = Decimal(raw.strip())
    except ArithmeticError as exc:
        raise ValueError(f"invalid OVERSIGHT_VAT_RATE: {raw!r}") from exc
    if rate < 0:
        raise ValueError(f"invalid OVERSIGHT_VAT_RATE: {raw!r}")
    return rate


def vat_multiplier(vat_classification: str) -> Decimal:
    if vat_classification == VAT_APPLICABLE:
        return Decimal("1") + get_vat_rate()
    return Decimal("1")


def derive_status(hod_status: str, finance_status: str) -> str:
    """Overall status for a (hod_status, finance_status) pair."""
    if hod_status not in DECISION_STATUSES:
        raise ValueError(f"invalid hod_status, expected one of: {list(DECISION_STATUSES)}")
    if finance_status not in DECISION_STATUSES:
        raise ValueError(f"invalid finance_status, expected one of: {list(DECISION_STATUSES)}")
    if DECLINED in (hod_status, finance_status):
        return STATUS_DECLINED
    return _STATUS_TABLE[(hod_status, finance_status)]


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def status_field_for_role(role: str) -> str:
    if role == ROLE_HOD:
        return "hod_status"
    if role == ROLE_FINANCE:
        return "finance_status"
    raise ValueError(f"invalid role, expected one of: {list(DECISION_ROLES)}")


def decision_roles_for(user_role: str | None) -> FrozenSet[str]:
    return DECISION_ROLES_BY_USER_ROLE.get(str(user_role or ""), frozenset())
