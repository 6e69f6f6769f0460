"""
Status transition engine for HOD and Finance decisions.

All functions are pure: they take the current record and return the next
one. The caller persists the result with the store's version check.
"""
from __future__ import annotations

from requisitions import rules
from requisitions.exceptions import ConflictError, InvalidStateError, ValidationError
from requisitions.services import ledger
from requisitions.services.records import Requisition


def check_version(record: Requisition, expected_version: int | None) -> None:
    if expected_version is None:
        return
    if int(expected_version) != record.version:
        raise ConflictError(record.transaction_id, int(expected_version), record.version)


def require_text(value: object, field_name: str, message: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(message, field=field_name)
    return text


def ensure_not_terminal(record: Requisition, action: str) -> None:
    if record.status == rules.STATUS_DECLINED:
        raise InvalidStateError(
            f"Requisition {record.transaction_id} was declined; {action} is not allowed.",
            field="status",
        )
    if record.status == rules.STATUS_APPROVED:
        raise InvalidStateError(
            f"Requisition {record.transaction_id} is fully approved; {action} is not allowed.",
            field="status",
        )


def apply_decision(
    record: Requisition,
    role: str,
    decision: str,
    actor: str,
    comments: str,
    *,
    expected_version: int | None = None,
    budget_approval: str | None = None,
    require_hod_first: bool = False,
) -> Requisition:
    if role not in rules.DECISION_ROLES:
        raise ValidationError(
            f"Must be one of: {', '.join(rules.DECISION_ROLES)}.", field="role"
        )
    if decision not in rules.DECISIONS:
        raise ValidationError(
            f"Must be one of: {', '.join(rules.DECISIONS)}.", field="decision"
        )
    actor_name = require_text(actor, "actor", "Acting user is required.")
    comment_text = require_text(comments, "comments", "Comments are required for a decision.")
    budget = None
    if budget_approval is not None and str(budget_approval).strip():
        budget = str(budget_approval).strip().upper()
        if budget not in rules.BUDGET_APPROVAL_CHOICES:
            raise ValidationError(
                f"Must be one of: {', '.join(rules.BUDGET_APPROVAL_CHOICES)}.",
                field="budget_approval",
            )

    check_version(record, expected_version)

    if record.status == rules.STATUS_DECLINED:
        raise InvalidStateError(
            f"Requisition {record.transaction_id} was declined and cannot change.",
            field="status",
        )
    status_field = rules.status_field_for_role(role)
    if getattr(record, status_field) != rules.PENDING:
        raise InvalidStateError(
            f"Requisition {record.transaction_id} was already decided by {role}.",
            field=status_field,
        )
    if require_hod_first and role == rules.ROLE_FINANCE and record.hod_status != rules.APPROVED:
        raise InvalidStateError(
            f"Requisition {record.transaction_id} needs HOD approval before Finance can decide.",
            field="hod_status",
        )

    if decision == rules.DECISION_APPROVE:
        new_status, action = rules.APPROVED, f"{role} Approved"
    else:
        new_status, action = rules.DECLINED, f"{role} Declined"

    changes: dict[str, object] = {status_field: new_status, "version": record.version + 1}
    if budget is not None and role == rules.ROLE_FINANCE and decision == rules.DECISION_APPROVE:
        changes["budget_approval"] = budget
    updated = record.with_changes(**changes)
    return ledger.append(updated, action, actor_name, role, comment_text)


def approve(record: Requisition, role: str, actor: str, comments: str, **kwargs) -> Requisition:
    return apply_decision(record, role, rules.DECISION_APPROVE, actor, comments, **kwargs)


def decline(record: Requisition, role: str, actor: str, comments: str, **kwargs) -> Requisition:
    return apply_decision(record, role, rules.DECISION_DECLINE, actor, comments, **kwargs)


def can_decide(
    user_role: str | None,
    user_department: str | None,
    record: Requisition,
    acting_role: str,
) -> bool:
    """Whether a signed-in user may record a decision as ``acting_role``."""
    if acting_role not in rules.decision_roles_for(user_role):
        return False
    if user_role == rules.USER_ROLE_HOD:
        return bool(user_department) and user_department == record.requested_by_department
    return True


def can_split(
    user_role: str | None,
    user_department: str | None,
    record: Requisition,
) -> bool:
    """Splitting is an approver action: HOD on their department, Finance and admins on any record."""
    if user_role in rules.FULL_ACCESS_ROLES:
        return True
    if user_role == rules.USER_ROLE_HOD:
        return bool(user_department) and user_department == record.requested_by_department
    return False
