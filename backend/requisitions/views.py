import logging
import re
from decimal import Decimal
from typing import Any, Dict

from django.conf import settings
from django.http import HttpResponse
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from api.authentication import OversightAuthentication
from api.permissions import RequisitionPermission
from api.rbac import (
    PERM_PR_APPROVE_FINANCE,
    PERM_PR_APPROVE_HOD,
    PERM_PR_CREATE,
    PERM_PR_SPLIT,
    PERM_PR_VIEW,
    primary_role,
    resolve_roles_and_permissions,
)
from requisitions import rules, workflow_store as workflow_store_file, workflow_store_db
from requisitions.exceptions import (
    ConflictError,
    InvalidStateError,
    RecordNotFound,
    ValidationError,
    WorkflowError,
)
from requisitions.log_sanitizer import sanitize_for_log
from requisitions.services import export, notifications, queries, split as split_service
from requisitions.services import transitions
from requisitions.services.records import Requisition, build_requisition

logger = logging.getLogger("oversight.audit")

LIST_VIEWS = ("own", "hod_pending", "finance_pending", "all")

# Computed or identity-bound fields a client may echo back but never sets.
_SERVER_FIELDS = {
    "id",
    "transaction_id",
    "type",
    "status",
    "hod_status",
    "finance_status",
    "total_amount",
    "history",
    "is_split",
    "original_transaction_id",
    "split_reason",
    "budget_approval",
    "requested_by",
    "requested_by_department",
    "created_at",
    "updated_at",
    "version",
}


def _use_db_workflow_store() -> bool:
    return getattr(settings, "OVERSIGHT_WORKFLOW_STORE", "file") == "db"


class _WorkflowStoreProxy:
    def __getattr__(self, name: str):
        module = workflow_store_db if _use_db_workflow_store() else workflow_store_file
        return getattr(module, name)


workflow_store = _WorkflowStoreProxy()


def _workflow_disabled_response() -> Response:
    return Response(
        {"errors": {"workflow": "Workflow dev store is disabled."}},
        status=501,
    )


def _workflow_error_response(exc: WorkflowError) -> Response:
    if isinstance(exc, ValidationError):
        return Response({"errors": exc.as_errors()}, status=400)
    if isinstance(exc, RecordNotFound):
        return Response({"errors": exc.as_errors()}, status=404)
    if isinstance(exc, ConflictError):
        return Response(
            {
                "errors": exc.as_errors(),
                "code": exc.code,
                "expected_version": exc.expected_version,
                "actual_version": exc.actual_version,
            },
            status=409,
        )
    if isinstance(exc, InvalidStateError):
        return Response({"errors": exc.as_errors()}, status=409)
    return Response({"errors": exc.as_errors()}, status=400)


def _forbidden(field: str, message: str) -> Response:
    return Response({"errors": {field: message}}, status=403)


def _actor_id(request) -> str | None:
    return getattr(request.user, "user_id", None) or getattr(request.user, "username", None)


def _user_context(request) -> tuple[str | None, str | None, str | None]:
    roles, _ = resolve_roles_and_permissions(request, request.user)
    return (
        primary_role(roles),
        _actor_id(request),
        getattr(request.user, "department", None),
    )


def _parse_version(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, (bool, float)):
        raise ValidationError("Must be an integer.", field="version")
    if isinstance(value, str):
        stripped = value.strip()
        if not re.fullmatch(r"\d+", stripped):
            raise ValidationError("Must be an integer.", field="version")
        value = stripped
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Must be an integer.", field="version") from None
    if parsed <= 0:
        raise ValidationError("Must be a positive integer.", field="version")
    return parsed


def _request_body(request) -> Dict[str, Any]:
    data = request.data or {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.", field="body")
    return data


def _load_record(requisition_id: str) -> Requisition:
    record = workflow_store.get_record(requisition_id)
    if record is None:
        record = workflow_store.get_record_by_transaction_id(requisition_id)
    if record is None:
        raise RecordNotFound("Not found.", field="requisition_id")
    return record


def _can_view(record: Requisition, user_role: str | None, user_id: str | None, department: str | None) -> bool:
    if user_role in rules.FULL_ACCESS_ROLES:
        return True
    if user_id and record.requested_by == user_id:
        return True
    if user_role == rules.USER_ROLE_HOD:
        return bool(department) and record.requested_by_department == department
    return False


def _list_requisitions(request) -> Response:
    user_role, user_id, department = _user_context(request)
    params = request.query_params
    view_name = (params.get("view") or "").strip().lower()
    if view_name and view_name not in LIST_VIEWS:
        raise ValidationError(f"Must be one of: {', '.join(LIST_VIEWS)}.", field="view")

    records = workflow_store.list_records()
    if view_name == "own":
        selected = queries.own_records(records, user_id)
    elif view_name == "hod_pending":
        if rules.ROLE_HOD not in rules.decision_roles_for(user_role):
            return _forbidden("view", "Not authorized for HOD approvals.")
        scope = department
        if user_role != rules.USER_ROLE_HOD:
            scope = (params.get("department") or "").strip() or department
        if not scope:
            raise ValidationError("A department is required.", field="department")
        selected = queries.department_pending(records, scope)
    elif view_name == "finance_pending":
        if rules.ROLE_FINANCE not in rules.decision_roles_for(user_role):
            return _forbidden("view", "Not authorized for Finance approvals.")
        selected = queries.finance_pending(records)
    elif view_name == "all":
        if user_role not in rules.FULL_ACCESS_ROLES:
            return _forbidden("view", "Not authorized to list all requisitions.")
        selected = queries.all_records(records)
    else:
        selected = queries.visible_records(records, user_role, user_id, department)

    try:
        selected = queries.filter_records(
            selected,
            status=(params.get("status") or "").strip() or None,
            department=(params.get("department") or "").strip() or None,
            requested_by=(params.get("requested_by") or "").strip() or None,
            date_from=(params.get("date_from") or "").strip() or None,
            date_to=(params.get("date_to") or "").strip() or None,
        )
    except ValueError:
        raise ValidationError("Dates must use YYYY-MM-DD.", field="date") from None

    limit = getattr(settings, "OVERSIGHT_LIST_PAGE_LIMIT", None)
    total = len(selected)
    if limit:
        selected = selected[:limit]
    return Response(
        {
            "requisitions": [record.to_dict() for record in selected],
            "count": total,
        }
    )


def _submit_requisition(request) -> Response:
    data = _request_body(request)
    user_role, user_id, department = _user_context(request)
    details = {
        key: value
        for key, value in data.items()
        if key not in _SERVER_FIELDS and key not in {"items", "urgency_level", "currency"}
    }
    details.setdefault("requested_by_name", getattr(request.user, "display_name", None) or user_id)
    details.setdefault("requested_by_role", user_role)
    record = build_requisition(
        data.get("items"),
        requested_by=user_id,
        requested_by_department=department or data.get("department"),
        currency=data.get("currency") or settings.OVERSIGHT_DEFAULT_CURRENCY,
        urgency_level=data.get("urgency_level"),
        **details,
    )
    workflow_store.create_record(record)

    logger.info(
        "requisition_submitted",
        extra={
            "event_type": "STATE_CHANGE",
            "user_id": user_id,
            "username": getattr(request.user, "username", None),
            "requisition_id": record.id,
            "transaction_id": record.transaction_id,
            "to_status": record.status,
            "item_count": len(record.items),
            "total_amount": str(record.total_amount),
        },
    )
    notifications.notify(record, "Submitted", user_id)
    return Response(record.to_dict(), status=201)


@api_view(["GET", "POST"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_collection(request):
    """
    GET lists requisitions the caller may see. Query params:
        view - own | hod_pending | finance_pending | all
        status, department, requested_by, date_from, date_to - extra filters
    POST submits a new requisition for the caller.
    """
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    try:
        if request.method == "POST":
            return _submit_requisition(request)
        return _list_requisitions(request)
    except WorkflowError as exc:
        return _workflow_error_response(exc)


@api_view(["GET"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_analytics(request):
    """
    Dashboard figures over the requisitions the caller may see.
    Query params: date_from, date_to (YYYY-MM-DD), department.
    """
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    user_role, user_id, department = _user_context(request)
    params = request.query_params
    try:
        records = queries.visible_records(
            workflow_store.list_records(), user_role, user_id, department
        )
        try:
            records = queries.filter_records(
                records,
                department=(params.get("department") or "").strip() or None,
                date_from=(params.get("date_from") or "").strip() or None,
                date_to=(params.get("date_to") or "").strip() or None,
            )
        except ValueError:
            raise ValidationError("Dates must use YYYY-MM-DD.", field="date") from None
    except WorkflowError as exc:
        return _workflow_error_response(exc)

    return Response(queries.summarize(records))


@api_view(["GET"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_get(request, requisition_id: str):
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    try:
        record = _load_record(requisition_id)
    except WorkflowError as exc:
        return _workflow_error_response(exc)

    user_role, user_id, department = _user_context(request)
    if not _can_view(record, user_role, user_id, department):
        return _forbidden("requisition_id", "Not authorized to view this requisition.")

    logger.info(
        "requisition_get",
        extra={
            "event_type": "READ",
            "user_id": user_id,
            "username": getattr(request.user, "username", None),
            "transaction_id": record.transaction_id,
        },
    )
    return Response(record.to_dict())


@api_view(["POST"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_decision(request, requisition_id: str):
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    try:
        data = _request_body(request)
        role = str(data.get("role") or "").strip()
        decision = str(data.get("decision") or "").strip().lower()
        if role not in rules.DECISION_ROLES:
            raise ValidationError(
                f"Must be one of: {', '.join(rules.DECISION_ROLES)}.", field="role"
            )
        expected_version = _parse_version(data.get("version"))
        record = _load_record(requisition_id)

        user_role, user_id, department = _user_context(request)
        if not transitions.can_decide(user_role, department, record, role):
            return _forbidden("role", f"Not authorized to decide as {role}.")

        budget_approval = data.get("budget_approval")
        if (
            settings.OVERSIGHT_REQUIRE_BUDGET_CONFIRMATION
            and role == rules.ROLE_FINANCE
            and decision == rules.DECISION_APPROVE
            and not str(budget_approval or "").strip()
        ):
            raise ValidationError(
                "Budget confirmation is required for Finance approval.",
                field="budget_approval",
            )

        updated = transitions.apply_decision(
            record,
            role,
            decision,
            user_id,
            data.get("comments"),
            expected_version=expected_version,
            budget_approval=budget_approval,
            require_hod_first=settings.OVERSIGHT_FINANCE_REQUIRES_HOD_APPROVAL,
        )
        workflow_store.save(updated, record.version)
    except WorkflowError as exc:
        return _workflow_error_response(exc)

    action = updated.history[-1].action
    logger.info(
        "requisition_decision",
        extra={
            "event_type": "STATE_CHANGE",
            "user_id": user_id,
            "username": getattr(request.user, "username", None),
            "transaction_id": updated.transaction_id,
            "action": action,
            "from_status": record.status,
            "to_status": updated.status,
            "version": updated.version,
            "comment": sanitize_for_log(data.get("comments")),
        },
    )
    notifications.notify(updated, action, user_id)
    return Response(updated.to_dict())


def _split_response(request, record: Requisition, result, mode: str) -> Response:
    user_id = _actor_id(request)
    logger.info(
        "requisition_split",
        extra={
            "event_type": "STATE_CHANGE",
            "user_id": user_id,
            "username": getattr(request.user, "username", None),
            "transaction_id": record.transaction_id,
            "split_mode": mode,
            "child_transaction_ids": [child.transaction_id for child in result.children],
            "remaining_amount": str(result.updated_parent.total_amount),
            "reason": sanitize_for_log(result.updated_parent.split_reason),
        },
    )
    notifications.notify(result.updated_parent, rules.ACTION_SPLIT_PROCESSED, user_id)
    for child in result.children:
        notifications.notify(child, rules.ACTION_SPLIT_CREATED, user_id)
    return Response(
        {
            "parent": result.updated_parent.to_dict(),
            "children": [child.to_dict() for child in result.children],
        },
        status=201,
    )


def _authorize_split(request, record: Requisition) -> Response | None:
    user_role, _, department = _user_context(request)
    if not transitions.can_split(user_role, department, record):
        return _forbidden("requisition_id", "Not authorized to split this requisition.")
    return None


@api_view(["POST"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_split(request, requisition_id: str):
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    try:
        data = _request_body(request)
        raw_splits = data.get("splits")
        if not isinstance(raw_splits, list):
            raise ValidationError("Must be an array of splits.", field="splits")
        child_specs = [
            split_service.ChildSpec.from_payload(raw, index)
            for index, raw in enumerate(raw_splits)
        ]
        expected_version = _parse_version(data.get("version"))
        record = _load_record(requisition_id)
        denied = _authorize_split(request, record)
        if denied is not None:
            return denied

        user_role, user_id, _ = _user_context(request)
        result = split_service.split(
            record,
            child_specs,
            data.get("reason"),
            user_id,
            role=user_role,
            expected_version=expected_version,
        )
        workflow_store.save_split(result.updated_parent, result.children, record.version)
    except WorkflowError as exc:
        return _workflow_error_response(exc)

    return _split_response(request, record, result, "amount")


@api_view(["POST"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_split_items(request, requisition_id: str):
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    try:
        data = _request_body(request)
        expected_version = _parse_version(data.get("version"))
        record = _load_record(requisition_id)
        denied = _authorize_split(request, record)
        if denied is not None:
            return denied

        user_role, user_id, _ = _user_context(request)
        result = split_service.split_by_items(
            record,
            data.get("selected_indices"),
            user_id,
            reason=data.get("reason"),
            role=user_role,
            expected_version=expected_version,
        )
        workflow_store.save_split(result.updated_parent, result.children, record.version)
    except WorkflowError as exc:
        return _workflow_error_response(exc)

    return _split_response(request, record, result, "items")


@api_view(["GET"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_auto_split(request, requisition_id: str):
    """Suggested split amounts; nothing is saved."""
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    try:
        record = _load_record(requisition_id)
        denied = _authorize_split(request, record)
        if denied is not None:
            return denied
        transitions.ensure_not_terminal(record, "splitting")
    except WorkflowError as exc:
        return _workflow_error_response(exc)

    specs, reason = split_service.suggest_auto_split(record)
    split_total = sum((spec.items[0].total_price for spec in specs), Decimal("0"))
    return Response(
        {
            "transaction_id": record.transaction_id,
            "version": record.version,
            "reason": reason,
            "splits": [
                {
                    "total_amount": str(spec.items[0].total_price),
                    "items": [item.to_dict() for item in spec.items],
                }
                for spec in specs
            ],
            "remaining_amount": str(record.total_amount - split_total),
        }
    )


def _viewable_record(request, requisition_id: str) -> Requisition | Response:
    try:
        record = _load_record(requisition_id)
    except WorkflowError as exc:
        return _workflow_error_response(exc)
    user_role, user_id, department = _user_context(request)
    if not _can_view(record, user_role, user_id, department):
        return _forbidden("requisition_id", "Not authorized to view this requisition.")
    return record


@api_view(["GET"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_history(request, requisition_id: str):
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    record = _viewable_record(request, requisition_id)
    if isinstance(record, Response):
        return record
    return Response(
        {
            "transaction_id": record.transaction_id,
            "status": record.status,
            "history": [entry.to_dict() for entry in record.history],
        }
    )


@api_view(["GET"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_splits(request, requisition_id: str):
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    record = _viewable_record(request, requisition_id)
    if isinstance(record, Response):
        return record
    try:
        children = queries.split_family(workflow_store.list_records(), record.transaction_id)
    except WorkflowError as exc:
        return _workflow_error_response(exc)
    return Response(
        {
            "transaction_id": record.transaction_id,
            "original_transaction_id": record.original_transaction_id,
            "children": [child.to_dict() for child in children],
        }
    )


@api_view(["GET"])
@authentication_classes([OversightAuthentication])
@permission_classes([RequisitionPermission])
def requisition_export_csv(request, requisition_id: str):
    try:
        workflow_store.store_enabled_or_raise()
    except RuntimeError:
        return _workflow_disabled_response()

    record = _viewable_record(request, requisition_id)
    if isinstance(record, Response):
        return record
    response = HttpResponse(export.render_csv(record), content_type="text/csv; charset=utf-8")
    response["Content-Disposition"] = f'attachment; filename="{record.transaction_id}.csv"'
    return response


requisition_collection.required_permission = {"GET": PERM_PR_VIEW, "POST": PERM_PR_CREATE}
requisition_analytics.required_permission = PERM_PR_VIEW
requisition_get.required_permission = PERM_PR_VIEW
requisition_decision.required_permission = [PERM_PR_APPROVE_HOD, PERM_PR_APPROVE_FINANCE]
requisition_split.required_permission = PERM_PR_SPLIT
requisition_split_items.required_permission = PERM_PR_SPLIT
requisition_auto_split.required_permission = PERM_PR_SPLIT
requisition_history.required_permission = PERM_PR_VIEW
requisition_splits.required_permission = PERM_PR_VIEW
requisition_export_csv.required_permission = PERM_PR_VIEW

for view_func in (
    requisition_collection,
    requisition_analytics,
    requisition_get,
    requisition_decision,
    requisition_split,
    requisition_split_items,
    requisition_auto_split,
    requisition_history,
    requisition_splits,
    requisition_export_csv,
):
    if hasattr(view_func, "cls"):
        view_func.cls.required_permission = view_func.required_permission
