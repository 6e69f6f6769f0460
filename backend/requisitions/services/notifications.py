"""
Outbound notifications for requisition state changes.

Views build a payload after a successful save and hand it to ``dispatch``,
which POSTs it to ``OVERSIGHT_NOTIFY_WEBHOOK_URL``. A failed delivery is
logged and reported as ``False``; it never undoes the saved change.
"""
from __future__ import annotations

import logging
from typing import Dict
from urllib.parse import urlparse

import requests
from django.conf import settings

from requisitions import rules
from requisitions.log_sanitizer import sanitize_for_log
from requisitions.services.records import Requisition

logger = logging.getLogger(__name__)

EVENT_NAME = "requisition.updated"

_SUBJECTS = {
    "Submitted": "Purchase requisition {txn} submitted",
    f"{rules.ROLE_HOD} Approved": "Purchase requisition {txn} approved by HOD",
    f"{rules.ROLE_HOD} Declined": "Purchase requisition {txn} declined by HOD",
    f"{rules.ROLE_FINANCE} Approved": "Purchase requisition {txn} approved by Finance",
    f"{rules.ROLE_FINANCE} Declined": "Purchase requisition {txn} declined by Finance",
    rules.ACTION_SPLIT_CREATED: "Purchase requisition {txn} created from a split",
    rules.ACTION_SPLIT_PROCESSED: "Purchase requisition {txn} was split",
}


def _safe_url(url: str) -> str:
    parsed = urlparse(url)
    safe = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
    if parsed.query:
        safe += "?[params_redacted]"
    return safe


def build_notification(record: Requisition, action: str, actor: str) -> Dict[str, object]:
    subject = _SUBJECTS.get(action, "Purchase requisition {txn} updated").format(
        txn=record.transaction_id
    )
    body = (
        f"{action} by {actor}. Total {record.total_amount} {record.currency}. "
        f"Current status: {record.status}."
    )
    return {
        "event": EVENT_NAME,
        "transaction_id": record.transaction_id,
        "action": action,
        "actor": actor,
        "status": record.status,
        "subject": subject,
        "body": body,
        "recipient_user_id": record.requested_by,
    }


def notifications_enabled() -> bool:
    return bool(getattr(settings, "OVERSIGHT_NOTIFY_WEBHOOK_URL", ""))


def dispatch(payload: Dict[str, object]) -> bool:
    url = getattr(settings, "OVERSIGHT_NOTIFY_WEBHOOK_URL", "")
    if not url:
        return False
    timeout = getattr(settings, "OVERSIGHT_NOTIFY_TIMEOUT_SECONDS", 5.0)
    try:
        response = requests.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning(
            "Notification delivery to %s failed for %s: %s",
            _safe_url(url),
            sanitize_for_log(payload.get("transaction_id")),
            sanitize_for_log(exc),
        )
        return False
    return True


def notify(record: Requisition, action: str, actor: str) -> bool:
    if not notifications_enabled():
        return False
    return dispatch(build_notification(record, action, actor))
