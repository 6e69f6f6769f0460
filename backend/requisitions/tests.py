import json
import os
import shutil
import tempfile
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient

from requisitions import rules, workflow_store, workflow_store_db
from requisitions.exceptions import ConflictError, InvalidStateError, ValidationError
from requisitions.models import PurchaseRequisition
from requisitions.services import export, ledger, notifications, queries, transitions
from requisitions.services import split as split_service
from requisitions.services.records import (
    LineItem,
    build_requisition,
    generate_transaction_id,
    parse_money,
    requisition_from_dict,
    validate_transaction_id,
)


def _office_items() -> list:
    return [
        {"description": "Laptop", "quantity": 2, "unit_price": "100", "vat_classification": "VAT_APPLICABLE"},
        {"description": "Courier fee", "quantity": 1, "unit_price": "50", "vat_classification": "NO_VAT"},
    ]


def _thousand(description: str = "Office chairs", requested_by: str = "emp-1", department: str = "IT"):
    return build_requisition(
        [{"description": description, "quantity": 1, "unit_price": "1000", "vat_classification": "NO_VAT"}],
        requested_by,
        department,
    )


def _hod_approved(record):
    return transitions.approve(record, rules.ROLE_HOD, "hod-1", "Within budget")


class RulesTests(SimpleTestCase):
    def test_derive_status_table(self) -> None:
        P, A, D = rules.PENDING, rules.APPROVED, rules.DECLINED
        self.assertEqual(rules.derive_status(P, P), rules.STATUS_PENDING_HOD)
        self.assertEqual(rules.derive_status(P, A), rules.STATUS_PENDING_HOD)
        self.assertEqual(rules.derive_status(A, P), rules.STATUS_PENDING_FINANCE)
        self.assertEqual(rules.derive_status(A, A), rules.STATUS_APPROVED)
        for pair in ((D, P), (D, A), (D, D), (P, D), (A, D)):
            self.assertEqual(rules.derive_status(*pair), rules.STATUS_DECLINED)

    def test_derive_status_rejects_unknown_value(self) -> None:
        with self.assertRaises(ValueError):
            rules.derive_status("Maybe", rules.PENDING)

    def test_vat_rate_from_environment(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(rules.get_vat_rate(), Decimal("0.15"))
        with patch.dict(os.environ, {"OVERSIGHT_VAT_RATE": "0.2"}):
            self.assertEqual(rules.vat_multiplier(rules.VAT_APPLICABLE), Decimal("1.2"))
            self.assertEqual(rules.vat_multiplier(rules.NO_VAT), Decimal("1"))

    def test_decision_roles_by_user_role(self) -> None:
        self.assertEqual(rules.decision_roles_for("HOD"), frozenset({rules.ROLE_HOD}))
        self.assertEqual(
            rules.decision_roles_for("Admin"),
            frozenset({rules.ROLE_HOD, rules.ROLE_FINANCE}),
        )
        self.assertEqual(rules.decision_roles_for("Employee"), frozenset())
        self.assertEqual(rules.decision_roles_for(None), frozenset())


class RecordModelTests(SimpleTestCase):
    def test_item_totals_apply_vat(self) -> None:
        record = build_requisition(_office_items(), "emp-1", "IT")

        self.assertEqual(record.items[0].total_price, Decimal("230.00"))
        self.assertEqual(record.items[1].total_price, Decimal("50.00"))
        self.assertEqual(record.total_amount, Decimal("280.00"))
        self.assertEqual(record.status, rules.STATUS_PENDING_HOD)
        self.assertEqual(record.hod_status, rules.PENDING)
        self.assertEqual(record.finance_status, rules.PENDING)
        self.assertEqual(record.history, ())
        self.assertEqual(record.version, 1)
        self.assertFalse(record.is_split)

    def test_money_rounds_half_up(self) -> None:
        item = LineItem.build("Cable", 1, "10.005", "NO_VAT")

        self.assertEqual(item.total_price, Decimal("10.01"))

    def test_float_prices_keep_their_decimal_text(self) -> None:
        self.assertEqual(parse_money(0.1, "unit_price"), Decimal("0.1"))

    def test_rejects_invalid_items(self) -> None:
        cases = [
            ({"description": "Pen", "quantity": 0, "unit_price": "1"}, "items[0].quantity"),
            ({"description": "Pen", "quantity": 1.5, "unit_price": "1"}, "items[0].quantity"),
            ({"description": "Pen", "quantity": 1, "unit_price": "-1"}, "items[0].unit_price"),
            ({"description": "Pen", "quantity": 1, "unit_price": "abc"}, "items[0].unit_price"),
            ({"description": " ", "quantity": 1, "unit_price": "1"}, "items[0].description"),
            (
                {"description": "Pen", "quantity": 1, "unit_price": "1", "vat_classification": "ZERO"},
                "items[0].vat_classification",
            ),
        ]
        for raw, field in cases:
            with self.subTest(field=field, raw=raw):
                with self.assertRaises(ValidationError) as ctx:
                    build_requisition([raw], "emp-1", "IT")
                self.assertEqual(ctx.exception.field, field)

    def test_rejects_empty_items_and_unknown_fields(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            build_requisition([], "emp-1", "IT")
        self.assertEqual(ctx.exception.field, "items")

        with self.assertRaises(ValidationError) as ctx:
            build_requisition(_office_items(), "emp-1", "IT", colour="blue")
        self.assertEqual(ctx.exception.field, "colour")

    def test_rejects_amounts_beyond_the_money_column(self) -> None:
        cases = [
            ({"description": "Big", "quantity": 2, "unit_price": "1e30"}, "items[0].unit_price"),
            (
                {"description": "Big", "quantity": 10**40, "unit_price": "1", "vat_classification": "NO_VAT"},
                "items[0].total_price",
            ),
            (
                {"description": "Big", "quantity": 1, "unit_price": "999999999999.99"},
                "items[0].total_price",
            ),
        ]
        for raw, field in cases:
            with self.subTest(field=field):
                with self.assertRaises(ValidationError) as ctx:
                    build_requisition([raw], "emp-1", "IT")
                self.assertEqual(ctx.exception.field, field)

        half = {"description": "Half", "quantity": 1, "unit_price": "600000000000", "vat_classification": "NO_VAT"}
        with self.assertRaises(ValidationError) as ctx:
            build_requisition([half, dict(half)], "emp-1", "IT")
        self.assertEqual(ctx.exception.field, "items")

    def test_largest_amount_is_accepted(self) -> None:
        record = build_requisition(
            [{"description": "Plant", "quantity": 1, "unit_price": "999999999999.99", "vat_classification": "NO_VAT"}],
            "emp-1",
            "IT",
        )

        self.assertEqual(record.total_amount, rules.MAX_MONEY)

    def test_accepts_camel_case_item_keys(self) -> None:
        record = build_requisition(
            [{"description": "Desk", "quantity": "3", "unitPrice": 20, "vatClassification": "NO_VAT"}],
            "emp-1",
            "IT",
        )

        self.assertEqual(record.total_amount, Decimal("60.00"))

    def test_transaction_id_format(self) -> None:
        transaction_id = generate_transaction_id()

        self.assertTrue(validate_transaction_id(transaction_id))
        self.assertTrue(transaction_id.startswith("PR-"))
        self.assertFalse(validate_transaction_id("PR-1"))
        self.assertNotEqual(transaction_id, generate_transaction_id())

    def test_loading_rederives_status_and_total(self) -> None:
        record = build_requisition(_office_items(), "emp-1", "IT")
        stored = record.to_dict()
        stored["status"] = rules.STATUS_SPLIT
        stored["total_amount"] = "999.99"

        loaded = requisition_from_dict(stored)

        self.assertEqual(loaded.status, rules.STATUS_PENDING_HOD)
        self.assertEqual(loaded.total_amount, Decimal("280.00"))
        self.assertEqual(loaded.transaction_id, record.transaction_id)

    def test_with_changes_keeps_status_derived(self) -> None:
        record = build_requisition(_office_items(), "emp-1", "IT")

        updated = record.with_changes(hod_status=rules.APPROVED, status=rules.STATUS_APPROVED)

        self.assertEqual(updated.status, rules.STATUS_PENDING_FINANCE)
        self.assertEqual(record.status, rules.STATUS_PENDING_HOD)


class LedgerTests(SimpleTestCase):
    @patch("requisitions.services.ledger.utc_now")
    def test_append_keeps_timestamps_ordered(self, mock_now) -> None:
        record = build_requisition(_office_items(), "emp-1", "IT")
        later = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        earlier = later - timedelta(hours=2)
        mock_now.side_effect = [later, earlier]

        record = ledger.append(record, "HOD Approved", "hod-1", "HOD", "ok")
        record = ledger.append(record, "Finance Approved", "fin-1", "Finance", "ok")

        self.assertEqual(len(record.history), 2)
        self.assertEqual(record.history[1].timestamp, later)
        self.assertEqual(record.updated_at, later)
        self.assertEqual(ledger.last_action(record).action, "Finance Approved")

    def test_seed_requires_empty_history(self) -> None:
        record = ledger.append(_thousand(), "HOD Approved", "hod-1", "HOD")

        with self.assertRaises(ValueError):
            ledger.seed(record, rules.ACTION_SPLIT_CREATED, "emp-1", None)


class TransitionTests(SimpleTestCase):
    def test_happy_path_to_approved(self) -> None:
        record = build_requisition(_office_items(), "emp-1", "IT")

        record = transitions.approve(record, rules.ROLE_HOD, "hod-1", "Needed for onboarding")
        self.assertEqual(record.status, rules.STATUS_PENDING_FINANCE)
        self.assertEqual(len(record.history), 1)
        self.assertEqual(record.history[0].action, "HOD Approved")

        record = transitions.approve(
            record, rules.ROLE_FINANCE, "fin-1", "Budget available", budget_approval="budget_confirmed"
        )
        self.assertEqual(record.status, rules.STATUS_APPROVED)
        self.assertEqual(len(record.history), 2)
        self.assertEqual(record.history[1].action, "Finance Approved")
        self.assertEqual(record.budget_approval, "BUDGET_CONFIRMED")
        self.assertEqual(record.version, 3)

    def test_declined_is_terminal(self) -> None:
        record = transitions.decline(_thousand(), rules.ROLE_HOD, "hod-1", "Not a priority")
        self.assertEqual(record.status, rules.STATUS_DECLINED)

        with self.assertRaises(InvalidStateError):
            transitions.approve(record, rules.ROLE_FINANCE, "fin-1", "Overrule")
        self.assertEqual(len(record.history), 1)

    def test_finance_decline_after_hod_approval(self) -> None:
        record = transitions.decline(
            _hod_approved(_thousand()), rules.ROLE_FINANCE, "fin-1", "No budget"
        )

        self.assertEqual(record.status, rules.STATUS_DECLINED)
        self.assertEqual([entry.action for entry in record.history], ["HOD Approved", "Finance Declined"])
        with self.assertRaises(InvalidStateError):
            transitions.approve(record, rules.ROLE_FINANCE, "fin-1", "Changed my mind")

    def test_repeat_decision_is_rejected(self) -> None:
        record = _hod_approved(_thousand())

        with self.assertRaises(InvalidStateError) as ctx:
            transitions.approve(record, rules.ROLE_HOD, "hod-2", "Again")
        self.assertIn("already decided by HOD", str(ctx.exception))

    def test_comments_are_required(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            transitions.approve(_thousand(), rules.ROLE_HOD, "hod-1", "   ")
        self.assertEqual(ctx.exception.field, "comments")

    def test_invalid_role_and_decision(self) -> None:
        with self.assertRaises(ValidationError):
            transitions.apply_decision(_thousand(), "CEO", "approve", "x", "ok")
        with self.assertRaises(ValidationError):
            transitions.apply_decision(_thousand(), rules.ROLE_HOD, "maybe", "x", "ok")

    def test_stale_version_conflicts(self) -> None:
        record = _hod_approved(_thousand())

        with self.assertRaises(ConflictError) as ctx:
            transitions.approve(record, rules.ROLE_FINANCE, "fin-1", "ok", expected_version=1)
        self.assertEqual(ctx.exception.expected_version, 1)
        self.assertEqual(ctx.exception.actual_version, 2)
        self.assertEqual(ctx.exception.code, "conflict")

    def test_finance_first_is_permissive_by_default(self) -> None:
        record = transitions.approve(_thousand(), rules.ROLE_FINANCE, "fin-1", "Pre-approved")

        self.assertEqual(record.finance_status, rules.APPROVED)
        self.assertEqual(record.status, rules.STATUS_PENDING_HOD)

    def test_finance_first_rejected_in_strict_mode(self) -> None:
        with self.assertRaises(InvalidStateError):
            transitions.approve(
                _thousand(), rules.ROLE_FINANCE, "fin-1", "Pre-approved", require_hod_first=True
            )

    def test_rejects_unknown_budget_choice(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            transitions.approve(
                _hod_approved(_thousand()), rules.ROLE_FINANCE, "fin-1", "ok", budget_approval="MAYBE"
            )
        self.assertEqual(ctx.exception.field, "budget_approval")

    def test_role_authorization(self) -> None:
        record = _thousand(department="IT")

        self.assertTrue(transitions.can_decide("HOD", "IT", record, rules.ROLE_HOD))
        self.assertFalse(transitions.can_decide("HOD", "Sales", record, rules.ROLE_HOD))
        self.assertFalse(transitions.can_decide("HOD", "IT", record, rules.ROLE_FINANCE))
        self.assertTrue(transitions.can_decide("Finance", None, record, rules.ROLE_FINANCE))
        self.assertTrue(transitions.can_decide("Admin", None, record, rules.ROLE_HOD))
        self.assertFalse(transitions.can_decide("Employee", "IT", record, rules.ROLE_HOD))

        self.assertFalse(transitions.can_split("Employee", "IT", record))
        self.assertTrue(transitions.can_split("HOD", "IT", record))
        self.assertFalse(transitions.can_split("HOD", "Sales", record))
        self.assertTrue(transitions.can_split("Finance", None, record))
        self.assertTrue(transitions.can_split("Admin", None, record))


class SplitTests(SimpleTestCase):
    def test_split_by_amount_conserves_total(self) -> None:
        parent = _thousand()
        specs = [
            split_service.ChildSpec(total_amount=Decimal("300")),
            split_service.ChildSpec(total_amount=Decimal("200")),
        ]

        result = split_service.split(parent, specs, "Different suppliers", "emp-1", role="Employee")

        children = result.children
        updated = result.updated_parent
        self.assertEqual([child.total_amount for child in children], [Decimal("300.00"), Decimal("200.00")])
        self.assertEqual(updated.total_amount, Decimal("500.00"))
        self.assertEqual(
            updated.total_amount + sum(child.total_amount for child in children),
            parent.total_amount,
        )
        self.assertTrue(updated.is_split)
        self.assertEqual(updated.version, 2)
        self.assertEqual(updated.history[-1].action, rules.ACTION_SPLIT_PROCESSED)
        self.assertEqual(updated.items[0].vat_classification, rules.NO_VAT)
        self.assertIn(parent.transaction_id, updated.items[0].description)
        self.assertEqual(updated.status, parent.status)
        for child in children:
            self.assertTrue(child.is_split)
            self.assertEqual(child.original_transaction_id, parent.transaction_id)
            self.assertEqual(child.status, rules.STATUS_PENDING_HOD)
            self.assertEqual(child.version, 1)
            self.assertEqual(len(child.history), 1)
            self.assertEqual(child.history[0].action, rules.ACTION_SPLIT_CREATED)
            self.assertEqual(child.history[0].comments, "Different suppliers")
            self.assertEqual(child.requested_by, parent.requested_by)
            self.assertEqual(child.requested_by_department, parent.requested_by_department)
            self.assertNotEqual(child.transaction_id, parent.transaction_id)

    def test_split_must_leave_a_remainder(self) -> None:
        parent = _thousand()
        specs = [
            split_service.ChildSpec(total_amount=Decimal("600")),
            split_service.ChildSpec(total_amount=Decimal("400")),
        ]

        with self.assertRaises(ValidationError) as ctx:
            split_service.split(parent, specs, "Too much", "emp-1")
        self.assertEqual(ctx.exception.field, "splits")

    def test_split_rejects_bad_input(self) -> None:
        parent = _thousand()
        with self.assertRaises(ValidationError):
            split_service.split(parent, [], "reason", "emp-1")
        with self.assertRaises(ValidationError):
            split_service.split(parent, [split_service.ChildSpec(total_amount=Decimal("10"))], " ", "emp-1")
        with self.assertRaises(ValidationError):
            split_service.split(parent, [split_service.ChildSpec(total_amount=Decimal("0"))], "r", "emp-1")
        with self.assertRaises(ValidationError):
            split_service.split(parent, [split_service.ChildSpec()], "r", "emp-1")
        with self.assertRaises(ValidationError) as ctx:
            split_service.split(
                parent, [split_service.ChildSpec(total_amount=Decimal("1e30"))], "r", "emp-1"
            )
        self.assertEqual(ctx.exception.field, "splits[0].total_amount")
        with self.assertRaises(ValidationError) as ctx:
            split_service.ChildSpec.from_payload({"total_amount": "1e30"}, 1)
        self.assertEqual(ctx.exception.field, "splits[1].total_amount")

    def test_split_rejects_terminal_and_stale_records(self) -> None:
        declined = transitions.decline(_thousand(), rules.ROLE_HOD, "hod-1", "No")
        spec = [split_service.ChildSpec(total_amount=Decimal("100"))]

        with self.assertRaises(InvalidStateError):
            split_service.split(declined, spec, "reason", "emp-1")
        with self.assertRaises(ConflictError):
            split_service.split(_thousand(), spec, "reason", "emp-1", expected_version=5)

    def test_split_with_child_items(self) -> None:
        item = LineItem.build("Desk", 2, "100", "VAT_APPLICABLE")
        spec = split_service.ChildSpec(items=(item,))

        result = split_service.split(_thousand(), [spec], "Furniture supplier", "emp-1")

        self.assertEqual(result.children[0].total_amount, Decimal("230.00"))
        self.assertEqual(result.updated_parent.total_amount, Decimal("770.00"))

    def test_child_spec_total_must_match_items(self) -> None:
        item = LineItem.build("Desk", 1, "100", "NO_VAT")
        spec = split_service.ChildSpec(total_amount=Decimal("90"), items=(item,))

        with self.assertRaises(ValidationError):
            split_service.split(_thousand(), [spec], "reason", "emp-1")

    def test_child_spec_from_payload(self) -> None:
        spec = split_service.ChildSpec.from_payload({"totalAmount": "125.50"}, 0)
        self.assertEqual(spec.total_amount, Decimal("125.50"))

        with self.assertRaises(ValidationError) as ctx:
            split_service.ChildSpec.from_payload({"total_amount": "-3"}, 2)
        self.assertEqual(ctx.exception.field, "splits[2].total_amount")

    def test_split_by_items_keeps_items_verbatim(self) -> None:
        parent = build_requisition(_office_items(), "emp-1", "IT")

        result = split_service.split_by_items(parent, [0], "emp-1")

        self.assertEqual(len(result.children), 1)
        self.assertEqual(result.children[0].items, (parent.items[0],))
        self.assertEqual(result.children[0].total_amount, Decimal("230.00"))
        self.assertEqual(result.updated_parent.items, (parent.items[1],))
        self.assertEqual(result.updated_parent.total_amount, Decimal("50.00"))
        self.assertEqual(result.children[0].history[0].comments, 'Split from original PR: Item "Laptop"')

    def test_split_by_items_rejects_bad_selection(self) -> None:
        parent = build_requisition(_office_items(), "emp-1", "IT")
        for selection in ([], [0, 1], [5], [0, 0], ["0"], [True]):
            with self.subTest(selection=selection):
                with self.assertRaises(ValidationError):
                    split_service.split_by_items(parent, selection, "emp-1")

    def test_auto_split_uses_description_parts(self) -> None:
        parent = _thousand("Office chairs and desks")

        specs, reason = split_service.suggest_auto_split(parent)

        self.assertEqual(len(specs), 2)
        self.assertEqual([spec.items[0].total_price for spec in specs], [Decimal("400.00"), Decimal("400.00")])
        self.assertEqual([spec.items[0].description for spec in specs], ["Office chairs", "desks"])
        self.assertIn("2 items", reason)
        result = split_service.split(parent, specs, reason, "emp-1")
        self.assertEqual(result.updated_parent.total_amount, Decimal("200.00"))

    def test_auto_split_default_shares(self) -> None:
        specs, _ = split_service.suggest_auto_split(_thousand("Printer toner"))

        self.assertEqual([spec.items[0].total_price for spec in specs], [Decimal("350.00"), Decimal("350.00")])
        self.assertEqual(specs[0].items[0].description, "Printer toner (Split 1)")

    def test_auto_split_separator_is_case_insensitive(self) -> None:
        specs, _ = split_service.suggest_auto_split(_thousand("Paper PLUS ink"))

        self.assertEqual([spec.items[0].description for spec in specs], ["Paper", "ink"])


class QueryTests(SimpleTestCase):
    def setUp(self) -> None:
        base = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)
        self.emp_it = _thousand(requested_by="emp-1", department="IT").with_changes(created_at=base)
        self.emp_sales = _thousand(requested_by="emp-2", department="Sales").with_changes(
            created_at=base + timedelta(days=1)
        )
        self.declined = transitions.decline(
            _thousand(requested_by="emp-1", department="IT"), rules.ROLE_HOD, "hod-1", "No"
        ).with_changes(created_at=base + timedelta(days=2))
        self.approved_hod = _hod_approved(_thousand(requested_by="emp-3", department="IT")).with_changes(
            created_at=base + timedelta(days=3)
        )
        self.records = [self.emp_it, self.emp_sales, self.declined, self.approved_hod]

    def test_own_records_newest_first(self) -> None:
        own = queries.own_records(self.records, "emp-1")

        self.assertEqual(own, [self.declined, self.emp_it])
        self.assertEqual(len(self.records), 4)

    def test_department_pending(self) -> None:
        self.assertEqual(queries.department_pending(self.records, "IT"), [self.emp_it])
        self.assertEqual(queries.department_pending(self.records, "Sales"), [self.emp_sales])

    def test_finance_pending_excludes_declined(self) -> None:
        pending = queries.finance_pending(self.records)

        self.assertNotIn(self.declined, pending)
        self.assertEqual(pending, [self.approved_hod, self.emp_sales, self.emp_it])

    def test_visible_records_by_role(self) -> None:
        self.assertEqual(len(queries.visible_records(self.records, "Finance", "fin-1", None)), 4)
        self.assertEqual(
            queries.visible_records(self.records, "HOD", "hod-1", "IT"),
            [self.approved_hod, self.declined, self.emp_it],
        )
        self.assertEqual(queries.visible_records(self.records, "Employee", "emp-2", "Sales"), [self.emp_sales])
        self.assertEqual(queries.visible_records(self.records, "Visitor", "x", "IT"), [])

    def test_filter_records(self) -> None:
        self.assertEqual(
            queries.filter_records(self.records, status=rules.STATUS_DECLINED),
            [self.declined],
        )
        self.assertEqual(
            queries.filter_records(self.records, date_from="2026-01-11", date_to="2026-01-12"),
            [self.declined, self.emp_sales],
        )
        with self.assertRaises(ValueError):
            queries.filter_records(self.records, date_from="yesterday")

    def test_split_family(self) -> None:
        result = split_service.split(
            self.emp_it, [split_service.ChildSpec(total_amount=Decimal("100"))], "Split", "emp-1"
        )
        everything = self.records + list(result.children)

        family = queries.split_family(everything, self.emp_it.transaction_id)

        self.assertEqual(family, list(result.children))

    def test_summarize(self) -> None:
        completed = transitions.approve(self.approved_hod, rules.ROLE_FINANCE, "fin-1", "Paid").with_changes(
            updated_at=self.approved_hod.created_at + timedelta(days=3)
        )
        records = [self.emp_it, self.emp_sales, self.declined, completed]

        summary = queries.summarize(records, today=date(2026, 2, 15))

        self.assertEqual(
            summary["overview"], {"total": 4, "total_value": "4000.00", "average_value": "1000.00"}
        )
        self.assertEqual(
            summary["status_breakdown"],
            {rules.STATUS_PENDING_HOD: 2, rules.STATUS_DECLINED: 1, rules.STATUS_APPROVED: 1},
        )
        self.assertEqual(
            summary["hod_status_breakdown"], {rules.PENDING: 2, rules.DECLINED: 1, rules.APPROVED: 1}
        )
        self.assertEqual(summary["finance_status_breakdown"], {rules.PENDING: 3, rules.APPROVED: 1})
        self.assertEqual(summary["department_breakdown"], {"IT": 3, "Sales": 1})
        self.assertEqual(summary["urgency_breakdown"], {"NORMAL": 4})
        trends = summary["monthly_trends"]
        self.assertEqual(len(trends), 12)
        self.assertEqual(trends[0]["month"], "2025-03")
        self.assertEqual(trends[-2], {"month": "2026-01", "count": 4, "value": "4000.00"})
        self.assertEqual(trends[-1], {"month": "2026-02", "count": 0, "value": "0.00"})
        self.assertEqual(summary["avg_processing_days"], 3.0)

    def test_summarize_empty(self) -> None:
        summary = queries.summarize([], today=date(2026, 2, 15))

        self.assertEqual(summary["overview"], {"total": 0, "total_value": "0.00", "average_value": "0.00"})
        self.assertEqual(summary["status_breakdown"], {})
        self.assertEqual(summary["avg_processing_days"], 0.0)


class NotificationTests(SimpleTestCase):
    def test_build_notification(self) -> None:
        record = _hod_approved(_thousand())

        payload = notifications.build_notification(record, "HOD Approved", "hod-1")

        self.assertEqual(payload["event"], "requisition.updated")
        self.assertEqual(payload["transaction_id"], record.transaction_id)
        self.assertEqual(payload["recipient_user_id"], "emp-1")
        self.assertEqual(payload["status"], rules.STATUS_PENDING_FINANCE)
        self.assertIn("approved by HOD", payload["subject"])

    @override_settings(OVERSIGHT_NOTIFY_WEBHOOK_URL="")
    @patch("requisitions.services.notifications.requests.post")
    def test_disabled_hook_is_a_noop(self, mock_post) -> None:
        self.assertFalse(notifications.notify(_thousand(), "Submitted", "emp-1"))
        mock_post.assert_not_called()

    @override_settings(
        OVERSIGHT_NOTIFY_WEBHOOK_URL="https://hooks.example/notify?token=abc",
        OVERSIGHT_NOTIFY_TIMEOUT_SECONDS=2.0,
    )
    @patch("requisitions.services.notifications.requests.post")
    def test_dispatch_posts_payload(self, mock_post) -> None:
        mock_post.return_value = MagicMock(raise_for_status=MagicMock(return_value=None))

        self.assertTrue(notifications.notify(_thousand(), "Submitted", "emp-1"))
        _, kwargs = mock_post.call_args
        self.assertEqual(kwargs["timeout"], 2.0)
        self.assertEqual(kwargs["json"]["action"], "Submitted")

    @override_settings(OVERSIGHT_NOTIFY_WEBHOOK_URL="https://hooks.example/notify")
    @patch("requisitions.services.notifications.requests.post")
    def test_dispatch_failure_returns_false(self, mock_post) -> None:
        mock_post.side_effect = requests.ConnectionError("down")

        with self.assertLogs("requisitions.services.notifications", level="WARNING"):
            self.assertFalse(notifications.dispatch({"transaction_id": "PR-1"}))


class ExportTests(SimpleTestCase):
    def test_render_csv(self) -> None:
        record = _hod_approved(build_requisition(_office_items(), "emp-1", "IT"))

        text = export.render_csv(record)

        lines = text.splitlines()
        self.assertTrue(lines[0].startswith("transaction_id,status"))
        self.assertIn("Laptop", text)
        self.assertIn("280.00", text)
        self.assertIn("HOD Approved", text)


class _TempStoreMixin:
    def _use_temp_store(self) -> None:
        self.store_dir = tempfile.mkdtemp(prefix="oversight-store-")
        self.addCleanup(shutil.rmtree, self.store_dir, True)
        env = patch.dict(
            os.environ,
            {
                "OVERSIGHT_WORKFLOW_DEV_STORE": "1",
                "OVERSIGHT_WORKFLOW_STORE_PATH": os.path.join(self.store_dir, "store.json"),
            },
        )
        env.start()
        self.addCleanup(env.stop)


class FileWorkflowStoreTests(_TempStoreMixin, SimpleTestCase):
    def setUp(self) -> None:
        self._use_temp_store()

    def test_disabled_store_raises(self) -> None:
        with patch.dict(os.environ, {"OVERSIGHT_WORKFLOW_DEV_STORE": "0"}):
            with self.assertRaises(RuntimeError):
                workflow_store.store_enabled_or_raise()
            with self.assertRaises(RuntimeError):
                workflow_store.list_records()

    def test_create_get_and_save(self) -> None:
        record = build_requisition(_office_items(), "emp-1", "IT")
        workflow_store.create_record(record)

        loaded = workflow_store.get_record(record.id)
        self.assertEqual(loaded.transaction_id, record.transaction_id)
        self.assertEqual(loaded.total_amount, Decimal("280.00"))
        self.assertEqual(workflow_store.get_record_by_transaction_id(record.transaction_id).id, record.id)

        approved = _hod_approved(loaded)
        workflow_store.save(approved, loaded.version)
        self.assertEqual(workflow_store.get_record(record.id).status, rules.STATUS_PENDING_FINANCE)
        self.assertEqual(workflow_store.get_record(record.id).version, 2)

    def test_save_conflicts_on_stale_version(self) -> None:
        record = workflow_store.create_record(_thousand())
        workflow_store.save(_hod_approved(record), 1)

        with self.assertRaises(ConflictError):
            workflow_store.save(transitions.decline(record, rules.ROLE_HOD, "hod-2", "No"), 1)
        self.assertEqual(workflow_store.get_record(record.id).hod_status, rules.APPROVED)

    def test_save_split_writes_parent_and_children(self) -> None:
        record = workflow_store.create_record(_thousand())
        result = split_service.split(
            record, [split_service.ChildSpec(total_amount=Decimal("250"))], "Two vendors", "emp-1"
        )

        workflow_store.save_split(result.updated_parent, result.children, record.version)

        records = workflow_store.list_records()
        self.assertEqual(len(records), 2)
        self.assertEqual(workflow_store.get_record(record.id).total_amount, Decimal("750.00"))
        self.assertEqual(
            len(workflow_store.list_records(lambda r: r.original_transaction_id == record.transaction_id)),
            1,
        )


class DbWorkflowStoreTests(TestCase):
    def test_round_trip_through_table(self) -> None:
        record = build_requisition(_office_items(), "emp-1", "IT", requested_by_name="Ann")
        workflow_store_db.create_record(record)

        row = PurchaseRequisition.objects.get(id=record.id)
        self.assertEqual(row.version_nbr, 1)
        self.assertEqual(row.total_amount, Decimal("280.00"))
        loaded = workflow_store_db.get_record(record.id)
        self.assertEqual(loaded.items, record.items)
        self.assertEqual(loaded.requested_by_name, "Ann")

    def test_compare_and_swap(self) -> None:
        record = workflow_store_db.create_record(_thousand())
        workflow_store_db.save(_hod_approved(record), 1)

        with self.assertRaises(ConflictError) as ctx:
            workflow_store_db.save(transitions.decline(record, rules.ROLE_HOD, "hod-2", "No"), 1)
        self.assertEqual(ctx.exception.actual_version, 2)
        self.assertEqual(PurchaseRequisition.objects.get(id=record.id).hod_status, rules.APPROVED)

    def test_save_split_is_atomic(self) -> None:
        record = workflow_store_db.create_record(_thousand())
        result = split_service.split(
            record, [split_service.ChildSpec(total_amount=Decimal("100"))], "Vendors", "emp-1"
        )
        workflow_store_db.save(_hod_approved(record), 1)

        with self.assertRaises(ConflictError):
            workflow_store_db.save_split(result.updated_parent, result.children, 1)
        self.assertEqual(PurchaseRequisition.objects.count(), 1)


def _as_user(user_id: str, roles: list, department: str | None = "IT"):
    return override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID=user_id,
        DEV_AUTH_ROLES=roles,
        DEV_AUTH_DEPARTMENT=department,
        DEV_AUTH_NAME=None,
        DEV_AUTH_EMAIL=None,
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
        OVERSIGHT_WORKFLOW_STORE="file",
        OVERSIGHT_REQUIRE_BUDGET_CONFIRMATION=True,
        OVERSIGHT_FINANCE_REQUIRES_HOD_APPROVAL=False,
        OVERSIGHT_NOTIFY_WEBHOOK_URL="",
    )


class RequisitionApiTests(_TempStoreMixin, TestCase):
    base_url = "/api/v1/requisitions/"

    def setUp(self) -> None:
        self.client = APIClient()
        self._use_temp_store()

    def _submit(self, user_id: str = "emp-1", department: str = "IT", items=None) -> dict:
        with _as_user(user_id, ["Employee"], department):
            response = self.client.post(
                self.base_url,
                {"items": items or _office_items(), "urgency_level": "high"},
                format="json",
            )
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()

    def _decide(self, record_id: str, user_id: str, roles: list, body: dict, department: str | None = "IT"):
        with _as_user(user_id, roles, department):
            return self.client.post(f"{self.base_url}{record_id}/decision", body, format="json")

    def test_submit_creates_pending_record(self) -> None:
        body = self._submit()

        self.assertEqual(body["status"], rules.STATUS_PENDING_HOD)
        self.assertEqual(body["total_amount"], "280.00")
        self.assertEqual(body["requested_by"], "emp-1")
        self.assertEqual(body["requested_by_department"], "IT")
        self.assertEqual(body["urgency_level"], "HIGH")
        self.assertEqual(body["version"], 1)
        self.assertTrue(validate_transaction_id(body["transaction_id"]))

    def test_submit_reports_field_errors(self) -> None:
        with _as_user("emp-1", ["Employee"]):
            response = self.client.post(
                self.base_url,
                {"items": [{"description": "Pen", "quantity": 0, "unit_price": "1"}]},
                format="json",
            )

        self.assertEqual(response.status_code, 400)
        self.assertIn("items[0].quantity", response.json()["errors"])
        self.assertEqual(workflow_store.list_records(), [])

    def test_full_approval_flow(self) -> None:
        record = self._submit()

        response = self._decide(
            record["id"], "hod-1", ["HOD"], {"role": "HOD", "decision": "approve", "comments": "OK", "version": 1}
        )
        self.assertEqual(response.status_code, 200, response.content)
        self.assertEqual(response.json()["status"], rules.STATUS_PENDING_FINANCE)

        response = self._decide(
            record["id"],
            "fin-1",
            ["Finance"],
            {
                "role": "Finance",
                "decision": "approve",
                "comments": "Funded",
                "budget_approval": "BUDGET_CONFIRMED",
                "version": 2,
            },
            department=None,
        )
        self.assertEqual(response.status_code, 200, response.content)
        body = response.json()
        self.assertEqual(body["status"], rules.STATUS_APPROVED)
        self.assertEqual(len(body["history"]), 2)

        with _as_user("emp-1", ["Employee"]):
            history = self.client.get(f"{self.base_url}{record['id']}/history").json()
        self.assertEqual([entry["action"] for entry in history["history"]], ["HOD Approved", "Finance Approved"])

    def test_finance_approval_needs_budget_confirmation(self) -> None:
        record = self._submit()

        response = self._decide(
            record["id"], "fin-1", ["Finance"], {"role": "Finance", "decision": "approve", "comments": "ok"}, None
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("budget_approval", response.json()["errors"])

    def test_employee_cannot_decide(self) -> None:
        record = self._submit()

        response = self._decide(
            record["id"], "emp-1", ["Employee"], {"role": "HOD", "decision": "approve", "comments": "self"}
        )

        self.assertEqual(response.status_code, 403)

    def test_hod_limited_to_own_department(self) -> None:
        record = self._submit(department="Sales")

        response = self._decide(
            record["id"], "hod-1", ["HOD"], {"role": "HOD", "decision": "approve", "comments": "ok"}, "IT"
        )

        self.assertEqual(response.status_code, 403)
        self.assertIn("role", response.json()["errors"])

    def test_stale_version_returns_conflict(self) -> None:
        record = self._submit()
        self._decide(record["id"], "hod-1", ["HOD"], {"role": "HOD", "decision": "approve", "comments": "ok"})

        response = self._decide(
            record["id"], "admin-1", ["Admin"], {"role": "HOD", "decision": "decline", "comments": "no", "version": 1}
        )

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "conflict")
        self.assertEqual(body["actual_version"], 2)

    def test_decision_on_declined_record_conflicts(self) -> None:
        record = self._submit()
        self._decide(record["id"], "hod-1", ["HOD"], {"role": "HOD", "decision": "decline", "comments": "no"})

        response = self._decide(
            record["id"],
            "fin-1",
            ["Finance"],
            {"role": "Finance", "decision": "approve", "comments": "ok", "budget_approval": "BUDGET_CONFIRMED"},
            None,
        )

        self.assertEqual(response.status_code, 409)
        self.assertIn("status", response.json()["errors"])

    def test_employee_cannot_view_other_users_record(self) -> None:
        record = self._submit(user_id="emp-1")

        with _as_user("emp-2", ["Employee"]):
            response = self.client.get(f"{self.base_url}{record['id']}")
        self.assertEqual(response.status_code, 403)

        with _as_user("emp-1", ["Employee"]):
            response = self.client.get(f"{self.base_url}{record['transaction_id']}")
        self.assertEqual(response.status_code, 200)

    def test_unknown_record_returns_404(self) -> None:
        with _as_user("emp-1", ["Employee"]):
            response = self.client.get(f"{self.base_url}missing")

        self.assertEqual(response.status_code, 404)

    def test_list_views(self) -> None:
        self._submit(user_id="emp-1", department="IT")
        self._submit(user_id="emp-2", department="Sales")

        with _as_user("emp-1", ["Employee"]):
            own = self.client.get(self.base_url).json()
            forbidden = self.client.get(self.base_url, {"view": "finance_pending"})
        self.assertEqual(own["count"], 1)
        self.assertEqual(forbidden.status_code, 403)

        with _as_user("hod-1", ["HOD"], "Sales"):
            pending = self.client.get(self.base_url, {"view": "hod_pending"}).json()
        self.assertEqual([r["requested_by"] for r in pending["requisitions"]], ["emp-2"])

        with _as_user("fin-1", ["Finance"], None):
            everything = self.client.get(self.base_url, {"view": "all"}).json()
            filtered = self.client.get(self.base_url, {"department": "IT"}).json()
            bad_date = self.client.get(self.base_url, {"date_from": "soon"})
        self.assertEqual(everything["count"], 2)
        self.assertEqual(filtered["count"], 1)
        self.assertEqual(bad_date.status_code, 400)

    def test_split_endpoint(self) -> None:
        record = self._submit(
            items=[{"description": "Chairs and desks", "quantity": 1, "unit_price": "1000", "vat_classification": "NO_VAT"}]
        )

        with _as_user("emp-1", ["Employee"]):
            owner_attempt = self.client.post(
                f"{self.base_url}{record['id']}/split",
                {"splits": [{"total_amount": "300"}], "reason": "Suppliers"},
                format="json",
            )
        self.assertEqual(owner_attempt.status_code, 403)

        with _as_user("hod-1", ["HOD"], "IT"):
            suggestion = self.client.get(f"{self.base_url}{record['id']}/auto-split").json()
            response = self.client.post(
                f"{self.base_url}{record['id']}/split",
                {"splits": [{"total_amount": "300"}, {"total_amount": "200"}], "reason": "Suppliers", "version": 1},
                format="json",
            )
            family = self.client.get(f"{self.base_url}{record['id']}/splits").json()

        self.assertEqual(suggestion["remaining_amount"], "200.00")
        self.assertEqual(len(suggestion["splits"]), 2)
        self.assertEqual(response.status_code, 201, response.content)
        body = response.json()
        self.assertEqual(body["parent"]["total_amount"], "500.00")
        self.assertEqual(body["parent"]["version"], 2)
        self.assertEqual(len(body["children"]), 2)
        self.assertEqual(len(family["children"]), 2)
        self.assertEqual(len(workflow_store.list_records()), 3)

    def test_split_rejects_overdraw(self) -> None:
        record = self._submit(
            items=[{"description": "Chairs", "quantity": 1, "unit_price": "1000", "vat_classification": "NO_VAT"}]
        )

        with _as_user("fin-1", ["Finance"], None):
            response = self.client.post(
                f"{self.base_url}{record['id']}/split",
                {"splits": [{"total_amount": "600"}, {"total_amount": "400"}], "reason": "Suppliers"},
                format="json",
            )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(len(workflow_store.list_records()), 1)

    def test_split_items_endpoint(self) -> None:
        record = self._submit()

        url = f"{self.base_url}{record['id']}/split-items"
        with _as_user("emp-1", ["Employee"]):
            owner = self.client.post(url, {"selected_indices": [0]}, format="json")
        with _as_user("hod-2", ["HOD"], "Sales"):
            other_department = self.client.post(url, {"selected_indices": [0]}, format="json")
        with _as_user("hod-1", ["HOD"], "IT"):
            response = self.client.post(url, {"selected_indices": [0]}, format="json")

        self.assertEqual(owner.status_code, 403)
        self.assertEqual(other_department.status_code, 403)
        self.assertEqual(response.status_code, 201, response.content)
        self.assertEqual(response.json()["parent"]["total_amount"], "50.00")

    def test_splits_listing_reports_bad_stored_row(self) -> None:
        record = self._submit()
        path = os.environ["OVERSIGHT_WORKFLOW_STORE_PATH"]
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        broken = dict(data["requisitions"][record["id"]])
        broken["id"] = "broken-row"
        broken["transaction_id"] = "PR-BROKEN"
        broken["items"] = [{"description": "Bad", "quantity": 0, "unit_price": "10", "vat_classification": "NO_VAT"}]
        data["requisitions"]["broken-row"] = broken
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(data, handle)

        with _as_user("emp-1", ["Employee"]):
            response = self.client.get(f"{self.base_url}{record['id']}/splits")

        self.assertEqual(response.status_code, 400)

    def test_submit_rejects_amount_beyond_money_column(self) -> None:
        with _as_user("emp-1", ["Employee"]):
            response = self.client.post(
                self.base_url,
                {"items": [{"description": "Big", "quantity": 2, "unit_price": "1e30"}]},
                format="json",
            )

        self.assertEqual(response.status_code, 400)
        self.assertIn("items[0].unit_price", response.json()["errors"])
        self.assertEqual(workflow_store.list_records(), [])

    def test_analytics_scoped_to_caller(self) -> None:
        self._submit(user_id="emp-1", department="IT")
        self._submit(user_id="emp-2", department="Sales")
        url = f"{self.base_url}analytics"

        with _as_user("emp-1", ["Employee"]):
            own = self.client.get(url).json()
        with _as_user("fin-1", ["Finance"], None):
            everything = self.client.get(url).json()
            sales = self.client.get(url, {"department": "Sales"}).json()
            bad_date = self.client.get(url, {"date_from": "soon"})

        self.assertEqual(own["overview"]["total"], 1)
        self.assertEqual(own["department_breakdown"], {"IT": 1})
        self.assertEqual(everything["overview"], {"total": 2, "total_value": "560.00", "average_value": "280.00"})
        self.assertEqual(everything["status_breakdown"], {rules.STATUS_PENDING_HOD: 2})
        self.assertEqual(everything["urgency_breakdown"], {"HIGH": 2})
        self.assertEqual(len(everything["monthly_trends"]), 12)
        self.assertEqual(everything["monthly_trends"][-1]["count"], 2)
        self.assertEqual(sales["department_breakdown"], {"Sales": 1})
        self.assertEqual(bad_date.status_code, 400)

    def test_export_csv(self) -> None:
        record = self._submit()

        with _as_user("emp-1", ["Employee"]):
            response = self.client.get(f"{self.base_url}{record['id']}/export.csv")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response["Content-Type"].startswith("text/csv"))
        self.assertIn(record["transaction_id"], response.content.decode("utf-8"))

    def test_disabled_store_returns_501(self) -> None:
        with patch.dict(os.environ, {"OVERSIGHT_WORKFLOW_DEV_STORE": "0"}):
            with _as_user("emp-1", ["Employee"]):
                response = self.client.get(self.base_url)

        self.assertEqual(response.status_code, 501)

    @patch("requisitions.views.notifications.notify")
    def test_notifications_sent_after_save(self, mock_notify) -> None:
        record = self._submit()

        self._decide(record["id"], "hod-1", ["HOD"], {"role": "HOD", "decision": "approve", "comments": "ok"})

        actions = [call.args[1] for call in mock_notify.call_args_list]
        self.assertEqual(actions, ["Submitted", "HOD Approved"])

    def test_database_store_selected_by_setting(self) -> None:
        with _as_user("emp-1", ["Employee"]), override_settings(OVERSIGHT_WORKFLOW_STORE="db"):
            response = self.client.post(self.base_url, {"items": _office_items()}, format="json")

        self.assertEqual(response.status_code, 201, response.content)
        self.assertTrue(PurchaseRequisition.objects.filter(id=response.json()["id"]).exists())
        self.assertEqual(workflow_store.list_records(), [])
