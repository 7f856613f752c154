"""
Tests for approval rules, reviewer quorum and exactly-once execution
"""

import threading
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from treasury_core.storage import InMemoryStorage
from treasury_core.audit import AuditTrail, AuditEventType
from treasury_core.errors import ApprovalError, InsufficientFunds
from treasury_core.events import DomainEvent, EventDispatcher
from treasury_core.identity import AuthUser, UserRole
from treasury_core.approvals import (
    ApprovalExecutors, ApprovalPending, ApprovalType, ApprovalWorkflow, BudgetExtensionPayload,
    ExecutionStatus, Executed, ExpensePayload, RequestStatus, ReviewStatus, TransactionPayload,
    WorkflowType, payload_from_dict, payload_to_dict
)
from treasury_core.wallets import Beneficiary


ORG = "org_1"


def user(user_id, role=UserRole.EMPLOYEE, department_id=None):
    return AuthUser(user_id=user_id, organization_id=ORG, role=role, department_id=department_id)


class ApprovalTestCase:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.events = []
        self.dispatcher.subscribe_all(self.events.append)

        self.execute_transaction = Mock(return_value="sent")
        self.execute_expense = Mock(return_value="funded")
        self.decline_expense = Mock()
        self.executors = ApprovalExecutors(
            expense=self.execute_expense,
            transaction=self.execute_transaction,
            budget_extension=Mock(),
            fund_request=Mock(),
            payroll=Mock(),
            on_declined={WorkflowType.EXPENSE: self.decline_expense},
        )
        self.workflow = ApprovalWorkflow(self.storage, self.audit, self.dispatcher, self.executors)

        self.owner = user("owner", UserRole.OWNER)
        self.admin = user("admin", UserRole.ADMIN)
        self.requester = user("emp_ada", department_id="eng")
        self.reviewer_a = user("rev_a")
        self.reviewer_b = user("rev_b")

    def transaction(self, amount=50_000):
        return TransactionPayload(wallet_id="w1", amount=amount, account_number="0123456789", bank_code="058")

    def everyone_rule(self, amount=10_000):
        return self.workflow.create_rule(self.admin, "Two signatures", WorkflowType.TRANSACTION,
                                         ApprovalType.EVERYONE, amount, ["rev_a", "rev_b"])


class TestApprovalRules(ApprovalTestCase):

    def test_only_admins_manage_rules(self):
        with pytest.raises(ApprovalError):
            self.workflow.create_rule(self.requester, "Mine", WorkflowType.TRANSACTION,
                                      ApprovalType.ANYONE, 0, ["rev_a"])

    def test_duplicate_rule_rejected(self):
        self.everyone_rule()
        with pytest.raises(ApprovalError):
            self.workflow.create_rule(self.admin, "Again", WorkflowType.TRANSACTION,
                                      ApprovalType.EVERYONE, 10_000, ["rev_b", "rev_a"])

    def test_rule_needs_reviewers(self):
        with pytest.raises(ApprovalError):
            self.workflow.create_rule(self.admin, "Empty", WorkflowType.TRANSACTION,
                                      ApprovalType.ANYONE, 0, [])

    def test_reviewers_are_deduplicated(self):
        rule = self.workflow.create_rule(self.admin, "Dupes", WorkflowType.EXPENSE,
                                         ApprovalType.EVERYONE, 0, ["rev_a", "rev_a", "rev_b"])
        assert rule.reviewers == ("rev_a", "rev_b")
        assert rule.required_reviews == 2

    def test_highest_reached_threshold_wins(self):
        small = self.everyone_rule(10_000)
        large = self.workflow.create_rule(self.admin, "Large", WorkflowType.TRANSACTION,
                                          ApprovalType.ANYONE, 50_000, ["admin"])

        assert self.workflow.find_matching_rule(ORG, WorkflowType.TRANSACTION, 60_000).id == large.id
        assert self.workflow.find_matching_rule(ORG, WorkflowType.TRANSACTION, 20_000).id == small.id
        assert self.workflow.find_matching_rule(ORG, WorkflowType.TRANSACTION, 5_000) is None
        assert self.workflow.find_matching_rule(ORG, WorkflowType.EXPENSE, 60_000) is None

    def test_budget_scoped_rule_preferred(self):
        self.workflow.create_rule(self.admin, "Org wide", WorkflowType.TRANSACTION,
                                  ApprovalType.ANYONE, 50_000, ["admin"])
        scoped = self.workflow.create_rule(self.admin, "Travel", WorkflowType.TRANSACTION,
                                           ApprovalType.ANYONE, 0, ["rev_a"], budget_id="b_travel")

        assert self.workflow.find_matching_rule(ORG, WorkflowType.TRANSACTION, 60_000,
                                                budget_id="b_travel").id == scoped.id
        assert self.workflow.find_matching_rule(ORG, WorkflowType.TRANSACTION, 60_000).id != scoped.id

    def test_update_and_delete_rule(self):
        rule = self.everyone_rule()

        updated = self.workflow.update_rule(self.admin, rule.id, amount=20_000, reviewers=["rev_a"])
        assert updated.amount == 20_000
        assert self.workflow.get_rule(rule.id).reviewers == ("rev_a",)

        with pytest.raises(ApprovalError):
            self.workflow.update_rule(self.admin, rule.id, workflow_type=WorkflowType.EXPENSE)

        assert self.workflow.delete_rule(self.admin, rule.id)
        assert self.workflow.get_rule(rule.id) is None
        assert not self.workflow.delete_rule(self.admin, rule.id)


class TestRequestOrExecute(ApprovalTestCase):

    def test_no_rule_executes_immediately(self):
        outcome = self.workflow.request_or_execute(self.requester, WorkflowType.TRANSACTION, 50_000,
                                                   self.transaction())

        assert outcome == Executed("sent")
        self.execute_transaction.assert_called_once_with(self.requester, self.transaction())

    def test_owner_bypasses_rules(self):
        self.everyone_rule()
        outcome = self.workflow.request_or_execute(self.owner, WorkflowType.TRANSACTION, 50_000,
                                                   self.transaction())
        assert isinstance(outcome, Executed)

    def test_sole_reviewer_requesting_executes(self):
        self.workflow.create_rule(self.admin, "Anyone", WorkflowType.TRANSACTION,
                                  ApprovalType.ANYONE, 0, ["emp_ada", "rev_a"])
        outcome = self.workflow.request_or_execute(self.requester, WorkflowType.TRANSACTION, 50_000,
                                                   self.transaction())
        assert isinstance(outcome, Executed)

    def test_matching_rule_parks_the_action(self):
        rule = self.everyone_rule()

        outcome = self.workflow.request_or_execute(self.requester, WorkflowType.TRANSACTION, 50_000,
                                                   self.transaction())

        assert isinstance(outcome, ApprovalPending)
        request = outcome.request
        assert request.rule_id == rule.id
        assert request.status == RequestStatus.PENDING
        assert [r.user_id for r in request.reviews] == ["rev_a", "rev_b"]
        assert self.workflow.get_request(request.id).properties == self.transaction()
        self.execute_transaction.assert_not_called()

        requested = [e for e in self.events if e.event_type == DomainEvent.APPROVAL_REQUESTED]
        assert requested[0].data["recipients"] == ["rev_a", "rev_b"]

    def test_requester_review_is_preapproved(self):
        self.workflow.create_rule(self.admin, "Three", WorkflowType.TRANSACTION,
                                  ApprovalType.EVERYONE, 0, ["emp_ada", "rev_a"])

        request = self.workflow.request_or_execute(self.requester, WorkflowType.TRANSACTION, 50_000,
                                                   self.transaction()).request

        assert request.review_for("emp_ada").status == ReviewStatus.APPROVED
        self.workflow.review(self.reviewer_a, request.id, ReviewStatus.APPROVED)
        assert self.execute_transaction.call_count == 1

    def test_payload_type_must_match_workflow(self):
        with pytest.raises(TypeError):
            self.workflow.request_or_execute(self.requester, WorkflowType.EXPENSE, 50_000, self.transaction())

    def test_unbound_workflow_refuses(self):
        workflow = ApprovalWorkflow(self.storage, self.audit)
        with pytest.raises(RuntimeError):
            workflow.request_or_execute(self.requester, WorkflowType.TRANSACTION, 1, self.transaction())


class TestReview(ApprovalTestCase):

    def pending_transaction(self):
        return self.workflow.request_or_execute(self.requester, WorkflowType.TRANSACTION, 50_000,
                                                self.transaction()).request

    def test_everyone_waits_for_all_reviewers(self):
        self.everyone_rule()
        request = self.pending_transaction()

        first = self.workflow.review(self.reviewer_a, request.id, ReviewStatus.APPROVED)
        assert first.status == RequestStatus.PENDING
        self.execute_transaction.assert_not_called()

        second = self.workflow.review(self.reviewer_b, request.id, ReviewStatus.APPROVED, "ok")

        assert second.status == RequestStatus.APPROVED
        assert second.execution_status == ExecutionStatus.EXECUTED
        assert second.resolved_at is not None
        self.execute_transaction.assert_called_once()
        executed_as, payload = self.execute_transaction.call_args[0]
        assert executed_as == self.requester
        assert payload == self.transaction()

        resolved = [e for e in self.events if e.event_type == DomainEvent.APPROVAL_RESOLVED]
        assert resolved[0].data["recipients"] == ["emp_ada"]
        assert resolved[0].data["status"] == "approved"

    def test_resolved_request_rejects_late_reviews(self):
        self.everyone_rule()
        request = self.pending_transaction()
        self.workflow.review(self.reviewer_a, request.id, ReviewStatus.DECLINED, "no")

        with pytest.raises(ApprovalError):
            self.workflow.review(self.reviewer_b, request.id, ReviewStatus.APPROVED)
        self.execute_transaction.assert_not_called()

    def test_anyone_resolves_on_first_approval(self):
        self.workflow.create_rule(self.admin, "Anyone", WorkflowType.TRANSACTION,
                                  ApprovalType.ANYONE, 0, ["rev_a", "rev_b"])
        request = self.pending_transaction()

        resolved = self.workflow.review(self.reviewer_b, request.id, ReviewStatus.APPROVED)

        assert resolved.status == RequestStatus.APPROVED
        self.execute_transaction.assert_called_once()

    def test_decline_runs_compensation(self):
        self.workflow.create_rule(self.admin, "Budgets", WorkflowType.EXPENSE,
                                  ApprovalType.ANYONE, 0, ["rev_a"])
        request = self.workflow.request_or_execute(self.requester, WorkflowType.EXPENSE, 20_000,
                                                   ExpensePayload(budget_id="b1")).request

        declined = self.workflow.review(self.reviewer_a, request.id, ReviewStatus.DECLINED, "too much")

        assert declined.status == RequestStatus.DECLINED
        assert declined.review_for("rev_a").reason == "too much"
        self.execute_expense.assert_not_called()
        self.decline_expense.assert_called_once_with(self.requester, ExpensePayload(budget_id="b1"))

    def test_only_listed_reviewers_may_review_once(self):
        self.everyone_rule()
        request = self.pending_transaction()

        with pytest.raises(ApprovalError):
            self.workflow.review(self.admin, request.id, ReviewStatus.APPROVED)

        self.workflow.review(self.reviewer_a, request.id, ReviewStatus.APPROVED)
        with pytest.raises(ApprovalError):
            self.workflow.review(self.reviewer_a, request.id, ReviewStatus.APPROVED)

    def test_pending_is_not_a_decision(self):
        self.everyone_rule()
        request = self.pending_transaction()
        with pytest.raises(ApprovalError):
            self.workflow.review(self.reviewer_a, request.id, ReviewStatus.PENDING)

    def test_failed_execution_is_recorded(self):
        self.execute_transaction.side_effect = InsufficientFunds("wallet", "w1", 50_000, 10)
        self.workflow.create_rule(self.admin, "Anyone", WorkflowType.TRANSACTION,
                                  ApprovalType.ANYONE, 0, ["rev_a"])
        request = self.pending_transaction()

        resolved = self.workflow.review(self.reviewer_a, request.id, ReviewStatus.APPROVED)

        assert resolved.status == RequestStatus.APPROVED
        assert resolved.execution_status == ExecutionStatus.FAILED
        assert "Insufficient funds" in resolved.execution_error

    def test_unexpected_executor_error_is_recorded(self):
        self.execute_transaction.side_effect = RuntimeError("provider client closed")
        self.workflow.create_rule(self.admin, "Anyone", WorkflowType.TRANSACTION,
                                  ApprovalType.ANYONE, 0, ["rev_a"])
        request = self.pending_transaction()

        resolved = self.workflow.review(self.reviewer_a, request.id, ReviewStatus.APPROVED)

        assert resolved.status == RequestStatus.APPROVED
        assert resolved.execution_status == ExecutionStatus.FAILED
        assert resolved.execution_error == "RuntimeError: provider client closed"
        stored = self.workflow.get_request(request.id)
        assert stored.execution_status == ExecutionStatus.FAILED

    def test_concurrent_final_approvals_execute_once(self):
        self.workflow.create_rule(self.admin, "Anyone", WorkflowType.TRANSACTION,
                                  ApprovalType.ANYONE, 0, ["rev_a", "rev_b"])
        request = self.pending_transaction()
        errors = []

        def approve(reviewer):
            try:
                self.workflow.review(reviewer, request.id, ReviewStatus.APPROVED)
            except ApprovalError as e:
                errors.append(e)

        threads = [threading.Thread(target=approve, args=(r,)) for r in (self.reviewer_a, self.reviewer_b)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert self.execute_transaction.call_count == 1
        assert len(errors) == 1

    def test_list_pending_for_reviewer(self):
        self.everyone_rule()
        request = self.pending_transaction()

        assert [r.id for r in self.workflow.list_pending_for_reviewer(self.reviewer_a)] == [request.id]
        self.workflow.review(self.reviewer_a, request.id, ReviewStatus.APPROVED)
        assert self.workflow.list_pending_for_reviewer(self.reviewer_a) == []
        assert len(self.workflow.list_pending_for_reviewer(self.reviewer_b)) == 1

    def test_reviews_are_audited(self):
        self.everyone_rule()
        request = self.pending_transaction()
        self.workflow.review(self.reviewer_a, request.id, ReviewStatus.APPROVED)
        self.workflow.review(self.reviewer_b, request.id, ReviewStatus.APPROVED)

        types = [e.event_type for e in self.audit.get_events_for_entity("approval_request", request.id)]
        assert types == [
            AuditEventType.APPROVAL_REQUESTED,
            AuditEventType.APPROVAL_REVIEWED,
            AuditEventType.APPROVAL_REVIEWED,
            AuditEventType.APPROVAL_APPROVED,
            AuditEventType.APPROVAL_EXECUTED,
        ]


class TestExecutorsAndPayloads:

    def test_missing_executor_rejected(self):
        with pytest.raises(TypeError):
            ApprovalExecutors(expense=Mock(), transaction=Mock(), budget_extension=Mock(),
                              fund_request=Mock(), payroll=None)

    def test_extension_payload_survives_storage_form(self):
        expiry = datetime(2026, 12, 31, tzinfo=timezone.utc)
        payload = BudgetExtensionPayload(budget_id="b1", amount=5_000, expiry=expiry,
                                         beneficiaries=(Beneficiary("emp_ada", 2_000),))

        data = payload_to_dict(payload)

        assert data["type"] == "budget_extension"
        assert payload_from_dict(data) == payload
