"""
Tests for calendar, spend-limit and invoice transfer policies
"""

import pytest
from datetime import datetime, timezone

from treasury_core.storage import InMemoryStorage
from treasury_core.audit import AuditTrail, AuditEventType
from treasury_core.currency import Currency
from treasury_core.errors import PolicyViolation
from treasury_core.identity import AuthUser, UserRole
from treasury_core.ledger import LedgerCore, SettlementStatus
from treasury_core.policies import PolicyEngine, PolicyType, SpendPeriod, TransferPolicyQuery
from treasury_core.wallets import WalletManager


# 2026-10-19 is a Monday
MONDAY = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
SATURDAY = datetime(2026, 10, 24, 9, 0, tzinfo=timezone.utc)


class TestPolicyEngine:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.wallets = WalletManager(self.storage, self.audit)
        self.ledger = LedgerCore(self.storage, self.wallets, self.audit)
        self.policies = PolicyEngine(self.storage, self.ledger, self.audit)
        self.wallet = self.wallets.create_wallet("org_1", Currency.NGN, balance=500_000)

        self.admin = AuthUser(user_id="admin", organization_id="org_1", role=UserRole.ADMIN)
        self.engineer = AuthUser(user_id="emp_ada", organization_id="org_1", department_id="eng")
        self.marketer = AuthUser(user_id="emp_bo", organization_id="org_1", department_id="mkt")

    def query(self, amount=10_000, **kwargs):
        kwargs.setdefault("now", MONDAY)
        return TransferPolicyQuery(amount=amount, **kwargs)

    def test_no_policies_never_block(self):
        result = self.policies.check_transfer_policy(self.engineer, self.query())
        assert not result.any_blocked
        assert result.kinds == []

    def test_calendar_blocks_listed_weekdays(self):
        self.policies.create_policy(self.admin, "No weekends", PolicyType.CALENDAR, days_of_week=(5, 6))

        assert not self.policies.check_transfer_policy(self.engineer, self.query(now=MONDAY)).calendar
        assert self.policies.check_transfer_policy(self.engineer, self.query(now=SATURDAY)).calendar

    def test_calendar_requires_valid_days(self):
        with pytest.raises(ValueError):
            self.policies.create_policy(self.admin, "Empty", PolicyType.CALENDAR)
        with pytest.raises(ValueError):
            self.policies.create_policy(self.admin, "Bad", PolicyType.CALENDAR, days_of_week=(7,))

    def test_invoice_required(self):
        self.policies.create_policy(self.admin, "Invoices", PolicyType.INVOICE)

        assert self.policies.check_transfer_policy(self.engineer, self.query()).invoice
        assert not self.policies.check_transfer_policy(self.engineer, self.query(invoice="inv_1.pdf")).invoice

    def test_spend_limit_counts_prior_spend(self):
        policy = self.policies.create_policy(self.admin, "Weekly cap", PolicyType.SPEND_LIMIT,
                                             amount=100_000, period=SpendPeriod.WEEKLY)
        done = self.ledger.reserve_funds(self.wallet.id, 50_000, initiated_by="emp_ada")
        self.ledger.settle(done.id, SettlementStatus.SUCCESSFUL)
        self.ledger.reserve_funds(self.wallet.id, 10_000, initiated_by="emp_ada")
        failed = self.ledger.reserve_funds(self.wallet.id, 30_000, initiated_by="emp_ada")
        self.ledger.settle(failed.id, SettlementStatus.FAILED)

        now = datetime.now(timezone.utc)
        assert not self.policies.check_transfer_policy(self.engineer, self.query(39_999, now=now)).spend_limit

        blocked = self.policies.check_transfer_policy(self.engineer, self.query(40_000, now=now))
        assert blocked.spend_limit
        assert blocked.blocking_policies == (policy.id,)

        # Other users have their own spend
        assert not self.policies.check_transfer_policy(self.marketer, self.query(40_000, now=now)).spend_limit

    def test_spend_limit_needs_amount_and_period(self):
        with pytest.raises(ValueError):
            self.policies.create_policy(self.admin, "Cap", PolicyType.SPEND_LIMIT, amount=1_000)

    def test_department_scope(self):
        self.policies.create_policy(self.admin, "Eng invoices", PolicyType.INVOICE, departments=("eng",))

        assert self.policies.check_transfer_policy(self.engineer, self.query()).invoice
        assert not self.policies.check_transfer_policy(self.marketer, self.query()).invoice

    def test_budget_and_recipient_scope(self):
        self.policies.create_policy(self.admin, "Travel invoices", PolicyType.INVOICE, budgets=("b_travel",))
        self.policies.create_policy(self.admin, "Vendor", PolicyType.CALENDAR, days_of_week=(0,),
                                    recipients=("0123456789",))

        assert self.policies.check_transfer_policy(self.marketer, self.query(budget_id="b_travel")).invoice
        assert not self.policies.check_transfer_policy(self.marketer, self.query(budget_id="b_ops")).invoice
        assert self.policies.check_transfer_policy(self.marketer, self.query(account_number="0123456789")).calendar
        assert not self.policies.check_transfer_policy(self.marketer, self.query(account_number="9876543210")).calendar

    def test_kinds_are_reported_together(self):
        self.policies.create_policy(self.admin, "Invoices", PolicyType.INVOICE)
        self.policies.create_policy(self.admin, "No Mondays", PolicyType.CALENDAR, days_of_week=(0,))

        result = self.policies.check_transfer_policy(self.engineer, self.query())

        assert result.kinds == [PolicyViolation.CALENDAR, PolicyViolation.INVOICE]

    def test_enforce_raises_and_audits(self):
        self.policies.create_policy(self.admin, "Invoices", PolicyType.INVOICE)

        with pytest.raises(PolicyViolation) as exc:
            self.policies.enforce(self.engineer, self.query())

        assert exc.value.kinds == (PolicyViolation.INVOICE,)
        violations = self.audit.get_events_by_type(AuditEventType.POLICY_VIOLATION)
        assert violations[0].user_id == "emp_ada"

    def test_update_delete_and_deactivate(self):
        policy = self.policies.create_policy(self.admin, "Invoices", PolicyType.INVOICE)

        self.policies.update_policy(self.admin, policy.id, active=False)
        assert not self.policies.check_transfer_policy(self.engineer, self.query()).invoice

        self.policies.update_policy(self.admin, policy.id, active=True, departments=["mkt"])
        assert self.policies.get_policy(policy.id).departments == ("mkt",)

        assert self.policies.delete_policy(self.admin, policy.id)
        assert self.policies.list_policies("org_1") == []
