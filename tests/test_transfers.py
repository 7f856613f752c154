"""
Tests for outbound wallet and budget transfers
"""

import threading
import pytest

from treasury_core.approvals import ApprovalPending, ApprovalType, ExecutionStatus, ReviewStatus, WorkflowType
from treasury_core.config import FeeTier
from treasury_core.errors import (
    DuplicateTransferAttempt, InsufficientFunds, InvalidAccount, PolicyViolation, ProviderUnavailable,
    UnauthorizedBudgetAccess
)
from treasury_core.events import DomainEvent
from treasury_core.identity import AuthUser, UserRole
from treasury_core.ledger import EntryScope, EntryStatus
from treasury_core.policies import PolicyType
from treasury_core.providers import ProviderStatus
from treasury_core.transfers import FeeSchedule, Initiated, TransferRequest
from treasury_core.wallets import Beneficiary

ORG = "org_acme"
ACCOUNT = "0123456789"
BANK = "058"


def wallet_transfer(wallet, amount=50_000, **kwargs):
    return TransferRequest(amount=amount, account_number=ACCOUNT, bank_code=BANK,
                           wallet_id=wallet.id, **kwargs)


def balances(engine, wallet):
    current = engine.wallets.get_wallet(wallet.id)
    return current.balance, current.ledger_balance


class TestFeeSchedule:

    def test_flat_fee_without_tiers(self):
        assert FeeSchedule(2_500).calculate(1_000_000) == 2_500

    def test_tiers_take_precedence(self):
        fees = FeeSchedule(2_500, [
            FeeTier(min_amount=500_001, fee=5_000),
            FeeTier(min_amount=0, max_amount=500_000, fee=1_000),
        ])

        assert fees.calculate(500_000) == 1_000
        assert fees.calculate(500_001) == 5_000

    def test_gap_between_tiers_uses_flat_fee(self):
        fees = FeeSchedule(2_500, [FeeTier(min_amount=0, max_amount=100, fee=10)])
        assert fees.calculate(101) == 2_500


class TestWalletTransfers:

    def test_immediate_success(self, engine, owner, wallet, transfer_provider):
        outcome = engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, narration="Rent"))

        assert isinstance(outcome, Initiated)
        entry = outcome.entry
        assert entry.status == EntryStatus.SUCCESSFUL
        assert entry.scope == EntryScope.WALLET_TRANSFER
        assert entry.amount == 50_000
        assert entry.fee == 2_500
        assert entry.reference.startswith("wt_")
        assert entry.provider == "mock"
        assert entry.provider_ref.startswith("mock_")
        assert entry.meta["counterparty"]["account_name"] == "Account Holder 6789"
        assert balances(engine, wallet) == (47_500, 47_500)

        instruction = transfer_provider.instructions[0]
        assert instruction.reference == entry.reference
        assert instruction.amount == 50_000
        assert instruction.narration == "Rent"

    def test_provider_failure_restores_balance(self, engine, owner, wallet, transfer_provider):
        transfer_provider.default_status = ProviderStatus.FAILED

        outcome = engine.transfers.initiate_transfer(owner, wallet_transfer(wallet))

        assert outcome.entry.status == EntryStatus.FAILED
        assert balances(engine, wallet) == (100_000, 100_000)

    def test_pending_answer_schedules_requery(self, engine, owner, wallet, transfer_provider):
        transfer_provider.default_status = ProviderStatus.PENDING

        outcome = engine.transfers.initiate_transfer(owner, wallet_transfer(wallet))

        assert outcome.entry.status == EntryStatus.PENDING
        assert balances(engine, wallet) == (47_500, 47_500)
        assert engine.jobs.pending_count() == 1

    def test_unreachable_provider_keeps_entry_pending(self, engine, owner, wallet, transfer_provider):
        transfer_provider.set_unavailable()

        outcome = engine.transfers.initiate_transfer(owner, wallet_transfer(wallet))

        assert outcome.entry.status == EntryStatus.PENDING
        assert outcome.entry.provider_ref is None
        assert balances(engine, wallet) == (47_500, 47_500)
        assert engine.jobs.pending_count() == 1

    def test_insufficient_funds_reserves_nothing(self, engine, owner, wallet):
        with pytest.raises(InsufficientFunds) as exc:
            engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=98_000))

        assert exc.value.requested == 100_500
        assert balances(engine, wallet) == (100_000, 100_000)
        assert engine.ledger.list_entries(wallet_id=wallet.id) == []

    def test_amount_must_be_positive(self, engine, owner, wallet):
        with pytest.raises(ValueError):
            engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=0))

    def test_invalid_account(self, engine, owner, wallet):
        request = TransferRequest(amount=1_000, account_number="123", bank_code=BANK, wallet_id=wallet.id)
        with pytest.raises(InvalidAccount):
            engine.transfers.initiate_transfer(owner, request)
        assert balances(engine, wallet) == (100_000, 100_000)

    def test_unknown_provider_name(self, engine, owner, wallet):
        with pytest.raises(ProviderUnavailable):
            engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, provider="pigeon"))

    def test_explicit_provider(self, engine, owner, wallet):
        outcome = engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, provider="http"))
        assert outcome.entry.provider == "http"

    def test_duplicate_within_window(self, engine, owner, wallet):
        engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=10_000))

        with pytest.raises(DuplicateTransferAttempt):
            engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=10_000))

        # A different amount is not a duplicate
        engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=10_001))

    def test_failed_transfer_can_be_retried(self, engine, owner, wallet, transfer_provider):
        transfer_provider.default_status = ProviderStatus.FAILED
        engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=10_000))

        transfer_provider.default_status = ProviderStatus.SUCCESSFUL
        outcome = engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=10_000))
        assert outcome.entry.status == EntryStatus.SUCCESSFUL

    def test_idempotency_key(self, engine, owner, wallet):
        first = engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, idempotency_key="req-1"))

        with pytest.raises(DuplicateTransferAttempt) as exc:
            engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=1_000,
                                                                      idempotency_key="req-1"))
        assert exc.value.existing_reference == first.entry.reference

    def test_save_recipient(self, engine, owner, wallet):
        engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, save_recipient=True))

        recipients = engine.counterparties.list_recipients(ORG)
        assert [r.account_number for r in recipients] == [ACCOUNT]

    def test_events_published(self, engine, owner, wallet):
        seen = []
        engine.dispatcher.subscribe_all(lambda event: seen.append(event.event_type))

        engine.transfers.initiate_transfer(owner, wallet_transfer(wallet))

        assert seen == [DomainEvent.TRANSFER_INITIATED, DomainEvent.TRANSFER_SUCCEEDED]
        assert engine.notifications.get_notifications("owner")

    def test_list_transfers(self, engine, owner, wallet):
        engine.budgets.request_budget(owner, wallet.id, "Ops", 5_000)
        engine.transfers.initiate_transfer(owner, wallet_transfer(wallet))

        transfers = engine.transfers.list_transfers(wallet.id)
        assert [t.scope for t in transfers] == [EntryScope.WALLET_TRANSFER]

    def test_concurrent_transfers_never_overdraw(self, engine, wallet):
        results = []
        lock = threading.Lock()

        def send(index):
            user = AuthUser(user_id=f"owner_{index}", organization_id=ORG, role=UserRole.OWNER)
            try:
                engine.transfers.initiate_transfer(user, wallet_transfer(wallet, amount=20_000))
                outcome = "ok"
            except InsufficientFunds:
                outcome = "insufficient"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=send, args=(i,)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # 4 x (20,000 + 2,500) fit in 100,000
        assert results.count("ok") == 4
        assert results.count("insufficient") == 6
        assert balances(engine, wallet) == (10_000, 10_000)


class TestTransferApprovals:

    def test_everyone_rule_waits_for_all_reviewers(self, engine, admin, employee, wallet):
        engine.approvals.create_rule(admin, "Big transfers", WorkflowType.TRANSACTION,
                                     ApprovalType.EVERYONE, 10_000, ["rev_a", "rev_b"])
        rev_a = AuthUser(user_id="rev_a", organization_id=ORG)
        rev_b = AuthUser(user_id="rev_b", organization_id=ORG)

        pending = engine.transfers.initiate_transfer(employee, wallet_transfer(wallet))
        assert isinstance(pending, ApprovalPending)
        assert balances(engine, wallet) == (100_000, 100_000)

        engine.approvals.review(rev_a, pending.request.id, ReviewStatus.APPROVED)
        assert balances(engine, wallet) == (100_000, 100_000)

        request = engine.approvals.review(rev_b, pending.request.id, ReviewStatus.APPROVED)
        assert request.execution_status == ExecutionStatus.EXECUTED
        assert balances(engine, wallet) == (47_500, 47_500)

        entry = engine.transfers.list_transfers(wallet.id)[0]
        assert entry.initiated_by == "emp_ada"
        assert entry.meta["counterparty"]["account_number"] == ACCOUNT

    def test_requester_review_counts_towards_everyone(self, engine, admin, wallet, transfer_provider):
        engine.approvals.create_rule(admin, "Pairs", WorkflowType.TRANSACTION,
                                     ApprovalType.EVERYONE, 0, ["rev_a", "rev_b"])
        rev_a = AuthUser(user_id="rev_a", organization_id=ORG)
        rev_b = AuthUser(user_id="rev_b", organization_id=ORG)

        pending = engine.transfers.initiate_transfer(rev_a, wallet_transfer(wallet))
        request = engine.approvals.review(rev_b, pending.request.id, ReviewStatus.APPROVED)

        assert request.execution_status == ExecutionStatus.EXECUTED
        assert len(transfer_provider.instructions) == 1
        assert balances(engine, wallet) == (47_500, 47_500)

    def test_small_transfer_skips_rule(self, engine, admin, employee, wallet):
        engine.approvals.create_rule(admin, "Big transfers", WorkflowType.TRANSACTION,
                                     ApprovalType.ANYONE, 60_000, ["admin"])

        outcome = engine.transfers.initiate_transfer(employee, wallet_transfer(wallet))
        assert isinstance(outcome, Initiated)

    def test_declined_transfer_moves_no_money(self, engine, admin, employee, wallet):
        engine.approvals.create_rule(admin, "All transfers", WorkflowType.TRANSACTION,
                                     ApprovalType.ANYONE, 0, ["admin"])

        pending = engine.transfers.initiate_transfer(employee, wallet_transfer(wallet))
        engine.approvals.review(admin, pending.request.id, ReviewStatus.DECLINED, "no")

        assert balances(engine, wallet) == (100_000, 100_000)
        assert engine.transfers.list_transfers(wallet.id) == []

    def test_wallet_drained_before_approval(self, engine, owner, admin, employee, wallet):
        engine.approvals.create_rule(admin, "All transfers", WorkflowType.TRANSACTION,
                                     ApprovalType.ANYONE, 0, ["admin"])
        pending = engine.transfers.initiate_transfer(employee, wallet_transfer(wallet))
        engine.transfers.initiate_transfer(owner, wallet_transfer(wallet, amount=90_000))

        request = engine.approvals.review(admin, pending.request.id, ReviewStatus.APPROVED)

        assert request.execution_status == ExecutionStatus.FAILED
        assert balances(engine, wallet) == (7_500, 7_500)


class TestBudgetTransfers:

    @pytest.fixture
    def budget(self, engine, owner, wallet):
        return engine.budgets.request_budget(
            owner, wallet.id, "Travel", 20_000, beneficiaries=[Beneficiary("emp_ada", allocation=10_000)]
        ).budget

    def test_beneficiary_spends_from_budget(self, engine, employee, wallet, budget):
        request = TransferRequest(amount=5_000, account_number=ACCOUNT, bank_code=BANK, budget_id=budget.id)

        outcome = engine.transfers.initiate_transfer(employee, request)

        entry = outcome.entry
        assert entry.scope == EntryScope.BUDGET_TRANSFER
        assert entry.reference.startswith("bt_")
        assert entry.status == EntryStatus.SUCCESSFUL
        assert engine.budgets.get_budget(budget.id).balance == 12_500
        assert balances(engine, wallet) == (80_000, 92_500)

    def test_failed_budget_transfer_refunds_budget(self, engine, employee, transfer_provider, budget):
        transfer_provider.default_status = ProviderStatus.FAILED
        request = TransferRequest(amount=5_000, account_number=ACCOUNT, bank_code=BANK, budget_id=budget.id)

        engine.transfers.initiate_transfer(employee, request)

        assert engine.budgets.get_budget(budget.id).balance == 20_000

    def test_non_beneficiary_rejected(self, engine, budget):
        outsider = AuthUser(user_id="emp_zed", organization_id=ORG)
        request = TransferRequest(amount=1_000, account_number=ACCOUNT, bank_code=BANK, budget_id=budget.id)

        with pytest.raises(UnauthorizedBudgetAccess):
            engine.transfers.initiate_transfer(outsider, request)

    def test_allocation_exceeded(self, engine, employee, budget):
        request = TransferRequest(amount=10_001, account_number=ACCOUNT, bank_code=BANK, budget_id=budget.id)

        with pytest.raises(PolicyViolation) as exc:
            engine.transfers.initiate_transfer(employee, request)
        assert exc.value.kinds == (PolicyViolation.ALLOCATION,)

    def test_budget_balance_includes_fee(self, engine, owner, wallet):
        budget = engine.budgets.request_budget(owner, wallet.id, "Tiny", 6_000).budget
        request = TransferRequest(amount=5_000, account_number=ACCOUNT, bank_code=BANK, budget_id=budget.id)

        with pytest.raises(InsufficientFunds):
            engine.transfers.initiate_transfer(owner, request)


class TestTransferPolicies:

    def test_invoice_policy_blocks_transfer(self, engine, admin, employee, wallet):
        engine.policies.create_policy(admin, "Invoices", PolicyType.INVOICE)

        with pytest.raises(PolicyViolation) as exc:
            engine.transfers.initiate_transfer(employee, wallet_transfer(wallet))

        assert exc.value.kinds == (PolicyViolation.INVOICE,)
        assert engine.ledger.list_entries(wallet_id=wallet.id) == []

        outcome = engine.transfers.initiate_transfer(employee, wallet_transfer(wallet, invoice="inv.pdf"))
        assert outcome.entry.meta["invoice"] == "inv.pdf"
