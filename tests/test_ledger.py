"""
Tests for reservations, settlement and compensation on the ledger
"""

import threading
import pytest
from datetime import datetime, timedelta, timezone

from treasury_core.storage import InMemoryStorage
from treasury_core.audit import AuditTrail, AuditEventType
from treasury_core.currency import Currency
from treasury_core.errors import (
    BudgetStateError, DuplicateTransferAttempt, EntryNotFound, InsufficientFunds,
    UnexpectedSettlementStatus
)
from treasury_core.events import DomainEvent, EventDispatcher
from treasury_core.ledger import (
    EntryScope, EntryStatus, EntryType, LedgerCore, SettlementStatus
)
from treasury_core.wallets import Budget, BudgetStatus, WalletManager


class LedgerTestCase:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.wallets = WalletManager(self.storage, self.audit)
        self.ledger = LedgerCore(self.storage, self.wallets, self.audit, self.dispatcher)
        self.wallet = self.wallets.create_wallet("org_1", Currency.NGN, balance=100_000, primary=True)
        self.events = []
        self.dispatcher.subscribe_all(self.events.append)

    def balances(self):
        wallet = self.wallets.get_wallet(self.wallet.id)
        return wallet.balance, wallet.ledger_balance

    def make_budget(self, balance=20_000, status=BudgetStatus.ACTIVE):
        """Carve an active budget out of the wallet the way funding does"""
        now = datetime.now(timezone.utc)
        budget = Budget(
            id=f"budget_{status.value}",
            created_at=now,
            updated_at=now,
            organization_id="org_1",
            wallet_id=self.wallet.id,
            name="Travel",
            amount=balance,
            currency=Currency.NGN,
            created_by="owner",
            balance=balance,
            status=status,
        )
        self.wallets.adjust_wallet(self.wallet.id, balance=-balance)
        return self.wallets.save_budget(budget)


class TestReserveFunds(LedgerTestCase):

    def test_reserve_debits_amount_and_fee(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 50_000, 2_500, initiated_by="u1")

        assert self.balances() == (47_500, 47_500)
        assert entry.status == EntryStatus.PENDING
        assert entry.entry_type == EntryType.DEBIT
        assert entry.scope == EntryScope.WALLET_TRANSFER
        assert entry.balance_before == 100_000
        assert entry.balance_after == 47_500
        assert entry.reference.startswith("wt_")
        assert self.ledger.find_by_reference(entry.reference) == entry

    def test_insufficient_funds_leaves_nothing_behind(self):
        with pytest.raises(InsufficientFunds) as exc:
            self.ledger.reserve_funds(self.wallet.id, 99_000, 2_500, initiated_by="u1")

        assert exc.value.available == 100_000
        assert self.balances() == (100_000, 100_000)
        assert self.ledger.list_entries(wallet_id=self.wallet.id) == []

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValueError):
            self.ledger.reserve_funds(self.wallet.id, 0, initiated_by="u1")

    def test_reused_request_id_is_rejected(self):
        first = self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1", request_id="req-1")

        with pytest.raises(DuplicateTransferAttempt) as exc:
            self.ledger.reserve_funds(self.wallet.id, 2_000, initiated_by="u2", request_id="req-1")

        assert exc.value.existing_reference == first.reference
        assert self.balances() == (99_000, 99_000)

    def test_identical_transfer_inside_window_is_rejected(self):
        self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1", duplicate_window_seconds=60)

        with pytest.raises(DuplicateTransferAttempt):
            self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1", duplicate_window_seconds=60)

        # Different amount or different user is fine
        self.ledger.reserve_funds(self.wallet.id, 1_001, initiated_by="u1", duplicate_window_seconds=60)
        self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u2", duplicate_window_seconds=60)

    def test_failed_transfer_does_not_block_a_retry(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1", duplicate_window_seconds=60)
        self.ledger.settle(entry.id, SettlementStatus.FAILED)

        retry = self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1", duplicate_window_seconds=60)
        assert retry.status == EntryStatus.PENDING

    def test_concurrent_reservations_never_overdraw(self):
        results = {"ok": 0, "short": 0}
        lock = threading.Lock()

        def reserve(n):
            try:
                self.ledger.reserve_funds(self.wallet.id, 20_000, initiated_by=f"u{n}")
                outcome = "ok"
            except InsufficientFunds:
                outcome = "short"
            with lock:
                results[outcome] += 1

        threads = [threading.Thread(target=reserve, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == {"ok": 5, "short": 5}
        assert self.balances() == (0, 0)
        assert len(self.ledger.list_entries(wallet_id=self.wallet.id)) == 5


class TestSettlement(LedgerTestCase):

    def test_failure_restores_full_balance(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 50_000, 2_500, initiated_by="u1")

        result = self.ledger.settle(entry.id, SettlementStatus.FAILED, {"reason": "account closed"})

        assert result.applied
        assert self.balances() == (100_000, 100_000)
        settled = self.ledger.get_entry(entry.id)
        assert settled.status == EntryStatus.FAILED
        assert settled.gateway_response == {"reason": "account closed"}
        assert settled.settled_at is not None

    def test_success_keeps_the_debit(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 50_000, 2_500, initiated_by="u1")

        self.ledger.settle(entry.id, SettlementStatus.SUCCESSFUL)

        assert self.balances() == (47_500, 47_500)
        assert self.ledger.get_entry(entry.id).status == EntryStatus.SUCCESSFUL
        assert [e.event_type for e in self.events] == [DomainEvent.TRANSFER_SUCCEEDED]
        assert self.events[0].data["recipients"] == ["u1"]

    def test_replayed_outcomes_are_no_ops(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 50_000, 2_500, initiated_by="u1")
        self.ledger.settle(entry.id, SettlementStatus.FAILED)

        again = self.ledger.settle(entry.id, SettlementStatus.FAILED)
        late_success = self.ledger.settle(entry.id, SettlementStatus.SUCCESSFUL)

        assert not again.applied
        assert not late_success.applied
        assert self.balances() == (100_000, 100_000)
        assert self.ledger.get_entry(entry.id).status == EntryStatus.FAILED
        assert len(self.events) == 1

    def test_concurrent_failures_credit_back_once(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 50_000, 2_500, initiated_by="u1")
        applied = []

        def fail():
            applied.append(self.ledger.settle(entry.id, SettlementStatus.FAILED).applied)

        threads = [threading.Thread(target=fail) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert applied.count(True) == 1
        assert self.balances() == (100_000, 100_000)

    def test_reversal_after_success_appends_compensating_credit(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 50_000, 2_500, initiated_by="u1")
        self.ledger.settle(entry.id, SettlementStatus.SUCCESSFUL)

        result = self.ledger.settle(entry.id, SettlementStatus.REVERSED)

        assert result.applied
        assert self.balances() == (100_000, 100_000)
        original = self.ledger.get_entry(entry.id)
        assert original.status == EntryStatus.SUCCESSFUL
        assert original.reversal["entry"] == result.compensating_entry_id

        credit = self.ledger.get_entry(result.compensating_entry_id)
        assert credit.entry_type == EntryType.CREDIT
        assert credit.scope == EntryScope.TRANSFER_REVERSAL
        assert credit.reference == f"rev_{entry.reference}"
        assert credit.balance_before == 47_500
        assert credit.balance_after == 100_000
        assert self.events[-1].event_type == DomainEvent.TRANSFER_REVERSED

        assert not self.ledger.settle(entry.id, SettlementStatus.REVERSED).applied
        assert self.balances() == (100_000, 100_000)

    def test_reversal_of_pending_entry_is_a_failure(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 10_000, initiated_by="u1")

        result = self.ledger.settle(entry.id, SettlementStatus.REVERSED)

        assert result.applied
        assert self.ledger.get_entry(entry.id).status == EntryStatus.FAILED
        assert self.balances() == (100_000, 100_000)

    def test_inflow_cannot_be_reversed(self):
        entry = self.ledger.record_inflow(self.wallet.id, 5_000, "dep_1")

        with pytest.raises(UnexpectedSettlementStatus):
            self.ledger.settle(entry.id, SettlementStatus.REVERSED)

    def test_unknown_entry(self):
        with pytest.raises(EntryNotFound):
            self.ledger.settle("missing", SettlementStatus.SUCCESSFUL)

    def test_settlement_is_audited(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1")
        self.ledger.settle(entry.id, SettlementStatus.FAILED)

        types = [e.event_type for e in self.audit.get_events_for_entity("wallet_entry", entry.id)]
        assert types == [AuditEventType.FUNDS_RESERVED, AuditEventType.ENTRY_FAILED]
        assert self.audit.verify_integrity()["valid"]


class TestBudgetReservations(LedgerTestCase):

    def test_budget_debit_moves_budget_and_ledger_balance(self):
        budget = self.make_budget()

        entry = self.ledger.reserve_budget_funds(budget.id, 5_000, 100, initiated_by="u1")

        stored = self.wallets.get_budget(budget.id)
        assert stored.balance == 14_900
        assert stored.amount_used == 5_100
        assert self.balances() == (80_000, 94_900)
        assert entry.scope == EntryScope.BUDGET_TRANSFER
        assert entry.budget_id == budget.id
        assert entry.balance_after == 14_900

    def test_failed_budget_debit_returns_to_budget(self):
        budget = self.make_budget()
        entry = self.ledger.reserve_budget_funds(budget.id, 5_000, 100, initiated_by="u1")

        self.ledger.settle(entry.id, SettlementStatus.FAILED)

        stored = self.wallets.get_budget(budget.id)
        assert stored.balance == 20_000
        assert stored.amount_used == 0
        assert self.balances() == (80_000, 100_000)

    def test_failure_after_budget_closed_returns_to_wallet(self):
        budget = self.make_budget()
        entry = self.ledger.reserve_budget_funds(budget.id, 5_000, initiated_by="u1")
        self.wallets.transition_budget(budget.id, BudgetStatus.ACTIVE, BudgetStatus.CLOSED)

        self.ledger.settle(entry.id, SettlementStatus.FAILED)

        assert self.wallets.get_budget(budget.id).balance == 15_000
        assert self.balances() == (85_000, 100_000)

    def test_paused_budget_cannot_spend(self):
        budget = self.make_budget(status=BudgetStatus.PAUSED)

        with pytest.raises(BudgetStateError):
            self.ledger.reserve_budget_funds(budget.id, 1_000, initiated_by="u1")

    def test_budget_overspend_rejected(self):
        budget = self.make_budget(balance=1_000)

        with pytest.raises(InsufficientFunds):
            self.ledger.reserve_budget_funds(budget.id, 1_000, 1, initiated_by="u1")

        assert self.wallets.get_budget(budget.id).balance == 1_000
        assert self.balances() == (99_000, 100_000)


class TestLedgerQueries(LedgerTestCase):

    def test_record_inflow_is_idempotent(self):
        first = self.ledger.record_inflow(self.wallet.id, 5_000, "dep_1")
        second = self.ledger.record_inflow(self.wallet.id, 5_000, "dep_1")

        assert first.id == second.id
        assert first.status == EntryStatus.SUCCESSFUL
        assert self.balances() == (105_000, 105_000)

    def test_user_spend_counts_pending_and_successful_debits(self):
        a = self.ledger.reserve_funds(self.wallet.id, 1_000, 25, initiated_by="u1")
        b = self.ledger.reserve_funds(self.wallet.id, 2_000, 25, initiated_by="u1")
        self.ledger.reserve_funds(self.wallet.id, 4_000, initiated_by="u2")
        self.ledger.settle(a.id, SettlementStatus.SUCCESSFUL)
        c = self.ledger.reserve_funds(self.wallet.id, 8_000, initiated_by="u1")
        self.ledger.settle(c.id, SettlementStatus.FAILED)

        since = datetime.now(timezone.utc) - timedelta(days=1)
        assert self.ledger.user_spend("u1", since) == a.amount + b.amount

    def test_user_spend_ignores_reversed_debits(self):
        kept = self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1")
        clawed_back = self.ledger.reserve_funds(self.wallet.id, 6_000, initiated_by="u1")
        self.ledger.settle(kept.id, SettlementStatus.SUCCESSFUL)
        self.ledger.settle(clawed_back.id, SettlementStatus.SUCCESSFUL)
        self.ledger.settle(clawed_back.id, SettlementStatus.REVERSED)

        since = datetime.now(timezone.utc) - timedelta(days=1)
        assert self.ledger.user_spend("u1", since) == 1_000

    def test_pending_entries_older_than(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1")
        self.ledger.record_inflow(self.wallet.id, 5_000, "dep_1")

        future = datetime.now(timezone.utc) + timedelta(seconds=1)
        past = datetime.now(timezone.utc) - timedelta(hours=1)

        assert [e.id for e in self.ledger.pending_entries_older_than(future)] == [entry.id]
        assert self.ledger.pending_entries_older_than(past) == []

    def test_find_by_provider_reference(self):
        entry = self.ledger.reserve_funds(self.wallet.id, 1_000, initiated_by="u1")
        self.ledger.set_provider_ref(entry.id, "psk_123")

        assert self.ledger.find_by_reference("psk_123").id == entry.id
        # Provider reference is write-once
        assert self.ledger.set_provider_ref(entry.id, "psk_456") is None

    def test_missing_scope_handlers_fail_fast(self):
        with pytest.raises(RuntimeError):
            self.ledger.verify_scope_handlers()
