"""
Budget Lifecycle Module

Budgets are allocations carved out of a wallet's available balance:

    Pending --fund--> Active <--pause/unpause--> Paused
       |                 |                          |
       +--decline--+     +---------close------------+
                   v     v
                   Closed

Funding moves money off the wallet's available balance onto the budget
through a BUDGET_FUNDING entry; closing returns the remainder to the
budget's project (or the wallet) through a BUDGET_CLOSURE entry. Both
entries are settled inside the same transaction that creates them, so the
budget's state change and its ledger record commit together.

Budgets past their expiry are closed by a recurring sweep job, which takes
the same closure path with ``closed_by="system"``.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union
import uuid

from .approvals import (
    ApprovalPending, ApprovalWorkflow, BudgetExtensionPayload, ExpensePayload,
    FundRequestPayload, WorkflowType
)
from .errors import BudgetStateError, PolicyViolation, UnauthorizedBudgetAccess
from .events import DomainEvent, EventDispatcher
from .identity import AuthUser
from .ledger import (
    EntryScope, EntryStatus, EntryType, LedgerCore, ScopeHandler, SettlementStatus,
    WalletEntry, generate_reference
)
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .wallets import Beneficiary, Budget, BudgetStatus, WalletManager
from .logging_config import get_logger, log_action

logger = get_logger("treasury.budgets")

CLOSE_EXPIRED_BUDGETS_JOB = "close_expired_budgets"
SYSTEM_USER = "system"
EXPIRED_REASON = "Budget expired"


@dataclass(frozen=True)
class FundingRequired:
    """The wallet cannot cover the budget yet; nothing was moved"""
    budget: Budget
    required: int
    available: int

    @property
    def shortfall(self) -> int:
        return self.required - self.available


@dataclass(frozen=True)
class BudgetFunded:
    budget: Budget
    entry: WalletEntry


FundingOutcome = Union[BudgetFunded, FundingRequired]


class BudgetFundingHandler(ScopeHandler):
    """
    Confirms BUDGET_FUNDING entries: activation funds a Pending budget,
    extension raises an Active budget's ceiling and balance.
    """
    reversible = False

    def __init__(self, wallets: WalletManager):
        self.wallets = wallets

    def confirm(self, entry: WalletEntry) -> None:
        if entry.meta.get("purpose") == "extension":
            self.wallets.adjust_budget(entry.budget_id, balance=entry.amount, amount=entry.amount,
                                       require_status=BudgetStatus.ACTIVE)
            return
        now = datetime.now(timezone.utc)
        activated = self.wallets.transition_budget(
            entry.budget_id, BudgetStatus.PENDING, BudgetStatus.ACTIVE,
            sets={
                "balance": entry.amount,
                "approved_by": entry.initiated_by,
                "approved_at": now,
            }
        )
        if activated is None:
            raise BudgetStateError(f"Budget {entry.budget_id} is no longer pending")

    def compensate(self, entry: WalletEntry) -> None:
        self.wallets.adjust_wallet(entry.wallet_id, balance=entry.amount)


class BudgetClosureHandler(ScopeHandler):
    """Confirms BUDGET_CLOSURE entries by crediting the project or the wallet"""
    reversible = False

    def __init__(self, wallets: WalletManager):
        self.wallets = wallets

    def confirm(self, entry: WalletEntry) -> None:
        if entry.project_id:
            self.wallets.adjust_project(entry.project_id, balance=entry.amount)
        else:
            self.wallets.adjust_wallet(entry.wallet_id, balance=entry.amount)

    def compensate(self, entry: WalletEntry) -> None:
        self.wallets.adjust_budget(entry.budget_id, balance=entry.amount)


class BudgetManager:
    """Budget creation, funding, extension, pause and closure"""

    def __init__(
        self,
        storage: StorageInterface,
        wallets: WalletManager,
        ledger: LedgerCore,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        approvals: Optional[ApprovalWorkflow] = None
    ):
        self.storage = storage
        self.wallets = wallets
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        self.approvals = approvals

        ledger.register_scope_handler(EntryScope.BUDGET_FUNDING, BudgetFundingHandler(wallets))
        ledger.register_scope_handler(EntryScope.BUDGET_CLOSURE, BudgetClosureHandler(wallets))

    def create_budget(
        self,
        user: AuthUser,
        wallet_id: str,
        name: str,
        amount: int,
        beneficiaries: Sequence[Beneficiary] = (),
        threshold: Optional[int] = None,
        expiry: Optional[datetime] = None,
        project_id: Optional[str] = None
    ) -> Budget:
        """Create a Pending budget on one of the organization's wallets"""
        if amount <= 0:
            raise ValueError("Budget amount must be positive")
        for beneficiary in beneficiaries:
            if beneficiary.allocation is not None and not 0 < beneficiary.allocation <= amount:
                raise ValueError(
                    f"Allocation for {beneficiary.user_id} must be between 1 and the budget amount"
                )

        wallet = self.wallets.require_wallet(wallet_id, user.organization_id)
        if project_id:
            project = self.wallets.get_project(project_id)
            if project is None or project.organization_id != user.organization_id:
                raise ValueError(f"Project {project_id} not found")

        now = datetime.now(timezone.utc)
        budget = Budget(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=user.organization_id,
            wallet_id=wallet.id,
            name=name,
            amount=amount,
            currency=wallet.currency,
            created_by=user.user_id,
            threshold=threshold,
            beneficiaries=tuple(beneficiaries),
            project_id=project_id,
            expiry=expiry,
        )
        self.wallets.save_budget(budget)
        self.audit_trail.log_event(
            AuditEventType.BUDGET_CREATED, "budget", budget.id,
            {"wallet_id": wallet.id, "amount": amount, "name": name},
            user_id=user.user_id
        )
        log_action(logger, "info", f"Budget {name} created", user_id=user.user_id,
                   action="create_budget", resource=f"budget:{budget.id}")
        return budget

    def request_budget(self, user: AuthUser, wallet_id: str, name: str, amount: int,
                       **kwargs) -> Union[FundingOutcome, ApprovalPending]:
        """Create a budget and route its funding through the expense approval rules"""
        budget = self.create_budget(user, wallet_id, name, amount, **kwargs)
        outcome = self._approvals().request_or_execute(
            user, WorkflowType.EXPENSE, amount, ExpensePayload(budget_id=budget.id), budget_id=budget.id
        )
        return outcome if isinstance(outcome, ApprovalPending) else outcome.result

    def request_extension(self, user: AuthUser, budget_id: str, amount: int,
                          expiry: Optional[datetime] = None,
                          beneficiaries: Sequence[Beneficiary] = ()) -> Union[FundingOutcome, ApprovalPending]:
        payload = BudgetExtensionPayload(budget_id=budget_id, amount=amount, expiry=expiry,
                                         beneficiaries=tuple(beneficiaries))
        outcome = self._approvals().request_or_execute(
            user, WorkflowType.BUDGET_EXTENSION, amount, payload, budget_id=budget_id
        )
        return outcome if isinstance(outcome, ApprovalPending) else outcome.result

    def request_funds(self, user: AuthUser, budget_id: str, amount: int,
                      request_type: str = "expense") -> Union[FundingOutcome, ApprovalPending]:
        payload = FundRequestPayload(budget_id=budget_id, amount=amount, request_type=request_type)
        outcome = self._approvals().request_or_execute(
            user, WorkflowType.FUND_REQUEST, amount, payload, budget_id=budget_id
        )
        return outcome if isinstance(outcome, ApprovalPending) else outcome.result

    def _approvals(self) -> ApprovalWorkflow:
        if self.approvals is None:
            raise RuntimeError("BudgetManager has no approval workflow bound")
        return self.approvals

    # Approval executors

    def execute_expense(self, user: AuthUser, payload: ExpensePayload) -> FundingOutcome:
        return self.approve_expense(user, payload.budget_id)

    def execute_extension(self, user: AuthUser, payload: BudgetExtensionPayload) -> FundingOutcome:
        return self.extend_budget(user, payload.budget_id, payload.amount,
                                  expiry=payload.expiry, beneficiaries=payload.beneficiaries or None)

    def execute_fund_request(self, user: AuthUser, payload: FundRequestPayload) -> FundingOutcome:
        if payload.request_type == "extension":
            return self.extend_budget(user, payload.budget_id, payload.amount)
        return self.approve_expense(user, payload.budget_id)

    def decline_expense(self, user: AuthUser, payload: ExpensePayload) -> None:
        self.decline_budget(user, payload.budget_id, reason="Approval declined")

    # Lifecycle

    def approve_expense(self, user: AuthUser, budget_id: str) -> FundingOutcome:
        """
        Fund a Pending budget if the wallet can cover it.

        Returns FundingRequired (and leaves the budget Pending) when the
        wallet's available balance is short.
        """
        budget = self.wallets.require_budget(budget_id, user.organization_id)
        if budget.status != BudgetStatus.PENDING:
            raise BudgetStateError(f"Budget {budget_id} is {budget.status.value}, expected pending")
        wallet = self.wallets.require_wallet(budget.wallet_id)
        if wallet.balance < budget.amount:
            log_action(logger, "info", f"Budget {budget_id} needs funding", user_id=user.user_id,
                       action="approve_expense", resource=f"budget:{budget_id}",
                       extra={"required": budget.amount, "available": wallet.balance})
            return FundingRequired(budget, budget.amount, wallet.balance)
        return self.fund_budget(user, budget_id)

    def fund_budget(self, user: AuthUser, budget_id: str) -> BudgetFunded:
        """Move the budget amount off the wallet and activate the budget"""
        with self.storage.atomic():
            budget = self.wallets.require_budget(budget_id, user.organization_id)
            if budget.status != BudgetStatus.PENDING:
                raise BudgetStateError(f"Budget {budget_id} is {budget.status.value}, expected pending")
            entry = self._record_funding(user, budget, budget.amount, purpose="activation")
            self.ledger.settle(entry.id, SettlementStatus.SUCCESSFUL)
            budget = self.wallets.require_budget(budget_id)
            self.audit_trail.log_event(
                AuditEventType.BUDGET_FUNDED, "budget", budget.id,
                {"amount": budget.amount, "entry": entry.reference}, user_id=user.user_id
            )

        log_action(logger, "info", f"Budget {budget.name} funded", user_id=user.user_id,
                   action="fund_budget", resource=f"budget:{budget.id}")
        self.dispatcher.emit(DomainEvent.BUDGET_FUNDED, "budget", budget.id, {
            "name": budget.name,
            "amount": budget.balance,
            "currency": budget.currency.code,
            "recipients": [b.user_id for b in budget.beneficiaries],
        })
        return BudgetFunded(budget, self.ledger.require_entry(entry.id))

    def _record_funding(self, user: AuthUser, budget: Budget, amount: int, purpose: str) -> WalletEntry:
        change = self.wallets.adjust_wallet(budget.wallet_id, balance=-amount)
        return self.ledger.record_entry(
            organization_id=budget.organization_id,
            wallet_id=budget.wallet_id,
            entry_type=EntryType.DEBIT,
            status=EntryStatus.PENDING,
            scope=EntryScope.BUDGET_FUNDING,
            amount=amount,
            fee=0,
            currency=budget.currency,
            reference=generate_reference("bf"),
            initiated_by=user.user_id,
            balance_before=change.balance_before,
            balance_after=change.balance_after,
            ledger_balance_before=change.ledger_balance_before,
            ledger_balance_after=change.ledger_balance_after,
            budget_id=budget.id,
            project_id=budget.project_id,
            narration=f"Funding for budget {budget.name}",
            meta={"purpose": purpose},
        )

    def extend_budget(
        self,
        user: AuthUser,
        budget_id: str,
        amount: int,
        expiry: Optional[datetime] = None,
        beneficiaries: Optional[Sequence[Beneficiary]] = None
    ) -> FundingOutcome:
        """Raise an Active budget's amount and balance from the wallet"""
        if amount <= 0:
            raise ValueError("Extension amount must be positive")
        budget = self.wallets.require_budget(budget_id, user.organization_id)
        if budget.status != BudgetStatus.ACTIVE:
            raise BudgetStateError(f"Only active budgets can be extended; {budget_id} is {budget.status.value}")
        wallet = self.wallets.require_wallet(budget.wallet_id)
        if wallet.balance < amount:
            return FundingRequired(budget, amount, wallet.balance)

        with self.storage.atomic():
            entry = self._record_funding(user, budget, amount, purpose="extension")
            self.ledger.settle(entry.id, SettlementStatus.SUCCESSFUL)
            sets: Dict[str, Any] = {}
            if expiry is not None:
                sets["expiry"] = expiry
            if beneficiaries is not None:
                sets["beneficiaries"] = list(beneficiaries)
            if sets:
                self.storage.update_where(self.wallets.budgets_table, budget_id, {}, sets=sets)
            budget = self.wallets.require_budget(budget_id)
            self.audit_trail.log_event(
                AuditEventType.BUDGET_EXTENDED, "budget", budget_id,
                {"amount": amount, "new_amount": budget.amount, "entry": entry.reference},
                user_id=user.user_id
            )
        return BudgetFunded(budget, self.ledger.require_entry(entry.id))

    def pause_budget(self, user: AuthUser, budget_id: str) -> Budget:
        budget = self.wallets.require_budget(budget_id, user.organization_id)
        if budget.status == BudgetStatus.PAUSED:
            raise BudgetStateError(f"Budget {budget_id} is already paused")
        paused = self.wallets.transition_budget(budget_id, BudgetStatus.ACTIVE, BudgetStatus.PAUSED)
        if paused is None:
            raise BudgetStateError(f"Only active budgets can be paused; {budget_id} is {budget.status.value}")
        self.audit_trail.log_event(AuditEventType.BUDGET_PAUSED, "budget", budget_id, {},
                                   user_id=user.user_id)
        return paused

    def unpause_budget(self, user: AuthUser, budget_id: str) -> Budget:
        self.wallets.require_budget(budget_id, user.organization_id)
        resumed = self.wallets.transition_budget(budget_id, BudgetStatus.PAUSED, BudgetStatus.ACTIVE)
        if resumed is None:
            raise BudgetStateError(f"Budget {budget_id} is not paused")
        self.audit_trail.log_event(AuditEventType.BUDGET_UNPAUSED, "budget", budget_id, {},
                                   user_id=user.user_id)
        return resumed

    def decline_budget(self, user: AuthUser, budget_id: str, reason: Optional[str] = None) -> Budget:
        """Close a budget that was never funded"""
        self.wallets.require_budget(budget_id, user.organization_id)
        declined = self.wallets.transition_budget(
            budget_id, BudgetStatus.PENDING, BudgetStatus.CLOSED,
            sets={"closed_by": user.user_id, "close_reason": reason,
                  "closed_at": datetime.now(timezone.utc)}
        )
        if declined is None:
            raise BudgetStateError(f"Only pending budgets can be declined; {budget_id} is not pending")
        self.audit_trail.log_event(AuditEventType.BUDGET_DECLINED, "budget", budget_id,
                                   {"reason": reason}, user_id=user.user_id)
        return declined

    def close_budget(self, user: AuthUser, budget_id: str, reason: Optional[str] = None) -> Budget:
        """
        Close an Active or Paused budget and return its remaining balance.

        The status change is conditioned on the balance still being the one
        read, so a debit racing the closure either lands first (and the
        smaller remainder is returned) or fails against a Closed budget.
        """
        budget = self.wallets.require_budget(budget_id, user.organization_id)
        if not (user.is_admin or user.user_id == budget.created_by):
            raise UnauthorizedBudgetAccess(f"User {user.user_id} cannot close budget {budget_id}")
        return self._close(budget_id, user.user_id, reason)

    def close_expired_budgets(self, now: Optional[datetime] = None) -> int:
        """Close every Active or Paused budget past its expiry; returns how many closed"""
        now = now or datetime.now(timezone.utc)
        expired = [
            Budget.from_dict(data)
            for status in (BudgetStatus.ACTIVE, BudgetStatus.PAUSED)
            for data in self.storage.find(self.wallets.budgets_table, {"status": status.value})
        ]
        expired = [budget for budget in expired if budget.is_expired(now)]

        closed = 0
        for budget in expired:
            try:
                self._close(budget.id, SYSTEM_USER, EXPIRED_REASON)
            except BudgetStateError as e:
                logger.warning(f"Skipped closing expired budget {budget.id}: {e}")
                continue
            closed += 1
        if expired:
            log_action(logger, "info", f"Closed {closed} of {len(expired)} expired budgets",
                       action="close_expired_budgets", resource="budgets")
        return closed

    def _close(self, budget_id: str, closed_by: str, reason: Optional[str]) -> Budget:
        with self.storage.atomic():
            budget = self.wallets.require_budget(budget_id)
            if budget.status not in (BudgetStatus.ACTIVE, BudgetStatus.PAUSED):
                raise BudgetStateError(f"Budget {budget_id} is {budget.status.value} and cannot be closed")

            remainder = budget.balance
            now = datetime.now(timezone.utc)
            closed = self.storage.update_where(
                self.wallets.budgets_table, budget_id,
                {"status": budget.status.value, "balance": remainder},
                sets={"status": BudgetStatus.CLOSED.value, "balance": 0, "closed_by": closed_by,
                      "close_reason": reason, "closed_at": now}
            )
            if closed is None:
                raise BudgetStateError(f"Budget {budget_id} changed while closing; retry")

            entry = None
            if remainder > 0:
                entry = self._record_closure(closed_by, budget, remainder)
                self.ledger.settle(entry.id, SettlementStatus.SUCCESSFUL)
            budget = Budget.from_dict(closed)
            self.audit_trail.log_event(
                AuditEventType.BUDGET_CLOSED, "budget", budget_id,
                {"reason": reason, "returned": remainder,
                 "entry": entry.reference if entry else None},
                user_id=closed_by
            )

        log_action(logger, "info", f"Budget {budget.name} closed", user_id=closed_by,
                   action="close_budget", resource=f"budget:{budget_id}",
                   extra={"returned": remainder})
        self.dispatcher.emit(DomainEvent.BUDGET_CLOSED, "budget", budget_id, {
            "name": budget.name,
            "amount": remainder,
            "recipients": [b.user_id for b in budget.beneficiaries],
        })
        return budget

    def _record_closure(self, closed_by: str, budget: Budget, remainder: int) -> WalletEntry:
        wallet = self.wallets.require_wallet(budget.wallet_id)
        before = wallet.balance
        if budget.project_id:
            project = self.wallets.get_project(budget.project_id)
            before = project.balance if project else 0
        return self.ledger.record_entry(
            organization_id=budget.organization_id,
            wallet_id=budget.wallet_id,
            entry_type=EntryType.CREDIT,
            status=EntryStatus.PENDING,
            scope=EntryScope.BUDGET_CLOSURE,
            amount=remainder,
            fee=0,
            currency=budget.currency,
            reference=generate_reference("bc"),
            initiated_by=closed_by,
            balance_before=before,
            balance_after=before + remainder,
            ledger_balance_before=wallet.ledger_balance,
            ledger_balance_after=wallet.ledger_balance,
            budget_id=budget.id,
            project_id=budget.project_id,
            narration=f"Closure of budget {budget.name}",
        )

    # Access checks

    def check_beneficiary(self, user: AuthUser, budget: Budget, amount: int) -> None:
        """
        Raise unless the user may spend ``amount`` from the budget: they must
        be a beneficiary (or the owner), the budget must be Active and unexpired,
        and a capped beneficiary must stay within their allocation.
        """
        if budget.organization_id != user.organization_id:
            raise UnauthorizedBudgetAccess(f"Budget {budget.id} belongs to another organization")
        if budget.status != BudgetStatus.ACTIVE:
            raise BudgetStateError(f"Budget {budget.id} is {budget.status.value}")
        if budget.is_expired():
            raise BudgetStateError(f"Budget {budget.id} expired")
        beneficiary = budget.beneficiary(user.user_id)
        if beneficiary is None:
            if user.is_owner:
                return
            raise UnauthorizedBudgetAccess(f"User {user.user_id} is not a beneficiary of budget {budget.id}")
        if beneficiary.allocation is not None:
            spent = self.ledger.user_spend(user.user_id, budget.created_at, budget_id=budget.id)
            if spent + amount > beneficiary.allocation:
                raise PolicyViolation(
                    [PolicyViolation.ALLOCATION],
                    f"Transfer exceeds the allocation of {beneficiary.allocation} "
                    f"for {user.user_id} on budget {budget.id}"
                )

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        return self.wallets.get_budget(budget_id)

    def list_budgets(self, organization_id: str, status: Optional[BudgetStatus] = None) -> List[Budget]:
        return self.wallets.list_budgets(organization_id, status)
