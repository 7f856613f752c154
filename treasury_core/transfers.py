"""
Transfer Service

Outbound transfers to external bank accounts, from a wallet or from a budget.

initiate_transfer runs the synchronous checks (budget access, policies,
available balance, counterparty resolution) and then hands a typed
TransactionPayload to the approval workflow. Either the workflow parks it for
reviewers, or ``execute_transfer`` runs at once: funds are reserved with a
Pending entry, the provider is called, and an immediate terminal answer is
settled on the spot. A pending answer (or an unreachable provider) leaves the
entry Pending with a requery scheduled.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from .approvals import ApprovalPending, ApprovalWorkflow, TransactionPayload, WorkflowType
from .budgets import BudgetManager
from .config import FeeTier
from .counterparty import CounterpartyResolver, ResolvedAccount
from .errors import InsufficientFunds, ProviderUnavailable
from .events import DomainEvent, EventDispatcher
from .identity import AuthUser
from .ledger import EntryScope, LedgerCore, SettlementStatus, WalletEntry
from .policies import PolicyEngine, TransferPolicyQuery
from .providers import ProviderRegistry, TransferInstruction
from .settlement import SettlementReconciler
from .wallets import WalletManager
from .logging_config import get_logger, log_action

logger = get_logger("treasury.transfers")


class FeeSchedule:
    """Tiered transfer fees with a flat fallback"""

    def __init__(self, flat_fee: int, tiers: Sequence[FeeTier] = ()):
        self.flat_fee = flat_fee
        self.tiers = sorted(tiers, key=lambda t: t.min_amount)

    def calculate(self, amount: int) -> int:
        for tier in self.tiers:
            if amount >= tier.min_amount and (tier.max_amount is None or amount <= tier.max_amount):
                return tier.fee
        return self.flat_fee


@dataclass(frozen=True)
class TransferRequest:
    amount: int
    account_number: str
    bank_code: str
    wallet_id: Optional[str] = None
    budget_id: Optional[str] = None
    narration: str = ""
    invoice: Optional[str] = None
    category: Optional[str] = None
    provider: Optional[str] = None
    idempotency_key: Optional[str] = None
    save_recipient: bool = False


@dataclass(frozen=True)
class Initiated:
    """Funds reserved and handed to the provider; ``entry`` reflects any immediate settlement"""
    entry: WalletEntry
    counterparty: ResolvedAccount


TransferOutcome = Union[Initiated, ApprovalPending]


class TransferService:
    """Entry point for outbound wallet and budget transfers"""

    def __init__(
        self,
        wallets: WalletManager,
        ledger: LedgerCore,
        budgets: BudgetManager,
        policies: PolicyEngine,
        counterparties: CounterpartyResolver,
        approvals: ApprovalWorkflow,
        providers: ProviderRegistry,
        reconciler: SettlementReconciler,
        fees: FeeSchedule,
        dispatcher: Optional[EventDispatcher] = None,
        duplicate_window_seconds: int = 60,
        requery_after_seconds: float = 3600
    ):
        self.wallets = wallets
        self.ledger = ledger
        self.budgets = budgets
        self.policies = policies
        self.counterparties = counterparties
        self.approvals = approvals
        self.providers = providers
        self.reconciler = reconciler
        self.fees = fees
        self.dispatcher = dispatcher or EventDispatcher()
        self.duplicate_window_seconds = duplicate_window_seconds
        self.requery_after_seconds = requery_after_seconds

    def initiate_transfer(self, user: AuthUser, request: TransferRequest) -> TransferOutcome:
        """
        Check, then execute or park a transfer behind approval.

        Raises:
            PolicyViolation, InsufficientFunds, UnauthorizedBudgetAccess,
            BudgetStateError, InvalidAccount, ProviderUnavailable,
            DuplicateTransferAttempt
        """
        if request.amount <= 0:
            raise ValueError("Transfer amount must be positive")
        fee = self.fees.calculate(request.amount)
        ProviderRegistry.parse_name(request.provider)

        if request.budget_id:
            budget = self.wallets.require_budget(request.budget_id, user.organization_id)
            self.budgets.check_beneficiary(user, budget, request.amount)
            wallet_id, available = budget.wallet_id, budget.balance
            resource, resource_id = "budget", budget.id
        else:
            if not request.wallet_id:
                raise ValueError("A transfer needs a wallet or a budget")
            wallet = self.wallets.require_wallet(request.wallet_id, user.organization_id)
            wallet_id, available = wallet.id, wallet.balance
            resource, resource_id = "wallet", wallet.id

        self.policies.enforce(user, TransferPolicyQuery(
            amount=request.amount,
            budget_id=request.budget_id,
            bank_code=request.bank_code,
            account_number=request.account_number,
            invoice=request.invoice,
        ))
        if available < request.amount + fee:
            raise InsufficientFunds(resource, resource_id, request.amount + fee, available)

        resolved = self.counterparties.resolve(user.organization_id, request.account_number,
                                               request.bank_code, save_recipient=request.save_recipient)
        payload = TransactionPayload(
            wallet_id=wallet_id,
            amount=request.amount,
            account_number=request.account_number,
            bank_code=request.bank_code,
            budget_id=request.budget_id,
            account_name=resolved.account_name,
            bank_name=resolved.bank_name,
            narration=request.narration,
            invoice=request.invoice,
            provider=request.provider,
            category=request.category,
            request_id=request.idempotency_key,
            save_recipient=request.save_recipient,
        )
        outcome = self.approvals.request_or_execute(
            user, WorkflowType.TRANSACTION, request.amount, payload, budget_id=request.budget_id
        )
        if isinstance(outcome, ApprovalPending):
            return outcome
        return outcome.result

    def execute_transfer(self, user: AuthUser, payload: TransactionPayload) -> Initiated:
        """Reserve funds, call the provider and settle an immediate outcome"""
        resolved = self.counterparties.resolve(user.organization_id, payload.account_number,
                                               payload.bank_code, save_recipient=payload.save_recipient)
        fee = self.fees.calculate(payload.amount)
        provider_name = ProviderRegistry.parse_name(payload.provider) or self.providers.default
        meta = {
            "counterparty": {
                "account_number": payload.account_number,
                "bank_code": payload.bank_code,
                "account_name": resolved.account_name,
                "bank_name": resolved.bank_name,
                "counterparty_id": resolved.counterparty_id,
            },
            "category": payload.category,
            "invoice": payload.invoice,
        }

        if payload.budget_id:
            budget = self.wallets.require_budget(payload.budget_id, user.organization_id)
            self.budgets.check_beneficiary(user, budget, payload.amount)
            entry = self.ledger.reserve_budget_funds(
                payload.budget_id, payload.amount, fee,
                initiated_by=user.user_id,
                narration=payload.narration,
                provider=provider_name.value,
                meta=meta,
                request_id=payload.request_id,
                duplicate_window_seconds=self.duplicate_window_seconds,
            )
        else:
            self.wallets.require_wallet(payload.wallet_id, user.organization_id)
            entry = self.ledger.reserve_funds(
                payload.wallet_id, payload.amount, fee,
                initiated_by=user.user_id,
                scope=EntryScope.WALLET_TRANSFER,
                narration=payload.narration,
                provider=provider_name.value,
                meta=meta,
                request_id=payload.request_id,
                duplicate_window_seconds=self.duplicate_window_seconds,
            )

        self.dispatcher.emit(DomainEvent.TRANSFER_INITIATED, "wallet_entry", entry.id, {
            "reference": entry.reference,
            "amount": entry.amount,
            "fee": entry.fee,
            "recipients": [user.user_id],
        })
        entry = self.send_reserved(entry, payload.account_number, payload.bank_code, resolved.account_name)
        return Initiated(entry, resolved)

    def send_reserved(self, entry: WalletEntry, account_number: str, bank_code: str,
                      account_name: str) -> WalletEntry:
        """
        Hand a reserved Pending entry to its provider.

        Must be called outside any storage transaction.
        """
        provider = self.providers.get(ProviderRegistry.parse_name(entry.provider))
        instruction = TransferInstruction(
            reference=entry.reference,
            amount=entry.amount,
            currency=entry.currency,
            account_number=account_number,
            bank_code=bank_code,
            account_name=account_name,
            narration=entry.narration,
        )
        try:
            result = provider.initiate_transfer(instruction)
        except ProviderUnavailable as e:
            # The provider may or may not have accepted it; only a requery can tell
            log_action(logger, "warning", f"Provider unavailable for {entry.reference}: {e}",
                       user_id=entry.initiated_by, action="initiate_transfer",
                       resource=f"wallet_entry:{entry.reference}")
            self.reconciler.schedule_requery(entry.id, delay_seconds=self.requery_after_seconds)
            return self.ledger.require_entry(entry.id)

        if result.provider_ref:
            self.ledger.set_provider_ref(entry.id, result.provider_ref)

        if result.status.is_terminal:
            self.ledger.settle(entry.id, SettlementStatus(result.status.value), result.gateway_response)
        else:
            self.reconciler.schedule_requery(entry.id, delay_seconds=self.requery_after_seconds)

        log_action(logger, "info", f"Transfer {entry.reference} initiated: {result.status.value}",
                   user_id=entry.initiated_by, action="initiate_transfer",
                   resource=f"wallet_entry:{entry.reference}",
                   extra={"provider": entry.provider, "latency_ms": result.latency_ms})
        return self.ledger.require_entry(entry.id)

    def list_transfers(self, wallet_id: str) -> List[WalletEntry]:
        return [e for e in self.ledger.list_entries(wallet_id=wallet_id) if e.scope in
                (EntryScope.WALLET_TRANSFER, EntryScope.BUDGET_TRANSFER)]
