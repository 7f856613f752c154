"""
Ledger Core

Wallet entries and the transactional primitives that move money:

* ``reserve_funds`` / ``reserve_budget_funds`` debit a wallet or budget with a
  guarded update and record a Pending entry in the same transaction.
* ``settle`` moves a Pending entry to Successful or Failed exactly once (the
  status is checked by the write itself) and runs the scope's confirm or
  compensate action. A reversal of a Successful entry appends a new
  compensating Credit entry and stamps a reversal marker on the original.
* ``credit_back`` returns ``amount + fee`` to whatever the entry debited.

Entries are append-mostly: the only in-place changes are the single
Pending -> terminal transition, the provider reference assigned after
initiation, and the reversal marker.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import uuid

from .currency import Currency
from .errors import (
    DuplicateTransferAttempt, EntryNotFound, OrganizationOrBudgetNotFound,
    UnexpectedSettlementStatus
)
from .events import DomainEvent, EventDispatcher
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .wallets import BudgetStatus, WalletManager
from .logging_config import get_logger, log_action

logger = get_logger("treasury.ledger")


class EntryType(Enum):
    """Direction of a wallet entry"""
    DEBIT = "debit"
    CREDIT = "credit"


class EntryStatus(Enum):
    """Wallet entry states; Pending leaves exactly once"""
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"


class EntryScope(Enum):
    """Business purpose of a wallet entry"""
    WALLET_FUNDING = "wallet_funding"
    WALLET_TRANSFER = "wallet_transfer"
    BUDGET_TRANSFER = "budget_transfer"
    BUDGET_FUNDING = "budget_funding"
    BUDGET_CLOSURE = "budget_closure"
    PAYROLL_PAYOUT = "payroll_payout"
    TRANSFER_REVERSAL = "transfer_reversal"


# Scopes whose entries are settled by an external transfer provider
EXTERNAL_SCOPES = (
    EntryScope.WALLET_TRANSFER,
    EntryScope.BUDGET_TRANSFER,
    EntryScope.PAYROLL_PAYOUT,
)


class SettlementStatus(Enum):
    """Terminal provider outcomes"""
    SUCCESSFUL = "successful"
    FAILED = "failed"
    REVERSED = "reversed"


@dataclass(frozen=True)
class WalletEntry(StorageRecord):
    """One balance-affecting event on a wallet (and optionally a budget)"""
    organization_id: str
    wallet_id: str
    entry_type: EntryType
    status: EntryStatus
    scope: EntryScope
    amount: int
    fee: int
    currency: Currency
    reference: str
    initiated_by: str
    balance_before: int
    balance_after: int
    ledger_balance_before: Optional[int] = None
    ledger_balance_after: Optional[int] = None
    budget_id: Optional[str] = None
    project_id: Optional[str] = None
    payroll_id: Optional[str] = None
    narration: str = ""
    provider: Optional[str] = None
    provider_ref: Optional[str] = None
    request_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    gateway_response: Optional[Dict[str, Any]] = None
    reversal: Optional[Dict[str, Any]] = None
    settled_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.amount + self.fee

    @property
    def is_reversed(self) -> bool:
        return self.reversal is not None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["currency"] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WalletEntry':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            wallet_id=data["wallet_id"],
            entry_type=EntryType(data["entry_type"]),
            status=EntryStatus(data["status"]),
            scope=EntryScope(data["scope"]),
            amount=data["amount"],
            fee=data["fee"],
            currency=Currency.from_code(data["currency"]),
            reference=data["reference"],
            initiated_by=data["initiated_by"],
            balance_before=data["balance_before"],
            balance_after=data["balance_after"],
            ledger_balance_before=data.get("ledger_balance_before"),
            ledger_balance_after=data.get("ledger_balance_after"),
            budget_id=data.get("budget_id"),
            project_id=data.get("project_id"),
            payroll_id=data.get("payroll_id"),
            narration=data.get("narration", ""),
            provider=data.get("provider"),
            provider_ref=data.get("provider_ref"),
            request_id=data.get("request_id"),
            meta=data.get("meta") or {},
            gateway_response=data.get("gateway_response"),
            reversal=data.get("reversal"),
            settled_at=parse_datetime(data.get("settled_at")),
        )


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of applying a settlement to an entry"""
    entry_id: str
    reference: str
    status: SettlementStatus
    applied: bool
    message: str = ""
    compensating_entry_id: Optional[str] = None


def generate_reference(prefix: str) -> str:
    """Caller-facing entry reference, e.g. ``wt_3f2a...``"""
    return f"{prefix}_{uuid.uuid4().hex}"


class ScopeHandler(ABC):
    """Scope-specific side effects run inside the settlement transaction"""
    reversible = True

    @abstractmethod
    def confirm(self, entry: WalletEntry) -> None:
        """Run once when the entry becomes Successful"""
        pass

    @abstractmethod
    def compensate(self, entry: WalletEntry) -> None:
        """Undo the entry's reservation (failure, or reversal of a success)"""
        pass


class TransferScopeHandler(ScopeHandler):
    """Outbound transfers: nothing to confirm, compensation credits funds back"""

    def __init__(self, ledger: 'LedgerCore'):
        self.ledger = ledger

    def confirm(self, entry: WalletEntry) -> None:
        pass

    def compensate(self, entry: WalletEntry) -> None:
        self.ledger.credit_back(entry)


class CreditScopeHandler(ScopeHandler):
    """Inbound credits are recorded already settled"""
    reversible = False

    def confirm(self, entry: WalletEntry) -> None:
        pass

    def compensate(self, entry: WalletEntry) -> None:
        raise UnexpectedSettlementStatus("failed", entry.reference)


class LedgerCore:
    """Reservation, settlement and compensation primitives over wallet entries"""

    def __init__(
        self,
        storage: StorageInterface,
        wallets: WalletManager,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.wallets = wallets
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        self.entries_table = "wallet_entries"

        transfer_handler = TransferScopeHandler(self)
        credit_handler = CreditScopeHandler()
        self._handlers: Dict[EntryScope, ScopeHandler] = {
            scope: transfer_handler for scope in EXTERNAL_SCOPES
        }
        self._handlers[EntryScope.WALLET_FUNDING] = credit_handler
        self._handlers[EntryScope.TRANSFER_REVERSAL] = credit_handler

    def register_scope_handler(self, scope: EntryScope, handler: ScopeHandler) -> None:
        self._handlers[scope] = handler

    def verify_scope_handlers(self) -> None:
        """Fail fast if any entry scope has no settlement handler"""
        missing = [scope.value for scope in EntryScope if scope not in self._handlers]
        if missing:
            raise RuntimeError(f"No settlement handler registered for scopes: {', '.join(missing)}")

    # Queries

    def get_entry(self, entry_id: str) -> Optional[WalletEntry]:
        data = self.storage.load(self.entries_table, entry_id)
        return WalletEntry.from_dict(data) if data else None

    def require_entry(self, entry_id: str) -> WalletEntry:
        entry = self.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    def find_by_reference(self, reference: str) -> Optional[WalletEntry]:
        """Look an entry up by its own reference or by the provider's reference"""
        records = self.storage.find(self.entries_table, {"reference": reference})
        if not records:
            records = self.storage.find(self.entries_table, {"provider_ref": reference})
        return WalletEntry.from_dict(records[0]) if records else None

    def list_entries(self, wallet_id: Optional[str] = None, budget_id: Optional[str] = None) -> List[WalletEntry]:
        filters: Dict[str, Any] = {}
        if wallet_id:
            filters["wallet_id"] = wallet_id
        if budget_id:
            filters["budget_id"] = budget_id
        entries = [WalletEntry.from_dict(d) for d in self.storage.find(self.entries_table, filters)]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def pending_entries_older_than(self, cutoff: datetime,
                                   scopes: Iterable[EntryScope] = EXTERNAL_SCOPES) -> List[WalletEntry]:
        scope_values = {scope.value for scope in scopes}
        records = self.storage.find(self.entries_table, {
            "status": EntryStatus.PENDING.value,
            "created_at__lte": cutoff,
        })
        return [WalletEntry.from_dict(d) for d in records if d["scope"] in scope_values]

    def user_spend(self, user_id: str, since: datetime, budget_id: Optional[str] = None) -> int:
        """
        Sum of Successful and Pending debit amounts initiated by a user since
        ``since``. Reversed debits were returned to the wallet and do not count.
        """
        filters: Dict[str, Any] = {
            "initiated_by": user_id,
            "entry_type": EntryType.DEBIT.value,
            "status__ne": EntryStatus.FAILED.value,
            "created_at__gte": since,
        }
        if budget_id:
            filters["budget_id"] = budget_id
        records = self.storage.find(self.entries_table, filters)
        return sum(
            d["amount"] for d in records
            if d["scope"] in {scope.value for scope in EXTERNAL_SCOPES} and d.get("reversal") is None
        )

    # Duplicate guards

    def _check_duplicates(
        self,
        organization_id: str,
        initiated_by: str,
        amount: int,
        request_id: Optional[str],
        duplicate_window_seconds: Optional[int]
    ) -> None:
        if request_id:
            existing = self.storage.find(self.entries_table, {
                "organization_id": organization_id,
                "request_id": request_id,
            })
            if existing:
                raise DuplicateTransferAttempt(
                    f"Request {request_id} was already submitted",
                    existing_reference=existing[0]["reference"]
                )

        if duplicate_window_seconds:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=duplicate_window_seconds)
            recent = self.storage.find(self.entries_table, {
                "initiated_by": initiated_by,
                "amount": amount,
                "entry_type": EntryType.DEBIT.value,
                "status__ne": EntryStatus.FAILED.value,
                "created_at__gte": cutoff,
            })
            recent = [d for d in recent if d["scope"] in {s.value for s in EXTERNAL_SCOPES}]
            if recent:
                raise DuplicateTransferAttempt(
                    "An identical transfer was submitted less than "
                    f"{duplicate_window_seconds} seconds ago",
                    existing_reference=recent[0]["reference"]
                )

    # Mutations

    def _save_entry(self, entry: WalletEntry) -> WalletEntry:
        self.storage.save(self.entries_table, entry.id, entry.to_dict())
        return entry

    def _new_entry(self, **kwargs) -> WalletEntry:
        now = datetime.now(timezone.utc)
        return WalletEntry(id=str(uuid.uuid4()), created_at=now, updated_at=now, **kwargs)

    def reserve_funds(
        self,
        wallet_id: str,
        amount: int,
        fee: int = 0,
        *,
        initiated_by: str,
        scope: EntryScope = EntryScope.WALLET_TRANSFER,
        reference: Optional[str] = None,
        narration: str = "",
        provider: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        duplicate_window_seconds: Optional[int] = None,
        payroll_id: Optional[str] = None
    ) -> WalletEntry:
        """
        Debit ``amount + fee`` from a wallet and record a Pending entry.

        The duplicate checks, the guarded decrement of both balances and the
        entry insert share one transaction: nothing is reserved without its
        entry, and vice versa.

        Raises:
            InsufficientFunds: balance cannot cover amount + fee
            DuplicateTransferAttempt: idempotency key reused, or an identical
                debit inside the duplicate window
        """
        if amount <= 0 or fee < 0:
            raise ValueError("Amount must be positive and fee non-negative")
        total = amount + fee

        with self.storage.atomic():
            wallet = self.wallets.require_wallet(wallet_id)
            self._check_duplicates(wallet.organization_id, initiated_by, amount,
                                   request_id, duplicate_window_seconds)
            change = self.wallets.adjust_wallet(wallet_id, balance=-total, ledger_balance=-total)
            entry = self._save_entry(self._new_entry(
                organization_id=wallet.organization_id,
                wallet_id=wallet_id,
                entry_type=EntryType.DEBIT,
                status=EntryStatus.PENDING,
                scope=scope,
                amount=amount,
                fee=fee,
                currency=wallet.currency,
                reference=reference or generate_reference("wt"),
                initiated_by=initiated_by,
                balance_before=change.balance_before,
                balance_after=change.balance_after,
                ledger_balance_before=change.ledger_balance_before,
                ledger_balance_after=change.ledger_balance_after,
                payroll_id=payroll_id,
                narration=narration,
                provider=provider,
                request_id=request_id,
                meta=meta or {},
            ))
            self.audit_trail.log_event(
                AuditEventType.FUNDS_RESERVED, "wallet_entry", entry.id,
                {"wallet_id": wallet_id, "amount": amount, "fee": fee,
                 "reference": entry.reference, "scope": scope.value},
                user_id=initiated_by
            )

        log_action(logger, "info", f"Reserved {total} on wallet {wallet_id}",
                   user_id=initiated_by, action="reserve_funds",
                   resource=f"wallet_entry:{entry.reference}",
                   extra={"balance_after": entry.balance_after})
        return entry

    def reserve_budget_funds(
        self,
        budget_id: str,
        amount: int,
        fee: int = 0,
        *,
        initiated_by: str,
        reference: Optional[str] = None,
        narration: str = "",
        provider: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        duplicate_window_seconds: Optional[int] = None
    ) -> WalletEntry:
        """
        Debit ``amount + fee`` from an Active budget and record a Pending entry.

        The budget's balance was carved out of the wallet when it was funded,
        so only the wallet's ledger balance moves here.
        """
        if amount <= 0 or fee < 0:
            raise ValueError("Amount must be positive and fee non-negative")
        total = amount + fee

        with self.storage.atomic():
            budget = self.wallets.require_budget(budget_id)
            self._check_duplicates(budget.organization_id, initiated_by, amount,
                                   request_id, duplicate_window_seconds)
            budget_change = self.wallets.adjust_budget(
                budget_id, balance=-total, amount_used=total, require_status=BudgetStatus.ACTIVE
            )
            wallet_change = self.wallets.adjust_wallet(budget.wallet_id, ledger_balance=-total)
            entry = self._save_entry(self._new_entry(
                organization_id=budget.organization_id,
                wallet_id=budget.wallet_id,
                entry_type=EntryType.DEBIT,
                status=EntryStatus.PENDING,
                scope=EntryScope.BUDGET_TRANSFER,
                amount=amount,
                fee=fee,
                currency=budget.currency,
                reference=reference or generate_reference("bt"),
                initiated_by=initiated_by,
                balance_before=budget_change.balance_before,
                balance_after=budget_change.balance_after,
                ledger_balance_before=wallet_change.ledger_balance_before,
                ledger_balance_after=wallet_change.ledger_balance_after,
                budget_id=budget_id,
                project_id=budget.project_id,
                narration=narration,
                provider=provider,
                request_id=request_id,
                meta=meta or {},
            ))
            self.audit_trail.log_event(
                AuditEventType.FUNDS_RESERVED, "wallet_entry", entry.id,
                {"budget_id": budget_id, "amount": amount, "fee": fee,
                 "reference": entry.reference, "scope": EntryScope.BUDGET_TRANSFER.value},
                user_id=initiated_by
            )

        log_action(logger, "info", f"Reserved {total} on budget {budget_id}",
                   user_id=initiated_by, action="reserve_budget_funds",
                   resource=f"wallet_entry:{entry.reference}",
                   extra={"balance_after": entry.balance_after})
        return entry

    def record_entry(self, **kwargs) -> WalletEntry:
        """Insert an entry built by a budget or funding primitive (caller owns the transaction)"""
        return self._save_entry(self._new_entry(**kwargs))

    def record_inflow(self, wallet_id: str, amount: int, reference: str,
                      initiated_by: str = "system", narration: str = "",
                      gateway_response: Optional[Dict[str, Any]] = None,
                      provider_ref: Optional[str] = None) -> WalletEntry:
        """
        Credit an incoming deposit to a wallet. Idempotent per reference.
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")
        with self.storage.atomic():
            existing = self.storage.find(self.entries_table, {"reference": reference})
            if existing:
                return WalletEntry.from_dict(existing[0])
            wallet = self.wallets.require_wallet(wallet_id)
            change = self.wallets.adjust_wallet(wallet_id, balance=amount, ledger_balance=amount)
            entry = self._save_entry(self._new_entry(
                organization_id=wallet.organization_id,
                wallet_id=wallet_id,
                entry_type=EntryType.CREDIT,
                status=EntryStatus.SUCCESSFUL,
                scope=EntryScope.WALLET_FUNDING,
                amount=amount,
                fee=0,
                currency=wallet.currency,
                reference=reference,
                initiated_by=initiated_by,
                balance_before=change.balance_before,
                balance_after=change.balance_after,
                ledger_balance_before=change.ledger_balance_before,
                ledger_balance_after=change.ledger_balance_after,
                narration=narration,
                gateway_response=gateway_response,
                provider_ref=provider_ref,
                settled_at=datetime.now(timezone.utc),
            ))
            self.audit_trail.log_event(
                AuditEventType.WALLET_CREDITED, "wallet", wallet_id,
                {"amount": amount, "reference": reference}
            )
        return entry

    def set_provider_ref(self, entry_id: str, provider_ref: str) -> Optional[WalletEntry]:
        """Record the provider-assigned id once it is known"""
        updated = self.storage.update_where(
            self.entries_table, entry_id, {"provider_ref": None}, sets={"provider_ref": provider_ref}
        )
        return WalletEntry.from_dict(updated) if updated else None

    def credit_back(self, entry: WalletEntry) -> None:
        """
        Return ``amount + fee`` to whatever the entry debited.

        Budget-scoped entries go back to the budget unless it has been closed
        in the meantime, in which case the money lands on the wallet.
        """
        reverse_amount = entry.total
        with self.storage.atomic():
            if entry.budget_id:
                budget = self.wallets.get_budget(entry.budget_id)
                if budget is None:
                    raise OrganizationOrBudgetNotFound("budget", entry.budget_id)
                if budget.status != BudgetStatus.CLOSED:
                    self.wallets.adjust_budget(entry.budget_id, balance=reverse_amount,
                                               amount_used=-reverse_amount)
                    self.wallets.adjust_wallet(entry.wallet_id, ledger_balance=reverse_amount)
                    return
            self.wallets.adjust_wallet(entry.wallet_id, balance=reverse_amount,
                                       ledger_balance=reverse_amount)

    def settle(self, entry_id: str, status: SettlementStatus,
               gateway_response: Optional[Dict[str, Any]] = None) -> SettlementResult:
        """
        Apply a terminal outcome to an entry.

        Replays are no-ops: a Successful/Failed outcome only applies while the
        entry is still Pending, and a reversal only applies once.
        """
        if status == SettlementStatus.REVERSED:
            result = self._reverse(entry_id, gateway_response)
        else:
            result = self._complete(entry_id, status, gateway_response)

        if result.applied:
            self._publish_settlement(result)
        return result

    def _handler(self, entry: WalletEntry) -> ScopeHandler:
        handler = self._handlers.get(entry.scope)
        if handler is None:
            raise RuntimeError(f"No settlement handler for scope {entry.scope.value}")
        return handler

    def _complete(self, entry_id: str, status: SettlementStatus,
                  gateway_response: Optional[Dict[str, Any]]) -> SettlementResult:
        new_status = EntryStatus.SUCCESSFUL if status == SettlementStatus.SUCCESSFUL else EntryStatus.FAILED

        with self.storage.atomic():
            updated = self.storage.update_where(
                self.entries_table, entry_id,
                {"status": EntryStatus.PENDING.value},
                sets={
                    "status": new_status.value,
                    "settled_at": datetime.now(timezone.utc),
                    "gateway_response": gateway_response,
                }
            )
            if updated is None:
                entry = self.require_entry(entry_id)
                return SettlementResult(entry.id, entry.reference, status, applied=False,
                                        message=f"Entry already {entry.status.value}")

            entry = WalletEntry.from_dict(updated)
            handler = self._handler(entry)
            if new_status == EntryStatus.SUCCESSFUL:
                handler.confirm(entry)
                audit_type = AuditEventType.ENTRY_SETTLED
            else:
                handler.compensate(entry)
                audit_type = AuditEventType.ENTRY_FAILED
            self.audit_trail.log_event(
                audit_type, "wallet_entry", entry.id,
                {"reference": entry.reference, "amount": entry.amount, "fee": entry.fee,
                 "scope": entry.scope.value}
            )

        log_action(logger, "info", f"Entry {entry.reference} settled as {new_status.value}",
                   action="settle", resource=f"wallet_entry:{entry.reference}")
        return SettlementResult(entry.id, entry.reference, status, applied=True)

    def _reverse(self, entry_id: str, gateway_response: Optional[Dict[str, Any]]) -> SettlementResult:
        with self.storage.atomic():
            entry = self.require_entry(entry_id)
            if entry.is_reversed or entry.status == EntryStatus.FAILED:
                return SettlementResult(entry.id, entry.reference, SettlementStatus.REVERSED,
                                        applied=False, message="Entry already failed or reversed")
            if entry.status == EntryStatus.PENDING:
                # Reversal before confirmation is a plain failure
                return self._complete(entry_id, SettlementStatus.FAILED, gateway_response)

            handler = self._handler(entry)
            if not handler.reversible:
                raise UnexpectedSettlementStatus(SettlementStatus.REVERSED.value, entry.reference)

            now = datetime.now(timezone.utc)
            compensating_id = str(uuid.uuid4())
            marked = self.storage.update_where(
                self.entries_table, entry_id,
                {"status": EntryStatus.SUCCESSFUL.value, "reversal": None},
                sets={"reversal": {"entry": compensating_id, "timestamp": now}}
            )
            if marked is None:
                return SettlementResult(entry.id, entry.reference, SettlementStatus.REVERSED,
                                        applied=False, message="Entry already reversed")

            before = self._owner_balance(entry)
            handler.compensate(entry)
            after = self._owner_balance(entry)
            wallet = self.wallets.require_wallet(entry.wallet_id)
            compensating = self._save_entry(WalletEntry(
                id=compensating_id,
                created_at=now,
                updated_at=now,
                organization_id=entry.organization_id,
                wallet_id=entry.wallet_id,
                entry_type=EntryType.CREDIT,
                status=EntryStatus.SUCCESSFUL,
                scope=EntryScope.TRANSFER_REVERSAL,
                amount=entry.amount,
                fee=entry.fee,
                currency=entry.currency,
                reference=f"rev_{entry.reference}",
                initiated_by=entry.initiated_by,
                balance_before=before,
                balance_after=after,
                ledger_balance_before=wallet.ledger_balance - entry.total,
                ledger_balance_after=wallet.ledger_balance,
                budget_id=entry.budget_id,
                project_id=entry.project_id,
                payroll_id=entry.payroll_id,
                narration=f"Reversal of {entry.reference}",
                provider=entry.provider,
                meta={"reverses": entry.id, "original_reference": entry.reference},
                gateway_response=gateway_response,
                settled_at=now,
            ))
            self.audit_trail.log_event(
                AuditEventType.ENTRY_REVERSED, "wallet_entry", entry.id,
                {"reference": entry.reference, "compensating_entry": compensating.id,
                 "amount": entry.total}
            )

        log_action(logger, "warning", f"Entry {entry.reference} reversed by provider",
                   action="reverse", resource=f"wallet_entry:{entry.reference}",
                   extra={"compensating_entry": compensating.id})
        return SettlementResult(entry.id, entry.reference, SettlementStatus.REVERSED, applied=True,
                                compensating_entry_id=compensating.id)

    def _owner_balance(self, entry: WalletEntry) -> int:
        if entry.budget_id:
            budget = self.wallets.get_budget(entry.budget_id)
            if budget is not None and budget.status != BudgetStatus.CLOSED:
                return budget.balance
        return self.wallets.require_wallet(entry.wallet_id).balance

    def _publish_settlement(self, result: SettlementResult) -> None:
        entry = self.get_entry(result.entry_id)
        if entry is None or entry.scope not in EXTERNAL_SCOPES:
            return
        if entry.status == EntryStatus.SUCCESSFUL and result.status == SettlementStatus.REVERSED:
            event_type = DomainEvent.TRANSFER_REVERSED
        elif entry.status == EntryStatus.SUCCESSFUL:
            event_type = DomainEvent.TRANSFER_SUCCEEDED
        else:
            event_type = DomainEvent.TRANSFER_FAILED
        self.dispatcher.emit(event_type, "wallet_entry", entry.id, {
            "reference": entry.reference,
            "amount": entry.amount,
            "fee": entry.fee,
            "currency": entry.currency.code,
            "recipients": [entry.initiated_by],
        })
