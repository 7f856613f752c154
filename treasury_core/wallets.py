"""
Wallet, Budget and Project Repository

Balance holders of the treasury engine. Records are immutable value objects;
balances only ever change through ``update_where`` compare-and-set calls, so
two concurrent debits against the same wallet race on the stored value and
at most the affordable ones succeed.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .currency import Currency
from .errors import BudgetStateError, InsufficientFunds, OrganizationOrBudgetNotFound
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType


class BudgetStatus(Enum):
    """Budget lifecycle states"""
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


@dataclass(frozen=True)
class Wallet(StorageRecord):
    """
    Organization-scoped currency account.

    ``balance`` is spendable money. ``ledger_balance`` is what the provider
    still holds for the organization: it also counts money carved out into
    budgets, and drops when a transfer leaves the bank.
    """
    organization_id: str
    currency: Currency
    balance: int = 0
    ledger_balance: int = 0
    primary: bool = False
    name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Wallet':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            currency=Currency.from_code(data["currency"]),
            balance=data["balance"],
            ledger_balance=data["ledger_balance"],
            primary=data.get("primary", False),
            name=data.get("name", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["currency"] = self.currency.code
        return result


@dataclass(frozen=True)
class Beneficiary:
    """Budget beneficiary with an optional cap on their cumulative spend"""
    user_id: str
    allocation: Optional[int] = None


@dataclass(frozen=True)
class Budget(StorageRecord):
    """Allocation carved out of a wallet"""
    organization_id: str
    wallet_id: str
    name: str
    amount: int
    currency: Currency
    created_by: str
    balance: int = 0
    amount_used: int = 0
    status: BudgetStatus = BudgetStatus.PENDING
    threshold: Optional[int] = None
    beneficiaries: Tuple[Beneficiary, ...] = ()
    project_id: Optional[str] = None
    expiry: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    close_reason: Optional[str] = None
    closed_at: Optional[datetime] = None

    def beneficiary(self, user_id: str) -> Optional[Beneficiary]:
        for beneficiary in self.beneficiaries:
            if beneficiary.user_id == user_id:
                return beneficiary
        return None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiry is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expiry

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["currency"] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Budget':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            wallet_id=data["wallet_id"],
            name=data["name"],
            amount=data["amount"],
            currency=Currency.from_code(data["currency"]),
            created_by=data["created_by"],
            balance=data["balance"],
            amount_used=data["amount_used"],
            status=BudgetStatus(data["status"]),
            threshold=data.get("threshold"),
            beneficiaries=tuple(
                Beneficiary(user_id=b["user_id"], allocation=b.get("allocation"))
                for b in data.get("beneficiaries") or []
            ),
            project_id=data.get("project_id"),
            expiry=parse_datetime(data.get("expiry")),
            approved_by=data.get("approved_by"),
            approved_at=parse_datetime(data.get("approved_at")),
            closed_by=data.get("closed_by"),
            close_reason=data.get("close_reason"),
            closed_at=parse_datetime(data.get("closed_at")),
        )


@dataclass(frozen=True)
class Project(StorageRecord):
    """Grouping of budgets; receives the remainder of its closed budgets"""
    organization_id: str
    wallet_id: str
    name: str
    currency: Currency
    balance: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["currency"] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Project':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            wallet_id=data["wallet_id"],
            name=data["name"],
            currency=Currency.from_code(data["currency"]),
            balance=data.get("balance", 0),
        )


@dataclass(frozen=True)
class BalanceChange:
    """Before/after values of a compare-and-set balance update"""
    balance_before: int
    balance_after: int
    ledger_balance_before: Optional[int] = None
    ledger_balance_after: Optional[int] = None


class WalletManager:
    """Repository and guarded balance primitives for wallets, budgets and projects"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 default_currency: Currency = Currency.NGN):
        self.storage = storage
        self.audit_trail = audit_trail
        self.default_currency = default_currency
        self.wallets_table = "wallets"
        self.budgets_table = "budgets"
        self.projects_table = "projects"

    # Wallets

    def create_wallet(
        self,
        organization_id: str,
        currency: Optional[Currency] = None,
        balance: int = 0,
        primary: bool = False,
        name: str = ""
    ) -> Wallet:
        """Create a wallet in ``currency`` (the manager default when omitted)"""
        if balance < 0:
            raise ValueError("Opening balance cannot be negative")
        if currency is None:
            currency = self.default_currency
        now = datetime.now(timezone.utc)
        wallet = Wallet(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            currency=currency,
            balance=balance,
            ledger_balance=balance,
            primary=primary,
            name=name,
        )
        self.storage.save(self.wallets_table, wallet.id, wallet.to_dict())

        self.audit_trail.log_event(
            AuditEventType.WALLET_CREATED,
            "wallet",
            wallet.id,
            {"organization_id": organization_id, "currency": currency.code, "balance": balance}
        )
        return wallet

    def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        data = self.storage.load(self.wallets_table, wallet_id)
        return Wallet.from_dict(data) if data else None

    def require_wallet(self, wallet_id: str, organization_id: Optional[str] = None) -> Wallet:
        """Load a wallet, checking it belongs to the organization when given"""
        wallet = self.get_wallet(wallet_id)
        if wallet is None or (organization_id and wallet.organization_id != organization_id):
            raise OrganizationOrBudgetNotFound("wallet", wallet_id)
        return wallet

    def get_primary_wallet(self, organization_id: str, currency: Currency) -> Optional[Wallet]:
        records = self.storage.find(self.wallets_table, {
            "organization_id": organization_id,
            "currency": currency.code,
            "primary": True,
        })
        return Wallet.from_dict(records[0]) if records else None

    def list_wallets(self, organization_id: str) -> List[Wallet]:
        records = self.storage.find(self.wallets_table, {"organization_id": organization_id})
        return [Wallet.from_dict(data) for data in records]

    def adjust_wallet(self, wallet_id: str, balance: int = 0, ledger_balance: int = 0) -> BalanceChange:
        """
        Apply signed deltas to a wallet's balances with a single guarded update.

        Negative deltas are only applied if the stored value covers them;
        otherwise InsufficientFunds is raised and nothing changes.
        """
        conditions: Dict[str, Any] = {}
        if balance < 0:
            conditions["balance__gte"] = -balance
        if ledger_balance < 0:
            conditions["ledger_balance__gte"] = -ledger_balance

        updated = self.storage.update_where(
            self.wallets_table, wallet_id, conditions,
            increments={"balance": balance, "ledger_balance": ledger_balance}
        )
        if updated is None:
            current = self.get_wallet(wallet_id)
            if current is None:
                raise OrganizationOrBudgetNotFound("wallet", wallet_id)
            raise InsufficientFunds("wallet", wallet_id, -min(balance, ledger_balance), current.balance)

        return BalanceChange(
            balance_before=updated["balance"] - balance,
            balance_after=updated["balance"],
            ledger_balance_before=updated["ledger_balance"] - ledger_balance,
            ledger_balance_after=updated["ledger_balance"],
        )

    # Budgets

    def save_budget(self, budget: Budget) -> Budget:
        self.storage.save(self.budgets_table, budget.id, budget.to_dict())
        return budget

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        data = self.storage.load(self.budgets_table, budget_id)
        return Budget.from_dict(data) if data else None

    def require_budget(self, budget_id: str, organization_id: Optional[str] = None) -> Budget:
        budget = self.get_budget(budget_id)
        if budget is None or (organization_id and budget.organization_id != organization_id):
            raise OrganizationOrBudgetNotFound("budget", budget_id)
        return budget

    def list_budgets(self, organization_id: str, status: Optional[BudgetStatus] = None) -> List[Budget]:
        filters: Dict[str, Any] = {"organization_id": organization_id}
        if status:
            filters["status"] = status.value
        return [Budget.from_dict(data) for data in self.storage.find(self.budgets_table, filters)]

    def adjust_budget(
        self,
        budget_id: str,
        balance: int = 0,
        amount: int = 0,
        amount_used: int = 0,
        require_status: Optional[BudgetStatus] = None,
        sets: Optional[Dict[str, Any]] = None
    ) -> BalanceChange:
        """Guarded budget update; a negative balance delta must be covered"""
        conditions: Dict[str, Any] = {}
        if balance < 0:
            conditions["balance__gte"] = -balance
        if require_status is not None:
            conditions["status"] = require_status.value

        updated = self.storage.update_where(
            self.budgets_table, budget_id, conditions,
            sets=sets,
            increments={"balance": balance, "amount": amount, "amount_used": amount_used}
        )
        if updated is None:
            current = self.get_budget(budget_id)
            if current is None:
                raise OrganizationOrBudgetNotFound("budget", budget_id)
            if require_status is not None and current.status != require_status:
                raise BudgetStateError(
                    f"Budget {budget_id} is {current.status.value}, expected {require_status.value}"
                )
            raise InsufficientFunds("budget", budget_id, -balance, current.balance)

        return BalanceChange(balance_before=updated["balance"] - balance, balance_after=updated["balance"])

    def transition_budget(
        self,
        budget_id: str,
        from_status: BudgetStatus,
        to_status: BudgetStatus,
        sets: Optional[Dict[str, Any]] = None
    ) -> Optional[Budget]:
        """Move a budget between states only if it is still in ``from_status``"""
        changes = dict(sets or {})
        changes["status"] = to_status.value
        updated = self.storage.update_where(
            self.budgets_table, budget_id, {"status": from_status.value}, sets=changes
        )
        return Budget.from_dict(updated) if updated else None

    # Projects

    def create_project(self, organization_id: str, wallet_id: str, name: str,
                       currency: Currency) -> Project:
        now = datetime.now(timezone.utc)
        project = Project(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            wallet_id=wallet_id,
            name=name,
            currency=currency,
        )
        self.storage.save(self.projects_table, project.id, project.to_dict())
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        data = self.storage.load(self.projects_table, project_id)
        return Project.from_dict(data) if data else None

    def adjust_project(self, project_id: str, balance: int) -> BalanceChange:
        conditions = {"balance__gte": -balance} if balance < 0 else {}
        updated = self.storage.update_where(
            self.projects_table, project_id, conditions, increments={"balance": balance}
        )
        if updated is None:
            current = self.get_project(project_id)
            if current is None:
                raise OrganizationOrBudgetNotFound("project", project_id)
            raise InsufficientFunds("project", project_id, -balance, current.balance)
        return BalanceChange(balance_before=updated["balance"] - balance, balance_after=updated["balance"])
