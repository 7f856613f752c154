"""
Transfer Policy Engine

Organization policies evaluated before any debit leaves a wallet or budget:

* Calendar - blocks transfers on configured weekdays
* Spend limit - caps what a user can move over a rolling period
* Invoice - requires an invoice to be attached

A policy with no department, budget or recipient scope applies to every
transfer; otherwise it applies when the transfer matches any populated scope.
The three kinds are evaluated independently and in parallel; any matching
policy blocks.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .errors import PolicyViolation
from .identity import AuthUser
from .ledger import LedgerCore
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action

logger = get_logger("treasury.policies")


class PolicyType(Enum):
    CALENDAR = "calendar"
    SPEND_LIMIT = "spend_limit"
    INVOICE = "invoice"


class SpendPeriod(Enum):
    """Rolling window lengths in days"""
    DAILY = 1
    WEEKLY = 7
    MONTHLY = 30


@dataclass(frozen=True)
class TransferPolicy(StorageRecord):
    """A calendar, spend-limit or invoice rule with optional scopes"""
    organization_id: str
    name: str
    policy_type: PolicyType
    created_by: str
    amount: Optional[int] = None  # spend limit ceiling
    period: Optional[SpendPeriod] = None
    days_of_week: Tuple[int, ...] = ()  # 0 = Monday
    departments: Tuple[str, ...] = ()
    budgets: Tuple[str, ...] = ()
    recipients: Tuple[str, ...] = ()  # account numbers
    active: bool = True

    @property
    def is_unscoped(self) -> bool:
        return not (self.departments or self.budgets or self.recipients)

    def applies_to(self, user: AuthUser, query: 'TransferPolicyQuery') -> bool:
        if not self.active:
            return False
        if self.is_unscoped:
            return True
        return (
            (user.department_id is not None and user.department_id in self.departments)
            or (query.budget_id is not None and query.budget_id in self.budgets)
            or (query.account_number is not None and query.account_number in self.recipients)
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransferPolicy':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            name=data["name"],
            policy_type=PolicyType(data["policy_type"]),
            created_by=data["created_by"],
            amount=data.get("amount"),
            period=SpendPeriod(data["period"]) if data.get("period") is not None else None,
            days_of_week=tuple(data.get("days_of_week") or ()),
            departments=tuple(data.get("departments") or ()),
            budgets=tuple(data.get("budgets") or ()),
            recipients=tuple(data.get("recipients") or ()),
            active=data.get("active", True),
        )


@dataclass(frozen=True)
class TransferPolicyQuery:
    amount: int
    budget_id: Optional[str] = None
    bank_code: Optional[str] = None
    account_number: Optional[str] = None
    invoice: Optional[str] = None
    now: Optional[datetime] = None


@dataclass(frozen=True)
class PolicyCheckResult:
    """Each flag is True when that kind of policy blocks the transfer"""
    calendar: bool = False
    spend_limit: bool = False
    invoice: bool = False
    blocking_policies: Tuple[str, ...] = field(default=())

    @property
    def any_blocked(self) -> bool:
        return self.calendar or self.spend_limit or self.invoice

    @property
    def kinds(self) -> List[str]:
        kinds = []
        if self.calendar:
            kinds.append(PolicyViolation.CALENDAR)
        if self.spend_limit:
            kinds.append(PolicyViolation.SPEND_LIMIT)
        if self.invoice:
            kinds.append(PolicyViolation.INVOICE)
        return kinds


class PolicyEngine:
    """Stores transfer policies and evaluates them against a transfer"""

    def __init__(self, storage: StorageInterface, ledger: LedgerCore, audit_trail: AuditTrail):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.table = "transfer_policies"

    def create_policy(
        self,
        user: AuthUser,
        name: str,
        policy_type: PolicyType,
        amount: Optional[int] = None,
        period: Optional[SpendPeriod] = None,
        days_of_week: Tuple[int, ...] = (),
        departments: Tuple[str, ...] = (),
        budgets: Tuple[str, ...] = (),
        recipients: Tuple[str, ...] = ()
    ) -> TransferPolicy:
        if policy_type == PolicyType.SPEND_LIMIT and (amount is None or amount <= 0 or period is None):
            raise ValueError("Spend limit policies need a positive amount and a period")
        if policy_type == PolicyType.CALENDAR:
            if not days_of_week:
                raise ValueError("Calendar policies need at least one day of week")
            if any(not 0 <= day <= 6 for day in days_of_week):
                raise ValueError("Days of week run from 0 (Monday) to 6 (Sunday)")

        now = datetime.now(timezone.utc)
        policy = TransferPolicy(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=user.organization_id,
            name=name,
            policy_type=policy_type,
            created_by=user.user_id,
            amount=amount,
            period=period,
            days_of_week=tuple(days_of_week),
            departments=tuple(departments),
            budgets=tuple(budgets),
            recipients=tuple(recipients),
        )
        self.storage.save(self.table, policy.id, policy.to_dict())
        self.audit_trail.log_event(
            AuditEventType.POLICY_CREATED, "transfer_policy", policy.id,
            {"policy_type": policy_type.value, "name": name}, user_id=user.user_id
        )
        return policy

    def update_policy(self, user: AuthUser, policy_id: str, **changes) -> TransferPolicy:
        policy = self.get_policy(policy_id)
        if policy is None or policy.organization_id != user.organization_id:
            raise ValueError(f"Policy {policy_id} not found")
        for key in ("days_of_week", "departments", "budgets", "recipients"):
            if key in changes:
                changes[key] = tuple(changes[key])
        policy = replace(policy, updated_at=datetime.now(timezone.utc), **changes)
        self.storage.save(self.table, policy.id, policy.to_dict())
        self.audit_trail.log_event(
            AuditEventType.POLICY_UPDATED, "transfer_policy", policy.id,
            {"changes": sorted(changes)}, user_id=user.user_id
        )
        return policy

    def delete_policy(self, user: AuthUser, policy_id: str) -> bool:
        policy = self.get_policy(policy_id)
        if policy is None or policy.organization_id != user.organization_id:
            return False
        return self.storage.delete(self.table, policy_id)

    def get_policy(self, policy_id: str) -> Optional[TransferPolicy]:
        data = self.storage.load(self.table, policy_id)
        return TransferPolicy.from_dict(data) if data else None

    def list_policies(self, organization_id: str,
                      policy_type: Optional[PolicyType] = None) -> List[TransferPolicy]:
        filters: Dict[str, Any] = {"organization_id": organization_id, "active": True}
        if policy_type:
            filters["policy_type"] = policy_type.value
        return [TransferPolicy.from_dict(d) for d in self.storage.find(self.table, filters)]

    # Evaluation

    def _calendar_blocks(self, user: AuthUser, query: TransferPolicyQuery,
                         policies: List[TransferPolicy]) -> List[str]:
        weekday = (query.now or datetime.now(timezone.utc)).weekday()
        return [
            p.id for p in policies
            if p.policy_type == PolicyType.CALENDAR and p.applies_to(user, query)
            and weekday in p.days_of_week
        ]

    def _spend_limit_blocks(self, user: AuthUser, query: TransferPolicyQuery,
                            policies: List[TransferPolicy]) -> List[str]:
        now = query.now or datetime.now(timezone.utc)
        blocked = []
        for policy in policies:
            if policy.policy_type != PolicyType.SPEND_LIMIT or not policy.applies_to(user, query):
                continue
            since = now - timedelta(days=policy.period.value)
            budget_id = query.budget_id if query.budget_id in policy.budgets else None
            spent = self.ledger.user_spend(user.user_id, since, budget_id=budget_id)
            if spent + query.amount >= policy.amount:
                blocked.append(policy.id)
        return blocked

    def _invoice_blocks(self, user: AuthUser, query: TransferPolicyQuery,
                        policies: List[TransferPolicy]) -> List[str]:
        if query.invoice:
            return []
        return [
            p.id for p in policies
            if p.policy_type == PolicyType.INVOICE and p.applies_to(user, query)
        ]

    def check_transfer_policy(self, user: AuthUser, query: TransferPolicyQuery) -> PolicyCheckResult:
        """
        Evaluate calendar, spend-limit and invoice policies concurrently.

        The checks read storage from worker threads, so this must not run
        inside a storage transaction.
        """
        policies = self.list_policies(user.organization_id)
        if not policies:
            return PolicyCheckResult()

        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="policy") as executor:
            calendar = executor.submit(self._calendar_blocks, user, query, policies)
            spend_limit = executor.submit(self._spend_limit_blocks, user, query, policies)
            invoice = executor.submit(self._invoice_blocks, user, query, policies)
            calendar_ids = calendar.result()
            spend_ids = spend_limit.result()
            invoice_ids = invoice.result()

        return PolicyCheckResult(
            calendar=bool(calendar_ids),
            spend_limit=bool(spend_ids),
            invoice=bool(invoice_ids),
            blocking_policies=tuple(calendar_ids + spend_ids + invoice_ids),
        )

    def enforce(self, user: AuthUser, query: TransferPolicyQuery) -> PolicyCheckResult:
        """Raise PolicyViolation if any policy blocks the transfer"""
        result = self.check_transfer_policy(user, query)
        if result.any_blocked:
            self.audit_trail.log_event(
                AuditEventType.POLICY_VIOLATION, "user", user.user_id,
                {"kinds": result.kinds, "policies": list(result.blocking_policies),
                 "amount": query.amount, "budget_id": query.budget_id},
                user_id=user.user_id
            )
            log_action(logger, "warning", f"Transfer blocked by policy: {', '.join(result.kinds)}",
                       user_id=user.user_id, action="enforce_policy",
                       resource=f"organization:{user.organization_id}")
            raise PolicyViolation(result.kinds)
        return result
