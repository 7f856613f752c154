"""
Payroll Module

A payroll is a batch of payouts from one wallet. It goes through the
Payroll approval workflow before any money moves; each payout then reserves
funds through the Ledger Core with scope PAYROLL_PAYOUT and is sent like any
other transfer, so settlement, failure and reversal follow the same paths.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from enum import Enum
import uuid

from .approvals import ApprovalPending, ApprovalWorkflow, PayrollPayload, WorkflowType
from .errors import ApprovalError, TreasuryError
from .events import DomainEvent, EventDispatcher
from .identity import AuthUser
from .ledger import EntryScope, LedgerCore, generate_reference
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .wallets import WalletManager
from .logging_config import get_logger, log_action

logger = get_logger("treasury.payroll")


class PayrollStatus(Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"


@dataclass(frozen=True)
class PayrollItem:
    employee_id: str
    account_number: str
    bank_code: str
    amount: int
    entry_reference: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Payroll(StorageRecord):
    organization_id: str
    wallet_id: str
    created_by: str
    items: Tuple[PayrollItem, ...]
    status: PayrollStatus = PayrollStatus.DRAFT
    approved_by: Optional[str] = None
    rejected_reason: Optional[str] = None
    processed_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return sum(item.amount for item in self.items)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payroll':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            wallet_id=data["wallet_id"],
            created_by=data["created_by"],
            items=tuple(PayrollItem(**item) for item in data["items"]),
            status=PayrollStatus(data["status"]),
            approved_by=data.get("approved_by"),
            rejected_reason=data.get("rejected_reason"),
            processed_at=parse_datetime(data.get("processed_at")),
        )


class PayrollManager:
    """Payroll creation, approval and payout"""

    def __init__(
        self,
        storage: StorageInterface,
        wallets: WalletManager,
        ledger: LedgerCore,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        approvals: Optional[ApprovalWorkflow] = None,
        transfers=None
    ):
        self.storage = storage
        self.wallets = wallets
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        self.approvals = approvals
        self.transfers = transfers
        self.table = "payrolls"

    def create_payroll(self, user: AuthUser, wallet_id: str, items: Sequence[PayrollItem]) -> Payroll:
        if not items:
            raise ValueError("A payroll needs at least one item")
        if any(item.amount <= 0 for item in items):
            raise ValueError("Payroll amounts must be positive")
        self.wallets.require_wallet(wallet_id, user.organization_id)

        now = datetime.now(timezone.utc)
        payroll = Payroll(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=user.organization_id,
            wallet_id=wallet_id,
            created_by=user.user_id,
            items=tuple(items),
        )
        self.storage.save(self.table, payroll.id, payroll.to_dict())
        self.audit_trail.log_event(
            AuditEventType.PAYROLL_CREATED, "payroll", payroll.id,
            {"items": len(items), "total": payroll.total}, user_id=user.user_id
        )
        return payroll

    def get_payroll(self, payroll_id: str) -> Optional[Payroll]:
        data = self.storage.load(self.table, payroll_id)
        return Payroll.from_dict(data) if data else None

    def require_payroll(self, payroll_id: str, organization_id: Optional[str] = None) -> Payroll:
        payroll = self.get_payroll(payroll_id)
        if payroll is None or (organization_id and payroll.organization_id != organization_id):
            raise ValueError(f"Payroll {payroll_id} not found")
        return payroll

    def _transition(self, payroll_id: str, from_status: PayrollStatus, to_status: PayrollStatus,
                    **sets) -> Payroll:
        sets["status"] = to_status.value
        updated = self.storage.update_where(self.table, payroll_id, {"status": from_status.value}, sets=sets)
        if updated is None:
            current = self.require_payroll(payroll_id)
            raise ApprovalError(
                f"Payroll {payroll_id} is {current.status.value}, expected {from_status.value}"
            )
        return Payroll.from_dict(updated)

    def request_approval(self, user: AuthUser, payroll_id: str) -> Union[Payroll, ApprovalPending]:
        """Submit a draft payroll; returns the approved payroll when no review is needed"""
        if self.approvals is None:
            raise RuntimeError("PayrollManager has no approval workflow bound")
        payroll = self.require_payroll(payroll_id, user.organization_id)
        self._transition(payroll.id, PayrollStatus.DRAFT, PayrollStatus.PENDING_APPROVAL)
        outcome = self.approvals.request_or_execute(
            user, WorkflowType.PAYROLL, payroll.total,
            PayrollPayload(payroll_id=payroll.id, amount=payroll.total)
        )
        return outcome if isinstance(outcome, ApprovalPending) else outcome.result

    def approve(self, user: AuthUser, payload: PayrollPayload) -> Payroll:
        """Executor for an approved Payroll workflow"""
        payroll = self._transition(payload.payroll_id, PayrollStatus.PENDING_APPROVAL,
                                   PayrollStatus.APPROVED, approved_by=user.user_id)
        self.audit_trail.log_event(AuditEventType.PAYROLL_APPROVED, "payroll", payroll.id,
                                   {"total": payroll.total}, user_id=user.user_id)
        self.dispatcher.emit(DomainEvent.PAYROLL_APPROVED, "payroll", payroll.id, {
            "payroll_id": payroll.id,
            "amount": payroll.total,
            "recipients": [payroll.created_by],
        })
        return payroll

    def reject(self, user: AuthUser, payload: PayrollPayload) -> Payroll:
        """Compensation for a declined Payroll workflow"""
        payroll = self._transition(payload.payroll_id, PayrollStatus.PENDING_APPROVAL,
                                   PayrollStatus.REJECTED, rejected_reason="Approval declined")
        self.audit_trail.log_event(AuditEventType.PAYROLL_REJECTED, "payroll", payroll.id, {},
                                   user_id=user.user_id)
        return payroll

    def process_payroll(self, user: AuthUser, payroll_id: str) -> Payroll:
        """
        Pay out an approved payroll, one reserved entry per item.

        An item that cannot be reserved is recorded with its error and the
        rest continue; the payroll ends Completed or Partial.
        """
        if self.transfers is None:
            raise RuntimeError("PayrollManager has no transfer service bound")
        payroll = self.require_payroll(payroll_id, user.organization_id)
        self._transition(payroll.id, PayrollStatus.APPROVED, PayrollStatus.PROCESSING)

        processed: List[PayrollItem] = []
        for item in payroll.items:
            try:
                resolved = self.transfers.counterparties.resolve(
                    payroll.organization_id, item.account_number, item.bank_code
                )
                entry = self.ledger.reserve_funds(
                    payroll.wallet_id, item.amount, 0,
                    initiated_by=user.user_id,
                    scope=EntryScope.PAYROLL_PAYOUT,
                    reference=generate_reference("pp"),
                    narration=f"Payroll {payroll.id}",
                    provider=self.transfers.providers.default.value,
                    meta={"employee_id": item.employee_id, "account_name": resolved.account_name},
                    payroll_id=payroll.id,
                )
            except TreasuryError as e:
                log_action(logger, "warning", f"Payroll item for {item.employee_id} not paid: {e}",
                           user_id=user.user_id, action="process_payroll",
                           resource=f"payroll:{payroll.id}")
                processed.append(replace(item, error=str(e)))
                continue
            self.transfers.send_reserved(entry, item.account_number, item.bank_code, resolved.account_name)
            processed.append(replace(item, entry_reference=entry.reference))

        final_status = (PayrollStatus.PARTIAL if any(i.error for i in processed)
                        else PayrollStatus.COMPLETED)
        payroll = self._transition(payroll.id, PayrollStatus.PROCESSING, final_status,
                                   items=list(processed), processed_at=datetime.now(timezone.utc))
        log_action(logger, "info", f"Payroll processed: {final_status.value}", user_id=user.user_id,
                   action="process_payroll", resource=f"payroll:{payroll.id}")
        return payroll
