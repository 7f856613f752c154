"""
Approval Workflow Module

Gates money-moving actions behind per-organization approval rules.

``request_or_execute`` either runs the action right away (no matching rule,
requester is the owner, or the requester alone satisfies the rule) or stores
an ApprovalRequest holding a typed snapshot of the action. ``review`` records
decisions and resolves the request:

* Everyone - approved once every review is approved
* Anyone - approved on the first approval
* any decline resolves the request as declined

An approved request is handed to the same executor the immediate path uses,
exactly once. A declined one runs the workflow's compensating action, if any.
"""

from datetime import datetime, timezone
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from enum import Enum
import uuid

from .errors import ApprovalError, TreasuryError
from .events import DomainEvent, EventDispatcher
from .identity import AuthUser, UserRole
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .wallets import Beneficiary
from .logging_config import get_logger, log_action

logger = get_logger("treasury.approvals")


class WorkflowType(Enum):
    """Actions that can require approval"""
    EXPENSE = "expense"
    TRANSACTION = "transaction"
    BUDGET_EXTENSION = "budget_extension"
    FUND_REQUEST = "fund_request"
    PAYROLL = "payroll"


class ApprovalType(Enum):
    """Reviewer quorum"""
    EVERYONE = "everyone"
    ANYONE = "anyone"


class ReviewStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class ExecutionStatus(Enum):
    """Progress of the deferred action after approval"""
    NOT_STARTED = "not_started"
    EXECUTED = "executed"
    FAILED = "failed"


# Typed action payloads, one per workflow type

@dataclass(frozen=True)
class ExpensePayload:
    """Activate and fund a pending budget"""
    budget_id: str


@dataclass(frozen=True)
class TransactionPayload:
    """Send money from a wallet (or a budget) to an external bank account"""
    wallet_id: str
    amount: int
    account_number: str
    bank_code: str
    budget_id: Optional[str] = None
    account_name: Optional[str] = None
    bank_name: Optional[str] = None
    narration: str = ""
    invoice: Optional[str] = None
    provider: Optional[str] = None
    category: Optional[str] = None
    request_id: Optional[str] = None
    save_recipient: bool = False


@dataclass(frozen=True)
class BudgetExtensionPayload:
    """Raise an active budget's ceiling (and optionally its expiry and beneficiaries)"""
    budget_id: str
    amount: int
    expiry: Optional[datetime] = None
    beneficiaries: Tuple[Beneficiary, ...] = ()


@dataclass(frozen=True)
class FundRequestPayload:
    """Ask for money on a budget: ``expense`` funds it, ``extension`` tops it up"""
    budget_id: str
    amount: int
    request_type: str = "expense"


@dataclass(frozen=True)
class PayrollPayload:
    """Release a payroll run for processing"""
    payroll_id: str
    amount: int


ApprovalPayload = Union[
    ExpensePayload, TransactionPayload, BudgetExtensionPayload, FundRequestPayload, PayrollPayload
]

PAYLOAD_TYPES: Dict[WorkflowType, type] = {
    WorkflowType.EXPENSE: ExpensePayload,
    WorkflowType.TRANSACTION: TransactionPayload,
    WorkflowType.BUDGET_EXTENSION: BudgetExtensionPayload,
    WorkflowType.FUND_REQUEST: FundRequestPayload,
    WorkflowType.PAYROLL: PayrollPayload,
}


def workflow_type_of(payload: ApprovalPayload) -> WorkflowType:
    for workflow_type, payload_type in PAYLOAD_TYPES.items():
        if type(payload) is payload_type:
            return workflow_type
    raise TypeError(f"Unsupported approval payload: {type(payload).__name__}")


def payload_to_dict(payload: ApprovalPayload) -> Dict[str, Any]:
    data = asdict(payload)
    if isinstance(payload, BudgetExtensionPayload):
        data["expiry"] = payload.expiry.isoformat() if payload.expiry else None
        data["beneficiaries"] = [asdict(b) for b in payload.beneficiaries]
    data["type"] = workflow_type_of(payload).value
    return data


def payload_from_dict(data: Dict[str, Any]) -> ApprovalPayload:
    values = dict(data)
    workflow_type = WorkflowType(values.pop("type"))
    if workflow_type == WorkflowType.BUDGET_EXTENSION:
        values["expiry"] = parse_datetime(values.get("expiry"))
        values["beneficiaries"] = tuple(Beneficiary(**b) for b in values.get("beneficiaries") or [])
    return PAYLOAD_TYPES[workflow_type](**values)


@dataclass(frozen=True)
class ApprovalRule(StorageRecord):
    """Per-organization approval policy for one workflow type"""
    organization_id: str
    name: str
    workflow_type: WorkflowType
    approval_type: ApprovalType
    amount: int  # rule applies to requests of at least this amount
    reviewers: Tuple[str, ...]
    created_by: str
    budget_id: Optional[str] = None

    @property
    def required_reviews(self) -> int:
        return 1 if self.approval_type == ApprovalType.ANYONE else len(self.reviewers)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalRule':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            name=data["name"],
            workflow_type=WorkflowType(data["workflow_type"]),
            approval_type=ApprovalType(data["approval_type"]),
            amount=data["amount"],
            reviewers=tuple(data["reviewers"]),
            created_by=data["created_by"],
            budget_id=data.get("budget_id"),
        )


@dataclass(frozen=True)
class Review:
    user_id: str
    status: ReviewStatus = ReviewStatus.PENDING
    reason: Optional[str] = None
    reviewed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ApprovalRequest(StorageRecord):
    """One decision instance with a snapshot of the deferred action"""
    organization_id: str
    workflow_type: WorkflowType
    requester_id: str
    rule_id: str
    approval_type: ApprovalType
    amount: int
    reviews: Tuple[Review, ...]
    properties: ApprovalPayload
    status: RequestStatus = RequestStatus.PENDING
    requester_role: UserRole = UserRole.EMPLOYEE
    requester_department_id: Optional[str] = None
    execution_status: ExecutionStatus = ExecutionStatus.NOT_STARTED
    execution_error: Optional[str] = None
    resolved_at: Optional[datetime] = None
    version: int = 0

    def review_for(self, user_id: str) -> Optional[Review]:
        for review in self.reviews:
            if review.user_id == user_id:
                return review
        return None

    @property
    def requester(self) -> AuthUser:
        return AuthUser(
            user_id=self.requester_id,
            organization_id=self.organization_id,
            role=self.requester_role,
            department_id=self.requester_department_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["properties"] = payload_to_dict(self.properties)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalRequest':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            workflow_type=WorkflowType(data["workflow_type"]),
            requester_id=data["requester_id"],
            rule_id=data["rule_id"],
            approval_type=ApprovalType(data["approval_type"]),
            amount=data["amount"],
            reviews=tuple(
                Review(
                    user_id=r["user_id"],
                    status=ReviewStatus(r["status"]),
                    reason=r.get("reason"),
                    reviewed_at=parse_datetime(r.get("reviewed_at")),
                )
                for r in data["reviews"]
            ),
            properties=payload_from_dict(data["properties"]),
            status=RequestStatus(data["status"]),
            requester_role=UserRole(data.get("requester_role", UserRole.EMPLOYEE.value)),
            requester_department_id=data.get("requester_department_id"),
            execution_status=ExecutionStatus(data.get("execution_status", "not_started")),
            execution_error=data.get("execution_error"),
            resolved_at=parse_datetime(data.get("resolved_at")),
            version=data.get("version", 0),
        )


@dataclass(frozen=True)
class Executed:
    """The action ran immediately; ``result`` is what its executor returned"""
    result: Any


@dataclass(frozen=True)
class ApprovalPending:
    """The action is waiting for reviewers"""
    request: ApprovalRequest


Executor = Callable[[AuthUser, Any], Any]


class ApprovalExecutors:
    """
    Dispatch table from workflow type to the executor that carries out the
    approved action. Construction fails unless every workflow type is covered.
    """

    def __init__(
        self,
        *,
        expense: Executor,
        transaction: Executor,
        budget_extension: Executor,
        fund_request: Executor,
        payroll: Executor,
        on_declined: Optional[Dict[WorkflowType, Executor]] = None
    ):
        self._executors: Dict[WorkflowType, Executor] = {
            WorkflowType.EXPENSE: expense,
            WorkflowType.TRANSACTION: transaction,
            WorkflowType.BUDGET_EXTENSION: budget_extension,
            WorkflowType.FUND_REQUEST: fund_request,
            WorkflowType.PAYROLL: payroll,
        }
        missing = [wt.value for wt in WorkflowType if not callable(self._executors.get(wt))]
        if missing:
            raise TypeError(f"Missing approval executors for: {', '.join(missing)}")
        self._decline_handlers: Dict[WorkflowType, Executor] = dict(on_declined or {})

    def execute(self, user: AuthUser, payload: ApprovalPayload) -> Any:
        return self._executors[workflow_type_of(payload)](user, payload)

    def compensate(self, user: AuthUser, payload: ApprovalPayload) -> None:
        handler = self._decline_handlers.get(workflow_type_of(payload))
        if handler is not None:
            handler(user, payload)


class ApprovalWorkflow:
    """Approval rules, requests and reviewer quorum"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        executors: Optional[ApprovalExecutors] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        self.executors = executors
        self.rules_table = "approval_rules"
        self.requests_table = "approval_requests"

    def bind_executors(self, executors: ApprovalExecutors) -> None:
        self.executors = executors

    def _require_executors(self) -> ApprovalExecutors:
        if self.executors is None:
            raise RuntimeError("ApprovalWorkflow has no executors bound")
        return self.executors

    # Rules

    def create_rule(
        self,
        user: AuthUser,
        name: str,
        workflow_type: WorkflowType,
        approval_type: ApprovalType,
        amount: int,
        reviewers: List[str],
        budget_id: Optional[str] = None
    ) -> ApprovalRule:
        """Create an approval rule; an identical rule for the organization is rejected"""
        if not user.is_admin:
            raise ApprovalError("Only owners and admins can manage approval rules")
        if not reviewers:
            raise ApprovalError("An approval rule needs at least one reviewer")
        if amount < 0:
            raise ApprovalError("Rule amount cannot be negative")

        reviewers_tuple = tuple(dict.fromkeys(reviewers))
        for rule in self.list_rules(user.organization_id, workflow_type):
            if (rule.amount == amount and rule.approval_type == approval_type
                    and rule.budget_id == budget_id
                    and sorted(rule.reviewers) == sorted(reviewers_tuple)):
                raise ApprovalError("A similar rule already exists")

        now = datetime.now(timezone.utc)
        rule = ApprovalRule(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=user.organization_id,
            name=name,
            workflow_type=workflow_type,
            approval_type=approval_type,
            amount=amount,
            reviewers=reviewers_tuple,
            created_by=user.user_id,
            budget_id=budget_id,
        )
        self.storage.save(self.rules_table, rule.id, rule.to_dict())
        self.audit_trail.log_event(
            AuditEventType.APPROVAL_RULE_CREATED, "approval_rule", rule.id,
            {"workflow_type": workflow_type.value, "approval_type": approval_type.value,
             "amount": amount, "reviewers": list(reviewers_tuple)},
            user_id=user.user_id
        )
        return rule

    def update_rule(self, user: AuthUser, rule_id: str, **changes) -> ApprovalRule:
        """Update name, approval_type, amount or reviewers of a rule"""
        if not user.is_admin:
            raise ApprovalError("Only owners and admins can manage approval rules")
        rule = self.get_rule(rule_id)
        if rule is None or rule.organization_id != user.organization_id:
            raise ApprovalError(f"Approval rule {rule_id} not found")

        allowed = {"name", "approval_type", "amount", "reviewers"}
        unknown = set(changes) - allowed
        if unknown:
            raise ApprovalError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "reviewers" in changes:
            if not changes["reviewers"]:
                raise ApprovalError("An approval rule needs at least one reviewer")
            changes["reviewers"] = tuple(dict.fromkeys(changes["reviewers"]))

        rule = replace(rule, updated_at=datetime.now(timezone.utc), **changes)
        self.storage.save(self.rules_table, rule.id, rule.to_dict())
        self.audit_trail.log_event(
            AuditEventType.APPROVAL_RULE_UPDATED, "approval_rule", rule.id,
            {"changes": sorted(changes)}, user_id=user.user_id
        )
        return rule

    def delete_rule(self, user: AuthUser, rule_id: str) -> bool:
        if not user.is_admin:
            raise ApprovalError("Only owners and admins can manage approval rules")
        rule = self.get_rule(rule_id)
        if rule is None or rule.organization_id != user.organization_id:
            return False
        self.storage.delete(self.rules_table, rule_id)
        self.audit_trail.log_event(
            AuditEventType.APPROVAL_RULE_DELETED, "approval_rule", rule_id, {}, user_id=user.user_id
        )
        return True

    def get_rule(self, rule_id: str) -> Optional[ApprovalRule]:
        data = self.storage.load(self.rules_table, rule_id)
        return ApprovalRule.from_dict(data) if data else None

    def list_rules(self, organization_id: str,
                   workflow_type: Optional[WorkflowType] = None) -> List[ApprovalRule]:
        filters: Dict[str, Any] = {"organization_id": organization_id}
        if workflow_type:
            filters["workflow_type"] = workflow_type.value
        return [ApprovalRule.from_dict(d) for d in self.storage.find(self.rules_table, filters)]

    def find_matching_rule(self, organization_id: str, workflow_type: WorkflowType, amount: int,
                           budget_id: Optional[str] = None) -> Optional[ApprovalRule]:
        """
        Best rule whose threshold the amount reaches.

        Rules scoped to the request's budget win over organization-wide ones;
        among those, the highest threshold wins.
        """
        candidates = [
            rule for rule in self.list_rules(organization_id, workflow_type)
            if rule.amount <= amount and (rule.budget_id is None or rule.budget_id == budget_id)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: (r.budget_id is not None, r.amount, r.created_at))

    # Requests

    def request_or_execute(
        self,
        user: AuthUser,
        workflow_type: WorkflowType,
        amount: int,
        payload: ApprovalPayload,
        budget_id: Optional[str] = None
    ) -> Union[Executed, ApprovalPending]:
        """Run the action now, or park it behind an approval request"""
        if workflow_type_of(payload) != workflow_type:
            raise TypeError(f"{type(payload).__name__} is not a {workflow_type.value} payload")
        executors = self._require_executors()

        rule = self.find_matching_rule(user.organization_id, workflow_type, amount, budget_id)
        if (rule is None or user.is_owner
                or (rule.required_reviews == 1 and user.user_id in rule.reviewers)):
            return Executed(executors.execute(user, payload))

        now = datetime.now(timezone.utc)
        reviews = tuple(
            Review(user_id=reviewer, status=ReviewStatus.APPROVED, reviewed_at=now)
            if reviewer == user.user_id else Review(user_id=reviewer)
            for reviewer in rule.reviewers
        )
        request = ApprovalRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=user.organization_id,
            workflow_type=workflow_type,
            requester_id=user.user_id,
            rule_id=rule.id,
            approval_type=rule.approval_type,
            amount=amount,
            reviews=reviews,
            properties=payload,
            requester_role=user.role,
            requester_department_id=user.department_id,
        )
        self.storage.save(self.requests_table, request.id, request.to_dict())
        self.audit_trail.log_event(
            AuditEventType.APPROVAL_REQUESTED, "approval_request", request.id,
            {"workflow_type": workflow_type.value, "amount": amount, "rule_id": rule.id},
            user_id=user.user_id
        )
        log_action(logger, "info", f"{workflow_type.value} request awaiting approval",
                   user_id=user.user_id, action="request_approval",
                   resource=f"approval_request:{request.id}")

        self.dispatcher.emit(DomainEvent.APPROVAL_REQUESTED, "approval_request", request.id, {
            "workflow_type": workflow_type.value,
            "amount": amount,
            "recipients": [r.user_id for r in reviews if r.status == ReviewStatus.PENDING],
        })
        return ApprovalPending(request)

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        data = self.storage.load(self.requests_table, request_id)
        return ApprovalRequest.from_dict(data) if data else None

    def list_pending_for_reviewer(self, user: AuthUser) -> List[ApprovalRequest]:
        records = self.storage.find(self.requests_table, {
            "organization_id": user.organization_id,
            "status": RequestStatus.PENDING.value,
        })
        pending = []
        for request in (ApprovalRequest.from_dict(d) for d in records):
            review = request.review_for(user.user_id)
            if review and review.status == ReviewStatus.PENDING:
                pending.append(request)
        return pending

    @staticmethod
    def _resolve(approval_type: ApprovalType, reviews: Tuple[Review, ...]) -> RequestStatus:
        if any(r.status == ReviewStatus.DECLINED for r in reviews):
            return RequestStatus.DECLINED
        approvals = [r for r in reviews if r.status == ReviewStatus.APPROVED]
        if approval_type == ApprovalType.ANYONE and approvals:
            return RequestStatus.APPROVED
        if approval_type == ApprovalType.EVERYONE and len(approvals) == len(reviews):
            return RequestStatus.APPROVED
        return RequestStatus.PENDING

    def review(self, user: AuthUser, request_id: str, decision: ReviewStatus,
               reason: Optional[str] = None) -> ApprovalRequest:
        """
        Record a reviewer's decision and resolve the request when quorum is met.

        Only the call that moves the request out of Pending triggers the
        executor (or the decline compensation).
        """
        if decision == ReviewStatus.PENDING:
            raise ApprovalError("A review decision must be approved or declined")
        executors = self._require_executors()

        with self.storage.atomic():
            request = self.get_request(request_id)
            if request is None or request.organization_id != user.organization_id:
                raise ApprovalError(f"Approval request {request_id} not found")
            if request.status != RequestStatus.PENDING:
                raise ApprovalError(f"Approval request {request_id} is already {request.status.value}")
            current = request.review_for(user.user_id)
            if current is None:
                raise ApprovalError(f"User {user.user_id} is not a reviewer of this request")
            if current.status != ReviewStatus.PENDING:
                raise ApprovalError(f"User {user.user_id} has already reviewed this request")

            now = datetime.now(timezone.utc)
            reviews = tuple(
                replace(r, status=decision, reason=reason, reviewed_at=now)
                if r.user_id == user.user_id else r
                for r in request.reviews
            )
            status = self._resolve(request.approval_type, reviews)
            updated = self.storage.update_where(
                self.requests_table, request.id,
                {"status": RequestStatus.PENDING.value, "version": request.version},
                sets={
                    "reviews": [asdict(r) for r in reviews],
                    "status": status.value,
                    "resolved_at": now if status != RequestStatus.PENDING else None,
                },
                increments={"version": 1}
            )
            if updated is None:
                raise ApprovalError(f"Approval request {request_id} was modified concurrently")
            request = ApprovalRequest.from_dict(updated)

            self.audit_trail.log_event(
                AuditEventType.APPROVAL_REVIEWED, "approval_request", request.id,
                {"decision": decision.value, "reason": reason, "status": status.value},
                user_id=user.user_id
            )

        if status == RequestStatus.APPROVED:
            request = self._execute(request, executors)
        elif status == RequestStatus.DECLINED:
            self.audit_trail.log_event(
                AuditEventType.APPROVAL_DECLINED, "approval_request", request.id,
                {"reason": reason}, user_id=user.user_id
            )
            executors.compensate(request.requester, request.properties)

        if status != RequestStatus.PENDING:
            log_action(logger, "info", f"Approval request resolved as {status.value}",
                       user_id=user.user_id, action="resolve_approval",
                       resource=f"approval_request:{request.id}")
            self.dispatcher.emit(DomainEvent.APPROVAL_RESOLVED, "approval_request", request.id, {
                "workflow_type": request.workflow_type.value,
                "amount": request.amount,
                "status": status.value,
                "recipients": [request.requester_id],
            })
        return request

    def _execute(self, request: ApprovalRequest, executors: ApprovalExecutors) -> ApprovalRequest:
        self.audit_trail.log_event(
            AuditEventType.APPROVAL_APPROVED, "approval_request", request.id,
            {"workflow_type": request.workflow_type.value}
        )
        try:
            executors.execute(request.requester, request.properties)
        except Exception as e:
            log_action(logger, "error", f"Approved {request.workflow_type.value} could not execute: {e}",
                       user_id=request.requester_id, action="execute_approval",
                       resource=f"approval_request:{request.id}",
                       exc_info=not isinstance(e, TreasuryError))
            updated = self.storage.update_where(
                self.requests_table, request.id,
                {"execution_status": ExecutionStatus.NOT_STARTED.value},
                sets={"execution_status": ExecutionStatus.FAILED.value,
                      "execution_error": f"{type(e).__name__}: {e}"}
            )
            return ApprovalRequest.from_dict(updated) if updated else request

        updated = self.storage.update_where(
            self.requests_table, request.id,
            {"execution_status": ExecutionStatus.NOT_STARTED.value},
            sets={"execution_status": ExecutionStatus.EXECUTED.value}
        )
        self.audit_trail.log_event(
            AuditEventType.APPROVAL_EXECUTED, "approval_request", request.id,
            {"workflow_type": request.workflow_type.value}
        )
        return ApprovalRequest.from_dict(updated) if updated else request
