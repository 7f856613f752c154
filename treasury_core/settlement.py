"""
Settlement Reconciler

Drives Pending wallet entries to their terminal state from asynchronous
provider outcomes. Outcomes arrive as normalized ``SettlementEvent``s from
the webhook ingress or from requerying the provider; both paths run through
the job queue, so delivery is at-least-once and the ledger's exactly-once
settle makes replays harmless.

A requery that still finds the transfer pending queues the next one, up to
``max_requeries`` per chain. The recurring clearance sweep is the backstop
for entries whose chain ran out.

Inbound deposits arrive the same way as ``InflowEvent``s and credit the
wallet once per reference.

Lookup misses and unknown statuses abort the event without touching state.
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import DuplicateTransferAttempt, EntryNotFound, UnexpectedSettlementStatus
from .jobs import Job, JobQueue
from .ledger import EntryScope, EntryStatus, LedgerCore, SettlementResult, SettlementStatus, WalletEntry
from .providers import ProviderRegistry
from .logging_config import get_logger, log_action

logger = get_logger("treasury.settlement")

PROCESS_OUTFLOW_JOB = "process_wallet_outflow"
PROCESS_INFLOW_JOB = "process_wallet_inflow"
REQUERY_OUTFLOW_JOB = "requery_outflow"
CLEAR_PENDING_JOB = "clear_pending_entries"


@dataclass(frozen=True)
class SettlementEvent:
    """Provider-agnostic settlement outcome"""
    reference: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    gateway_response: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'SettlementEvent':
        reference = payload.get("reference")
        if not reference:
            raise ValueError("Settlement payload is missing a reference")
        return cls(
            reference=str(reference),
            status=str(payload.get("status", "")),
            amount=payload.get("amount"),
            currency=payload.get("currency"),
            gateway_response=payload.get("gateway_response") or {},
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "gateway_response": self.gateway_response,
        }


@dataclass(frozen=True)
class InflowEvent:
    """Deposit reported by the provider for one of our wallets"""
    reference: str
    wallet_id: str
    amount: int
    narration: str = ""
    provider_ref: Optional[str] = None
    gateway_response: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'InflowEvent':
        missing = [key for key in ("reference", "wallet_id", "amount") if not payload.get(key)]
        if missing:
            raise ValueError(f"Inflow payload is missing {', '.join(missing)}")
        amount = payload["amount"]
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"Inflow amount must be a positive integer, got {amount!r}")
        return cls(
            reference=str(payload["reference"]),
            wallet_id=str(payload["wallet_id"]),
            amount=amount,
            narration=payload.get("narration") or "",
            provider_ref=payload.get("provider_ref"),
            gateway_response=payload.get("gateway_response") or {},
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "wallet_id": self.wallet_id,
            "amount": self.amount,
            "narration": self.narration,
            "provider_ref": self.provider_ref,
            "gateway_response": self.gateway_response,
        }


class SettlementReconciler:
    """Applies webhook and requery outcomes to the ledger"""

    def __init__(
        self,
        ledger: LedgerCore,
        providers: ProviderRegistry,
        jobs: JobQueue,
        requery_after_minutes: int = 60,
        max_requeries: int = 24
    ):
        if max_requeries < 1:
            raise ValueError("max_requeries must be at least 1")
        self.ledger = ledger
        self.providers = providers
        self.jobs = jobs
        self.requery_after = timedelta(minutes=requery_after_minutes)
        self.max_requeries = max_requeries

        jobs.register(PROCESS_OUTFLOW_JOB, lambda payload: self.process(SettlementEvent.from_payload(payload)))
        jobs.register(PROCESS_INFLOW_JOB, lambda payload: self.process_inflow(InflowEvent.from_payload(payload)))
        jobs.register(REQUERY_OUTFLOW_JOB,
                      lambda payload: self.requery(payload["entry_id"], remaining=payload.get("remaining", 0)))
        jobs.register(CLEAR_PENDING_JOB, lambda payload: self.clear_pending_entries())

    def process(self, event: SettlementEvent) -> SettlementResult:
        """
        Apply one settlement outcome.

        Raises:
            UnexpectedSettlementStatus: status outside successful/failed/reversed
            EntryNotFound: no entry carries the reference (retried by the queue)
        """
        try:
            status = SettlementStatus(event.status.lower())
        except ValueError:
            log_action(logger, "error", f"Unexpected settlement status {event.status!r}",
                       action="process_settlement", resource=f"wallet_entry:{event.reference}")
            raise UnexpectedSettlementStatus(event.status, event.reference) from None

        entry = self.ledger.find_by_reference(event.reference)
        if entry is None:
            log_action(logger, "warning", f"No wallet entry for settlement reference {event.reference}",
                       action="process_settlement", resource=f"wallet_entry:{event.reference}")
            raise EntryNotFound(event.reference)

        if event.amount is not None and event.amount not in (entry.amount, entry.total):
            log_action(logger, "warning",
                       f"Settlement amount {event.amount} differs from entry amount {entry.amount}",
                       action="process_settlement", resource=f"wallet_entry:{entry.reference}")

        result = self.ledger.settle(entry.id, status, event.gateway_response)
        if not result.applied:
            logger.info(f"Settlement for {entry.reference} ignored: {result.message}")
        return result

    def handle_webhook(self, payload: Dict[str, Any]) -> Job:
        """Queue a webhook-delivered outcome for processing"""
        event = SettlementEvent.from_payload(payload)
        return self.jobs.enqueue(PROCESS_OUTFLOW_JOB, event.to_payload())

    def handle_inflow_webhook(self, payload: Dict[str, Any]) -> Job:
        """Queue a webhook-delivered deposit for crediting"""
        event = InflowEvent.from_payload(payload)
        return self.jobs.enqueue(PROCESS_INFLOW_JOB, event.to_payload())

    def process_inflow(self, event: InflowEvent) -> WalletEntry:
        """
        Credit a deposit to its wallet. Replaying the same deposit returns the
        entry already recorded for it.

        Raises:
            OrganizationOrBudgetNotFound: the wallet does not exist (retried by the queue)
            DuplicateTransferAttempt: the reference belongs to a different entry
        """
        entry = self.ledger.record_inflow(
            event.wallet_id, event.amount, event.reference,
            narration=event.narration,
            gateway_response=event.gateway_response,
            provider_ref=event.provider_ref,
        )
        if (entry.scope != EntryScope.WALLET_FUNDING or entry.wallet_id != event.wallet_id
                or entry.amount != event.amount):
            log_action(logger, "error", f"Inflow reference {event.reference} collides with another entry",
                       action="process_inflow", resource=f"wallet_entry:{entry.reference}")
            raise DuplicateTransferAttempt(
                f"Inflow reference {event.reference} is already used", existing_reference=entry.reference
            )
        log_action(logger, "info", f"Inflow {event.reference} of {event.amount} recorded",
                   action="process_inflow", resource=f"wallet:{event.wallet_id}")
        return entry

    def schedule_requery(self, entry_id: str, delay_seconds: float = 0,
                         remaining: Optional[int] = None) -> Job:
        """
        Queue a provider requery. ``remaining`` is how many follow-up requeries
        this one may queue while the provider keeps answering pending; it
        defaults to a full chain of ``max_requeries``.
        """
        if remaining is None:
            remaining = self.max_requeries - 1
        return self.jobs.enqueue(
            REQUERY_OUTFLOW_JOB, {"entry_id": entry_id, "remaining": remaining}, delay_seconds=delay_seconds
        )

    def requery(self, entry_id: str, remaining: int = 0) -> Optional[SettlementResult]:
        """
        Ask the entry's provider for the transfer status and apply it if terminal.

        Returns None when the entry is already settled or the provider still
        reports it pending; in the latter case the next requery is queued
        while ``remaining`` allows.
        """
        entry = self.ledger.require_entry(entry_id)
        if entry.status != EntryStatus.PENDING:
            return None

        provider = self.providers.get(ProviderRegistry.parse_name(entry.provider))
        outcome = provider.verify_transfer(entry.provider_ref or entry.reference)
        if not outcome.status.is_terminal:
            if remaining > 0:
                logger.info(f"Transfer {entry.reference} still pending at provider; "
                            f"requerying in {self.requery_after}")
                self.schedule_requery(entry_id, delay_seconds=self.requery_after.total_seconds(),
                                      remaining=remaining - 1)
            else:
                log_action(logger, "warning",
                           f"Transfer {entry.reference} still pending after its last requery",
                           action="requery", resource=f"wallet_entry:{entry.reference}")
            return None

        return self.process(SettlementEvent(
            reference=entry.reference,
            status=outcome.status.value,
            gateway_response=outcome.gateway_response,
        ))

    def clear_pending_entries(self, now: Optional[datetime] = None) -> int:
        """Queue a single requery for each external entry stuck in Pending past the threshold"""
        cutoff = (now or datetime.now(timezone.utc)) - self.requery_after
        stale = self.ledger.pending_entries_older_than(cutoff)
        for entry in stale:
            self.schedule_requery(entry.id, remaining=0)
        if stale:
            log_action(logger, "info", f"Queued requery for {len(stale)} pending entries",
                       action="clear_pending_entries", resource="wallet_entries")
        return len(stale)
