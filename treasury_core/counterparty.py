"""
Counterparty Resolver

Resolves an external bank account (account number + bank code) to a verified
account name through the configured bank-verification provider, and caches
the result per organization. Cached rows double as the organization's saved
recipients list when flagged ``is_recipient``.
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
import uuid

from .providers import BankVerificationProvider
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action

logger = get_logger("treasury.counterparty")


@dataclass(frozen=True)
class Counterparty(StorageRecord):
    """Cached, verified bank-account identity"""
    organization_id: str
    account_number: str
    bank_code: str
    account_name: str
    bank_name: str
    bank_id: Optional[str] = None
    is_recipient: bool = False
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Counterparty':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            organization_id=data["organization_id"],
            account_number=data["account_number"],
            bank_code=data["bank_code"],
            account_name=data["account_name"],
            bank_name=data["bank_name"],
            bank_id=data.get("bank_id"),
            is_recipient=data.get("is_recipient", False),
            resolved_at=parse_datetime(data.get("resolved_at")),
        )


@dataclass(frozen=True)
class ResolvedAccount:
    account_name: str
    bank_name: str
    bank_id: Optional[str]
    counterparty_id: str
    cached: bool = False


class CounterpartyResolver:
    """Provider-backed account resolution with a per-organization cache"""

    def __init__(
        self,
        storage: StorageInterface,
        provider: BankVerificationProvider,
        audit_trail: AuditTrail,
        cache_ttl_seconds: int = 86_400
    ):
        self.storage = storage
        self.provider = provider
        self.audit_trail = audit_trail
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self.table = "counterparties"

    @staticmethod
    def _key(organization_id: str, account_number: str, bank_code: str) -> str:
        # Deterministic id makes the cache row an upsert target
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{organization_id}:{bank_code}:{account_number}"))

    def get_counterparty(self, organization_id: str, account_number: str,
                         bank_code: str) -> Optional[Counterparty]:
        data = self.storage.load(self.table, self._key(organization_id, account_number, bank_code))
        return Counterparty.from_dict(data) if data else None

    def resolve(self, organization_id: str, account_number: str, bank_code: str,
                save_recipient: bool = False) -> ResolvedAccount:
        """
        Resolve an account, serving a fresh cache row without calling the provider.

        Raises:
            ProviderUnavailable: provider unreachable (retryable)
            InvalidAccount: provider rejected the account (not retried)
        """
        now = datetime.now(timezone.utc)
        cached = self.get_counterparty(organization_id, account_number, bank_code)
        if cached and cached.resolved_at and now - cached.resolved_at < self.cache_ttl:
            if save_recipient and not cached.is_recipient:
                cached = self.save_recipient(cached)
            return ResolvedAccount(cached.account_name, cached.bank_name, cached.bank_id,
                                   cached.id, cached=True)

        details = self.provider.resolve_account(account_number, bank_code)
        counterparty = Counterparty(
            id=self._key(organization_id, account_number, bank_code),
            created_at=cached.created_at if cached else now,
            updated_at=now,
            organization_id=organization_id,
            account_number=account_number,
            bank_code=bank_code,
            account_name=details.account_name,
            bank_name=details.bank_name,
            bank_id=details.bank_id,
            is_recipient=save_recipient or (cached.is_recipient if cached else False),
            resolved_at=now,
        )
        self.storage.save(self.table, counterparty.id, counterparty.to_dict())
        self.audit_trail.log_event(
            AuditEventType.COUNTERPARTY_RESOLVED, "counterparty", counterparty.id,
            {"bank_code": bank_code, "account_name": details.account_name}
        )
        log_action(logger, "info", f"Resolved account at bank {bank_code}",
                   action="resolve_counterparty", resource=f"counterparty:{counterparty.id}")
        return ResolvedAccount(counterparty.account_name, counterparty.bank_name,
                               counterparty.bank_id, counterparty.id)

    def save_recipient(self, counterparty: Counterparty) -> Counterparty:
        counterparty = replace(counterparty, is_recipient=True, updated_at=datetime.now(timezone.utc))
        self.storage.save(self.table, counterparty.id, counterparty.to_dict())
        return counterparty

    def delete_recipient(self, organization_id: str, counterparty_id: str) -> bool:
        """Remove a counterparty from the saved recipients (the cache row stays)"""
        updated = self.storage.update_where(
            self.table, counterparty_id,
            {"organization_id": organization_id, "is_recipient": True},
            sets={"is_recipient": False}
        )
        return updated is not None

    def list_recipients(self, organization_id: str) -> List[Counterparty]:
        records = self.storage.find(self.table, {"organization_id": organization_id, "is_recipient": True})
        recipients = [Counterparty.from_dict(d) for d in records]
        recipients.sort(key=lambda c: c.account_name)
        return recipients

    def list_banks(self) -> List[Dict[str, str]]:
        return self.provider.list_banks()
