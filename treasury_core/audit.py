"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every balance mutation, settlement transition and approval decision is
logged here.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storable


class AuditEventType(Enum):
    """Types of audit events"""
    # Wallet events
    WALLET_CREATED = "wallet_created"
    WALLET_CREDITED = "wallet_credited"

    # Ledger events
    FUNDS_RESERVED = "funds_reserved"
    ENTRY_SETTLED = "entry_settled"
    ENTRY_FAILED = "entry_failed"
    ENTRY_REVERSED = "entry_reversed"

    # Budget events
    BUDGET_CREATED = "budget_created"
    BUDGET_FUNDED = "budget_funded"
    BUDGET_EXTENDED = "budget_extended"
    BUDGET_PAUSED = "budget_paused"
    BUDGET_UNPAUSED = "budget_unpaused"
    BUDGET_CLOSED = "budget_closed"
    BUDGET_DECLINED = "budget_declined"

    # Approval events
    APPROVAL_RULE_CREATED = "approval_rule_created"
    APPROVAL_RULE_UPDATED = "approval_rule_updated"
    APPROVAL_RULE_DELETED = "approval_rule_deleted"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_REVIEWED = "approval_reviewed"
    APPROVAL_APPROVED = "approval_approved"
    APPROVAL_DECLINED = "approval_declined"
    APPROVAL_EXECUTED = "approval_executed"

    # Policy events
    POLICY_CREATED = "policy_created"
    POLICY_UPDATED = "policy_updated"
    POLICY_VIOLATION = "policy_violation"

    # Counterparty events
    COUNTERPARTY_RESOLVED = "counterparty_resolved"

    # Payroll events
    PAYROLL_CREATED = "payroll_created"
    PAYROLL_APPROVED = "payroll_approved"
    PAYROLL_REJECTED = "payroll_rejected"

    # Operational events
    JOB_DEAD_LETTERED = "job_dead_lettered"
    NOTIFICATION_SENT = "notification_sent"
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


@dataclass(frozen=True)
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # wallet, wallet_entry, budget, approval_request, ...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        object.__setattr__(self, 'metadata', to_storable(self.metadata or {}))

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from its stored dictionary"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id')
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection.

    Appends are serialized through a storage transaction, so the chain stays
    linear even when several threads log at once.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled

    def _chain_head(self) -> Dict[str, Any]:
        head = self.storage.load(f"{self.table_name}_head", "head")
        return head or {"id": "head", "current_hash": "", "sequence": 0}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self.storage.atomic():
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'],
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event = replace(event, current_hash=event.calculate_hash())

            record = event.to_dict()
            record['sequence'] = head['sequence'] + 1
            self.storage.save(self.table_name, event.id, record)
            self.storage.save(f"{self.table_name}_head", "head", {
                "id": "head",
                "current_hash": event.current_hash,
                "sequence": record['sequence']
            })
            return event

    def _ordered_events(self) -> List[AuditEvent]:
        records = self.storage.load_all(self.table_name)
        records.sort(key=lambda x: (x.get('sequence', 0), x.get('created_at', '')))
        return [AuditEvent.from_dict(data) for data in records]

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        events = [
            e for e in self._ordered_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        events = [e for e in self._ordered_events() if e.event_type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._ordered_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
