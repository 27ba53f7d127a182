"""
Audit Trail Module

Append-only record of every allocation, installment/loan status change and
device lock transition. Entries are chained with SHA-256 so that editing or
removing a stored row breaks the chain and shows up in ``verify_integrity``.

``AuditTrail.record`` is the write path used by the ledger and lock services.
It is best-effort: a failing audit sink is logged and never fails the
operation being audited. ``AuditTrail.log_event`` is the strict variant and
propagates storage errors.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .actors import Actor
from .currency import Money
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("device_finance.audit")


class AuditEventType(Enum):
    """Audited actions"""
    LOAN_FINALIZED = "loan_finalized"
    LOAN_CANCELLED = "loan_cancelled"
    LOAN_STATUS_CHANGED = "loan_status_changed"

    INSTALLMENT_STATUS_CHANGED = "installment_status_changed"
    INSTALLMENT_MARKED_PAID = "installment_marked_paid"

    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_ALLOCATED = "payment_allocated"
    ALLOCATION_REVERSED = "allocation_reversed"

    DEVICE_REGISTERED = "device_registered"
    DEVICE_LOCK_STATE_CHANGED = "device_lock_state_changed"


def _jsonable(value: Any) -> Any:
    """Reduce audit metadata to JSON-safe values so hashes are reproducible"""
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Actor):
        return value.audit_id
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str  # loan, installment, payment, device
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    actor_kind: Optional[str] = None

    def __post_init__(self):
        self.metadata = _jsonable(self.metadata or {})

    def _hash_payload(self) -> str:
        return json.dumps({
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'actor_kind': self.actor_kind,
            'metadata': self.metadata,
        }, sort_keys=True, separators=(',', ':'))

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash itself"""
        return hashlib.sha256(self._hash_payload().encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @property
    def resource(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['event_type'] = self.event_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data[key], str):
                data[key] = datetime.fromisoformat(data[key])
        data['event_type'] = AuditEventType(data['event_type'])
        data.setdefault('actor_kind', None)
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail stored in a single storage table.

    The chain head is read from storage on every append, so an append made
    inside a transaction that later rolls back leaves no gap in the chain.
    Appends hold the storage backend exclusively so two writers never link
    to the same head.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled

    def _events(self) -> List[AuditEvent]:
        return [AuditEvent.from_dict(row) for row in self.storage.load_all(self.table_name)]

    def _chain_head(self) -> str:
        rows = self.storage.load_all(self.table_name)
        return rows[-1].get('current_hash', "") if rows else ""

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None
    ) -> AuditEvent:
        """
        Append an event to the chain and persist it.

        Args:
            event_type: Audited action
            entity_type: loan, installment, payment or device
            entity_id: ID of the entity acted on
            metadata: Additional event-specific data
            actor: Who initiated the action

        Raises whatever the storage backend raises.
        """
        # Head read and append must not interleave with another writer
        with self.storage.exclusive():
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._chain_head(),
                current_hash="",
                metadata=metadata or {},
                user_id=actor.audit_id if actor else None,
                actor_kind=actor.kind.value if actor else None,
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def record(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None
    ) -> Optional[AuditEvent]:
        """Best-effort ``log_event``: returns None when disabled or when the write fails"""
        if not self.enabled:
            return None
        try:
            return self.log_event(event_type, entity_type, entity_id, metadata, actor)
        except Exception as e:
            logger.error(
                f"Audit write failed for {event_type.value} on {entity_type}:{entity_id}: {e}",
                extra={'action': event_type.value, 'resource': f"{entity_type}:{entity_id}",
                       'user_id': actor.audit_id if actor else None}
            )
            return None

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events for one entity, oldest first; ``limit`` keeps the most recent ones"""
        rows = self.storage.find(self.table_name, {'entity_type': entity_type, 'entity_id': entity_id})
        events = [AuditEvent.from_dict(row) for row in rows]
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        rows = self.storage.find(self.table_name, {'event_type': event_type.value})
        return [AuditEvent.from_dict(row) for row in rows]

    def get_events_by_actor(self, actor: Actor) -> List[AuditEvent]:
        rows = self.storage.find(self.table_name, {'user_id': actor.audit_id})
        return [AuditEvent.from_dict(row) for row in rows]

    def _walk_chain(self) -> Iterator[Tuple[int, AuditEvent, str]]:
        expected_previous = ""
        for position, event in enumerate(self._events()):
            yield position, event, expected_previous
            expected_previous = event.current_hash

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Recompute every hash and check every back-link.

        Returns a report with ``valid``, ``total_events``, ``hash_errors``
        (rows whose content no longer matches their hash) and
        ``chain_breaks`` (rows whose previous_hash does not match the row
        before them).
        """
        hash_errors = []
        chain_breaks = []
        total = 0

        for position, event, expected_previous in self._walk_chain():
            total += 1
            if not event.verify_hash():
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash,
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash,
                })

        if hash_errors or chain_breaks:
            logger.warning(
                f"Audit chain verification failed: {len(hash_errors)} hash errors, "
                f"{len(chain_breaks)} chain breaks",
                extra={'action': 'audit_verify', 'resource': self.table_name}
            )

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': total,
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
