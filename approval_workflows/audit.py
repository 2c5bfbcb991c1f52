"""
Audit Trail Module

Hash-chained append-only log of workflow transitions with SHA-256 for tamper
detection. Complements the workflow documents themselves, which keep only the
latest state of each step.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import uuid

from .errors import ConcurrentModificationError
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    WORKFLOW_CREATED = "workflow_created"
    STEP_APPROVED = "step_approved"
    STEP_REJECTED = "step_rejected"
    STEP_ESCALATED = "step_escalated"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    SLA_BREACHED = "sla_breached"


@dataclass
class AuditEvent(StorageRecord):
    """Immutable audit event chained to its predecessor by hash"""
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
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
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail.

    The chain tail lives in a small head record (``sequence`` and
    ``last_hash``) advanced with compare-and-swap, so appending never scans the
    event table and trails sharing one database still form a single chain.
    """

    HEAD_ID = "head"
    MAX_APPEND_ATTEMPTS = 50

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def _reserve_position(self, event: AuditEvent) -> int:
        """Point the head at ``event`` and return the chain position it took"""
        for _ in range(self.MAX_APPEND_ATTEMPTS):
            head = self.storage.load(self.head_table, self.HEAD_ID)
            if head is None:
                event.previous_hash = ""
                event.current_hash = event.calculate_hash()
                new_head = {'id': self.HEAD_ID, 'version': 1, 'sequence': 1,
                            'last_hash': event.current_hash}
                if self.storage.insert(self.head_table, self.HEAD_ID, new_head):
                    return 0
                continue

            event.previous_hash = head['last_hash']
            event.current_hash = event.calculate_hash()
            new_head = {'id': self.HEAD_ID, 'version': head['version'] + 1,
                        'sequence': head['sequence'] + 1, 'last_hash': event.current_hash}
            if self.storage.compare_and_swap(self.head_table, self.HEAD_ID, head['version'], new_head):
                return head['sequence']

        raise ConcurrentModificationError(self.head_table, head['version'] if head else 0)

    def log_event(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                  metadata: Optional[Dict[str, Any]] = None,
                  user_id: Optional[str] = None) -> AuditEvent:
        """Append an event to the chain and return it"""
        with self._lock:
            now = self._clock()
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash="",
                current_hash="",
                metadata=_jsonable(metadata or {}),
                user_id=user_id
            )
            sequence = self._reserve_position(event)
            record = event.to_dict()
            record['sequence'] = sequence
            self.storage.insert(self.table_name, event.id, record)
            return event

    def _ordered(self) -> List[AuditEvent]:
        records = self.storage.load_all(self.table_name)
        records.sort(key=lambda e: e.get('sequence', 0))
        for record in records:
            record.pop('sequence', None)
        return [AuditEvent.from_dict(record) for record in records]

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        return [
            e for e in self._ordered()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def verify_integrity(self) -> Dict[str, Any]:
        """Verify every event hash and the continuity of the chain"""
        result = {'valid': True, 'total_events': 0, 'hash_errors': [], 'chain_breaks': []}
        previous_hash = ""
        for position, event in enumerate(self._ordered()):
            result['total_events'] += 1
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': position})
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'event_id': event.id, 'position': position})
            previous_hash = event.current_hash
        return result


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
