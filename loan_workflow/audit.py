"""
Audit Trail Module

Append-only, hash-chained audit log attached to a single loan. Every state
change on the loan is recorded here; entries are immutable snapshots and
the log exposes no way to remove or edit them. Corrections are new entries
carrying ``previous_values`` / ``new_values`` in their changes.
"""

import hashlib
import json
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple
from enum import Enum
from decimal import Decimal
import uuid

from .currency import Money
from .errors import AuditValidationError


class AuditAction(Enum):
    """Kinds of audit entries"""
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAYMENT_ADDED = "payment_added"
    AGREEMENT_GENERATED = "agreement_generated"
    WORKFLOW_ADVANCED = "workflow_advanced"
    ASSIGNED = "assigned"
    REVIEWED = "reviewed"
    DOCUMENTS_UPLOADED = "documents_uploaded"
    CALCULATION_UPDATED = "calculation_updated"
    WORKFLOW_BLOCKED = "workflow_blocked"


def serialize_value(value: Any) -> Any:
    """Convert a change value to a JSON-serializable form"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, Money):
        return value.to_dict()
    elif isinstance(value, datetime):
        return value.isoformat()
    elif hasattr(value, 'isoformat'):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {str(k): serialize_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple, set, frozenset)):
        return [serialize_value(v) for v in value]
    return value


def change_set(previous: Optional[Dict[str, Any]] = None,
               new: Optional[Dict[str, Any]] = None,
               **details: Any) -> Dict[str, Any]:
    """Build a changes payload with previous/new values and extra details"""
    changes: Dict[str, Any] = dict(details)
    if previous is not None:
        changes['previous_values'] = previous
    if new is not None:
        changes['new_values'] = new
    return changes


@dataclass(frozen=True)
class AuditEntry:
    """
    Immutable audit record

    The changes payload is held as canonical JSON so the entry cannot be
    altered through a shared reference; ``changes`` returns a fresh copy.
    """
    id: str
    sequence: int
    action: AuditAction
    actor: str
    timestamp: datetime
    payload: str
    comments: Optional[str]
    previous_hash: str
    current_hash: str

    @property
    def changes(self) -> Dict[str, Any]:
        return json.loads(self.payload)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'action': self.action.value,
            'actor': self.actor,
            'timestamp': self.timestamp.isoformat(),
            'payload': self.payload,
            'comments': self.comments,
            'previous_hash': self.previous_hash,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence': self.sequence,
            'action': self.action.value,
            'actor': self.actor,
            'timestamp': self.timestamp.isoformat(),
            'changes': self.changes,
            'comments': self.comments,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        return cls(
            id=data['id'],
            sequence=data['sequence'],
            action=AuditAction(data['action']),
            actor=data['actor'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            payload=json.dumps(data.get('changes') or {}, sort_keys=True, separators=(',', ':')),
            comments=data.get('comments'),
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
        )


class AuditLog:
    """
    Hash-chained audit log for one loan

    Each entry stores the hash of its predecessor, so removing, reordering
    or editing a stored entry is detected by ``verify_integrity``.
    """

    def __init__(self, entries: Optional[List[AuditEntry]] = None,
                 max_comment_length: Optional[int] = None):
        self._entries: List[AuditEntry] = list(entries or [])
        self.max_comment_length = max_comment_length

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(tuple(self._entries))

    @property
    def entries(self) -> Tuple[AuditEntry, ...]:
        return tuple(self._entries)

    @property
    def last_hash(self) -> str:
        return self._entries[-1].current_hash if self._entries else ""

    @property
    def latest(self) -> Optional[AuditEntry]:
        return self._entries[-1] if self._entries else None

    def append(
        self,
        action: AuditAction,
        actor: str,
        at: datetime,
        changes: Optional[Dict[str, Any]] = None,
        comments: Optional[str] = None
    ) -> AuditEntry:
        """
        Append an audit entry

        Args:
            action: Kind of action recorded
            actor: Opaque identifier of the staff member acting
            at: Timestamp of the action
            changes: Change payload; Decimals, Money, dates and enums are
                serialized
            comments: Optional free text

        Returns:
            The appended, immutable entry

        Raises:
            AuditValidationError: On empty actor or unknown action
        """
        entry = self.build_entry(action, actor, at, changes, comments)
        self._entries.append(entry)
        return entry

    def build_entry(
        self,
        action: AuditAction,
        actor: str,
        at: datetime,
        changes: Optional[Dict[str, Any]] = None,
        comments: Optional[str] = None
    ) -> AuditEntry:
        """Validate and construct the next entry without appending it"""
        if isinstance(action, str):
            try:
                action = AuditAction(action)
            except ValueError:
                raise AuditValidationError(f"Unknown audit action '{action}'", {'action': action})
        if not isinstance(action, AuditAction):
            raise AuditValidationError(f"Unknown audit action '{action}'")
        if not actor or not str(actor).strip():
            raise AuditValidationError("Audit entries require an actor", {'action': action.value})
        if comments and self.max_comment_length and len(comments) > self.max_comment_length:
            comments = comments[:self.max_comment_length]

        payload = json.dumps(
            serialize_value(changes or {}),
            sort_keys=True,
            separators=(',', ':')
        )
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            sequence=len(self._entries) + 1,
            action=action,
            actor=str(actor),
            timestamp=at,
            payload=payload,
            comments=comments,
            previous_hash=self.last_hash,
            current_hash="",
        )
        return _with_hash(entry)

    def entries_for(self, action: AuditAction) -> List[AuditEntry]:
        return [entry for entry in self._entries if entry.action == action]

    def entries_by(self, actor: str) -> List[AuditEntry]:
        return [entry for entry in self._entries if entry.actor == actor]

    def entries_between(self, start: Optional[datetime] = None,
                        end: Optional[datetime] = None) -> List[AuditEntry]:
        """Entries within a time range (inclusive)"""
        result = list(self._entries)
        if start:
            result = [e for e in result if e.timestamp >= start]
        if end:
            result = [e for e in result if e.timestamp <= end]
        return result

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': len(self._entries),
            'hash_errors': [],
            'chain_breaks': [],
        }

        previous_hash = ""
        for position, entry in enumerate(self._entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash or entry.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    @classmethod
    def from_list(cls, data: List[Dict[str, Any]],
                  max_comment_length: Optional[int] = None) -> 'AuditLog':
        entries = sorted((AuditEntry.from_dict(item) for item in data), key=lambda e: e.sequence)
        return cls(entries, max_comment_length=max_comment_length)


def _with_hash(entry: AuditEntry) -> AuditEntry:
    object.__setattr__(entry, 'current_hash', entry.calculate_hash())
    return entry
