"""
Loan Repository Module

Persistence collaborator for the Loan aggregate: issues application IDs
from an atomic sequence, stores loans with an optimistic version check and
answers read-only queries by stage, actor, borrower and date range.
"""

from datetime import datetime
from typing import List, Optional
import threading

from .storage import StorageInterface
from .loans import Loan
from .clock import Clock, SystemClock
from .workflow import WorkflowStage, coerce_stage
from .errors import ConcurrentModificationError, LoanNotFoundError, LoanValidationError
from .logging_config import get_logger, log_action


class LoanRepository:
    """Stores Loan aggregates as JSON documents"""

    SEQUENCE_NAME = "loan_application_id"

    def __init__(
        self,
        storage: StorageInterface,
        clock: Optional[Clock] = None,
        id_prefix: str = "LN",
        id_width: int = 5,
        max_comment_length: Optional[int] = None
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.id_prefix = id_prefix
        self.id_width = id_width
        self.max_comment_length = max_comment_length
        self.table_name = "loans"
        self.sequence_table = "sequences"
        self._lock = threading.RLock()
        self.logger = get_logger("loanflow.repository")

    # Identifiers

    def format_application_id(self, value: int) -> str:
        return f"{self.id_prefix}{value:0{self.id_width}d}"

    def next_application_id(self) -> str:
        """
        Issue the next application ID

        The counter lives in storage and is advanced inside a transaction;
        any value already used by a stored loan is skipped.
        """
        with self._lock:
            with self.storage.atomic():
                sequence = self.storage.load(self.sequence_table, self.SEQUENCE_NAME)
                value = (sequence or {}).get('value', 0) + 1
                candidate = self.format_application_id(value)
                while self.storage.find(self.table_name, {'application_id': candidate}):
                    value += 1
                    candidate = self.format_application_id(value)
                self.storage.save(self.sequence_table, self.SEQUENCE_NAME, {
                    'id': self.SEQUENCE_NAME,
                    'value': value,
                })
        return candidate

    # Writes

    def add(self, loan: Loan) -> Loan:
        """Store a newly created loan at version 1"""
        with self._lock:
            with self.storage.atomic():
                if self.storage.exists(self.table_name, loan.id):
                    raise LoanValidationError(f"Loan {loan.id} already exists")
                if self.storage.find(self.table_name, {'application_id': loan.application_id}):
                    raise LoanValidationError(
                        f"Application ID {loan.application_id} is already in use",
                        {'application_id': loan.application_id}
                    )
                data = loan.to_dict()
                data['version'] = 1
                self.storage.save(self.table_name, loan.id, data)
        loan.version = 1

        log_action(
            self.logger, "info", "Loan stored",
            action="created", resource=loan.application_id
        )
        return loan

    def save(self, loan: Loan) -> Loan:
        """
        Save an updated loan if nobody else saved it since it was loaded

        Raises:
            LoanNotFoundError: If the loan was never added
            ConcurrentModificationError: If the stored version differs from
                the version the loan was loaded at
        """
        expected_version = loan.version
        data = loan.to_dict()
        data['version'] = expected_version + 1

        if not self.storage.compare_and_set(self.table_name, loan.id, data, expected_version):
            stored = self.storage.load(self.table_name, loan.id)
            if stored is None:
                raise LoanNotFoundError(loan.id)
            raise ConcurrentModificationError(loan.id, expected_version, stored.get('version', 0))

        loan.version = expected_version + 1
        return loan

    # Reads

    def _hydrate(self, data) -> Loan:
        return Loan.from_dict(data, clock=self.clock, max_comment_length=self.max_comment_length)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        return self._hydrate(data) if data else None

    def get_by_application_id(self, application_id: str) -> Optional[Loan]:
        found = self.storage.find(self.table_name, {'application_id': application_id})
        return self._hydrate(found[0]) if found else None

    def resolve_id(self, identifier: str) -> str:
        """Internal loan ID for an internal or application ID, without hydrating the loan"""
        if self.storage.exists(self.table_name, identifier):
            return identifier
        found = self.storage.find(self.table_name, {'application_id': identifier})
        if not found:
            raise LoanNotFoundError(identifier)
        return found[0]['id']

    def load_loan(self, identifier: str) -> Loan:
        """Load by internal ID or application ID"""
        loan = self.get_loan(identifier) or self.get_by_application_id(identifier)
        if loan is None:
            raise LoanNotFoundError(identifier)
        return loan

    def find_by_stage(self, stage: WorkflowStage) -> List[Loan]:
        stage = coerce_stage(stage)
        return [self._hydrate(d) for d in self.storage.find(self.table_name, {'current_stage': stage.value})]

    def find_by_borrower(self, borrower_id: str) -> List[Loan]:
        return [self._hydrate(d) for d in self.storage.find(self.table_name, {'borrower_id': borrower_id})]

    def find_by_actor(self, actor: str) -> List[Loan]:
        """Loans the staff member is assigned to or has acted on"""
        results = []
        for data in self.storage.load_all(self.table_name):
            assigned = actor in (data.get('assigned_agent'), data.get('assigned_regional_manager'))
            acted = any(entry.get('actor') == actor for entry in data.get('audit_trail', []))
            if assigned or acted:
                results.append(self._hydrate(data))
        return results

    def find_by_date_range(self, start: Optional[datetime] = None,
                           end: Optional[datetime] = None) -> List[Loan]:
        """Loans created within a time range (inclusive)"""
        loans = [self._hydrate(d) for d in self.storage.load_all(self.table_name)]
        if start:
            loans = [loan for loan in loans if loan.created_at >= start]
        if end:
            loans = [loan for loan in loans if loan.created_at <= end]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def count(self) -> int:
        return self.storage.count(self.table_name)
