"""
Loan Workflow Service Module

Hosting-side glue around the Loan aggregate. Serializes mutations per loan,
persists through the repository with an optimistic version check, retries
a bounded number of times on concurrent modification by reloading and
re-applying the operation, and publishes one event per new audit entry
once the save has succeeded.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Callable, Dict, List, Optional, TypeVar
import threading
import weakref

from .currency import Money
from .clock import Clock, SystemClock
from .config import LoanWorkflowConfig, get_config
from .events import EventDispatcher, WorkflowEvent
from .loans import (
    Loan, LoanTerms, LoanParties, DownPayment, ReviewDecision, PaymentStatus,
    PaymentMethod, PaymentRecord, FinancialState
)
from .repository import LoanRepository
from .storage import create_storage
from .calculator import validate_terms
from .schemas import LoanApplicationRequest, LoanSummary, AuditEntryModel
from .workflow import WorkflowStage
from .errors import ConcurrentModificationError
from .logging_config import get_logger, log_action


T = TypeVar('T')


class LoanWorkflowService:
    """Applies workflow operations to stored loans"""

    def __init__(
        self,
        repository: LoanRepository,
        clock: Optional[Clock] = None,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LoanWorkflowConfig] = None
    ):
        self.repository = repository
        self.clock = clock or repository.clock or SystemClock()
        self.dispatcher = dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.logger = get_logger("loanflow.service")
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[LoanWorkflowConfig] = None,
                    clock: Optional[Clock] = None,
                    dispatcher: Optional[EventDispatcher] = None) -> 'LoanWorkflowService':
        """Build storage, repository and service from configuration"""
        config = config or get_config()
        repository = LoanRepository(
            create_storage(config.database_url),
            clock=clock,
            id_prefix=config.application_id_prefix,
            id_width=config.application_id_width,
            max_comment_length=config.audit_comment_max_length
        )
        return cls(repository, clock=clock, dispatcher=dispatcher, config=config)

    def _lock_for(self, identifier: str) -> threading.Lock:
        """
        Lock for a loan named by internal or application ID

        Both names map to the same lock. A lock is dropped once no caller
        holds a reference to it.
        """
        loan_id = self.repository.resolve_id(identifier)
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[loan_id] = lock
            return lock

    def _publish(self, loan: Loan, first_new_entry: int) -> None:
        for entry in loan.audit_log.entries[first_new_entry:]:
            self.dispatcher.publish(WorkflowEvent.from_audit_entry(loan, entry))

    # Creation

    def submit_application(self, request: LoanApplicationRequest, actor: str) -> Loan:
        """Validate, number and store a new application"""
        return self.create_loan(
            request.to_terms(),
            request.to_parties(),
            actor,
            down_payment=request.to_down_payment()
        )

    def create_loan(self, terms: LoanTerms, parties: LoanParties, actor: str,
                    down_payment: Optional[DownPayment] = None) -> Loan:
        validate_terms(
            terms.principal,
            terms.interest_rate,
            terms.term_months,
            min_rate=Decimal(self.config.min_interest_rate),
            max_rate=Decimal(self.config.max_interest_rate),
            max_term_months=self.config.max_term_months
        )
        application_id = self.repository.next_application_id()
        loan = Loan.create(
            application_id,
            terms,
            parties,
            actor,
            clock=self.clock,
            down_payment=down_payment,
            min_down_payment_ratio=Decimal(self.config.min_down_payment_ratio),
            max_term_months=self.config.max_term_months,
            max_comment_length=self.config.audit_comment_max_length
        )
        self.repository.add(loan)
        log_action(
            self.logger, "info", "Loan application submitted",
            user_id=actor, action="created", resource=loan.application_id,
            extra={'principal': loan.terms.principal.to_string()}
        )
        self._publish(loan, 0)
        return loan

    # Mutation

    def execute(self, loan_id: str, actor: str, operation: str,
                apply: Callable[[Loan], T]) -> T:
        """
        Load a loan, apply one aggregate operation and save it

        Domain errors propagate untouched and leave storage unchanged. A
        ConcurrentModificationError is retried from a fresh load up to
        ``save_retry_attempts`` times.
        """
        attempts = max(1, self.config.save_retry_attempts)
        lock = self._lock_for(loan_id)

        for attempt in range(1, attempts + 1):
            with lock:
                loan = self.repository.load_loan(loan_id)
                first_new_entry = len(loan.audit_log)
                result = apply(loan)
                try:
                    self.repository.save(loan)
                except ConcurrentModificationError as e:
                    if attempt == attempts:
                        log_action(
                            self.logger, "error", f"Giving up on {operation} after {attempt} attempts",
                            user_id=actor, action=operation, resource=loan.application_id
                        )
                        raise
                    log_action(
                        self.logger, "warning", f"Retrying {operation}: {e.message}",
                        user_id=actor, action=operation, resource=loan.application_id,
                        extra={'attempt': attempt}
                    )
                    continue

            log_action(
                self.logger, "info", f"Loan {operation} saved",
                user_id=actor, action=operation, resource=loan.application_id,
                extra={'stage': loan.current_stage.value, 'version': loan.version}
            )
            self._publish(loan, first_new_entry)
            return result

    def record_agent_review(self, loan_id: str, decision: ReviewDecision, reviewer: str,
                            actor: str, rating: Optional[int] = None,
                            comments: Optional[str] = None):
        return self.execute(loan_id, actor, "record_agent_review", lambda loan: loan.record_agent_review(
            decision, reviewer, actor, rating=rating, comments=comments
        ))

    def record_regional_approval(self, loan_id: str, decision: ReviewDecision, approver: str,
                                 actor: str, comments: Optional[str] = None):
        return self.execute(loan_id, actor, "record_regional_approval", lambda loan: loan.record_regional_approval(
            decision, approver, actor, comments=comments
        ))

    def add_payment(self, loan_id: str, amount: Money, actor: str,
                    method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
                    payment_date: Optional[date] = None,
                    slip_reference: Optional[str] = None) -> PaymentRecord:
        return self.execute(loan_id, actor, "add_payment", lambda loan: loan.add_payment(
            amount, actor, method=method, payment_date=payment_date, slip_reference=slip_reference
        ))

    def decide_payment(self, loan_id: str, payment_id: str, decision: PaymentStatus,
                       approver: str, actor: str, reason: Optional[str] = None) -> PaymentRecord:
        def apply(loan: Loan) -> PaymentRecord:
            late_fee = Money(Decimal(self.config.late_fee_amount), loan.terms.principal.currency)
            return loan.decide_payment(payment_id, decision, approver, actor, reason=reason, late_fee=late_fee)

        return self.execute(loan_id, actor, "decide_payment", apply)

    def advance_stage(self, loan_id: str, new_stage: WorkflowStage, actor: str,
                      notes: str = "") -> WorkflowStage:
        return self.execute(loan_id, actor, "advance_stage", lambda loan: loan.advance_stage(
            new_stage, actor, notes
        ))

    def block_workflow(self, loan_id: str, reason: str, actor: str) -> None:
        return self.execute(loan_id, actor, "block_workflow", lambda loan: loan.block_workflow(reason, actor))

    def unblock_workflow(self, loan_id: str, actor: str, comments: Optional[str] = None) -> None:
        return self.execute(loan_id, actor, "unblock_workflow", lambda loan: loan.unblock_workflow(actor, comments))

    def assign_staff(self, loan_id: str, actor: str, agent_id: Optional[str] = None,
                     regional_manager_id: Optional[str] = None) -> None:
        return self.execute(loan_id, actor, "assign_staff", lambda loan: loan.assign_staff(
            actor, agent_id=agent_id, regional_manager_id=regional_manager_id
        ))

    def record_documents_uploaded(self, loan_id: str, documents: List[str], actor: str) -> List[str]:
        return self.execute(loan_id, actor, "record_documents", lambda loan: loan.record_documents_uploaded(
            documents, actor
        ))

    def record_agreement_generated(self, loan_id: str, agreement_id: str, actor: str):
        return self.execute(loan_id, actor, "record_agreement", lambda loan: loan.record_agreement_generated(
            agreement_id, actor
        ))

    def refresh_calculations(self, loan_id: str, actor: str) -> FinancialState:
        return self.execute(loan_id, actor, "refresh_calculations", lambda loan: loan.refresh_calculations(actor))

    def annotate(self, loan_id: str, actor: str, comments: str,
                 changes: Optional[Dict[str, Any]] = None):
        return self.execute(loan_id, actor, "annotate", lambda loan: loan.annotate(actor, comments, changes))

    # Reads (no locking)

    def get_loan(self, loan_id: str) -> Loan:
        return self.repository.load_loan(loan_id)

    def loan_summary(self, loan_id: str) -> LoanSummary:
        return LoanSummary.from_loan(self.repository.load_loan(loan_id))

    def current_financials(self, loan_id: str) -> FinancialState:
        """Derived fields as of now, computed without saving"""
        return self.repository.load_loan(loan_id).calculate_financials(self.clock.now())

    def export_audit_trail(self, loan_id: str) -> List[AuditEntryModel]:
        loan = self.repository.load_loan(loan_id)
        return [AuditEntryModel.from_entry(entry) for entry in loan.audit_log.entries]
