"""
Loan Module

The Loan aggregate: core terms, parties, approval records, payment history,
workflow state and audit trail held as one consistency unit.

Every public mutator validates first, applies its effects, recomputes the
derived financial fields and appends exactly one audit entry. If anything
raises part-way the aggregate is restored to its prior state, so callers
observe either full success or no change at all.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from enum import Enum
from contextlib import contextmanager
import copy
import uuid

from .currency import Money, Currency
from .storage import StorageRecord
from .audit import AuditLog, AuditAction, AuditEntry, change_set
from .clock import Clock, SystemClock
from .calculator import (
    RepaymentFrequency, compute_schedule, compute_progress, compute_overdue,
    compute_accrued_interest, required_down_payment, first_due_date,
    installments_covered, months_between, validate_terms
)
from .workflow import WorkflowState, WorkflowStage, coerce_stage, stage_position
from .errors import (
    AuditValidationError, InvalidTermError, LoanTerminalError, LoanValidationError,
    PaymentAlreadyDecidedError, PaymentNotFoundError, PrecedenceViolationError
)
from .logging_config import get_logger, log_action


logger = get_logger("loanflow.loans")


class ProductCategory(Enum):
    """Loan products offered"""
    PERSONAL = "Personal Loan"
    BUSINESS = "Business Loan"
    VEHICLE = "Vehicle Loan"
    HOUSING = "Home Loan"
    EDUCATION = "Education Loan"
    AGRICULTURAL = "Agricultural Loan"
    EMERGENCY = "Emergency Loan"


class LoanType(Enum):
    SECURED = "Secured"
    UNSECURED = "Unsecured"


class ReviewDecision(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class PaymentStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class PaymentMethod(Enum):
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    CHEQUE = "cheque"
    MOBILE_MONEY = "mobile_money"
    ONLINE_PAYMENT = "online_payment"


def _enum(enum_type, value):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        raise LoanValidationError(
            f"Invalid {enum_type.__name__}: {value!r}",
            {'allowed': [member.value for member in enum_type]}
        )


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _datetime(value) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _date(value) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass(frozen=True)
class Guarantor:
    """Embedded guarantor details; not addressable on its own"""
    name: str
    id_number: str
    contact_number: str
    address: str
    relationship: str

    def __post_init__(self):
        for name in ('name', 'id_number', 'relationship'):
            if not getattr(self, name) or not str(getattr(self, name)).strip():
                raise LoanValidationError(f"Guarantor {name} is required", {'field': name})

    def to_dict(self) -> Dict[str, str]:
        return {
            'name': self.name,
            'id_number': self.id_number,
            'contact_number': self.contact_number,
            'address': self.address,
            'relationship': self.relationship,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'Guarantor':
        return cls(**data)


@dataclass(frozen=True)
class DownPayment:
    amount: Money
    slip_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'amount': self.amount.to_dict(), 'slip_reference': self.slip_reference}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DownPayment':
        return cls(Money.from_dict(data['amount']), data.get('slip_reference'))


@dataclass(frozen=True)
class LoanTerms:
    """Terms and conditions requested on the application"""
    principal: Money
    interest_rate: Decimal              # annual, percent: 12.5 means 12.5%
    term_months: int
    product: ProductCategory = ProductCategory.PERSONAL
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    loan_type: LoanType = LoanType.UNSECURED
    purpose: str = ""
    due_day: int = 5                    # day of month installments fall due

    def __post_init__(self):
        if not isinstance(self.interest_rate, Decimal):
            object.__setattr__(self, 'interest_rate', Decimal(str(self.interest_rate)))
        object.__setattr__(self, 'product', _enum(ProductCategory, self.product))
        object.__setattr__(self, 'repayment_frequency', _enum(RepaymentFrequency, self.repayment_frequency))
        object.__setattr__(self, 'loan_type', _enum(LoanType, self.loan_type))
        if not 1 <= self.due_day <= 31:
            raise InvalidTermError("Due day must be between 1 and 31", {'field': 'due_day'})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': self.principal.to_dict(),
            'interest_rate': str(self.interest_rate),
            'term_months': self.term_months,
            'product': self.product.value,
            'repayment_frequency': self.repayment_frequency.value,
            'loan_type': self.loan_type.value,
            'purpose': self.purpose,
            'due_day': self.due_day,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal=Money.from_dict(data['principal']),
            interest_rate=Decimal(data['interest_rate']),
            term_months=data['term_months'],
            product=ProductCategory(data['product']),
            repayment_frequency=RepaymentFrequency(data['repayment_frequency']),
            loan_type=LoanType(data['loan_type']),
            purpose=data.get('purpose', ''),
            due_day=data.get('due_day', 5),
        )


@dataclass(frozen=True)
class LoanParties:
    """Borrower reference and embedded guarantors"""
    borrower_id: str
    primary_guarantor: Guarantor
    secondary_guarantor: Optional[Guarantor] = None
    region_id: Optional[str] = None
    district: Optional[str] = None

    def __post_init__(self):
        if not self.borrower_id:
            raise LoanValidationError("Borrower is required", {'field': 'borrower_id'})
        if (self.secondary_guarantor is not None and
                self.secondary_guarantor.id_number == self.primary_guarantor.id_number):
            raise LoanValidationError(
                "Primary and secondary guarantor must be different people",
                {'field': 'secondary_guarantor'}
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'borrower_id': self.borrower_id,
            'primary_guarantor': self.primary_guarantor.to_dict(),
            'secondary_guarantor': self.secondary_guarantor.to_dict() if self.secondary_guarantor else None,
            'region_id': self.region_id,
            'district': self.district,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanParties':
        secondary = data.get('secondary_guarantor')
        return cls(
            borrower_id=data['borrower_id'],
            primary_guarantor=Guarantor.from_dict(data['primary_guarantor']),
            secondary_guarantor=Guarantor.from_dict(secondary) if secondary else None,
            region_id=data.get('region_id'),
            district=data.get('district'),
        )


@dataclass
class AgentReview:
    status: ReviewDecision = ReviewDecision.PENDING
    reviewer: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    comments: Optional[str] = None
    rating: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'reviewer': self.reviewer,
            'reviewed_at': _iso(self.reviewed_at),
            'comments': self.comments,
            'rating': self.rating,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentReview':
        return cls(
            status=ReviewDecision(data['status']),
            reviewer=data.get('reviewer'),
            reviewed_at=_datetime(data.get('reviewed_at')),
            comments=data.get('comments'),
            rating=data.get('rating'),
        )


@dataclass
class RegionalApproval:
    status: ReviewDecision = ReviewDecision.PENDING
    approver: Optional[str] = None
    decided_at: Optional[datetime] = None
    comments: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'approver': self.approver,
            'decided_at': _iso(self.decided_at),
            'comments': self.comments,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegionalApproval':
        return cls(
            status=ReviewDecision(data['status']),
            approver=data.get('approver'),
            decided_at=_datetime(data.get('decided_at')),
            comments=data.get('comments'),
        )


@dataclass(frozen=True)
class PaymentRecord:
    """Payment against the loan. Decided exactly once, immutable afterwards."""
    id: str
    installment_number: int
    amount: Money
    payment_date: date
    method: PaymentMethod
    submitted_by: str
    submitted_at: datetime
    slip_reference: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    is_late_payment: bool = False
    days_late: int = 0
    late_fee: Optional[Money] = None

    @property
    def is_decided(self) -> bool:
        return self.status != PaymentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'installment_number': self.installment_number,
            'amount': self.amount.to_dict(),
            'payment_date': self.payment_date.isoformat(),
            'method': self.method.value,
            'submitted_by': self.submitted_by,
            'submitted_at': self.submitted_at.isoformat(),
            'slip_reference': self.slip_reference,
            'status': self.status.value,
            'decided_by': self.decided_by,
            'decided_at': _iso(self.decided_at),
            'rejection_reason': self.rejection_reason,
            'is_late_payment': self.is_late_payment,
            'days_late': self.days_late,
            'late_fee': self.late_fee.to_dict() if self.late_fee else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        return cls(
            id=data['id'],
            installment_number=data['installment_number'],
            amount=Money.from_dict(data['amount']),
            payment_date=date.fromisoformat(data['payment_date']),
            method=PaymentMethod(data['method']),
            submitted_by=data['submitted_by'],
            submitted_at=datetime.fromisoformat(data['submitted_at']),
            slip_reference=data.get('slip_reference'),
            status=PaymentStatus(data['status']),
            decided_by=data.get('decided_by'),
            decided_at=_datetime(data.get('decided_at')),
            rejection_reason=data.get('rejection_reason'),
            is_late_payment=data.get('is_late_payment', False),
            days_late=data.get('days_late', 0),
            late_fee=Money.from_dict(data['late_fee']) if data.get('late_fee') else None,
        )


@dataclass
class Agreement:
    agreement_id: str
    generated_at: datetime
    generated_by: str
    signed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agreement_id': self.agreement_id,
            'generated_at': self.generated_at.isoformat(),
            'generated_by': self.generated_by,
            'signed_at': _iso(self.signed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Agreement':
        return cls(
            agreement_id=data['agreement_id'],
            generated_at=datetime.fromisoformat(data['generated_at']),
            generated_by=data['generated_by'],
            signed_at=_datetime(data.get('signed_at')),
        )


@dataclass(frozen=True)
class FinancialState:
    """Derived fields. Recomputed by the aggregate, never set by callers."""
    total_payable: Money
    monthly_installment: Money
    total_interest: Money
    paid_amount: Money
    remaining_balance: Money
    completion_percentage: int = 0
    days_overdue: int = 0
    next_payment_date: Optional[date] = None
    accrued_interest: Optional[Money] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_payable': self.total_payable.to_dict(),
            'monthly_installment': self.monthly_installment.to_dict(),
            'total_interest': self.total_interest.to_dict(),
            'paid_amount': self.paid_amount.to_dict(),
            'remaining_balance': self.remaining_balance.to_dict(),
            'completion_percentage': self.completion_percentage,
            'days_overdue': self.days_overdue,
            'next_payment_date': _iso(self.next_payment_date),
            'accrued_interest': self.accrued_interest.to_dict() if self.accrued_interest else None,
        }

    def summary(self) -> Dict[str, Any]:
        """Flat values for audit payloads"""
        return {
            'remaining_balance': self.remaining_balance.amount,
            'completion_percentage': self.completion_percentage,
            'days_overdue': self.days_overdue,
            'next_payment_date': self.next_payment_date,
        }


# Attributes restored when a mutation fails part-way
_MUTABLE_STATE = (
    'workflow', 'audit_log', 'financials', 'agent_review', 'regional_approval',
    'payments', 'agreement', 'documents', 'assigned_agent', 'assigned_regional_manager',
    'disbursed_at', 'repayment_start_date', 'updated_at',
)


@dataclass
class Loan(StorageRecord):
    """Loan application and account: the aggregate root"""
    application_id: str
    terms: LoanTerms
    parties: LoanParties
    workflow: WorkflowState
    audit_log: AuditLog
    financials: FinancialState
    agent_review: AgentReview = field(default_factory=AgentReview)
    regional_approval: RegionalApproval = field(default_factory=RegionalApproval)
    payments: List[PaymentRecord] = field(default_factory=list)
    down_payment: Optional[DownPayment] = None
    agreement: Optional[Agreement] = None
    documents: List[str] = field(default_factory=list)
    assigned_agent: Optional[str] = None
    assigned_regional_manager: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    repayment_start_date: Optional[date] = None
    version: int = 0
    clock: Clock = field(default_factory=SystemClock, repr=False, compare=False)

    # Creation

    @classmethod
    def create(
        cls,
        application_id: str,
        terms: LoanTerms,
        parties: LoanParties,
        actor: str,
        clock: Optional[Clock] = None,
        down_payment: Optional[DownPayment] = None,
        min_down_payment_ratio: Optional[Decimal] = None,
        max_term_months: Optional[int] = None,
        loan_id: Optional[str] = None,
        max_comment_length: Optional[int] = None
    ) -> 'Loan':
        """
        Submit a new loan application

        Args:
            application_id: Human-readable ID issued by the persistence layer
            terms: Requested loan terms
            parties: Borrower and guarantors
            actor: Staff member submitting the application
            clock: Time source (system clock by default)
            down_payment: Down payment offered with the application
            min_down_payment_ratio: Minimum down payment as a share of principal
            max_term_months: Upper bound on the loan term
            loan_id: Internal ID (generated when omitted)

        Returns:
            Loan in the application_submitted stage with one ``created`` entry
        """
        if not application_id:
            raise LoanValidationError("Application ID is required", {'field': 'application_id'})
        if not actor:
            raise AuditValidationError("Audit entries require an actor")

        validate_terms(terms.principal, terms.interest_rate, terms.term_months,
                       max_term_months=max_term_months)

        if down_payment is not None:
            if down_payment.amount.currency != terms.principal.currency:
                raise LoanValidationError("Down payment currency must match principal currency")
            if min_down_payment_ratio is not None:
                required = required_down_payment(terms.principal, min_down_payment_ratio)
                if down_payment.amount < required:
                    raise LoanValidationError(
                        f"Down payment must be at least {required.to_string()}",
                        {'field': 'down_payment', 'required': str(required.amount)}
                    )

        clock = clock or SystemClock()
        now = clock.now()
        schedule = compute_schedule(terms.principal, terms.interest_rate, terms.term_months)
        progress = compute_progress(schedule.total_payable, [])

        loan = cls(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            application_id=application_id,
            terms=terms,
            parties=parties,
            workflow=WorkflowState.start(actor, now),
            audit_log=AuditLog(max_comment_length=max_comment_length),
            financials=FinancialState(
                total_payable=schedule.total_payable,
                monthly_installment=schedule.monthly_installment,
                total_interest=schedule.total_interest,
                paid_amount=progress.paid_amount,
                remaining_balance=progress.remaining_balance,
                completion_percentage=progress.completion_percentage,
                accrued_interest=Money.zero(terms.principal.currency),
            ),
            down_payment=down_payment,
            clock=clock,
        )

        loan.audit_log.append(
            AuditAction.CREATED,
            actor,
            now,
            {
                'application_id': application_id,
                'borrower_id': parties.borrower_id,
                'terms': terms.to_dict(),
                'total_payable': schedule.total_payable.amount,
                'monthly_installment': schedule.monthly_installment.amount,
            },
            "Loan application submitted"
        )

        log_action(
            logger, "debug", "Loan application created",
            user_id=actor, action="created", resource=application_id
        )
        return loan

    # Read operations

    @property
    def currency(self) -> Currency:
        return self.terms.principal.currency

    @property
    def current_stage(self) -> WorkflowStage:
        return self.workflow.current_stage

    @property
    def is_terminal(self) -> bool:
        return self.workflow.is_terminal

    @property
    def is_blocked(self) -> bool:
        return self.workflow.is_blocked

    @property
    def audit_trail(self):
        return self.audit_log.entries

    @property
    def status(self) -> str:
        """Coarse status label for listings"""
        stage = self.current_stage
        if stage.is_terminal:
            return stage.value.capitalize()
        if ReviewDecision.REJECTED in (self.agent_review.status, self.regional_approval.status):
            return "Rejected"
        if stage == WorkflowStage.ACTIVE:
            return "Active"
        if stage == WorkflowStage.DISBURSEMENT:
            return "Disbursing"
        if stage_position(stage) > stage_position(WorkflowStage.REGIONAL_APPROVAL):
            return "Approved"
        return "Pending"

    def get_payment(self, payment_id: str) -> PaymentRecord:
        for payment in self.payments:
            if payment.id == payment_id:
                return payment
        raise PaymentNotFoundError(payment_id)

    def approved_payments(self) -> List[PaymentRecord]:
        return [p for p in self.payments if p.status == PaymentStatus.APPROVED]

    def pending_payments(self) -> List[PaymentRecord]:
        return [p for p in self.payments if p.status == PaymentStatus.PENDING]

    def calculate_financials(self, at: Optional[datetime] = None) -> FinancialState:
        """Derived financial state at a point in time without touching the loan"""
        now = at or self.clock.now()
        schedule = compute_schedule(self.terms.principal, self.terms.interest_rate, self.terms.term_months)
        progress = compute_progress(schedule.total_payable, [p.amount for p in self.approved_payments()])

        first_due = None
        if self.repayment_start_date is not None:
            first_due = first_due_date(self.repayment_start_date, self.terms.due_day)
        covered = installments_covered(progress.paid_amount, schedule.monthly_installment)
        if progress.remaining_balance.is_zero():
            # rounded-up installments never divide total_payable exactly
            covered = self.terms.term_months
        overdue = compute_overdue(
            self.terms.due_day,
            self.current_stage,
            now,
            first_due=first_due,
            covered_installments=covered,
            term_months=self.terms.term_months,
        )

        months_elapsed = 0
        if self.repayment_start_date is not None:
            months_elapsed = months_between(self.repayment_start_date, now.date())
        accrued = compute_accrued_interest(
            self.terms.principal, self.terms.interest_rate, self.terms.term_months, months_elapsed
        )

        return FinancialState(
            total_payable=schedule.total_payable,
            monthly_installment=schedule.monthly_installment,
            total_interest=schedule.total_interest,
            paid_amount=progress.paid_amount,
            remaining_balance=progress.remaining_balance,
            completion_percentage=progress.completion_percentage,
            days_overdue=overdue.days_overdue,
            next_payment_date=overdue.next_payment_date,
            accrued_interest=accrued,
        )

    # Mutators

    @contextmanager
    def _mutation(self, operation: str, allow_terminal: bool = False):
        """
        Run one public operation transactionally

        Yields the operation timestamp; on any exception every mutable
        attribute is restored from a snapshot before re-raising.
        """
        if self.is_terminal and not allow_terminal:
            raise LoanTerminalError(self.current_stage.value, operation)

        snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _MUTABLE_STATE}
        now = self.clock.now()
        try:
            yield now
            self.updated_at = now
        except Exception:
            for name, value in snapshot.items():
                setattr(self, name, value)
            raise

    def _recalculate(self, now: datetime) -> None:
        self.financials = self.calculate_financials(now)

    def _append(self, action: AuditAction, actor: str, now: datetime,
                changes: Optional[Dict[str, Any]] = None,
                comments: Optional[str] = None) -> AuditEntry:
        return self.audit_log.append(action, actor, now, changes, comments)

    def record_agent_review(
        self,
        decision: ReviewDecision,
        reviewer: str,
        actor: str,
        rating: Optional[int] = None,
        comments: Optional[str] = None
    ) -> AgentReview:
        """
        Record the field agent's review decision

        Never advances the workflow; moving on from agent review is a
        separate, separately audited call.
        """
        with self._mutation("record agent review") as now:
            decision = _enum(ReviewDecision, decision)
            if decision == ReviewDecision.PENDING:
                raise LoanValidationError("Agent review decision must be Approved or Rejected")
            if not reviewer:
                raise LoanValidationError("Reviewer is required", {'field': 'reviewer'})
            if rating is not None and not (isinstance(rating, int) and 1 <= rating <= 5):
                raise LoanValidationError("Rating must be an integer from 1 to 5", {'field': 'rating'})
            if stage_position(self.current_stage) > stage_position(WorkflowStage.AGENT_REVIEW):
                raise PrecedenceViolationError(
                    f"Agent review is closed once the loan reaches '{self.current_stage.value}'",
                    {'current_stage': self.current_stage.value}
                )

            previous = self.agent_review.to_dict()
            self.agent_review = AgentReview(
                status=decision,
                reviewer=reviewer,
                reviewed_at=now,
                comments=comments,
                rating=rating,
            )
            self._append(
                AuditAction.REVIEWED, actor, now,
                change_set(previous, self.agent_review.to_dict(), review='agent'),
                comments
            )
            return self.agent_review

    def record_regional_approval(
        self,
        decision: ReviewDecision,
        approver: str,
        actor: str,
        comments: Optional[str] = None
    ) -> RegionalApproval:
        """
        Record the regional manager's decision

        Raises:
            PrecedenceViolationError: If the agent review is not Approved, or
                the loan has already moved past regional approval
        """
        with self._mutation("record regional approval") as now:
            decision = _enum(ReviewDecision, decision)
            if self.agent_review.status != ReviewDecision.APPROVED:
                raise PrecedenceViolationError(
                    "Regional approval requires an approved agent review",
                    {'agent_review_status': self.agent_review.status.value}
                )
            if decision == ReviewDecision.PENDING:
                raise LoanValidationError("Regional decision must be Approved or Rejected")
            if not approver:
                raise LoanValidationError("Approver is required", {'field': 'approver'})
            if stage_position(self.current_stage) > stage_position(WorkflowStage.REGIONAL_APPROVAL):
                raise PrecedenceViolationError(
                    f"Regional approval is closed once the loan reaches '{self.current_stage.value}'",
                    {'current_stage': self.current_stage.value}
                )

            previous = self.regional_approval.to_dict()
            self.regional_approval = RegionalApproval(
                status=decision,
                approver=approver,
                decided_at=now,
                comments=comments,
            )
            action = AuditAction.APPROVED if decision == ReviewDecision.APPROVED else AuditAction.REJECTED
            self._append(
                action, actor, now,
                change_set(previous, self.regional_approval.to_dict(), review='regional'),
                comments
            )
            return self.regional_approval

    def add_payment(
        self,
        amount: Money,
        actor: str,
        method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
        payment_date: Optional[date] = None,
        slip_reference: Optional[str] = None,
        payment_id: Optional[str] = None
    ) -> PaymentRecord:
        """
        Record a submitted payment as Pending

        Derived fields are untouched until the payment is approved.
        """
        with self._mutation("add payment") as now:
            method = _enum(PaymentMethod, method)
            if self.current_stage != WorkflowStage.ACTIVE:
                raise PrecedenceViolationError(
                    "Payments are accepted only while the loan is active",
                    {'current_stage': self.current_stage.value}
                )
            if amount.currency != self.currency:
                raise LoanValidationError(
                    f"Payment currency {amount.currency.code} does not match loan currency {self.currency.code}"
                )
            if not amount.is_positive():
                raise LoanValidationError("Payment amount must be positive", {'field': 'amount'})

            payment = PaymentRecord(
                id=payment_id or f"PAY-{uuid.uuid4().hex[:12].upper()}",
                installment_number=len(self.payments) + 1,
                amount=amount,
                payment_date=payment_date or now.date(),
                method=method,
                submitted_by=actor,
                submitted_at=now,
                slip_reference=slip_reference,
            )
            if any(existing.id == payment.id for existing in self.payments):
                raise LoanValidationError(f"Payment {payment.id} already exists")

            self.payments.append(payment)
            self._append(
                AuditAction.PAYMENT_ADDED, actor, now,
                {
                    'payment_id': payment.id,
                    'installment_number': payment.installment_number,
                    'amount': amount.amount,
                    'method': method,
                    'payment_date': payment.payment_date,
                    'slip_reference': slip_reference,
                }
            )
            return payment

    def decide_payment(
        self,
        payment_id: str,
        decision: PaymentStatus,
        approver: str,
        actor: str,
        reason: Optional[str] = None,
        late_fee: Optional[Money] = None
    ) -> PaymentRecord:
        """
        Approve or reject a pending payment, exactly once

        An approval made while the loan is overdue marks the payment late,
        records the days overdue at that moment and stamps late_fee on it
        (zero when no fee is given). The fee is recorded, not added to the
        balance.

        Raises:
            PaymentNotFoundError: Unknown payment
            PaymentAlreadyDecidedError: Payment is no longer Pending
        """
        with self._mutation("decide payment") as now:
            decision = _enum(PaymentStatus, decision)
            payment = self.get_payment(payment_id)
            if payment.is_decided:
                raise PaymentAlreadyDecidedError(payment_id, payment.status.value)
            if decision == PaymentStatus.PENDING:
                raise LoanValidationError("Payment decision must be Approved or Rejected")
            if not approver:
                raise LoanValidationError("Approver is required", {'field': 'approver'})
            if decision == PaymentStatus.REJECTED and not reason:
                raise LoanValidationError("A rejection reason is required", {'field': 'reason'})

            days_late = 0
            if decision == PaymentStatus.APPROVED:
                days_late = self.calculate_financials(now).days_overdue

            decided = replace(
                payment,
                status=decision,
                decided_by=approver,
                decided_at=now,
                rejection_reason=reason if decision == PaymentStatus.REJECTED else None,
                is_late_payment=days_late > 0,
                days_late=days_late,
                late_fee=(late_fee or Money.zero(self.terms.principal.currency)) if days_late > 0 else None,
            )
            self.payments[self.payments.index(payment)] = decided

            previous_financials = self.financials.summary()
            if decision == PaymentStatus.APPROVED:
                self._recalculate(now)

            action = AuditAction.APPROVED if decision == PaymentStatus.APPROVED else AuditAction.REJECTED
            self._append(
                action, actor, now,
                change_set(
                    previous_financials,
                    self.financials.summary(),
                    payment_id=payment_id,
                    amount=payment.amount.amount,
                    decision=decision,
                ),
                reason
            )
            return decided

    def advance_stage(self, new_stage: WorkflowStage, actor: str, notes: str = "") -> WorkflowStage:
        """
        Move the loan to the next stage

        Raises:
            LoanTerminalError: If the loan is already terminal
            InvalidTransitionError: If new_stage is not a direct successor
            PrecedenceViolationError: If an approval or precondition gating the
                transition is missing
        """
        with self._mutation("advance stage") as now:
            new_stage = coerce_stage(new_stage)
            previous_stage = self.current_stage
            self.workflow.check_advance(new_stage)
            self._check_stage_gate(previous_stage, new_stage)

            was_blocked = self.workflow.is_blocked
            blocked_reason = self.workflow.blocked_reason
            self.workflow.advance(new_stage, actor, now, notes)

            if new_stage == WorkflowStage.AGREEMENT_SIGNED:
                self.agreement.signed_at = now
            elif new_stage == WorkflowStage.ACTIVE:
                self.disbursed_at = now
                self.repayment_start_date = now.date()
            self._recalculate(now)

            changes = change_set(
                {'stage': previous_stage},
                {'stage': new_stage},
            )
            if was_blocked:
                changes['cleared_block'] = blocked_reason
            self._append(AuditAction.WORKFLOW_ADVANCED, actor, now, changes, notes or None)

            log_action(
                logger, "debug", f"Loan moved {previous_stage.value} -> {new_stage.value}",
                user_id=actor, action="workflow_advanced", resource=self.application_id
            )
            return new_stage

    def _check_stage_gate(self, current: WorkflowStage, new_stage: WorkflowStage) -> None:
        if current == WorkflowStage.AGENT_REVIEW and self.agent_review.status != ReviewDecision.APPROVED:
            raise PrecedenceViolationError(
                "Agent review must be approved before regional approval",
                {'agent_review_status': self.agent_review.status.value}
            )
        if current == WorkflowStage.REGIONAL_APPROVAL and self.regional_approval.status != ReviewDecision.APPROVED:
            raise PrecedenceViolationError(
                "Regional approval must be approved before agreement generation",
                {'regional_approval_status': self.regional_approval.status.value}
            )
        if new_stage == WorkflowStage.AGREEMENT_SIGNED and self.agreement is None:
            raise PrecedenceViolationError("An agreement must be generated before it can be signed")
        if new_stage == WorkflowStage.COMPLETED and not self.financials.remaining_balance.is_zero():
            raise PrecedenceViolationError(
                "Loan cannot be completed with an outstanding balance",
                {'remaining_balance': str(self.financials.remaining_balance.amount)}
            )

    def block_workflow(self, reason: str, actor: str) -> None:
        """Flag the loan. The stage is unchanged and advancing stays possible."""
        with self._mutation("block workflow") as now:
            if not reason or not reason.strip():
                raise LoanValidationError("A block reason is required", {'field': 'reason'})
            previous = {'is_blocked': self.workflow.is_blocked, 'blocked_reason': self.workflow.blocked_reason}
            self.workflow.block(reason, actor, now)
            self._append(
                AuditAction.WORKFLOW_BLOCKED, actor, now,
                change_set(previous, {'is_blocked': True, 'blocked_reason': reason},
                           stage=self.current_stage),
                reason
            )

    def unblock_workflow(self, actor: str, comments: Optional[str] = None) -> None:
        """Clear the block flag while staying on the same stage"""
        with self._mutation("unblock workflow") as now:
            if not self.workflow.is_blocked:
                raise LoanValidationError("Workflow is not blocked")
            previous = {'is_blocked': True, 'blocked_reason': self.workflow.blocked_reason}
            self.workflow.unblock()
            self._append(
                AuditAction.STATUS_CHANGED, actor, now,
                change_set(previous, {'is_blocked': False, 'blocked_reason': None},
                           stage=self.current_stage),
                comments
            )

    def assign_staff(self, actor: str, agent_id: Optional[str] = None,
                     regional_manager_id: Optional[str] = None) -> None:
        with self._mutation("assign staff") as now:
            if not agent_id and not regional_manager_id:
                raise LoanValidationError("Nothing to assign")
            previous = {
                'assigned_agent': self.assigned_agent,
                'assigned_regional_manager': self.assigned_regional_manager,
            }
            if agent_id:
                self.assigned_agent = agent_id
            if regional_manager_id:
                self.assigned_regional_manager = regional_manager_id
            self._append(
                AuditAction.ASSIGNED, actor, now,
                change_set(previous, {
                    'assigned_agent': self.assigned_agent,
                    'assigned_regional_manager': self.assigned_regional_manager,
                })
            )

    def record_documents_uploaded(self, documents: List[str], actor: str) -> List[str]:
        with self._mutation("record documents") as now:
            documents = [d for d in documents if d]
            if not documents:
                raise LoanValidationError("At least one document reference is required")
            self.documents.extend(documents)
            self._append(
                AuditAction.DOCUMENTS_UPLOADED, actor, now,
                {'documents': documents, 'total_documents': len(self.documents)}
            )
            return list(self.documents)

    def record_agreement_generated(self, agreement_id: str, actor: str) -> Agreement:
        """Attach a generated agreement; only during agreement generation"""
        with self._mutation("record agreement") as now:
            if self.current_stage != WorkflowStage.AGREEMENT_GENERATION:
                raise PrecedenceViolationError(
                    "Agreements are generated only in the agreement_generation stage",
                    {'current_stage': self.current_stage.value}
                )
            if not agreement_id:
                raise LoanValidationError("Agreement ID is required", {'field': 'agreement_id'})
            previous = self.agreement.to_dict() if self.agreement else None
            self.agreement = Agreement(agreement_id=agreement_id, generated_at=now, generated_by=actor)
            self._append(
                AuditAction.AGREEMENT_GENERATED, actor, now,
                change_set(previous, self.agreement.to_dict())
            )
            return self.agreement

    def refresh_calculations(self, actor: str) -> FinancialState:
        """Recompute derived fields for the current time and record the change"""
        with self._mutation("refresh calculations") as now:
            previous = self.financials.summary()
            self._recalculate(now)
            self._append(
                AuditAction.CALCULATION_UPDATED, actor, now,
                change_set(previous, self.financials.summary())
            )
            return self.financials

    def annotate(self, actor: str, comments: str,
                 changes: Optional[Dict[str, Any]] = None) -> AuditEntry:
        """Append a record-keeping note; permitted on terminal loans"""
        with self._mutation("annotate", allow_terminal=True) as now:
            if not comments:
                raise LoanValidationError("Annotation comments are required")
            return self._append(AuditAction.UPDATED, actor, now, changes, comments)

    def annotate_payment(self, payment_id: str, actor: str, comments: str) -> AuditEntry:
        """Note against a decided or pending payment without altering it"""
        payment = self.get_payment(payment_id)
        return self.annotate(actor, comments, {
            'payment_id': payment.id,
            'payment_status': payment.status,
        })

    # Serialization

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'application_id': self.application_id,
            'borrower_id': self.parties.borrower_id,
            'current_stage': self.current_stage.value,
            'assigned_agent': self.assigned_agent,
            'assigned_regional_manager': self.assigned_regional_manager,
            'terms': self.terms.to_dict(),
            'parties': self.parties.to_dict(),
            'workflow': self.workflow.to_dict(),
            'audit_trail': self.audit_log.to_list(),
            'financials': self.financials.to_dict(),
            'agent_review': self.agent_review.to_dict(),
            'regional_approval': self.regional_approval.to_dict(),
            'payments': [payment.to_dict() for payment in self.payments],
            'down_payment': self.down_payment.to_dict() if self.down_payment else None,
            'agreement': self.agreement.to_dict() if self.agreement else None,
            'documents': list(self.documents),
            'disbursed_at': _iso(self.disbursed_at),
            'repayment_start_date': _iso(self.repayment_start_date),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], clock: Optional[Clock] = None,
                  max_comment_length: Optional[int] = None) -> 'Loan':
        financials = data['financials']
        accrued = financials.get('accrued_interest')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            application_id=data['application_id'],
            terms=LoanTerms.from_dict(data['terms']),
            parties=LoanParties.from_dict(data['parties']),
            workflow=WorkflowState.from_dict(data['workflow']),
            audit_log=AuditLog.from_list(data.get('audit_trail', []), max_comment_length=max_comment_length),
            financials=FinancialState(
                total_payable=Money.from_dict(financials['total_payable']),
                monthly_installment=Money.from_dict(financials['monthly_installment']),
                total_interest=Money.from_dict(financials['total_interest']),
                paid_amount=Money.from_dict(financials['paid_amount']),
                remaining_balance=Money.from_dict(financials['remaining_balance']),
                completion_percentage=financials['completion_percentage'],
                days_overdue=financials['days_overdue'],
                next_payment_date=_date(financials.get('next_payment_date')),
                accrued_interest=Money.from_dict(accrued) if accrued else None,
            ),
            agent_review=AgentReview.from_dict(data['agent_review']),
            regional_approval=RegionalApproval.from_dict(data['regional_approval']),
            payments=[PaymentRecord.from_dict(p) for p in data.get('payments', [])],
            down_payment=DownPayment.from_dict(data['down_payment']) if data.get('down_payment') else None,
            agreement=Agreement.from_dict(data['agreement']) if data.get('agreement') else None,
            documents=list(data.get('documents', [])),
            assigned_agent=data.get('assigned_agent'),
            assigned_regional_manager=data.get('assigned_regional_manager'),
            disbursed_at=_datetime(data.get('disbursed_at')),
            repayment_start_date=_date(data.get('repayment_start_date')),
            version=data.get('version', 0),
            clock=clock or SystemClock(),
        )
