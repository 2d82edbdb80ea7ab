"""
Pydantic schemas for workflow inputs and read models
"""

from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from .currency import Money, Currency
from .calculator import RepaymentFrequency
from .loans import (
    Loan, LoanTerms, LoanParties, Guarantor, DownPayment, ProductCategory, LoanType
)
from .audit import AuditEntry
from .workflow import StageHistoryEntry


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (LKR, USD, etc.)")

    def to_money(self) -> Money:
        return Money(Decimal(self.amount), Currency.from_code(self.currency))

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class GuarantorModel(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    id_number: str = Field(..., min_length=5, max_length=20)
    contact_number: str = ""
    address: str = ""
    relationship: str = Field(..., min_length=2, max_length=50)

    def to_guarantor(self) -> Guarantor:
        return Guarantor(
            name=self.name,
            id_number=self.id_number,
            contact_number=self.contact_number,
            address=self.address,
            relationship=self.relationship
        )


# Application submission
class LoanApplicationRequest(BaseModel):
    borrower_id: str = Field(..., min_length=1)
    principal: Decimal = Field(..., gt=0)
    currency: str = "LKR"
    interest_rate: Decimal = Field(..., ge=1, le=100, description="Annual rate in percent")
    term_months: int = Field(..., gt=0)
    product: ProductCategory = ProductCategory.PERSONAL
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    loan_type: LoanType = LoanType.UNSECURED
    purpose: str = Field("", max_length=500)
    due_day: int = Field(5, ge=1, le=31)
    primary_guarantor: GuarantorModel
    secondary_guarantor: Optional[GuarantorModel] = None
    region_id: Optional[str] = None
    district: Optional[str] = None
    down_payment: Optional[Decimal] = Field(None, gt=0)
    down_payment_slip: Optional[str] = None

    def to_terms(self) -> LoanTerms:
        return LoanTerms(
            principal=Money(self.principal, Currency.from_code(self.currency)),
            interest_rate=self.interest_rate,
            term_months=self.term_months,
            product=self.product,
            repayment_frequency=self.repayment_frequency,
            loan_type=self.loan_type,
            purpose=self.purpose,
            due_day=self.due_day
        )

    def to_parties(self) -> LoanParties:
        return LoanParties(
            borrower_id=self.borrower_id,
            primary_guarantor=self.primary_guarantor.to_guarantor(),
            secondary_guarantor=self.secondary_guarantor.to_guarantor() if self.secondary_guarantor else None,
            region_id=self.region_id,
            district=self.district
        )

    def to_down_payment(self) -> Optional[DownPayment]:
        if self.down_payment is None:
            return None
        return DownPayment(
            amount=Money(self.down_payment, Currency.from_code(self.currency)),
            slip_reference=self.down_payment_slip
        )


# Read models
class StageHistoryModel(BaseModel):
    stage: str
    entered_at: datetime
    completed_at: Optional[datetime] = None
    actor: str
    notes: str = ""
    duration_seconds: Optional[float] = None

    @classmethod
    def from_entry(cls, entry: StageHistoryEntry) -> 'StageHistoryModel':
        return cls(
            stage=entry.stage.value,
            entered_at=entry.entered_at,
            completed_at=entry.completed_at,
            actor=entry.actor,
            notes=entry.notes,
            duration_seconds=entry.duration_seconds
        )


class AuditEntryModel(BaseModel):
    sequence: int
    action: str
    actor: str
    timestamp: datetime
    changes: Dict[str, Any] = Field(default_factory=dict)
    comments: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> 'AuditEntryModel':
        return cls(
            sequence=entry.sequence,
            action=entry.action.value,
            actor=entry.actor,
            timestamp=entry.timestamp,
            changes=entry.changes,
            comments=entry.comments
        )


class LoanSummary(BaseModel):
    id: str
    application_id: str
    borrower_id: str
    status: str
    current_stage: str
    is_blocked: bool
    blocked_reason: Optional[str] = None
    product: str
    principal: MoneyModel
    interest_rate: str
    term_months: int
    total_payable: MoneyModel
    monthly_installment: MoneyModel
    remaining_balance: MoneyModel
    completion_percentage: int
    days_overdue: int
    next_payment_date: Optional[str] = None
    agent_review_status: str
    regional_approval_status: str
    stage_history: List[StageHistoryModel] = Field(default_factory=list)
    version: int

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanSummary':
        financials = loan.financials
        return cls(
            id=loan.id,
            application_id=loan.application_id,
            borrower_id=loan.parties.borrower_id,
            status=loan.status,
            current_stage=loan.current_stage.value,
            is_blocked=loan.is_blocked,
            blocked_reason=loan.workflow.blocked_reason,
            product=loan.terms.product.value,
            principal=MoneyModel.from_money(loan.terms.principal),
            interest_rate=str(loan.terms.interest_rate),
            term_months=loan.terms.term_months,
            total_payable=MoneyModel.from_money(financials.total_payable),
            monthly_installment=MoneyModel.from_money(financials.monthly_installment),
            remaining_balance=MoneyModel.from_money(financials.remaining_balance),
            completion_percentage=financials.completion_percentage,
            days_overdue=financials.days_overdue,
            next_payment_date=financials.next_payment_date.isoformat() if financials.next_payment_date else None,
            agent_review_status=loan.agent_review.status.value,
            regional_approval_status=loan.regional_approval.status.value,
            stage_history=[StageHistoryModel.from_entry(e) for e in loan.workflow.stage_history],
            version=loan.version
        )
