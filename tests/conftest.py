"""
Shared fixtures for the loan workflow test suite
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from loan_workflow.currency import Money, Currency
from loan_workflow.clock import FixedClock
from loan_workflow.loans import (
    Loan, LoanTerms, LoanParties, Guarantor, ProductCategory, ReviewDecision
)
from loan_workflow.workflow import WorkflowStage, PIPELINE


AGENT = "staff-agent-01"
REGIONAL_MANAGER = "staff-rm-01"
CASHIER = "staff-cashier-01"


def lkr(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.LKR)


@pytest.fixture
def clock():
    """Clock pinned to 10 January 2024, 09:00 UTC"""
    return FixedClock(datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def primary_guarantor():
    return Guarantor(
        name="Nimal Perera",
        id_number="987654321V",
        contact_number="+94771234568",
        address="12 Temple Road, Colombo",
        relationship="Brother"
    )


@pytest.fixture
def secondary_guarantor():
    return Guarantor(
        name="Kamala Silva",
        id_number="876543210V",
        contact_number="+94771234569",
        address="4 Lake Drive, Kandy",
        relationship="Colleague"
    )


@pytest.fixture
def terms():
    """500,000 at 12.5% over 24 months"""
    return LoanTerms(
        principal=lkr(500000),
        interest_rate=Decimal('12.5'),
        term_months=24,
        product=ProductCategory.PERSONAL,
        purpose="Home renovation",
        due_day=5
    )


@pytest.fixture
def parties(primary_guarantor, secondary_guarantor):
    return LoanParties(
        borrower_id="client-0001",
        primary_guarantor=primary_guarantor,
        secondary_guarantor=secondary_guarantor,
        region_id="region-western",
        district="Colombo"
    )


@pytest.fixture
def loan(terms, parties, clock):
    return Loan.create("LN00001", terms, parties, AGENT, clock=clock)


@pytest.fixture
def small_loan(parties, clock):
    """80,000 at 12.5% over 24 months: 100,000 payable"""
    small_terms = LoanTerms(
        principal=lkr(80000),
        interest_rate=Decimal('12.5'),
        term_months=24,
        due_day=5
    )
    return Loan.create("LN00002", small_terms, parties, AGENT, clock=clock)


@pytest.fixture
def advance_to(clock):
    """Walk a loan along the pipeline, recording the approvals each gate needs"""

    def _advance(loan: Loan, target: WorkflowStage) -> Loan:
        target_index = PIPELINE.index(target)
        while PIPELINE.index(loan.current_stage) < target_index:
            current = loan.current_stage
            if current == WorkflowStage.AGENT_REVIEW:
                if loan.agent_review.status != ReviewDecision.APPROVED:
                    loan.record_agent_review(ReviewDecision.APPROVED, AGENT, AGENT, rating=4)
            elif current == WorkflowStage.REGIONAL_APPROVAL:
                if loan.regional_approval.status != ReviewDecision.APPROVED:
                    loan.record_regional_approval(ReviewDecision.APPROVED, REGIONAL_MANAGER, REGIONAL_MANAGER)
            elif current == WorkflowStage.AGREEMENT_GENERATION and loan.agreement is None:
                loan.record_agreement_generated(f"AGR-{loan.application_id}", REGIONAL_MANAGER)
            next_stage = PIPELINE[PIPELINE.index(current) + 1]
            clock.advance(hours=1)
            loan.advance_stage(next_stage, AGENT)
        return loan

    return _advance
