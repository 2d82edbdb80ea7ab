"""
Tests for the loan workflow service

Covers application submission, persisted operations, retry on concurrent
modification and event publication after successful saves.
"""

import pytest
from decimal import Decimal

import pydantic

from loan_workflow.config import LoanWorkflowConfig
from loan_workflow.storage import InMemoryStorage
from loan_workflow.repository import LoanRepository
from loan_workflow.service import LoanWorkflowService
from loan_workflow.events import EventDispatcher
from loan_workflow.schemas import LoanApplicationRequest
from loan_workflow.loans import ReviewDecision, PaymentStatus
from loan_workflow.audit import AuditAction
from loan_workflow.workflow import WorkflowStage
from loan_workflow.currency import Money, Currency
from loan_workflow.errors import (
    ConcurrentModificationError, InvalidTermError, InvalidTransitionError,
    LoanNotFoundError, LoanValidationError
)


AGENT = "staff-agent-01"
REGIONAL_MANAGER = "staff-rm-01"
CASHIER = "staff-cashier-01"


class FlakyRepository(LoanRepository):
    """Repository whose next few saves lose the version race"""

    def __init__(self, *args, failures: int = 0, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures

    def save(self, loan):
        if self.failures:
            self.failures -= 1
            raise ConcurrentModificationError(loan.id, loan.version, loan.version + 1)
        return super().save(loan)


@pytest.fixture
def config():
    return LoanWorkflowConfig(save_retry_attempts=3, min_down_payment_ratio="0.3333")


@pytest.fixture
def repository(clock):
    return LoanRepository(InMemoryStorage(), clock=clock)


@pytest.fixture
def events():
    return []


@pytest.fixture
def service(repository, clock, config, events):
    dispatcher = EventDispatcher()
    dispatcher.subscribe_all(events.append)
    return LoanWorkflowService(repository, clock=clock, dispatcher=dispatcher, config=config)


@pytest.fixture
def request_data():
    return {
        'borrower_id': 'client-0001',
        'principal': Decimal('500000'),
        'interest_rate': Decimal('12.5'),
        'term_months': 24,
        'product': 'Personal Loan',
        'purpose': 'Home renovation',
        'primary_guarantor': {
            'name': 'Nimal Perera',
            'id_number': '987654321V',
            'relationship': 'Brother',
        },
        'secondary_guarantor': {
            'name': 'Kamala Silva',
            'id_number': '876543210V',
            'relationship': 'Colleague',
        },
        'region_id': 'region-western',
        'district': 'Colombo',
    }


@pytest.fixture
def submitted(service, request_data):
    return service.submit_application(LoanApplicationRequest(**request_data), AGENT)


def lkr(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.LKR)


class TestSubmission:
    """Test submitting applications through the service"""

    def test_submit(self, submitted, repository, events):
        assert submitted.application_id == "LN00001"
        assert submitted.version == 1
        assert repository.count() == 1
        assert [e.action for e in events] == [AuditAction.CREATED]
        assert events[0].application_id == "LN00001"
        assert events[0].stage == "application_submitted"

    def test_ids_increase(self, service, submitted, request_data):
        second = service.submit_application(LoanApplicationRequest(**request_data), AGENT)
        assert second.application_id == "LN00002"

    def test_request_validation(self, request_data):
        request_data['interest_rate'] = Decimal('0')
        with pytest.raises(pydantic.ValidationError):
            LoanApplicationRequest(**request_data)

    def test_down_payment_ratio_from_config(self, service, request_data, repository):
        request_data['down_payment'] = Decimal('100000')
        with pytest.raises(LoanValidationError):
            service.submit_application(LoanApplicationRequest(**request_data), AGENT)
        assert repository.count() == 0

    def test_configured_rate_ceiling(self, repository, clock, request_data):
        strict = LoanWorkflowService(
            repository, clock=clock, config=LoanWorkflowConfig(max_interest_rate="10")
        )
        with pytest.raises(InvalidTermError):
            strict.submit_application(LoanApplicationRequest(**request_data), AGENT)

    def test_from_config(self, clock):
        service = LoanWorkflowService.from_config(
            LoanWorkflowConfig(database_url="memory://", application_id_prefix="KN", application_id_width=4),
            clock=clock
        )
        assert isinstance(service.repository.storage, InMemoryStorage)
        assert service.repository.next_application_id() == "KN0001"


class TestOperations:
    """Test persisted aggregate operations"""

    def test_full_lifecycle(self, service, submitted, events):
        loan_id = submitted.application_id

        service.assign_staff(loan_id, REGIONAL_MANAGER, agent_id=AGENT, regional_manager_id=REGIONAL_MANAGER)
        service.advance_stage(loan_id, WorkflowStage.DOCUMENTS_PENDING, AGENT)
        service.record_documents_uploaded(loan_id, ["nic.pdf", "payslip.pdf"], AGENT)
        service.advance_stage(loan_id, WorkflowStage.AGENT_REVIEW, AGENT)
        service.record_agent_review(loan_id, ReviewDecision.APPROVED, AGENT, AGENT, rating=5)
        service.advance_stage(loan_id, WorkflowStage.REGIONAL_APPROVAL, AGENT)
        service.record_regional_approval(loan_id, ReviewDecision.APPROVED, REGIONAL_MANAGER, REGIONAL_MANAGER)
        service.advance_stage(loan_id, WorkflowStage.AGREEMENT_GENERATION, REGIONAL_MANAGER)
        service.record_agreement_generated(loan_id, "AGR-LN00001", REGIONAL_MANAGER)
        for stage in (WorkflowStage.AGREEMENT_SIGNED, WorkflowStage.DISBURSEMENT, WorkflowStage.ACTIVE):
            service.advance_stage(loan_id, stage, REGIONAL_MANAGER)

        payment = service.add_payment(loan_id, lkr('26041.67'), CASHIER)
        service.decide_payment(loan_id, payment.id, PaymentStatus.APPROVED, REGIONAL_MANAGER, REGIONAL_MANAGER)

        summary = service.loan_summary(loan_id)
        assert summary.current_stage == "active"
        assert summary.status == "Active"
        assert summary.remaining_balance.amount == "598958.33"
        assert summary.completion_percentage == 4
        assert summary.version == 15
        assert len(summary.stage_history) == 8

        trail = service.export_audit_trail(loan_id)
        assert len(trail) == len(events) == 15
        assert [entry.sequence for entry in trail] == list(range(1, 16))
        assert service.get_loan(loan_id).audit_log.verify_integrity()['valid']

    def test_late_approval_carries_configured_fee(self, service, submitted, clock):
        loan_id = submitted.id
        service.advance_stage(loan_id, WorkflowStage.DOCUMENTS_PENDING, AGENT)
        service.advance_stage(loan_id, WorkflowStage.AGENT_REVIEW, AGENT)
        service.record_agent_review(loan_id, ReviewDecision.APPROVED, AGENT, AGENT)
        service.advance_stage(loan_id, WorkflowStage.REGIONAL_APPROVAL, AGENT)
        service.record_regional_approval(loan_id, ReviewDecision.APPROVED, REGIONAL_MANAGER, REGIONAL_MANAGER)
        service.advance_stage(loan_id, WorkflowStage.AGREEMENT_GENERATION, REGIONAL_MANAGER)
        service.record_agreement_generated(loan_id, "AGR-LN00001", REGIONAL_MANAGER)
        for stage in (WorkflowStage.AGREEMENT_SIGNED, WorkflowStage.DISBURSEMENT, WorkflowStage.ACTIVE):
            service.advance_stage(loan_id, stage, REGIONAL_MANAGER)

        clock.advance(days=60)
        payment = service.add_payment(loan_id, lkr('26041.67'), CASHIER)
        decided = service.decide_payment(loan_id, payment.id, PaymentStatus.APPROVED, REGIONAL_MANAGER, REGIONAL_MANAGER)

        assert decided.is_late_payment
        assert decided.days_late == 34
        assert decided.late_fee == lkr(service.config.late_fee_amount)
        stored = service.get_loan(loan_id).get_payment(payment.id)
        assert stored.late_fee == lkr('500')

    def test_domain_error_leaves_storage_unchanged(self, service, submitted, events):
        with pytest.raises(InvalidTransitionError):
            service.advance_stage(submitted.id, WorkflowStage.DISBURSEMENT, AGENT)

        stored = service.get_loan(submitted.id)
        assert stored.version == 1
        assert stored.current_stage == WorkflowStage.APPLICATION_SUBMITTED
        assert len(events) == 1

    def test_unknown_loan(self, service):
        with pytest.raises(LoanNotFoundError):
            service.block_workflow("LN99999", "Fraud", AGENT)

    def test_block_unblock_and_annotate(self, service, submitted):
        service.block_workflow(submitted.id, "Missing payslip", AGENT)
        assert service.get_loan(submitted.id).is_blocked

        service.unblock_workflow(submitted.id, AGENT, "Payslip received")
        service.annotate(submitted.id, REGIONAL_MANAGER, "Called borrower")

        loan = service.get_loan(submitted.id)
        assert not loan.is_blocked
        assert loan.audit_trail[-1].action == AuditAction.UPDATED

    def test_current_financials_not_saved(self, service, submitted):
        financials = service.current_financials(submitted.id)

        assert financials.total_payable == lkr('625000.00')
        assert service.get_loan(submitted.id).version == 1

    def test_refresh_calculations(self, service, submitted):
        service.refresh_calculations(submitted.id, AGENT)
        assert service.get_loan(submitted.id).audit_trail[-1].action == AuditAction.CALCULATION_UPDATED


class TestConcurrency:
    """Test optimistic concurrency handling"""

    def test_retry_after_competing_save(self, service, repository, submitted, events):
        seen_versions = []

        def apply(loan):
            seen_versions.append(loan.version)
            if len(seen_versions) == 1:
                competitor = repository.load_loan(loan.id)
                competitor.assign_staff(REGIONAL_MANAGER, agent_id=AGENT)
                repository.save(competitor)
            return loan.advance_stage(WorkflowStage.DOCUMENTS_PENDING, AGENT)

        result = service.execute(submitted.id, AGENT, "advance_stage", apply)

        assert result == WorkflowStage.DOCUMENTS_PENDING
        assert seen_versions == [1, 2]
        stored = service.get_loan(submitted.id)
        assert stored.version == 3
        assert stored.assigned_agent == AGENT
        assert stored.current_stage == WorkflowStage.DOCUMENTS_PENDING
        assert [e.action for e in events] == [AuditAction.CREATED, AuditAction.WORKFLOW_ADVANCED]

    def test_gives_up_after_configured_attempts(self, clock, request_data):
        repository = FlakyRepository(InMemoryStorage(), clock=clock, failures=5)
        service = LoanWorkflowService(repository, clock=clock, config=LoanWorkflowConfig(save_retry_attempts=2))
        loan = service.submit_application(LoanApplicationRequest(**request_data), AGENT)

        with pytest.raises(ConcurrentModificationError):
            service.advance_stage(loan.id, WorkflowStage.DOCUMENTS_PENDING, AGENT)

        assert repository.failures == 3
        stored = service.get_loan(loan.id)
        assert stored.version == 1
        assert stored.current_stage == WorkflowStage.APPLICATION_SUBMITTED

    def test_both_identifiers_share_one_lock(self, service, submitted):
        by_id = service._lock_for(submitted.id)
        by_application_id = service._lock_for(submitted.application_id)

        assert by_id is by_application_id

    def test_execute_holds_lock_of_internal_id(self, service, submitted):
        held = []

        def apply(loan):
            held.append(service._lock_for(submitted.id).locked())
            return loan.annotate(AGENT, "Checked slip")

        service.execute(submitted.application_id, AGENT, "annotate", apply)
        service.execute(submitted.id, AGENT, "annotate", apply)

        assert held == [True, True]
        assert submitted.id not in service._locks

    def test_failing_subscriber_does_not_undo_save(self, service, submitted):
        def broken(event):
            raise RuntimeError("mail server down")

        service.dispatcher.subscribe(AuditAction.WORKFLOW_ADVANCED, broken)
        service.advance_stage(submitted.id, WorkflowStage.DOCUMENTS_PENDING, AGENT)

        assert service.get_loan(submitted.id).current_stage == WorkflowStage.DOCUMENTS_PENDING
