"""
Workflow Error Module

Exception hierarchy for the loan workflow core. Every error carries a
machine-readable code and a human-readable message; ``to_dict`` renders
what a caller may show to users without exposing internal state.
"""

from typing import Any, Dict, Optional


VALIDATION_ERROR = "VALIDATION_ERROR"
BUSINESS_RULE_ERROR = "BUSINESS_RULE_ERROR"
CONFLICT_ERROR = "CONFLICT_ERROR"
NOT_FOUND = "NOT_FOUND"


class LoanWorkflowError(Exception):
    """Base class for all loan workflow errors"""

    error_code = BUSINESS_RULE_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.kind,
            'error_code': self.error_code,
            'message': self.message,
            'details': self.details,
        }


class InvalidTermError(LoanWorkflowError, ValueError):
    """Zero or negative term, out-of-range rate, or non-positive amount"""
    error_code = VALIDATION_ERROR


class LoanValidationError(LoanWorkflowError, ValueError):
    """Malformed loan input: guarantors, ratings, payment amounts and the like"""
    error_code = VALIDATION_ERROR


class AuditValidationError(LoanWorkflowError, ValueError):
    """Audit entry rejected: missing actor or unknown action kind"""
    error_code = VALIDATION_ERROR


class InvalidTransitionError(LoanWorkflowError):
    """Requested stage is not a direct successor of the current stage"""

    def __init__(self, current_stage: str, requested_stage: str):
        super().__init__(
            f"Cannot move loan from '{current_stage}' to '{requested_stage}'",
            {'current_stage': current_stage, 'requested_stage': requested_stage}
        )


class WorkflowTerminalError(LoanWorkflowError):
    """Workflow mutation attempted after reaching a terminal stage"""

    def __init__(self, stage: str, message: Optional[str] = None):
        super().__init__(
            message or f"Workflow is in terminal stage '{stage}'",
            {'current_stage': stage}
        )


class LoanTerminalError(WorkflowTerminalError):
    """Any loan mutator called once the loan is terminal"""

    def __init__(self, stage: str, operation: str):
        super().__init__(stage, f"Cannot {operation}: loan is in terminal stage '{stage}'")
        self.details['operation'] = operation


class PrecedenceViolationError(LoanWorkflowError):
    """A stage-order or approval-order dependency was violated"""


class PaymentAlreadyDecidedError(PrecedenceViolationError):
    """Payment was already approved or rejected"""

    def __init__(self, payment_id: str, status: str):
        super().__init__(
            f"Payment {payment_id} has already been decided as {status}",
            {'payment_id': payment_id, 'status': status}
        )


class ConcurrentModificationError(LoanWorkflowError):
    """Optimistic version check failed at save time"""
    error_code = CONFLICT_ERROR

    def __init__(self, loan_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Loan {loan_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            {'loan_id': loan_id}
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class LoanNotFoundError(LoanWorkflowError):
    error_code = NOT_FOUND

    def __init__(self, identifier: str):
        super().__init__(f"Loan {identifier} not found", {'loan': identifier})


class PaymentNotFoundError(LoanWorkflowError):
    error_code = NOT_FOUND

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found", {'payment_id': payment_id})
