"""
Loan Workflow Core

Loan origination workflow engine: staged approval pipeline, hash-chained
audit trail, stage-history timing and Decimal-precise derived financials.
"""

__version__ = "1.0.0"
