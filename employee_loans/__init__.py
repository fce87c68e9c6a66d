"""
Employee Loan Lifecycle

Multi-stage approval pipeline for employee loans with policy snapshots,
Decimal amortization schedules, payroll-deducted repayment tracking and a
prioritized waiting list for deferred requests.
"""

__version__ = "1.0.0"
