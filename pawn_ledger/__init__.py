"""
Pawnshop Loan Servicing Ledger

Collateral-backed loan origination, waterfall payment allocation, renewals,
confiscations and overdue tracking, with Decimal money and transactional
storage backends.
"""

__version__ = "1.0.0"
