"""
Loan Servicing Core

Loan lifecycle state machine, amortization schedule generation and a payment
ledger with proof-based verification, using Decimal money and a hash-chained
audit trail.
"""

__version__ = "1.0.0"
