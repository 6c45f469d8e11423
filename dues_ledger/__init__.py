"""
Dues Ledger

Accrual of per-unit dues for billing periods, payment recording with
overpayment and cancellation confirmation, and advisory late fees, with
Decimal money math and a hash-chained audit trail.
"""

__version__ = "1.0.0"
