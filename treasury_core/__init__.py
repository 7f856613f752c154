"""
Treasury Core

Ledger and transfer reconciliation engine for business banking: wallet and
budget balances with reservation semantics, exactly-once settlement of
provider outcomes, and approval-gated money movement. All amounts are
integer minor units.
"""

__version__ = "1.0.0"
