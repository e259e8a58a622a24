"""
Microlend

Installment reconciliation and credit scoring engine for micro-lending:
schedule generation, an append-only payment ledger, per-due-date
reconciliation and a compare-and-swap credit score ledger.
"""

__version__ = "1.0.0"
