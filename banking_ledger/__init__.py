"""
Banking Ledger

Funds-transfer approval and balance-mutation workflow for a retail banking
demo: PIN-gated transfer submission, admin approval and rejection, and a
single atomic, idempotent balance mutation primitive with audit trails.
"""

__version__ = "1.0.0"
