"""
Payment Reconciliation Engine.

- pending -> {completed | failed | cancelled}; every exit from pending is a guarded update
- callbacks are matched by correlation_ref and are idempotent
- balances are derived from the ledger at read time, never stored
"""
