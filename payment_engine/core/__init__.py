"""Payment state machine, ledger, refunds, reconciliation and outbox."""
