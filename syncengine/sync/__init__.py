"""Sync engine: ledger, queue, conflict policy, adapters and orchestration."""
