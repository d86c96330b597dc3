"""
ledger_sync/services
Ingestion, reconciliation and store access.
"""
