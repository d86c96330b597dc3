"""
ledger_sync/tasks
Background lifecycle: supervised periodic tasks and the service supervisor.
"""
