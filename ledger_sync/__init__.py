"""
ledger_sync
Off-chain relational copy of ledger-cast votes, kept in step with the
election contract by live event ingestion plus periodic reconciliation.
"""

__version__ = "1.0.0"
