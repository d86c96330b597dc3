"""
ledger_sync/ledger
Read-only access to the election contract.
"""
from ledger_sync.config.settings import LedgerBackend, Settings
from .base import (
    CandidateTally,
    ElectionSnapshot,
    EventFilter,
    LedgerClient,
    LedgerSubscription,
    PositionTally,
    ProtocolVersion,
    VoteCastEvent,
    normalize_address,
)
from .in_memory_client import InMemoryLedgerClient


def create_ledger_client(settings: Settings) -> LedgerClient:
    """
    Factory function to create the configured ledger client.

    Args:
        settings: Process settings (ledger_backend selects the implementation)
    Returns:
        Unconnected LedgerClient
    """
    if settings.ledger_backend == LedgerBackend.memory:
        return InMemoryLedgerClient()

    from .web3_client import Web3LedgerClient
    return Web3LedgerClient(
        contract_address=settings.contract_address,
        rpc_url=settings.rpc_url,
        ws_url=settings.subscription_url,
        call_timeout=settings.ledger_call_timeout,
    )


__all__ = [
    "CandidateTally",
    "ElectionSnapshot",
    "EventFilter",
    "InMemoryLedgerClient",
    "LedgerClient",
    "LedgerSubscription",
    "PositionTally",
    "ProtocolVersion",
    "VoteCastEvent",
    "create_ledger_client",
    "normalize_address",
]
