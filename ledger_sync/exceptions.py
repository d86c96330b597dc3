"""
ledger_sync/exceptions.py
Typed faults for the ingestion and reconciliation paths.

Policy per fault:
- TransientTransportFault: retried with fixed backoff, never fatal
- UnknownEntityFault: logged and dropped, not retried (schema lag)
- ConstraintViolationFault: duplicate Vote insert, treated as a no-op
- StartupFault: initial ledger connection failed, retried or process exits
- ConfigurationError: invalid environment, process refuses to start
"""
from typing import Optional


class LedgerSyncError(Exception):
    """Base exception for the ledger sync service"""
    code: str = "LEDGER_SYNC_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(self.message)


class TransientTransportFault(LedgerSyncError):
    """
    Raised when the ledger transport drops or cannot be reached.

    Examples:
    - WebSocket closed mid-stream
    - RPC endpoint timed out
    """
    code = "TRANSIENT_TRANSPORT"

    def __init__(self, message: str = "Ledger transport unavailable"):
        super().__init__(message, self.code)


class UnknownEntityFault(LedgerSyncError):
    """
    Raised when an event or snapshot references something absent locally.

    Examples:
    - Election id not yet created in the store
    - Voter wallet not linked to any student
    """
    code = "UNKNOWN_ENTITY"

    def __init__(self, entity: str, identifier: str):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"Unknown {entity}: {identifier}", self.code)


class ConstraintViolationFault(LedgerSyncError):
    """Raised when a duplicate (student, candidate) Vote insert is rejected."""
    code = "CONSTRAINT_VIOLATION"

    def __init__(self, student_id: str, candidate_id: str):
        self.student_id = student_id
        self.candidate_id = candidate_id
        super().__init__(
            f"Vote already recorded for student {student_id} / candidate {candidate_id}",
            self.code,
        )


class StartupFault(LedgerSyncError):
    """Raised when the initial ledger subscription cannot be established."""
    code = "STARTUP_FAILED"

    def __init__(self, message: str = "Initial ledger subscription failed"):
        super().__init__(message, self.code)


class ConfigurationError(LedgerSyncError):
    """Raised for missing or invalid environment configuration."""
    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str):
        super().__init__(message, self.code)
