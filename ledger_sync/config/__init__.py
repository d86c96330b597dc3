from .settings import (
    CandidateResolution,
    LedgerBackend,
    RepairPolicy,
    Settings,
    StartupFailurePolicy,
    get_settings,
)

__all__ = [
    "CandidateResolution",
    "LedgerBackend",
    "RepairPolicy",
    "Settings",
    "StartupFailurePolicy",
    "get_settings",
]
