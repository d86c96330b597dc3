from .base import Base

from .election import Election, ElectionStatus, Position, Candidate
from .student import Student
from .vote import Vote, VoteSource, ReconciliationAudit

__all__ = [
    "Base",
    "Election",
    "ElectionStatus",
    "Position",
    "Candidate",
    "Student",
    "Vote",
    "VoteSource",
    "ReconciliationAudit",
]
