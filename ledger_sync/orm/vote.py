"""
ledger_sync/orm/vote.py
Vote and reconciliation audit models

Vote rows are append-only materializations of ledger facts.
UNIQUE(student_id, candidate_id) is the final idempotency guard for
both the live ingestion path and reconciliation repair.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from ledger_sync.orm.base import Base


class VoteSource(str, Enum):
    """Which path materialized the row"""
    ledger_event = "ledger_event"
    reconciliation_synthetic = "reconciliation_synthetic"


class Vote(Base):
    __tablename__ = "votes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(
        String(64),
        ForeignKey("students.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    candidate_id = Column(
        String(64),
        ForeignKey("candidates.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    source = Column(SQLEnum(VoteSource), nullable=False, default=VoteSource.ledger_event)
    tx_hash = Column(String(80), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    student = relationship("Student", back_populates="votes")
    candidate = relationship("Candidate", back_populates="votes")

    __table_args__ = (
        UniqueConstraint("student_id", "candidate_id", name="uq_vote_student_candidate"),
    )

    def __repr__(self):
        return f"<Vote(student_id={self.student_id}, candidate_id={self.candidate_id}, source={self.source})>"


class ReconciliationAudit(Base):
    """
    One row per repair applied by the reconciler.

    Report-only drift is logged but not persisted here.
    """
    __tablename__ = "reconciliation_audits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    election_id = Column(String(64), nullable=False, index=True)
    position_id = Column(String(64), nullable=False)
    candidate_id = Column(String(64), nullable=False, index=True)
    policy = Column(String(40), nullable=False)
    ledger_count = Column(Integer, nullable=False)
    local_count = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    rows_written = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "election_id": self.election_id,
            "position_id": self.position_id,
            "candidate_id": self.candidate_id,
            "policy": self.policy,
            "ledger_count": self.ledger_count,
            "local_count": self.local_count,
            "delta": self.delta,
            "rows_written": self.rows_written,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
