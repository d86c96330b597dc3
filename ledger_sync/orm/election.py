"""
ledger_sync/orm/election.py
Election, Position and Candidate models

These rows are created by the admin workflow. The sync service only
reads them, apart from the denormalized Candidate.vote_count.
"""
from enum import Enum

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from ledger_sync.orm.base import Base, TimestampMixin


class ElectionStatus(str, Enum):
    upcoming = "upcoming"
    ongoing = "ongoing"
    completed = "completed"


class Election(TimestampMixin, Base):
    """
    A voting event.

    is_live marks the election as bound to an on-chain contract instance.
    contract_address pins it to one instance; NULL means the configured one.
    """
    __tablename__ = "elections"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    status = Column(SQLEnum(ElectionStatus), nullable=False, default=ElectionStatus.upcoming, index=True)
    is_live = Column(Boolean, nullable=False, default=False, index=True)
    contract_address = Column(String(64), nullable=True)

    positions = relationship(
        "Position",
        back_populates="election",
        cascade="all, delete-orphan",
        order_by="Position.id",
    )

    def is_bound_to(self, contract_address: str) -> bool:
        """True when this election's votes live on the given contract."""
        if not self.is_live:
            return False
        if not self.contract_address or not contract_address:
            return True
        return self.contract_address.lower() == contract_address.lower()

    def __repr__(self):
        return f"<Election(id={self.id}, status={self.status}, live={self.is_live})>"


class Position(Base):
    """A contestable role within exactly one election"""
    __tablename__ = "positions"

    id = Column(String(64), primary_key=True)
    election_id = Column(
        String(64),
        ForeignKey("elections.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    title = Column(String(255), nullable=False)

    election = relationship("Election", back_populates="positions")
    candidates = relationship(
        "Candidate",
        back_populates="position",
        cascade="all, delete-orphan",
        order_by="Candidate.id",
    )

    def __repr__(self):
        return f"<Position(id={self.id}, election_id={self.election_id})>"


class Candidate(Base):
    """
    A student running for one position.

    vote_count is a reconciliation convenience only. The number of Vote
    rows referencing the candidate is the local tally.
    """
    __tablename__ = "candidates"

    id = Column(String(64), primary_key=True)
    position_id = Column(
        String(64),
        ForeignKey("positions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    student_id = Column(
        String(64),
        ForeignKey("students.id", ondelete="SET NULL"),
        nullable=True
    )
    name = Column(String(255), nullable=False)
    vote_count = Column(Integer, nullable=False, default=0)

    position = relationship("Position", back_populates="candidates")
    votes = relationship("Vote", back_populates="candidate")

    def __repr__(self):
        return f"<Candidate(id={self.id}, position_id={self.position_id})>"
