"""
ledger_sync/orm/student.py
Student (voter) model
"""
from sqlalchemy import Boolean, Column, Index, String, func
from sqlalchemy.orm import relationship

from ledger_sync.orm.base import Base, TimestampMixin


class Student(TimestampMixin, Base):
    """
    A voter.

    wallet_address joins ledger identity to local identity. Ledger
    addresses are not case-sensitive, so lookups go through lower().
    """
    __tablename__ = "students"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    wallet_address = Column(String(64), nullable=True)
    is_eligible = Column(Boolean, nullable=False, default=True, index=True)

    votes = relationship("Vote", back_populates="student")

    __table_args__ = (
        Index("ix_students_wallet_address_lower", func.lower(wallet_address)),
    )

    def __repr__(self):
        return f"<Student(id={self.id}, wallet={self.wallet_address})>"
