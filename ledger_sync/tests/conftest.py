"""
Shared fixtures: a throwaway SQLite store seeded with one live election,
and an in-memory ledger.
"""
import asyncio
from typing import AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ledger_sync.database import create_session_factory
from ledger_sync.ledger import InMemoryLedgerClient
from ledger_sync.orm import (
    Base,
    Candidate,
    Election,
    ElectionStatus,
    Position,
    Student,
    Vote,
)

CONTRACT = "0x1111111111111111111111111111111111111111"

# Mixed-case wallets, like checksummed addresses coming from the ledger
WALLETS = {
    "s1": "0xAbCdEf0000000000000000000000000000000001",
    "s2": "0xabcdef0000000000000000000000000000000002",
    "s3": "0xABCDEF0000000000000000000000000000000003",
    "s4": "0xAbCdEf0000000000000000000000000000000004",
    "s5": "0xaBcDeF0000000000000000000000000000000005",
}


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'store.db'}",
        echo=False,
        connect_args={"timeout": 30.0},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def seeded(session_factory):
    """
    Election e1 (live) with positions p1 {c1, c2} and p2 {c3, c4},
    five eligible students, one ineligible student.
    """
    async with session_factory() as db:
        election = Election(id="e1", title="Student Council 2026", status=ElectionStatus.ongoing, is_live=True)
        p1 = Position(id="p1", election_id="e1", title="President")
        p2 = Position(id="p2", election_id="e1", title="Treasurer")
        db.add_all([election, p1, p2])
        db.add_all([
            Candidate(id="c1", position_id="p1", name="Ada"),
            Candidate(id="c2", position_id="p1", name="Grace"),
            Candidate(id="c3", position_id="p2", name="Linus"),
            Candidate(id="c4", position_id="p2", name="Guido"),
        ])
        for student_id, wallet in WALLETS.items():
            db.add(Student(id=student_id, name=f"Student {student_id}", wallet_address=wallet, is_eligible=True))
        db.add(Student(id="s9", name="Student s9", wallet_address=None, is_eligible=False))
        await db.commit()
    return session_factory


@pytest.fixture
def ledger() -> InMemoryLedgerClient:
    return InMemoryLedgerClient()


async def count_votes(session_factory, candidate_id: Optional[str] = None) -> int:
    async with session_factory() as db:
        query = select(func.count(Vote.id))
        if candidate_id is not None:
            query = query.where(Vote.candidate_id == candidate_id)
        result = await db.execute(query)
        return int(result.scalar() or 0)


async def add_votes(session_factory, candidate_id: str, student_ids) -> None:
    async with session_factory() as db:
        for student_id in student_ids:
            db.add(Vote(student_id=student_id, candidate_id=candidate_id))
        await db.commit()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is true or timeout elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
