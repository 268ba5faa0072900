# db.py
"""
Database Layer – Revealer persistence

Responsibilities:
- Async database engine & session lifecycle
- Seed vault: committed server seeds, keyed by their keccak commitment
- Reveal journal: per-round reveal state, mirrored from the revealer's
  in-memory map so a restart can see which rounds were mid-flight

The chain stays authoritative for round state; nothing here is used to
decide an outcome.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import (
    String,
    DateTime,
    Integer,
    Enum,
    Text,
    func,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import IntegrityError

from .config import DATABASE_URL, DB_ECHO

# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass

# =====================================================
# ENUMS
# =====================================================

class RevealState(str, enum.Enum):
    SCHEDULED = "scheduled"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    SETTLED = "settled"
    FAILED = "failed"      # released for retry

# =====================================================
# MODELS
# =====================================================

class SeedCommitment(Base):
    """
    A server seed committed on-chain before any bet could use it.
    The seed stays secret until its round is revealed.
    """

    __tablename__ = "seed_commitments"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    seed_hash: Mapped[str] = mapped_column(
        String(66),
        unique=True,
        index=True,
        nullable=False,
    )

    # uint256 as decimal text (78 digits max)
    server_seed: Mapped[str] = mapped_column(
        String(78),
        nullable=False,
    )

    round_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    revealed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class RevealJob(Base):
    __tablename__ = "reveal_jobs"

    round_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=False,
    )

    state: Mapped[RevealState] = mapped_column(
        Enum(RevealState, name="reveal_state"),
        nullable=False,
    )

    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    tx_hash: Mapped[str | None] = mapped_column(
        String(66),
        nullable=True,
    )

    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

# =====================================================
# ENGINE & SESSION
# =====================================================

def create_db(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> Tuple[AsyncEngine, async_sessionmaker]:
    db_engine = create_async_engine(
        url,
        echo=echo,
        # SSL is critical for Postgres in production
        connect_args={"ssl": "require"} if "postgresql" in url else {},
    )
    return db_engine, async_sessionmaker(bind=db_engine, expire_on_commit=False)


engine, AsyncSessionLocal = create_db()

# =====================================================
# INIT
# =====================================================

async def init_db(db_engine: AsyncEngine = engine) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

# =====================================================
# SEED VAULT
# =====================================================

async def save_commitment(session: AsyncSession, seed_hash: str, server_seed: int) -> SeedCommitment:
    row = SeedCommitment(seed_hash=seed_hash, server_seed=str(server_seed))
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row


async def find_seed(session: AsyncSession, seed_hash: str) -> Optional[int]:
    result = await session.execute(
        select(SeedCommitment.server_seed).where(SeedCommitment.seed_hash == seed_hash)
    )
    value = result.scalar_one_or_none()
    return int(value) if value is not None else None


async def mark_seed_revealed(session: AsyncSession, seed_hash: str, round_id: int) -> None:
    result = await session.execute(
        select(SeedCommitment).where(SeedCommitment.seed_hash == seed_hash)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return
    row.round_id = round_id
    row.revealed_at = datetime.now()
    await session.commit()

# =====================================================
# REVEAL JOURNAL
# =====================================================

async def get_reveal_job(session: AsyncSession, round_id: int) -> Optional[RevealJob]:
    return await session.get(RevealJob, round_id)


async def record_reveal_state(
    session: AsyncSession,
    round_id: int,
    state: RevealState,
    *,
    tx_hash: str | None = None,
    error: str | None = None,
) -> RevealJob:
    """
    Upsert the journal row for a round. SUBMITTED counts an attempt.
    """
    job = await session.get(RevealJob, round_id)
    if job is None:
        job = RevealJob(round_id=round_id, state=state, attempts=0)
        session.add(job)
        try:
            await session.flush()
        except IntegrityError:
            # Row created concurrently
            await session.rollback()
            return await record_reveal_state(session, round_id, state, tx_hash=tx_hash, error=error)

    job.state = state
    if state == RevealState.SUBMITTED:
        job.attempts += 1
    if tx_hash is not None:
        job.tx_hash = tx_hash
    job.last_error = error
    job.updated_at = datetime.now()

    await session.commit()
    await session.refresh(job)
    return job


async def list_reveal_jobs(
    session: AsyncSession,
    states: Iterable[RevealState],
) -> List[RevealJob]:
    result = await session.execute(
        select(RevealJob)
        .where(RevealJob.state.in_(list(states)))
        .order_by(RevealJob.round_id)
    )
    return list(result.scalars())
