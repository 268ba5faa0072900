# revealer.py
"""
Crash Revealer – Auto-Revealer Service

Responsibilities:
- Listen for BetPlaced and reveal each round after a simulated game duration
- Settle rounds nobody cashed out once the grace period has passed
- Recovery scan on startup (and periodically) for rounds left unrevealed
  or unsettled by a crash / restart
- Keep server seeds committed ahead of bets (commit-reveal)

Per-round state lives in `processed` (round id -> RevealState):
added when scheduled, removed on failure so a retry can pick it up,
kept on success until the round falls out of the recovery scan window.
It is mirrored in the reveal journal (db.py).

Without this process no bet ever resolves, so a failing round is logged
and retried, never allowed to take the service down.
"""

from __future__ import annotations

import enum
import signal
import random
import asyncio
import logging
from typing import Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import db
from .config import RevealerConfig
from .db import RevealState
from .errors import (
    AlreadyCashedOut,
    CommitmentMismatch,
    GameError,
    RoundAlreadySettled,
    classify_error,
)
from .models import ChainEvent, EventName, Round
from .store import RoundStore
from .utils import (
    commit_server_seed,
    format_multiplier,
    format_tokens,
    generate_server_seed,
    has_commitment,
)

logger = logging.getLogger("rogue_crash.revealer")

# States in which a round must not be submitted again
IN_FLIGHT = (RevealState.SUBMITTED, RevealState.CONFIRMED, RevealState.SETTLED)


class _Outcome(enum.Enum):
    REVEALED = "revealed"   # crash point now known, round needs settling
    DONE = "done"           # nothing to do (missing, settled, duplicate)
    FAILED = "failed"       # released for retry


class CrashRevealer:

    def __init__(
        self,
        store: RoundStore,
        *,
        config: Optional[RevealerConfig] = None,
        sessionmaker: Optional[async_sessionmaker] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self.config = config or RevealerConfig()
        self._sessionmaker = sessionmaker
        self._rng = rng or random.SystemRandom()

        self.processed: Dict[int, RevealState] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        # Seeds committed in this process when no database is configured
        self._seeds: Dict[str, int] = {}

        self._subscription = None
        self._stopped = asyncio.Event()

    # =====================================================
    # LIFECYCLE
    # =====================================================

    async def start(self) -> None:
        logger.info(f"Crash revealer started (operator {self._store.sender}, contract {self._store.address})")

        await self.top_up_commitments()

        # Subscribe before scanning so no bet falls between the two
        self._subscription = self._store.subscribe()
        self._spawn(self._listen())

        await self.recover_pending()

        if self.config.sweep_interval > 0:
            self._spawn(self._sweep_loop())
        logger.info("Listening for new bets...")

    async def stop(self) -> None:
        tasks = list(self._background) + list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._tasks.clear()

        if self._subscription is not None and hasattr(self._subscription, "aclose"):
            await self._subscription.aclose()
        self._subscription = None
        self._stopped.set()
        logger.info("Crash revealer stopped")

    async def run_forever(self) -> None:
        await self.start()
        await self._stopped.wait()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every scheduled round pipeline has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # =====================================================
    # EVENTS
    # =====================================================

    async def _listen(self) -> None:
        while True:
            try:
                async for event in self._subscription:
                    if event.name == EventName.BET_PLACED.value:
                        self.handle_bet(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Event subscription failed: {e}; resubscribing")
                await asyncio.sleep(self.config.retry_base_delay)
                self._subscription = self._store.subscribe()
            else:
                return

    def handle_bet(self, event: ChainEvent) -> None:
        round_id = event.round_id
        if round_id is None or round_id in self.processed:
            return

        delay = self._rng.uniform(self.config.min_delay, self.config.max_delay)
        logger.info(
            f"New bet: round {round_id} player {event.args.get('player')} "
            f"amount {format_tokens(int(event.args.get('amount', 0)))}; revealing in {delay:.1f}s"
        )
        self.schedule(round_id, delay)

        if self.config.seed_commitments:
            self._spawn(self.top_up_commitments())

    def schedule(self, round_id: int, delay: float) -> None:
        """Queue the reveal -> grace -> settle pipeline for a round."""
        if round_id in self._tasks and not self._tasks[round_id].done():
            return
        self.processed[round_id] = RevealState.SCHEDULED
        task = asyncio.create_task(self._run_round(round_id, delay))
        self._tasks[round_id] = task
        task.add_done_callback(lambda t, rid=round_id: self._forget_task(rid, t))

    def _forget_task(self, round_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(round_id) is task:
            del self._tasks[round_id]

    async def _run_round(self, round_id: int, delay: float) -> None:
        await self._journal(round_id, RevealState.SCHEDULED)
        if delay > 0:
            await asyncio.sleep(delay)

        attempts = 0
        while True:
            outcome = await self._attempt_reveal(round_id)
            if outcome is _Outcome.REVEALED:
                break
            if outcome is _Outcome.DONE:
                return

            attempts += 1
            if attempts > self.config.max_retries:
                logger.error(f"Reveal for round {round_id} failed {attempts} times; leaving it to the next sweep")
                return
            backoff = min(self.config.retry_base_delay * 2 ** (attempts - 1), self.config.retry_max_delay)
            logger.info(f"Retrying round {round_id} in {backoff:.1f}s (attempt {attempts + 1})")
            await asyncio.sleep(backoff)

        await asyncio.sleep(self.config.grace_period)
        await self.settle_if_unclaimed(round_id)

    # =====================================================
    # REVEAL
    # =====================================================

    async def reveal(self, round_id: int) -> bool:
        """
        Reveal the crash point of one round.

        Returns True when the round is revealed and still needs settling.
        Failures release the round for retry and return False.
        """
        return await self._attempt_reveal(round_id) is _Outcome.REVEALED

    async def _attempt_reveal(self, round_id: int) -> "_Outcome":
        if self.processed.get(round_id) in IN_FLIGHT:
            return _Outcome.DONE
        self.processed[round_id] = RevealState.SUBMITTED

        try:
            rnd = await self._store.get_round(round_id)
            if not rnd.exists:
                logger.warning(f"Round {round_id} does not exist")
                self.processed.pop(round_id, None)
                return _Outcome.DONE

            if rnd.revealed:
                logger.info(f"Round {round_id} already revealed")
                self.processed[round_id] = RevealState.SETTLED if rnd.settled else RevealState.CONFIRMED
                return _Outcome.DONE if rnd.settled else _Outcome.REVEALED

            server_seed = await self._seed_for(rnd)
            await self._journal(round_id, RevealState.SUBMITTED)
            receipt = await self._store.reveal_crash(round_id, server_seed)

        except Exception as e:
            await self._release(round_id, classify_error(e))
            return _Outcome.FAILED

        self.processed[round_id] = RevealState.CONFIRMED
        await self._journal(round_id, RevealState.CONFIRMED, tx_hash=receipt.tx_hash)

        revealed = receipt.find(EventName.CRASH_REVEALED.value)
        crash = int(revealed.args["crashMultiplier"]) if revealed else 0
        logger.info(f"Crash revealed for round {round_id}: {format_multiplier(crash)} (tx {receipt.tx_hash})")

        if has_commitment(rnd.server_seed_hash):
            await self._mark_seed_revealed(rnd.server_seed_hash, round_id)
        return _Outcome.REVEALED

    async def _release(self, round_id: int, error: GameError) -> None:
        """Forget a failed round so it can be attempted again."""
        self.processed.pop(round_id, None)
        logger.error(f"Error revealing crash for round {round_id}: {error.kind.value}: {error.message}")
        await self._journal(round_id, RevealState.FAILED, error=f"{error.kind.value}: {error.message}")

    # =====================================================
    # SETTLE
    # =====================================================

    async def settle_if_unclaimed(self, round_id: int) -> bool:
        """Settle as a loss when the player did not cash out. True if settled here."""
        try:
            rnd = await self._store.get_round(round_id)
            if rnd.settled or rnd.cash_out_multiplier > 0:
                self.processed[round_id] = RevealState.SETTLED
                await self._journal(round_id, RevealState.SETTLED)
                return False

            receipt = await self._store.settle_loss(round_id)
        except Exception as e:
            error = classify_error(e)
            if isinstance(error, (RoundAlreadySettled, AlreadyCashedOut)):
                logger.info(f"Round {round_id} settled by the player first")
                self.processed[round_id] = RevealState.SETTLED
                await self._journal(round_id, RevealState.SETTLED)
            else:
                # Released so the next sweep retries the settle
                self.processed.pop(round_id, None)
                logger.error(f"Error settling loss for round {round_id}: {error.message}")
            return False

        self.processed[round_id] = RevealState.SETTLED
        await self._journal(round_id, RevealState.SETTLED, tx_hash=receipt.tx_hash)
        logger.info(f"Round {round_id} settled as loss")
        return True

    # =====================================================
    # RECOVERY
    # =====================================================

    async def recover_pending(self) -> List[int]:
        """
        Check the last `scan_window` rounds (plus rounds the journal left
        unfinished) and reveal any that have a bet but no crash point.
        Revealed but unsettled rounds get their settle step rescheduled.

        Returns the ids revealed by this scan.
        """
        revealed: List[int] = []
        try:
            current = await self._store.current_round_id()
            # `current` may be the last id assigned or the next one; ids that
            # were never used are skipped below by `rnd.exists`
            first = max(0, current - self.config.scan_window)
            candidates = set(range(first, current + 1)) | set(await self._unfinished_journal_rounds())
            self._forget_settled_before(first)
            logger.info(f"Checking for pending rounds (current: {current})...")

            for round_id in sorted(candidates):
                if round_id in self.processed or round_id in self._tasks:
                    continue
                rnd = await self._store.get_round(round_id)
                if not rnd.exists or rnd.settled:
                    continue
                if not rnd.revealed:
                    logger.warning(f"Found unrevealed round #{round_id}, revealing now...")
                    outcome = await self._attempt_reveal(round_id)
                    if outcome is _Outcome.REVEALED:
                        revealed.append(round_id)
                        self._spawn(self._settle_later(round_id))
                    elif outcome is _Outcome.FAILED:
                        self.schedule(round_id, self.config.retry_base_delay)
                elif rnd.cash_out_multiplier == 0:
                    self.processed[round_id] = RevealState.CONFIRMED
                    self._spawn(self._settle_later(round_id))
        except Exception as e:
            logger.error(f"Error checking pending rounds: {classify_error(e).message}")
        return revealed

    def _forget_settled_before(self, first: int) -> None:
        """Drop settled rounds that have left the scan window."""
        for round_id in [rid for rid, state in self.processed.items()
                         if state is RevealState.SETTLED and rid < first]:
            del self.processed[round_id]

    async def _settle_later(self, round_id: int) -> None:
        await asyncio.sleep(self.config.grace_period)
        await self.settle_if_unclaimed(round_id)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            await self.recover_pending()
            await self.top_up_commitments()

    # =====================================================
    # SEEDS
    # =====================================================

    async def top_up_commitments(self) -> int:
        """Keep `commitment_pool_size` seeds committed ahead of bets."""
        if not self.config.seed_commitments:
            return 0
        added = 0
        try:
            pending = await self._store.pending_commitments()
            for _ in range(max(self.config.commitment_pool_size - pending, 0)):
                seed = generate_server_seed()
                seed_hash = commit_server_seed(seed)
                # Store first: never publish a hash we could not reveal
                await self._remember_seed(seed_hash, seed)
                await self._store.commit_server_seed(seed_hash)
                added += 1
        except Exception as e:
            logger.error(f"Error committing server seeds: {classify_error(e).message}")
        if added:
            logger.info(f"Committed {added} server seed(s)")
        return added

    async def _seed_for(self, rnd: Round) -> int:
        if not has_commitment(rnd.server_seed_hash):
            return generate_server_seed()
        seed = await self._lookup_seed(rnd.server_seed_hash)
        if seed is None:
            raise CommitmentMismatch(
                f"No stored seed for commitment {rnd.server_seed_hash}",
                detail=f"round {rnd.round_id}",
            )
        return seed

    async def _remember_seed(self, seed_hash: str, seed: int) -> None:
        if self._sessionmaker is None:
            self._seeds[seed_hash] = seed
            return
        async with self._sessionmaker() as session:
            await db.save_commitment(session, seed_hash, seed)

    async def _lookup_seed(self, seed_hash: str) -> Optional[int]:
        if self._sessionmaker is None:
            return self._seeds.get(seed_hash)
        async with self._sessionmaker() as session:
            return await db.find_seed(session, seed_hash)

    async def _mark_seed_revealed(self, seed_hash: str, round_id: int) -> None:
        if self._sessionmaker is None:
            # The seed is public on-chain now
            self._seeds.pop(seed_hash, None)
            return
        try:
            async with self._sessionmaker() as session:
                await db.mark_seed_revealed(session, seed_hash, round_id)
        except Exception as e:
            logger.warning(f"Could not mark seed revealed for round {round_id}: {e}")

    # =====================================================
    # JOURNAL
    # =====================================================

    async def _journal(self, round_id: int, state: RevealState, **kwargs) -> None:
        if self._sessionmaker is None:
            return
        try:
            async with self._sessionmaker() as session:
                await db.record_reveal_state(session, round_id, state, **kwargs)
        except Exception as e:
            logger.warning(f"Reveal journal write failed for round {round_id}: {e}")

    async def _unfinished_journal_rounds(self) -> List[int]:
        if self._sessionmaker is None:
            return []
        async with self._sessionmaker() as session:
            jobs = await db.list_reveal_jobs(
                session, [RevealState.SCHEDULED, RevealState.SUBMITTED, RevealState.FAILED]
            )
        return [job.round_id for job in jobs]

# =====================================================
# ENTRY POINT
# =====================================================

async def serve() -> None:
    from .chain import connect_chain
    from .config import ADMIN_PRIVATE_KEY, CRASH_GAME_ADDRESS, RPC_URL

    if not CRASH_GAME_ADDRESS or not ADMIN_PRIVATE_KEY:
        raise SystemExit("CRASH_GAME_ADDRESS and ADMIN_PRIVATE_KEY must be set")

    store, _ = connect_chain(RPC_URL, ADMIN_PRIVATE_KEY, CRASH_GAME_ADDRESS)
    if not await store.is_deployed():
        raise SystemExit(f"No contract code at {CRASH_GAME_ADDRESS}")

    await db.init_db()
    revealer = CrashRevealer(store, config=RevealerConfig.from_env(), sessionmaker=db.AsyncSessionLocal)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(revealer.stop()))
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await revealer.run_forever()


def main() -> None:
    from .config import LOG_LEVEL
    from .utils import configure_logging

    configure_logging(LOG_LEVEL)
    asyncio.run(serve())


if __name__ == "__main__":
    main()
