# controller.py
"""
Round Lifecycle Controller (client-side game manager).

Flow:
  place_bet: limits -> balance -> allowance (approve + wait) -> placeBet
             -> BetPlaced event -> round id
  cash_out:  round pre-checks -> wait for reveal -> cashOut -> CashedOut
             event -> actual winnings

The store is the only source of truth. Local checks are fast-fails, and a
confirmation timeout is always followed by a re-query of the store before
anything is reported, since the transaction may have landed anyway.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, List, Optional, Set, Union

from .animation import DisplayState, MultiplierClock
from .config import GameConfig
from .errors import (
    AlreadyCashedOut,
    ApprovalFailed,
    BetOutOfRange,
    ContractUnavailable,
    CrashPending,
    GameError,
    InsufficientAllowance,
    InsufficientBalance,
    RoundAlreadySettled,
    RoundIdIndeterminate,
    TooLateCrashed,
    classify_error,
)
from .models import (
    BetLimits,
    BetPlacement,
    CashOutResult,
    EventName,
    GameStats,
    Round,
    TxReceipt,
)
from .store import RoundStore, TokenLedger
from .utils import compute_winnings, generate_client_seed, multiplier_to_int, to_base_units

logger = logging.getLogger("rogue_crash.controller")


@dataclass
class _Timeouts:
    tx: float = GameConfig.TX_TIMEOUT_SEC
    reveal_wait: float = GameConfig.REVEAL_WAIT_TIMEOUT_SEC
    poll: float = GameConfig.POLL_INTERVAL_SEC


class GameManager:
    """
    One player's view of the game. Translates every failure into the
    GameError taxonomy; callers never see transport exceptions.
    """

    def __init__(
        self,
        store: RoundStore,
        token: Optional[TokenLedger] = None,
        *,
        tx_timeout: float = GameConfig.TX_TIMEOUT_SEC,
        reveal_wait_timeout: float = GameConfig.REVEAL_WAIT_TIMEOUT_SEC,
        poll_interval: float = GameConfig.POLL_INTERVAL_SEC,
    ) -> None:
        self._store = store
        self._token = token
        self._timeouts = _Timeouts(tx_timeout, reveal_wait_timeout, poll_interval)

    @property
    def player(self) -> str:
        return self._store.sender

    # =====================================================
    # PLUMBING
    # =====================================================

    async def _call(self, awaitable: Awaitable):
        """Run a store/token call, mapping any failure onto the taxonomy."""
        try:
            return await awaitable
        except GameError:
            raise
        except Exception as e:
            raise classify_error(e) from e

    async def _confirm(self, awaitable: Awaitable[TxReceipt]) -> TxReceipt:
        """Bounded wait for a confirmation. Timeout is NOT proof of failure."""
        try:
            return await asyncio.wait_for(self._call(awaitable), timeout=self._timeouts.tx)
        except asyncio.TimeoutError as e:
            raise ContractUnavailable(
                "Timed out waiting for confirmation", detail=f"{self._timeouts.tx}s"
            ) from e

    # =====================================================
    # READS
    # =====================================================

    async def get_bet_limits(self) -> BetLimits:
        min_bet, max_bet = await asyncio.gather(
            self._call(self._store.min_bet()),
            self._call(self._store.max_bet()),
        )
        return BetLimits(min_bet=min_bet, max_bet=max_bet)

    async def get_house_edge(self) -> int:
        return await self._call(self._store.house_edge())

    async def get_round(self, round_id: int) -> Round:
        return await self._call(self._store.get_round(round_id))

    async def get_player_rounds(self, player: Optional[str] = None) -> List[int]:
        return await self._call(self._store.get_player_rounds(player or self.player))

    async def get_game_stats(self) -> GameStats:
        return await self._call(self._store.get_stats())

    async def get_history(self, limit: int = 10, player: Optional[str] = None) -> List[Round]:
        """Most recent rounds of a player, newest first."""
        ids = await self.get_player_rounds(player)
        recent = list(reversed(ids))[:limit]
        return list(await asyncio.gather(*(self.get_round(i) for i in recent)))

    async def is_available(self) -> bool:
        try:
            return await self._call(self._store.is_deployed())
        except GameError:
            return False

    # =====================================================
    # BET
    # =====================================================

    async def _ensure_allowance(self, amount: int) -> Optional[str]:
        """Approve the store for `amount` if needed. Returns the approval tx hash."""
        if self._token is None:
            return None

        balance = await self._call(self._token.balance_of(self.player))
        if balance < amount:
            raise InsufficientBalance(required=amount, available=balance)

        allowance = await self._call(self._token.allowance(self.player, self._store.address))
        if allowance >= amount:
            return None

        logger.info(f"Allowance {allowance} < {amount}, requesting approval")
        try:
            receipt = await self._confirm(self._token.approve(self._store.address, amount))
        except GameError as e:
            raise ApprovalFailed(cause=e) from e

        allowance = await self._call(self._token.allowance(self.player, self._store.address))
        if allowance < amount:
            raise InsufficientAllowance(required=amount, available=allowance)
        return receipt.tx_hash

    async def place_bet(self, amount: Union[int, Decimal, str], client_seed: Optional[int] = None) -> BetPlacement:
        """
        Place a bet. An int is taken as base units, a Decimal / str as
        token units ("0.5" = 0.5 RGC).

        Raises:
            BetOutOfRange, InsufficientBalance, InsufficientAllowance,
            ApprovalFailed, UserRejected, ContractUnavailable,
            RoundIdIndeterminate (bet accepted, id unknown), GameError.
        """
        if not isinstance(amount, int):
            amount = to_base_units(amount)
        if client_seed is None:
            client_seed = generate_client_seed()

        limits = await self.get_bet_limits()
        if not limits.contains(amount):
            raise BetOutOfRange(amount=amount, min_bet=limits.min_bet, max_bet=limits.max_bet)

        approval_tx = await self._ensure_allowance(amount)
        known_rounds = set(await self.get_player_rounds())

        try:
            receipt = await self._confirm(self._store.place_bet(amount, client_seed))
        except ContractUnavailable:
            landed = await self.reconcile_bet(known_rounds, amount, client_seed)
            if landed is None:
                raise
            logger.warning(f"Bet confirmation timed out but round {landed} exists")
            return BetPlacement(landed, "", amount, client_seed, approval_tx)

        for event in receipt.events:
            if event.name == EventName.BET_PLACED.value and event.round_id is not None:
                logger.info(f"Bet placed: round {event.round_id} tx {receipt.tx_hash}")
                return BetPlacement(event.round_id, receipt.tx_hash, amount, client_seed, approval_tx)

        raise RoundIdIndeterminate(tx_hash=receipt.tx_hash)

    async def reconcile_bet(self, known_rounds: Set[int], amount: int, client_seed: int) -> Optional[int]:
        """
        Find a bet that landed without us seeing its receipt: a round that
        is not in `known_rounds` and matches amount and client seed.
        """
        try:
            ids = await self.get_player_rounds()
        except GameError as e:
            logger.warning(f"Reconciliation failed: {e}")
            return None
        for round_id in sorted(set(ids) - set(known_rounds), reverse=True):
            rnd = await self.get_round(round_id)
            if rnd.bet_amount == amount and rnd.client_seed == client_seed:
                return round_id
        return None

    # =====================================================
    # CASH OUT
    # =====================================================

    async def wait_for_reveal(self, round_id: int) -> Round:
        """Poll until the crash point is revealed (or the round settles)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeouts.reveal_wait
        while True:
            rnd = await self.get_round(round_id)
            if rnd.revealed or rnd.settled:
                return rnd
            if loop.time() >= deadline:
                raise CrashPending(detail=f"round {round_id}")
            await asyncio.sleep(self._timeouts.poll)

    async def cash_out(self, round_id: int, multiplier: Union[int, Decimal, float, str]) -> CashOutResult:
        """
        Cash out at the locally observed multiplier (scaled by 100 when an
        int, otherwise a decimal multiplier truncated to 2 digits). The
        store decides whether it is still valid.

        Raises:
            AlreadyCashedOut, RoundAlreadySettled, TooLateCrashed,
            CrashPending, ContractUnavailable, GameError.
        """
        mult = multiplier if isinstance(multiplier, int) else multiplier_to_int(multiplier)

        rnd = await self.get_round(round_id)
        if not rnd.exists:
            raise GameError("Round not found", detail=f"round {round_id}")
        if rnd.cash_out_multiplier > 0:
            raise AlreadyCashedOut()
        if rnd.settled:
            raise RoundAlreadySettled()
        if not rnd.revealed:
            rnd = await self.wait_for_reveal(round_id)
            if rnd.settled:
                raise RoundAlreadySettled()

        try:
            receipt = await self._confirm(self._store.cash_out(round_id, mult))
        except ContractUnavailable:
            result = await self._reconcile_cash_out(round_id, mult, "")
            if result is None:
                raise
            return result

        event = receipt.find(EventName.CASHED_OUT.value)
        if event is not None:
            winnings = int(event.args["winnings"])
            logger.info(f"Cashed out round {round_id} at {mult}: won {winnings}")
            return CashOutResult(round_id, int(event.args["multiplier"]), winnings, receipt.tx_hash)

        result = await self._reconcile_cash_out(round_id, mult, receipt.tx_hash)
        if result is None:
            raise GameError("Cash out confirmed without a CashedOut event", detail=receipt.tx_hash)
        return result

    async def cash_out_now(self, round_id: int, clock: MultiplierClock) -> CashOutResult:
        """Cash out at whatever the animation currently shows."""
        if clock.state == DisplayState.CRASHED:
            raise TooLateCrashed(detail=f"round {round_id}")
        return await self.cash_out(round_id, clock.cash_out_value())

    async def _reconcile_cash_out(self, round_id: int, mult: int, tx_hash: str) -> Optional[CashOutResult]:
        rnd = await self.get_round(round_id)
        if not (rnd.won and rnd.cash_out_multiplier == mult):
            return None
        # No event to read: recompute with the store's own edge
        edge = await self.get_house_edge()
        winnings = compute_winnings(rnd.bet_amount, mult, edge)
        logger.warning(f"Round {round_id} cash-out reconciled from round state")
        return CashOutResult(round_id, mult, winnings, tx_hash, reconciled=True)
