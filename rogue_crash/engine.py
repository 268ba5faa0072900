# engine.py
"""
Rogue Crash – In-Process Round Store

Responsibilities:
- Authoritative round ledger with the crash game contract's semantics
- Strict round lifecycle (PENDING -> REVEALED -> WON / LOST)
- Commit-reveal server seeds (commitment consumed at bet time)
- Thread-safe async logic: every state change runs under one lock, so the
  first valid call on a round wins and the loser gets a revert
- Minimal ERC20-like token ledger (balances, allowances)

Used for tests, local simulation and the API's demo mode. Production
deployments talk to the real contracts through chain.py.
"""

from __future__ import annotations

import time
import asyncio
import logging
from collections import deque
from dataclasses import replace
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from .config import GameConfig
from .errors import ContractRevert
from .models import ChainEvent, EventName, GameStats, Round, TxReceipt
from .store import RoundStore, TokenLedger
from .utils import (
    ZERO_HASH,
    compute_winnings,
    derive_crash_point,
    generate_tx_hash,
    normalize_hash,
    verify_commitment,
)

logger = logging.getLogger("rogue_crash.engine")

ZERO_ADDRESS = "0x" + "00" * 20
GAME_ADDRESS = "0x" + "c7" * 20
TOKEN_ADDRESS = "0x" + "a1" * 20


def _key(address: str) -> str:
    return address.lower()

# =========================
# TOKEN LEDGER
# =========================

class LocalToken:
    """Shared token state. Use connect() to act as an account."""

    def __init__(self, address: str = TOKEN_ADDRESS, symbol: str = "RGC") -> None:
        self.address = address
        self.symbol = symbol
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}

    def connect(self, sender: str) -> "LocalTokenClient":
        return LocalTokenClient(self, sender)

    def mint(self, to: str, amount: int) -> None:
        self._balances[_key(to)] = self._balances.get(_key(to), 0) + amount

    def balance(self, owner: str) -> int:
        return self._balances.get(_key(owner), 0)

    def allowance_of(self, owner: str, spender: str) -> int:
        return self._allowances.get((_key(owner), _key(spender)), 0)

    def set_allowance(self, owner: str, spender: str, amount: int) -> None:
        self._allowances[(_key(owner), _key(spender))] = amount

    def transfer(self, sender: str, to: str, amount: int) -> None:
        if self.balance(sender) < amount:
            raise ContractRevert("ERC20: transfer amount exceeds balance")
        self._balances[_key(sender)] -= amount
        self.mint(to, amount)

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> None:
        allowed = self.allowance_of(owner, spender)
        if allowed < amount:
            raise ContractRevert("ERC20: insufficient allowance")
        self.transfer(owner, to, amount)
        self.set_allowance(owner, spender, allowed - amount)


class LocalTokenClient(TokenLedger):

    def __init__(self, token: LocalToken, sender: str) -> None:
        self._token = token
        self._sender = sender

    @property
    def address(self) -> str:
        return self._token.address

    @property
    def sender(self) -> str:
        return self._sender

    async def balance_of(self, owner: str) -> int:
        return self._token.balance(owner)

    async def allowance(self, owner: str, spender: str) -> int:
        return self._token.allowance_of(owner, spender)

    async def approve(self, spender: str, amount: int) -> TxReceipt:
        self._token.set_allowance(self._sender, spender, amount)
        return TxReceipt(tx_hash=generate_tx_hash())

# =========================
# ROUND LEDGER
# =========================

class _Subscription:
    """Event queue registered at creation time, iterated asynchronously."""

    def __init__(self, game: "LocalCrashGame") -> None:
        self._game = game
        self._queue: "asyncio.Queue[ChainEvent]" = asyncio.Queue()
        game._subscribers.append(self._queue)

    def __aiter__(self) -> "_Subscription":
        return self

    async def __anext__(self) -> ChainEvent:
        return await self._queue.get()

    async def aclose(self) -> None:
        if self._queue in self._game._subscribers:
            self._game._subscribers.remove(self._queue)


class LocalCrashGame:
    """
    The crash game contract, in memory.
    Enforces bet limits, ownership, commit-reveal and single settlement.
    """

    def __init__(
        self,
        token: LocalToken,
        owner: str,
        *,
        address: str = GAME_ADDRESS,
        min_bet: int = GameConfig.MIN_BET,
        max_bet: int = GameConfig.MAX_BET,
        house_edge: int = GameConfig.HOUSE_EDGE_BPS,
        require_commitment: bool = False,
        confirmation_delay: float = 0.0,
    ) -> None:
        self.token = token
        self.owner = owner
        self.address = address
        self.min_bet = min_bet
        self.max_bet = max_bet
        self.house_edge = house_edge
        self.require_commitment = require_commitment
        # Receipts are returned this long after the state change is applied
        self.confirmation_delay = confirmation_delay

        self._lock = asyncio.Lock()
        self._rounds: Dict[int, Round] = {}
        self._player_rounds: Dict[str, List[int]] = {}
        self._commitments: Deque[str] = deque()
        self._subscribers: List["asyncio.Queue[ChainEvent]"] = []
        self._current_round_id = 0
        self._block_number = 0

        self.total_bets = 0
        self.total_winnings = 0
        self.total_losses = 0

    def connect(self, sender: str) -> "LocalRoundStore":
        return LocalRoundStore(self, sender)

    # =====================================================
    # INTERNALS
    # =====================================================

    def _require_owner(self, sender: str) -> None:
        if _key(sender) != _key(self.owner):
            raise ContractRevert("Not owner")

    def _require_round(self, round_id: int) -> Round:
        rnd = self._rounds.get(round_id)
        if rnd is None:
            raise ContractRevert("Round not found")
        return rnd

    def _emit(self, receipt: TxReceipt, name: EventName, **args) -> None:
        event = ChainEvent(
            name=name.value,
            args=args,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
        )
        receipt.events.append(event)

    def _new_receipt(self) -> TxReceipt:
        self._block_number += 1
        return TxReceipt(tx_hash=generate_tx_hash(), block_number=self._block_number)

    async def _confirm(self, receipt: TxReceipt) -> TxReceipt:
        for event in receipt.events:
            for queue in list(self._subscribers):
                queue.put_nowait(event)
        if self.confirmation_delay:
            await asyncio.sleep(self.confirmation_delay)
        return receipt

    def snapshot(self, round_id: int) -> Round:
        rnd = self._rounds.get(round_id)
        if rnd is None:
            return Round(round_id=round_id, player=ZERO_ADDRESS, bet_amount=0, client_seed=0)
        return replace(rnd)

    # =====================================================
    # STATE CHANGING (LOCKED)
    # =====================================================

    async def place_bet(self, sender: str, amount: int, client_seed: int) -> TxReceipt:
        async with self._lock:
            if amount < self.min_bet or amount > self.max_bet:
                raise ContractRevert("Invalid bet amount")
            if self.token.balance(sender) < amount:
                raise ContractRevert("Insufficient balance")
            if self.token.allowance_of(sender, self.address) < amount:
                raise ContractRevert("Insufficient allowance")

            seed_hash = ZERO_HASH
            if self._commitments:
                seed_hash = self._commitments.popleft()
            elif self.require_commitment:
                raise ContractRevert("No seed commitment")

            self.token.transfer_from(self.address, sender, self.address, amount)

            self._current_round_id += 1
            round_id = self._current_round_id
            self._rounds[round_id] = Round(
                round_id=round_id,
                player=sender,
                bet_amount=amount,
                client_seed=client_seed,
                server_seed_hash=seed_hash,
                timestamp=int(time.time()),
            )
            self._player_rounds.setdefault(_key(sender), []).append(round_id)
            self.total_bets += amount

            receipt = self._new_receipt()
            self._emit(receipt, EventName.BET_PLACED,
                       roundId=round_id, player=sender, amount=amount, clientSeed=client_seed)
            logger.debug(f"Round {round_id} created for {sender}")
        return await self._confirm(receipt)

    async def commit_server_seed(self, sender: str, seed_hash: str) -> TxReceipt:
        async with self._lock:
            self._require_owner(sender)
            seed_hash = normalize_hash(seed_hash)
            self._commitments.append(seed_hash)
            receipt = self._new_receipt()
            self._emit(receipt, EventName.SEED_COMMITTED, seedHash=seed_hash)
        return await self._confirm(receipt)

    async def reveal_crash(self, sender: str, round_id: int, server_seed: int) -> TxReceipt:
        async with self._lock:
            self._require_owner(sender)
            rnd = self._require_round(round_id)
            receipt = self._new_receipt()

            # Idempotent: the first reveal is final
            if rnd.crash_multiplier > 0:
                return receipt

            if server_seed == 0:
                raise ContractRevert("Invalid server seed")
            if rnd.server_seed_hash != ZERO_HASH and not verify_commitment(server_seed, rnd.server_seed_hash):
                raise ContractRevert("Seed does not match commitment")

            rnd.server_seed = server_seed
            rnd.crash_multiplier = derive_crash_point(rnd.client_seed, server_seed)
            self._emit(receipt, EventName.CRASH_REVEALED,
                       roundId=round_id, crashMultiplier=rnd.crash_multiplier, serverSeed=server_seed)
        return await self._confirm(receipt)

    async def cash_out(self, sender: str, round_id: int, multiplier: int) -> TxReceipt:
        async with self._lock:
            rnd = self._require_round(round_id)
            if _key(sender) != _key(rnd.player):
                raise ContractRevert("Not round player")
            if rnd.cash_out_multiplier > 0:
                raise ContractRevert("Already cashed out")
            if rnd.settled:
                raise ContractRevert("Round already settled")
            if rnd.crash_multiplier == 0:
                raise ContractRevert("Crash not revealed")
            if multiplier < 100:
                raise ContractRevert("Invalid multiplier")
            if multiplier > rnd.crash_multiplier:
                raise ContractRevert("Multiplier too high")

            winnings = compute_winnings(rnd.bet_amount, multiplier, self.house_edge)
            if self.token.balance(self.address) < winnings:
                raise ContractRevert("Insufficient liquidity")
            self.token.transfer(self.address, rnd.player, winnings)

            rnd.cash_out_multiplier = multiplier
            rnd.won = True
            rnd.settled = True
            self.total_winnings += winnings

            receipt = self._new_receipt()
            self._emit(receipt, EventName.CASHED_OUT,
                       roundId=round_id, player=rnd.player, multiplier=multiplier, winnings=winnings)
            self._emit(receipt, EventName.ROUND_SETTLED, roundId=round_id, won=True, payout=winnings)
        return await self._confirm(receipt)

    async def settle_loss(self, sender: str, round_id: int) -> TxReceipt:
        async with self._lock:
            self._require_owner(sender)
            rnd = self._require_round(round_id)
            if rnd.cash_out_multiplier > 0:
                raise ContractRevert("Already cashed out")
            if rnd.settled:
                raise ContractRevert("Round already settled")
            if rnd.crash_multiplier == 0:
                raise ContractRevert("Crash not revealed")

            rnd.settled = True
            rnd.won = False
            self.total_losses += rnd.bet_amount

            receipt = self._new_receipt()
            self._emit(receipt, EventName.ROUND_SETTLED, roundId=round_id, won=False, payout=0)
        return await self._confirm(receipt)

    # =====================================================
    # VIEWS
    # =====================================================

    def player_rounds(self, player: str) -> List[int]:
        return list(self._player_rounds.get(_key(player), []))

    def stats(self) -> GameStats:
        return GameStats(
            total_bets=self.total_bets,
            total_winnings=self.total_winnings,
            total_losses=self.total_losses,
            liquidity=self.token.balance(self.address),
            current_round_id=self._current_round_id,
        )

    @property
    def current_round_id(self) -> int:
        return self._current_round_id

    @property
    def pending_commitments(self) -> int:
        return len(self._commitments)


class LocalRoundStore(RoundStore):
    """LocalCrashGame seen through one account."""

    def __init__(self, game: LocalCrashGame, sender: str) -> None:
        self._game = game
        self._sender = sender

    @property
    def game(self) -> LocalCrashGame:
        return self._game

    @property
    def address(self) -> str:
        return self._game.address

    @property
    def sender(self) -> str:
        return self._sender

    async def place_bet(self, amount: int, client_seed: int) -> TxReceipt:
        return await self._game.place_bet(self._sender, amount, client_seed)

    async def reveal_crash(self, round_id: int, server_seed: int) -> TxReceipt:
        return await self._game.reveal_crash(self._sender, round_id, server_seed)

    async def cash_out(self, round_id: int, multiplier: int) -> TxReceipt:
        return await self._game.cash_out(self._sender, round_id, multiplier)

    async def settle_loss(self, round_id: int) -> TxReceipt:
        return await self._game.settle_loss(self._sender, round_id)

    async def commit_server_seed(self, seed_hash: str) -> TxReceipt:
        return await self._game.commit_server_seed(self._sender, seed_hash)

    async def get_round(self, round_id: int) -> Round:
        return self._game.snapshot(round_id)

    async def get_player_rounds(self, player: str) -> List[int]:
        return self._game.player_rounds(player)

    async def get_stats(self) -> GameStats:
        return self._game.stats()

    async def current_round_id(self) -> int:
        return self._game.current_round_id

    async def min_bet(self) -> int:
        return self._game.min_bet

    async def max_bet(self) -> int:
        return self._game.max_bet

    async def house_edge(self) -> int:
        return self._game.house_edge

    async def pending_commitments(self) -> int:
        return self._game.pending_commitments

    async def is_deployed(self) -> bool:
        return True

    def subscribe(self) -> AsyncIterator[ChainEvent]:
        return _Subscription(self._game)


def create_local_game(
    owner: str,
    *,
    liquidity: int = 1_000 * 10**18,
    token: Optional[LocalToken] = None,
    **kwargs,
) -> LocalCrashGame:
    """Game + token with the house bankroll already funded."""
    token = token or LocalToken()
    game = LocalCrashGame(token, owner, **kwargs)
    token.mint(game.address, liquidity)
    return game
