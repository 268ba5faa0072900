# store.py
"""
Interfaces of the two external collaborators.

- RoundStore: the crash game contract (authoritative round ledger)
- TokenLedger: the ERC20 token the game is played with

Both are bound to one sender (like an ethers contract connected to a
signer). State-changing calls return a TxReceipt once confirmed and raise
on rejection; errors are translated by errors.classify_error.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, List

from .models import GameStats, Round, TxReceipt, ChainEvent


class TokenLedger(ABC):

    @property
    @abstractmethod
    def address(self) -> str:
        """Token contract address."""

    @property
    @abstractmethod
    def sender(self) -> str:
        """Account that signs approve() calls."""

    @abstractmethod
    async def balance_of(self, owner: str) -> int:
        ...

    @abstractmethod
    async def allowance(self, owner: str, spender: str) -> int:
        ...

    @abstractmethod
    async def approve(self, spender: str, amount: int) -> TxReceipt:
        ...


class RoundStore(ABC):

    @property
    @abstractmethod
    def address(self) -> str:
        """Game contract address (the spender for token approvals)."""

    @property
    @abstractmethod
    def sender(self) -> str:
        ...

    # --- state changing ---

    @abstractmethod
    async def place_bet(self, amount: int, client_seed: int) -> TxReceipt:
        """Emits BetPlaced(roundId, player, amount, clientSeed)."""

    @abstractmethod
    async def reveal_crash(self, round_id: int, server_seed: int) -> TxReceipt:
        """Owner only. A second reveal for the same round is a no-op."""

    @abstractmethod
    async def cash_out(self, round_id: int, multiplier: int) -> TxReceipt:
        """Emits CashedOut(roundId, player, multiplier, winnings)."""

    @abstractmethod
    async def settle_loss(self, round_id: int) -> TxReceipt:
        """Owner only. Emits RoundSettled(roundId, false, 0)."""

    @abstractmethod
    async def commit_server_seed(self, seed_hash: str) -> TxReceipt:
        """Owner only. Queue a commitment consumed by the next bet."""

    # --- views ---

    @abstractmethod
    async def get_round(self, round_id: int) -> Round:
        ...

    @abstractmethod
    async def get_player_rounds(self, player: str) -> List[int]:
        ...

    @abstractmethod
    async def get_stats(self) -> GameStats:
        ...

    @abstractmethod
    async def current_round_id(self) -> int:
        ...

    @abstractmethod
    async def min_bet(self) -> int:
        ...

    @abstractmethod
    async def max_bet(self) -> int:
        ...

    @abstractmethod
    async def house_edge(self) -> int:
        """Basis points (200 = 2%)."""

    @abstractmethod
    async def pending_commitments(self) -> int:
        ...

    @abstractmethod
    async def is_deployed(self) -> bool:
        ...

    # --- events ---

    @abstractmethod
    def subscribe(self) -> AsyncIterator[ChainEvent]:
        """Async iterator over events emitted after the call."""
