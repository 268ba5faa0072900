# models.py
"""
Domain models shared by the store adapters, the controller and the revealer.

All on-chain quantities stay integers:
- token amounts in 18-decimal base units
- multipliers scaled by 100 (150 = 1.50x)
"""

from __future__ import annotations

from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .utils import ZERO_HASH, format_timestamp, from_base_units, multiplier_to_decimal


class RoundOutcome(str, Enum):
    PENDING = "pending"     # bet placed, crash point hidden
    REVEALED = "revealed"   # crash point known, waiting for cash-out / settle
    WON = "won"
    LOST = "lost"


class EventName(str, Enum):
    BET_PLACED = "BetPlaced"
    CRASH_REVEALED = "CrashRevealed"
    CASHED_OUT = "CashedOut"
    ROUND_SETTLED = "RoundSettled"
    SEED_COMMITTED = "SeedCommitted"


@dataclass
class Round:
    round_id: int
    player: str
    bet_amount: int
    client_seed: int
    server_seed: int = 0
    server_seed_hash: str = ZERO_HASH
    crash_multiplier: int = 0
    cash_out_multiplier: int = 0
    timestamp: int = 0
    settled: bool = False
    won: bool = False

    @property
    def exists(self) -> bool:
        return self.bet_amount > 0

    @property
    def revealed(self) -> bool:
        return self.crash_multiplier > 0

    @property
    def outcome(self) -> RoundOutcome:
        if self.settled:
            return RoundOutcome.WON if self.won else RoundOutcome.LOST
        if self.revealed:
            return RoundOutcome.REVEALED
        return RoundOutcome.PENDING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["bet_amount_tokens"] = str(from_base_units(self.bet_amount))
        data["crash_point"] = str(multiplier_to_decimal(self.crash_multiplier)) if self.revealed else None
        data["placed_at"] = format_timestamp(self.timestamp) if self.timestamp else None
        # uint256 seeds overflow JSON number precision
        data["client_seed"] = str(self.client_seed)
        data["server_seed"] = str(self.server_seed)
        return data


@dataclass
class GameStats:
    total_bets: int
    total_winnings: int
    total_losses: int
    liquidity: int
    current_round_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_bets": str(from_base_units(self.total_bets)),
            "total_winnings": str(from_base_units(self.total_winnings)),
            "total_losses": str(from_base_units(self.total_losses)),
            "liquidity": str(from_base_units(self.liquidity)),
            "current_round_id": self.current_round_id,
        }


@dataclass
class BetLimits:
    min_bet: int
    max_bet: int

    def contains(self, amount: int) -> bool:
        return self.min_bet <= amount <= self.max_bet


@dataclass
class ChainEvent:
    name: str
    args: Dict[str, Any]
    tx_hash: str = ""
    block_number: int = 0

    @property
    def round_id(self) -> Optional[int]:
        value = self.args.get("roundId")
        return int(value) if value is not None else None


@dataclass
class TxReceipt:
    tx_hash: str
    events: List[ChainEvent] = field(default_factory=list)
    block_number: int = 0

    def find(self, name: str) -> Optional[ChainEvent]:
        for event in self.events:
            if event.name == name:
                return event
        return None


@dataclass
class BetPlacement:
    round_id: int
    tx_hash: str
    amount: int
    client_seed: int
    approval_tx_hash: Optional[str] = None


@dataclass
class CashOutResult:
    round_id: int
    multiplier: int
    winnings: int
    tx_hash: str
    # True when winnings were derived from round state, not the CashedOut event
    reconciled: bool = False
