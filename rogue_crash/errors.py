# errors.py
"""
Game error taxonomy.

Callers never see raw transport errors: every failure coming out of a
store, token or signer is mapped by `classify_error` onto one of the
tagged `GameError` subclasses below. The mapping is a pure function so it
can be tested without a chain.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

import aiohttp
from web3.exceptions import ContractLogicError, TimeExhausted


class ErrorKind(str, Enum):
    USER_REJECTED = "UserRejected"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INSUFFICIENT_ALLOWANCE = "InsufficientAllowance"
    BET_OUT_OF_RANGE = "BetOutOfRange"
    ALREADY_CASHED_OUT = "AlreadyCashedOut"
    ROUND_ALREADY_SETTLED = "RoundAlreadySettled"
    TOO_LATE_CRASHED = "TooLateCrashed"
    CONTRACT_UNAVAILABLE = "ContractUnavailable"
    ROUND_ID_INDETERMINATE = "RoundIdIndeterminate"
    APPROVAL_FAILED = "ApprovalFailed"
    CRASH_PENDING = "CrashPending"
    UNAUTHORIZED = "Unauthorized"
    COMMITMENT_MISMATCH = "CommitmentMismatch"
    UNKNOWN = "Unknown"


# =========================
# LOW LEVEL
# =========================

class ContractRevert(Exception):
    """A state-changing call was rejected by the round store / token."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TransactionReverted(Exception):
    """Mined receipt with status 0 (no revert reason available)."""

    def __init__(self, tx_hash: str) -> None:
        super().__init__(f"Transaction {tx_hash} reverted")
        self.tx_hash = tx_hash


# =========================
# TAXONOMY
# =========================

class GameError(Exception):
    """Base game error"""

    kind = ErrorKind.UNKNOWN
    retryable = False
    default_message = "An unknown error occurred"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.detail = detail

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        data = {"error": self.kind.value, "detail": self.message}
        if self.detail:
            data["cause"] = self.detail
        return data


class UserRejected(GameError):
    kind = ErrorKind.USER_REJECTED
    default_message = "Transaction rejected by user"


class _MissingFunds(GameError):
    """Precondition failure carrying the missing amount in base units."""

    def __init__(self, message=None, *, required: Optional[int] = None,
                 available: Optional[int] = None, detail=None) -> None:
        super().__init__(message, detail=detail)
        self.required = required
        self.available = available

    @property
    def missing(self) -> Optional[int]:
        if self.required is None or self.available is None:
            return None
        return max(self.required - self.available, 0)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.missing is not None:
            data["missing"] = str(self.missing)
        return data


class InsufficientBalance(_MissingFunds):
    kind = ErrorKind.INSUFFICIENT_BALANCE
    default_message = "Insufficient RGC balance"


class InsufficientAllowance(_MissingFunds):
    kind = ErrorKind.INSUFFICIENT_ALLOWANCE
    default_message = "Please approve RGC tokens first"


class BetOutOfRange(GameError):
    kind = ErrorKind.BET_OUT_OF_RANGE
    default_message = "Bet amount is outside allowed limits"

    def __init__(self, message=None, *, amount: Optional[int] = None,
                 min_bet: Optional[int] = None, max_bet: Optional[int] = None, detail=None) -> None:
        super().__init__(message, detail=detail)
        self.amount = amount
        self.min_bet = min_bet
        self.max_bet = max_bet


class AlreadyCashedOut(GameError):
    kind = ErrorKind.ALREADY_CASHED_OUT
    default_message = "You already cashed out this round"


class RoundAlreadySettled(GameError):
    kind = ErrorKind.ROUND_ALREADY_SETTLED
    default_message = "This round has already ended"


class TooLateCrashed(GameError):
    kind = ErrorKind.TOO_LATE_CRASHED
    default_message = "Too late! Rocket already crashed"


class ContractUnavailable(GameError):
    kind = ErrorKind.CONTRACT_UNAVAILABLE
    retryable = True
    default_message = "Game contract unavailable, try again shortly"


class CrashPending(GameError):
    kind = ErrorKind.CRASH_PENDING
    retryable = True
    default_message = "Crash point not revealed yet"


class Unauthorized(GameError):
    kind = ErrorKind.UNAUTHORIZED
    default_message = "Caller is not allowed to perform this action"


class CommitmentMismatch(GameError):
    kind = ErrorKind.COMMITMENT_MISMATCH
    default_message = "Server seed does not match its commitment"


class RoundIdIndeterminate(GameError):
    """
    The bet transaction was mined (funds moved) but no BetPlaced event could
    be decoded. The bet did NOT fail: reconcile via get_player_rounds.
    """

    kind = ErrorKind.ROUND_ID_INDETERMINATE
    default_message = "Could not determine round ID from transaction"

    def __init__(self, message=None, *, tx_hash: Optional[str] = None, detail=None) -> None:
        super().__init__(message, detail=detail)
        self.tx_hash = tx_hash


class ApprovalFailed(GameError):
    kind = ErrorKind.APPROVAL_FAILED
    default_message = "Failed to approve tokens"

    def __init__(self, message=None, *, cause: Optional[GameError] = None, detail=None) -> None:
        super().__init__(message, detail=detail or (cause.message if cause else None))
        self.cause = cause
        self.retryable = bool(cause and cause.retryable)


# =========================
# CLASSIFICATION
# =========================

# Revert reason substrings -> error class. First match wins.
REVERT_REASONS = (
    ("insufficient allowance", InsufficientAllowance),
    ("insufficient balance", InsufficientBalance),
    ("transfer amount exceeds balance", InsufficientBalance),
    ("invalid bet amount", BetOutOfRange),
    ("multiplier too high", TooLateCrashed),
    ("already cashed out", AlreadyCashedOut),
    ("round already settled", RoundAlreadySettled),
    ("crash not revealed", CrashPending),
    ("not owner", Unauthorized),
    ("not round player", Unauthorized),
    ("caller is not the owner", Unauthorized),
    ("seed does not match commitment", CommitmentMismatch),
    ("missing revert data", ContractUnavailable),
)

USER_REJECTED_CODES = (4001, "ACTION_REJECTED")
USER_REJECTED_TEXT = ("user rejected", "user denied", "rejected by user")


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, ContractRevert):
        return exc.reason
    if isinstance(exc, ContractLogicError):
        return str(getattr(exc, "message", None) or exc)
    return str(exc)


def classify_error(exc: BaseException) -> GameError:
    """
    Map any exception raised while talking to the store/token/signer onto
    the game taxonomy. GameErrors pass through untouched.
    """
    if isinstance(exc, GameError):
        return exc

    text = _error_text(exc)
    lowered = text.lower()

    code = getattr(exc, "code", None)
    if code in USER_REJECTED_CODES or any(t in lowered for t in USER_REJECTED_TEXT):
        return UserRejected(detail=text)

    if isinstance(exc, (ContractRevert, ContractLogicError, TransactionReverted)):
        for needle, error_cls in REVERT_REASONS:
            if needle in lowered:
                return error_cls(detail=text)
        return GameError(text or GameError.default_message, detail=text)

    if isinstance(exc, (asyncio.TimeoutError, TimeExhausted, aiohttp.ClientError, ConnectionError)):
        return ContractUnavailable(detail=text or type(exc).__name__)

    for needle, error_cls in REVERT_REASONS:
        if needle in lowered:
            return error_cls(detail=text)

    return GameError(text or GameError.default_message, detail=type(exc).__name__)
