import asyncio

import aiohttp
import pytest
from web3.exceptions import ContractLogicError

from rogue_crash.errors import (
    AlreadyCashedOut,
    ApprovalFailed,
    BetOutOfRange,
    CommitmentMismatch,
    ContractRevert,
    ContractUnavailable,
    CrashPending,
    ErrorKind,
    GameError,
    InsufficientAllowance,
    InsufficientBalance,
    RoundAlreadySettled,
    TooLateCrashed,
    TransactionReverted,
    Unauthorized,
    UserRejected,
    classify_error,
)


class WalletError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


@pytest.mark.parametrize(
    "reason,expected",
    [
        ("Invalid bet amount", BetOutOfRange),
        ("Insufficient balance", InsufficientBalance),
        ("Insufficient allowance", InsufficientAllowance),
        ("ERC20: insufficient allowance", InsufficientAllowance),
        ("ERC20: transfer amount exceeds balance", InsufficientBalance),
        ("Multiplier too high", TooLateCrashed),
        ("Already cashed out", AlreadyCashedOut),
        ("Round already settled", RoundAlreadySettled),
        ("Crash not revealed", CrashPending),
        ("Not owner", Unauthorized),
        ("Not round player", Unauthorized),
        ("Seed does not match commitment", CommitmentMismatch),
    ],
)
def test_revert_reasons(reason, expected):
    error = classify_error(ContractRevert(reason))
    assert type(error) is expected
    assert error.detail == reason


def test_unknown_revert_keeps_reason():
    error = classify_error(ContractRevert("Round not found"))
    assert error.kind is ErrorKind.UNKNOWN
    assert error.message == "Round not found"


def test_contract_logic_error():
    error = classify_error(ContractLogicError("execution reverted: Multiplier too high"))
    assert isinstance(error, TooLateCrashed)


def test_mined_revert_without_reason():
    error = classify_error(TransactionReverted("0xabc"))
    assert error.kind is ErrorKind.UNKNOWN
    assert "0xabc" in error.message


@pytest.mark.parametrize("code", [4001, "ACTION_REJECTED"])
def test_user_rejected_by_code(code):
    assert isinstance(classify_error(WalletError("nope", code)), UserRejected)


def test_user_rejected_by_text():
    error = classify_error(RuntimeError("MetaMask Tx Signature: User denied transaction signature."))
    assert isinstance(error, UserRejected)
    assert not error.retryable


@pytest.mark.parametrize(
    "exc",
    [
        asyncio.TimeoutError(),
        ConnectionError("connection refused"),
        aiohttp.ClientConnectionError("reset"),
    ],
)
def test_transport_failures_are_retryable(exc):
    error = classify_error(exc)
    assert isinstance(error, ContractUnavailable)
    assert error.retryable


def test_game_errors_pass_through():
    original = AlreadyCashedOut()
    assert classify_error(original) is original


def test_unknown_exception():
    error = classify_error(RuntimeError("boom"))
    assert type(error) is GameError
    assert error.message == "boom"
    assert error.detail == "RuntimeError"


def test_missing_funds_amount():
    error = InsufficientBalance(required=10, available=4)
    assert error.missing == 6
    assert error.to_dict() == {
        "error": "InsufficientBalance",
        "detail": "Insufficient RGC balance",
        "missing": "6",
    }
    assert InsufficientAllowance().missing is None


def test_approval_failure_mirrors_cause():
    assert ApprovalFailed(cause=ContractUnavailable()).retryable
    assert not ApprovalFailed(cause=UserRejected()).retryable
    assert ApprovalFailed(cause=UserRejected()).detail == "Transaction rejected by user"
