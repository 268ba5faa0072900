# utils.py
"""
Utility functions for the Rogue Crash game

Includes:
- Provably Fair crash-point derivation (keccak over packed uint256 seeds)
- Server seed commitments (commit-reveal)
- Token / multiplier fixed-point conversion and formatting
- Production-grade Logging

Compatibility:
- Values match the on-chain contract bit for bit (Solidity abi.encodePacked)
"""

from __future__ import annotations

import secrets
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union, Optional, Tuple

from web3 import Web3

# =========================
# LOGGING CONFIG
# =========================

logger = logging.getLogger("rogue_crash.utils")

# =========================
# CONSTANTS
# =========================

UINT256_MAX = 2**256 - 1

# Crash point = CRASH_FLOOR + (prefix % CRASH_RANGE), scaled by 100
CRASH_FLOOR = 100
CRASH_RANGE = 900
PREFIX_BYTES = 4

MULTIPLIER_SCALE = 100
TOKEN_DECIMALS = 18
BASIS_POINTS = 10_000

ZERO_HASH = "0x" + "00" * 32

# =========================
# RANDOM & PROVABLY FAIR
# =========================

def _check_uint256(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"{name} out of uint256 range")
    return value


def derive_crash_point(client_seed: int, server_seed: int) -> int:
    """
    Derive the crash multiplier (scaled by 100) for a seed pair.

    keccak256(abi.encodePacked(uint256 clientSeed, uint256 serverSeed)),
    first 4 bytes read big-endian, reduced to [100, 999].

    Raises:
        ValueError: if server_seed is 0 (seed not revealed yet).
    """
    _check_uint256("client_seed", client_seed)
    _check_uint256("server_seed", server_seed)
    if server_seed == 0:
        raise ValueError("Server seed not revealed; crash point unknown")

    digest = Web3.solidity_keccak(["uint256", "uint256"], [client_seed, server_seed])
    prefix = int.from_bytes(bytes(digest[:PREFIX_BYTES]), "big")
    return CRASH_FLOOR + (prefix % CRASH_RANGE)


def commit_server_seed(server_seed: int) -> str:
    """
    Commitment published before a bet: keccak256(uint256 serverSeed) as 0x-hex.
    """
    _check_uint256("server_seed", server_seed)
    return "0x" + bytes(Web3.solidity_keccak(["uint256"], [server_seed])).hex()


def normalize_hash(value: Union[str, bytes, None]) -> str:
    """Lower-case 0x-prefixed 32-byte hex. None/empty maps to the zero hash."""
    if value is None:
        return ZERO_HASH
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).hex()
    value = value.lower()
    if value.startswith("0x"):
        value = value[2:]
    if not value:
        return ZERO_HASH
    if len(value) != 64:
        raise ValueError(f"not a 32-byte hash: {value}")
    return "0x" + value


def has_commitment(server_seed_hash: Union[str, bytes, None]) -> bool:
    return normalize_hash(server_seed_hash) != ZERO_HASH


def verify_commitment(server_seed: int, server_seed_hash: Union[str, bytes]) -> bool:
    return commit_server_seed(server_seed) == normalize_hash(server_seed_hash)


def verify_round(
    client_seed: int,
    server_seed: int,
    crash_multiplier: int,
    server_seed_hash: Union[str, bytes, None] = None,
) -> bool:
    """
    Player-side fairness audit.

    Returns True if the revealed seeds reproduce the recorded crash point and,
    when the round carried a commitment, the seed hashes to it.
    """
    if server_seed == 0:
        return False
    if has_commitment(server_seed_hash) and not verify_commitment(server_seed, server_seed_hash):
        return False
    return derive_crash_point(client_seed, server_seed) == crash_multiplier


def modulo_bias() -> Tuple[int, float]:
    """
    The reduction `prefix % 900` over a 32-bit prefix is not perfectly uniform:
    the lowest `2**32 % 900` residues get one extra preimage each.

    Returns (favoured_residues, relative_bias_of_a_favoured_residue).
    """
    space = 2 ** (8 * PREFIX_BYTES)
    favoured = space % CRASH_RANGE
    base = space // CRASH_RANGE
    return favoured, 1.0 / base


def generate_server_seed() -> int:
    """Cryptographically secure, non-zero 256-bit server seed."""
    seed = 0
    while seed == 0:
        seed = secrets.randbits(256)
    return seed


def generate_client_seed(upper: int = 1_000_000) -> int:
    """Client seed picked on the player's behalf."""
    return secrets.randbelow(upper)


def generate_tx_hash() -> str:
    return "0x" + secrets.token_hex(32)

# =========================
# FIXED POINT
# =========================

NumberType = Union[float, Decimal, int, str]

def to_base_units(amount: NumberType, decimals: int = TOKEN_DECIMALS) -> int:
    """
    Token units -> integer base units (like ethers.parseEther).
    Floats go through str() so 0.1 stays 0.1.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Invalid token amount: {amount!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid token amount: {amount!r}")
    scaled = (value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(amount: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    return Decimal(int(amount)) / (Decimal(10) ** decimals)


def multiplier_to_int(mult: NumberType) -> int:
    """1.2399 -> 123. Truncates, never rounds up."""
    value = Decimal(str(mult)) * MULTIPLIER_SCALE
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def multiplier_to_decimal(mult: int) -> Decimal:
    return (Decimal(int(mult)) / MULTIPLIER_SCALE).quantize(Decimal("0.01"))


def compute_winnings(bet_amount: int, multiplier: int, house_edge_bps: int) -> int:
    """bet * multiplier/100 * (1 - edge), integer math in base units."""
    return bet_amount * multiplier * (BASIS_POINTS - house_edge_bps) // (MULTIPLIER_SCALE * BASIS_POINTS)

# =========================
# FORMATTING
# =========================

def format_tokens(amount: int, symbol: str = "RGC") -> str:
    """Base units -> '12.5 RGC'."""
    try:
        value = from_base_units(amount).normalize()
        text = format(value, "f")
        return f"{text} {symbol}"
    except (ValueError, TypeError, InvalidOperation):
        logger.warning(f"Invalid token amount for formatting: {amount}")
        return f"0 {symbol}"


def format_multiplier(mult: int) -> str:
    """
    Format a scaled multiplier (e.g. 150 -> 'x1.50').
    """
    try:
        return f"x{multiplier_to_decimal(mult)}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def format_timestamp(ts: Optional[float] = None) -> str:
    """
    Return ISO formatted timestamp.
    Defaults to now if no timestamp provided.
    """
    try:
        if ts is not None:
            dt = datetime.fromtimestamp(ts)
        else:
            dt = datetime.now()
        return dt.isoformat(timespec="seconds")
    except (OverflowError, OSError, ValueError):
        return datetime.now().isoformat(timespec="seconds")

# =========================
# LOGGING
# =========================

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
