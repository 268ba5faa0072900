# config.py
"""
Configuration.

Everything comes from environment variables (a local .env is loaded for
development). GameConfig holds the contract defaults used by the local
store, RevealerConfig the auto-revealer tunables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# =========================
# CHAIN
# =========================

RPC_URL = os.getenv("RPC_URL", os.getenv("POLYGON_RPC_URL", "http://127.0.0.1:8545"))
CRASH_GAME_ADDRESS = os.getenv("CRASH_GAME_ADDRESS", "")
RGC_TOKEN_ADDRESS = os.getenv("RGC_TOKEN_ADDRESS", "")
ADMIN_PRIVATE_KEY = os.getenv("ADMIN_PRIVATE_KEY", os.getenv("PRIVATE_KEY", ""))

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./rogue_crash.db")
DB_ECHO = _env_bool("DB_ECHO", False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Demo mode runs the game against the in-process store instead of a chain
DEMO_MODE = _env_bool("DEMO_MODE", not CRASH_GAME_ADDRESS)
RUN_REVEALER = _env_bool("RUN_REVEALER", True)


class GameConfig:
    # --- CONTRACT DEFAULTS (wei, 18 decimals) ---
    MIN_BET = 10**15            # 0.001 RGC
    MAX_BET = 10 * 10**18       # 10 RGC
    HOUSE_EDGE_BPS = 200        # 2%

    # --- CLIENT ---
    # Multiplier = 1.0 + elapsed / GROWTH_PERIOD_SEC
    GROWTH_PERIOD_SEC = 1.0
    TICK_INTERVAL_SEC = 1 / 60

    # How long the controller waits for a tx confirmation
    TX_TIMEOUT_SEC = float(os.getenv("TX_TIMEOUT_SEC", "60"))
    # How long cash_out waits for the revealer before giving up
    REVEAL_WAIT_TIMEOUT_SEC = float(os.getenv("REVEAL_WAIT_TIMEOUT_SEC", "30"))
    POLL_INTERVAL_SEC = 1.0

    # --- CHAIN ---
    GAS_BUFFER = 50_000
    LOG_POLL_INTERVAL_SEC = 2.0


@dataclass
class RevealerConfig:
    # Simulated game duration before the reveal
    min_delay: float = 3.0
    max_delay: float = 10.0
    # Window the player has to cash out after the reveal
    grace_period: float = 5.0
    # Rounds checked on startup / on each sweep
    scan_window: int = 10
    sweep_interval: float = 60.0

    max_retries: int = 5
    retry_base_delay: float = 2.0
    retry_max_delay: float = 60.0

    seed_commitments: bool = True
    commitment_pool_size: int = 3

    @classmethod
    def from_env(cls, prefix: str = "REVEALER_") -> "RevealerConfig":
        def num(name: str, default: float, cast=float):
            raw: Optional[str] = os.getenv(prefix + name)
            return cast(raw) if raw is not None else default

        defaults = cls()
        return cls(
            min_delay=num("MIN_DELAY", defaults.min_delay),
            max_delay=num("MAX_DELAY", defaults.max_delay),
            grace_period=num("GRACE_PERIOD", defaults.grace_period),
            scan_window=num("SCAN_WINDOW", defaults.scan_window, int),
            sweep_interval=num("SWEEP_INTERVAL", defaults.sweep_interval),
            max_retries=num("MAX_RETRIES", defaults.max_retries, int),
            retry_base_delay=num("RETRY_BASE_DELAY", defaults.retry_base_delay),
            retry_max_delay=num("RETRY_MAX_DELAY", defaults.retry_max_delay),
            seed_commitments=_env_bool(prefix + "SEED_COMMITMENTS", defaults.seed_commitments),
            commitment_pool_size=num("COMMITMENT_POOL_SIZE", defaults.commitment_pool_size, int),
        )
