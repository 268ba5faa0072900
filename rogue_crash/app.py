# app.py
"""
Rogue Crash – HTTP Entry Point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Read-only game API (limits, stats, rounds, player history)
- Provably fair audit endpoint (recompute a crash point from its seeds)
- Demo mode: full game loop against the in-process store
- Optional in-process auto-revealer (background task)

Integration:
- Uses controller.py (GameManager) for every player-facing call
- Uses engine.py (demo) or chain.py (deployed contracts) as the round store
- Uses db.py for the revealer's seed vault and journal
"""

from __future__ import annotations

import logging
from decimal import Decimal
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import (
    FastAPI,
    HTTPException,
    Query,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator
from web3 import Web3

from . import config
from .config import GameConfig, RevealerConfig
from .controller import GameManager
from .db import AsyncSessionLocal, init_db
from .engine import LocalCrashGame, create_local_game
from .errors import ErrorKind, GameError
from .revealer import CrashRevealer
from .store import RoundStore, TokenLedger
from .utils import (
    configure_logging,
    derive_crash_point,
    from_base_units,
    has_commitment,
    modulo_bias,
    multiplier_to_decimal,
    to_base_units,
    verify_commitment,
    verify_round,
)

# =====================================================
# LOGGING & CONFIG
# =====================================================

configure_logging(config.LOG_LEVEL)
logger = logging.getLogger("rogue_crash.app")

DEMO_OPERATOR = "0x" + "0e" * 20

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class _AddressModel(BaseModel):
    address: str = Field(..., min_length=42, max_length=42)

    @field_validator("address")
    @classmethod
    def check_address(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError("Invalid address")
        return value


class FaucetRequest(_AddressModel):
    amount: Decimal = Field(..., gt=0, le=1000)


class BetRequest(_AddressModel):
    amount: Decimal = Field(..., gt=0)  # token units, converted to base units
    client_seed: Optional[int] = Field(None, ge=0, lt=2**256)


class CashoutRequest(_AddressModel):
    round_id: int = Field(..., gt=0)
    multiplier: Decimal = Field(..., ge=1)


class VerifyRequest(BaseModel):
    client_seed: int = Field(..., ge=0, lt=2**256)
    server_seed: int = Field(..., gt=0, lt=2**256)
    server_seed_hash: Optional[str] = None
    crash_multiplier: Optional[int] = Field(None, ge=100)

# =====================================================
# GAME CONTEXT
# =====================================================

class GameContext:
    """
    Wires stores, managers and the revealer for one deployment.

    In demo mode every player address gets its own LocalRoundStore view of
    a shared LocalCrashGame; otherwise the API is read-only over the chain.
    """

    def __init__(
        self,
        store: RoundStore,
        *,
        game: Optional[LocalCrashGame] = None,
        revealer: Optional[CrashRevealer] = None,
    ) -> None:
        self.store = store
        self.game = game
        self.revealer = revealer
        self.reader = GameManager(store)
        self._managers: Dict[str, GameManager] = {}

    @property
    def demo(self) -> bool:
        return self.game is not None

    def manager_for(self, address: str) -> GameManager:
        if self.game is None:
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Play endpoints are only available in demo mode")
        key = address.lower()
        if key not in self._managers:
            token: TokenLedger = self.game.token.connect(address)
            self._managers[key] = GameManager(self.game.connect(address), token)
        return self._managers[key]

    @classmethod
    def demo_context(cls, revealer_config: Optional[RevealerConfig] = None, sessionmaker=None) -> "GameContext":
        game = create_local_game(DEMO_OPERATOR)
        operator_store = game.connect(DEMO_OPERATOR)
        revealer = CrashRevealer(
            operator_store,
            config=revealer_config or RevealerConfig.from_env(),
            sessionmaker=sessionmaker,
        )
        return cls(operator_store, game=game, revealer=revealer)

    @classmethod
    def chain_context(cls, sessionmaker=None) -> "GameContext":
        from .chain import connect_chain

        store, _ = connect_chain(config.RPC_URL, config.ADMIN_PRIVATE_KEY, config.CRASH_GAME_ADDRESS)
        revealer = CrashRevealer(store, config=RevealerConfig.from_env(), sessionmaker=sessionmaker)
        return cls(store, revealer=revealer)


def _build_context() -> GameContext:
    if config.DEMO_MODE:
        logger.info("Demo mode: using the in-process round store")
        return GameContext.demo_context(sessionmaker=AsyncSessionLocal)
    return GameContext.chain_context(sessionmaker=AsyncSessionLocal)

# =====================================================
# ERROR HANDLERS
# =====================================================

ERROR_STATUS = {
    ErrorKind.USER_REJECTED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.BET_OUT_OF_RANGE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INSUFFICIENT_BALANCE: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.INSUFFICIENT_ALLOWANCE: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.APPROVAL_FAILED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.ALREADY_CASHED_OUT: status.HTTP_409_CONFLICT,
    ErrorKind.ROUND_ALREADY_SETTLED: status.HTTP_409_CONFLICT,
    ErrorKind.TOO_LATE_CRASHED: status.HTTP_409_CONFLICT,
    ErrorKind.CRASH_PENDING: status.HTTP_425_TOO_EARLY,
    ErrorKind.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorKind.ROUND_ID_INDETERMINATE: status.HTTP_202_ACCEPTED,
    ErrorKind.CONTRACT_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def game_error_handler(_, exc: GameError):
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=exc.to_dict(),
    )


async def value_error_handler(_, exc: ValueError):
    return JSONResponse(
        status_code=422,
        content={"error": "Value Error", "detail": str(exc)},
    )

# =====================================================
# APP FACTORY
# =====================================================

def create_app(context: Optional[GameContext] = None, run_revealer: Optional[bool] = None) -> FastAPI:
    run_revealer = config.RUN_REVEALER if run_revealer is None else run_revealer

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manages startup and shutdown events.
        """
        logger.info("Startup: Initializing Database...")
        await init_db()

        ctx = context or _build_context()
        app.state.game = ctx

        if run_revealer and ctx.revealer is not None:
            logger.info("Startup: Launching crash revealer...")
            await ctx.revealer.start()

        yield

        logger.info("Shutdown: Cleaning up...")
        if run_revealer and ctx.revealer is not None:
            await ctx.revealer.stop()

    app = FastAPI(
        title="Rogue Crash API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(GameError, game_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    _register_routes(app)
    return app


def _ctx(app: FastAPI) -> GameContext:
    return app.state.game

# =====================================================
# ROUTES
# =====================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/api/health")
    async def api_health():
        ctx = _ctx(app)
        return {
            "status": "ok",
            "demo": ctx.demo,
            "contract": ctx.store.address,
            "deployed": await ctx.reader.is_available(),
            "revealer_rounds": len(ctx.revealer.processed) if ctx.revealer else 0,
        }

    # =====================================================
    # API – GAME INFO
    # =====================================================

    @app.get("/api/config")
    async def api_config():
        ctx = _ctx(app)
        limits = await ctx.reader.get_bet_limits()
        edge = await ctx.reader.get_house_edge()
        return {
            "min_bet": str(from_base_units(limits.min_bet)),
            "max_bet": str(from_base_units(limits.max_bet)),
            "house_edge_bps": edge,
            "growth_period_sec": GameConfig.GROWTH_PERIOD_SEC,
        }

    @app.get("/api/stats")
    async def api_stats():
        stats = await _ctx(app).reader.get_game_stats()
        return stats.to_dict()

    @app.get("/api/rounds/{round_id}")
    async def api_round(round_id: int):
        rnd = await _ctx(app).reader.get_round(round_id)
        if not rnd.exists:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Round not found")
        return rnd.to_dict()

    @app.get("/api/players/{address}/rounds")
    async def api_player_rounds(address: str, limit: int = Query(10, ge=1, le=100)):
        if not Web3.is_address(address):
            raise HTTPException(422, "Invalid address")
        history = await _ctx(app).reader.get_history(limit=limit, player=address)
        return {"address": address, "rounds": [rnd.to_dict() for rnd in history]}

    # =====================================================
    # API – PROVABLY FAIR
    # =====================================================

    @app.post("/api/verify")
    async def api_verify(payload: VerifyRequest):
        """
        Recompute a round's crash point from its seeds so players can audit it.
        """
        crash = derive_crash_point(payload.client_seed, payload.server_seed)
        result = {
            "crash_multiplier": crash,
            "crash_point": str(multiplier_to_decimal(crash)),
            "valid": None,
            "matches_commitment": None,
            "modulo_bias": modulo_bias()[1],
        }
        if has_commitment(payload.server_seed_hash):
            result["matches_commitment"] = verify_commitment(payload.server_seed, payload.server_seed_hash)
        if payload.crash_multiplier is not None:
            result["valid"] = verify_round(
                payload.client_seed,
                payload.server_seed,
                payload.crash_multiplier,
                payload.server_seed_hash,
            )
        return result

    # =====================================================
    # API – DEMO PLAY
    # =====================================================

    @app.post("/api/demo/faucet")
    async def api_faucet(payload: FaucetRequest):
        ctx = _ctx(app)
        if ctx.game is None:
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Faucet is only available in demo mode")
        ctx.game.token.mint(payload.address, to_base_units(payload.amount))
        return {"address": payload.address, "balance": str(from_base_units(ctx.game.token.balance(payload.address)))}

    @app.post("/api/demo/bet")
    async def api_place_bet(payload: BetRequest):
        ctx = _ctx(app)
        manager = ctx.manager_for(payload.address)
        placement = await manager.place_bet(payload.amount, payload.client_seed)
        return {
            "status": "accepted",
            "round_id": placement.round_id,
            "tx_hash": placement.tx_hash,
            "client_seed": str(placement.client_seed),
            "balance": str(from_base_units(ctx.game.token.balance(payload.address))),
        }

    @app.post("/api/demo/cashout")
    async def api_cashout(payload: CashoutRequest):
        ctx = _ctx(app)
        manager = ctx.manager_for(payload.address)
        result = await manager.cash_out(payload.round_id, payload.multiplier)
        return {
            "status": "cashed_out",
            "round_id": result.round_id,
            "multiplier": str(multiplier_to_decimal(result.multiplier)),
            "winnings": str(from_base_units(result.winnings)),
            "tx_hash": result.tx_hash,
            "balance": str(from_base_units(ctx.game.token.balance(payload.address))),
        }


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("rogue_crash.app:app", host="0.0.0.0", port=8000)
