import os
import asyncio
import tempfile

# Must be set before rogue_crash.config is imported
_DB_DIR = tempfile.mkdtemp(prefix="rogue_crash_tests_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/app.db"
os.environ["DEMO_MODE"] = "true"
os.environ["RUN_REVEALER"] = "false"
os.environ["LOG_LEVEL"] = "DEBUG"

import pytest
import pytest_asyncio

from rogue_crash.config import RevealerConfig
from rogue_crash.controller import GameManager
from rogue_crash.db import create_db, init_db
from rogue_crash.engine import create_local_game

OWNER = "0x" + "11" * 20
PLAYER = "0x" + "22" * 20
OTHER = "0x" + "33" * 20

TOKEN = 10**18

# (client_seed, server_seed) -> crash multiplier
SEED_VECTORS = [
    (12345, 67890, 218),
    (1, 1, 355),
    (999999, 123456789, 123),
    (42, 1000000000, 896),
    (7, 3157, 300),
    (7, 1011, 200),
    (7, 631, 250),
]


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll an (async or sync) predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


async def place(game, player: str, amount: int, client_seed: int) -> int:
    """Approve + bet straight on the store. Returns the round id."""
    await game.token.connect(player).approve(game.address, amount)
    receipt = await game.connect(player).place_bet(amount, client_seed)
    return receipt.find("BetPlaced").round_id


@pytest.fixture
def game():
    game = create_local_game(OWNER)
    game.token.mint(PLAYER, 100 * TOKEN)
    return game


@pytest.fixture
def operator(game):
    return game.connect(OWNER)


@pytest.fixture
def player_store(game):
    return game.connect(PLAYER)


@pytest.fixture
def manager(game):
    return GameManager(
        game.connect(PLAYER),
        game.token.connect(PLAYER),
        tx_timeout=1.0,
        reveal_wait_timeout=0.3,
        poll_interval=0.01,
    )


@pytest.fixture
def fast_config():
    return RevealerConfig(
        min_delay=0.0,
        max_delay=0.0,
        grace_period=0.05,
        scan_window=10,
        sweep_interval=0,
        max_retries=2,
        retry_base_delay=0.01,
        retry_max_delay=0.02,
        seed_commitments=False,
    )


@pytest_asyncio.fixture
async def sessionmaker(tmp_path):
    db_engine, maker = create_db(f"sqlite+aiosqlite:///{tmp_path}/revealer.db", False)
    await init_db(db_engine)
    yield maker
    await db_engine.dispose()
