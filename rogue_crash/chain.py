# chain.py
"""
Web3 adapters for the deployed contracts.

- ChainClient: async provider + local signer, build/sign/send/wait
- ContractRoundStore: the crash game contract as a RoundStore
- ContractToken: the RGC ERC20 as a TokenLedger

Reverts surface as web3 ContractLogicError (from gas estimation) or
TransactionReverted (mined with status 0); errors.classify_error maps
both onto the game taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from eth_account import Account
from web3 import AsyncWeb3
from web3.logs import DISCARD

from .config import GameConfig
from .errors import TransactionReverted
from .models import ChainEvent, EventName, GameStats, Round, TxReceipt
from .store import RoundStore, TokenLedger
from .utils import normalize_hash

logger = logging.getLogger("rogue_crash.chain")

# =========================
# ABI
# =========================

def _params(*pairs) -> List[Dict[str, Any]]:
    return [{"name": name, "type": typ} for name, typ in pairs]


def _fn(name: str, inputs=(), outputs=(), mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": _params(*inputs),
        "outputs": _params(*outputs),
        "stateMutability": mutability,
    }


def _event(name: str, *inputs) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs
        ],
    }


ROUND_TUPLE = {
    "name": "",
    "type": "tuple",
    "components": _params(
        ("player", "address"),
        ("betAmount", "uint256"),
        ("clientSeed", "uint256"),
        ("serverSeed", "uint256"),
        ("serverSeedHash", "bytes32"),
        ("crashMultiplier", "uint256"),
        ("cashOutMultiplier", "uint256"),
        ("timestamp", "uint256"),
        ("settled", "bool"),
        ("won", "bool"),
    ),
}

CRASH_GAME_ABI = [
    _fn("placeBet", [("amount", "uint256"), ("clientSeed", "uint256")], [("", "uint256")], "nonpayable"),
    _fn("cashOut", [("roundId", "uint256"), ("multiplier", "uint256")], mutability="nonpayable"),
    _fn("settleLoss", [("roundId", "uint256")], mutability="nonpayable"),
    _fn("revealCrash", [("roundId", "uint256"), ("serverSeed", "uint256")], mutability="nonpayable"),
    _fn("commitServerSeed", [("seedHash", "bytes32")], mutability="nonpayable"),
    {**_fn("getRound", [("roundId", "uint256")]), "outputs": [ROUND_TUPLE]},
    _fn("getPlayerRounds", [("player", "address")], [("", "uint256[]")]),
    _fn("getStats", outputs=[("", "uint256")] * 5),
    _fn("currentRoundId", outputs=[("", "uint256")]),
    _fn("pendingCommitments", outputs=[("", "uint256")]),
    _fn("minBet", outputs=[("", "uint256")]),
    _fn("maxBet", outputs=[("", "uint256")]),
    _fn("houseEdge", outputs=[("", "uint256")]),
    _fn("owner", outputs=[("", "address")]),
    _event("BetPlaced", ("roundId", "uint256", True), ("player", "address", True),
           ("amount", "uint256", False), ("clientSeed", "uint256", False)),
    _event("CrashRevealed", ("roundId", "uint256", True), ("crashMultiplier", "uint256", False),
           ("serverSeed", "uint256", False)),
    _event("CashedOut", ("roundId", "uint256", True), ("player", "address", True),
           ("multiplier", "uint256", False), ("winnings", "uint256", False)),
    _event("RoundSettled", ("roundId", "uint256", True), ("won", "bool", False),
           ("payout", "uint256", False)),
    _event("SeedCommitted", ("seedHash", "bytes32", False)),
]

ERC20_ABI = [
    _fn("balanceOf", [("owner", "address")], [("", "uint256")]),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")]),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")], "nonpayable"),
    _fn("decimals", outputs=[("", "uint8")]),
    _fn("symbol", outputs=[("", "string")]),
]

GAME_EVENTS = [e.value for e in EventName]

# =========================
# CLIENT
# =========================

def make_w3(rpc_url: str) -> AsyncWeb3:
    return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))


class ChainClient:
    """Provider + signing account shared by the contract adapters."""

    def __init__(
        self,
        w3: AsyncWeb3,
        private_key: str,
        *,
        tx_timeout: float = GameConfig.TX_TIMEOUT_SEC,
        gas_buffer: int = GameConfig.GAS_BUFFER,
    ) -> None:
        self.w3 = w3
        self.account = Account.from_key(private_key)
        self.tx_timeout = tx_timeout
        self.gas_buffer = gas_buffer
        self._nonce_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self.account.address

    async def send(self, fn) -> Dict[str, Any]:
        """
        Estimate gas (reverts surface here with their reason), sign, send
        and wait for the receipt. Returns the raw web3 receipt.
        """
        async with self._nonce_lock:
            gas = await fn.estimate_gas({"from": self.address})
            tx = await fn.build_transaction({
                "from": self.address,
                "gas": gas + self.gas_buffer,
                "nonce": await self.w3.eth.get_transaction_count(self.address, "pending"),
            })
            signed = self.account.sign_transaction(tx)
            raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
            if raw is None:
                raise RuntimeError("SignedTransaction missing raw transaction")
            tx_hash = await self.w3.eth.send_raw_transaction(raw)

        logger.debug(f"Transaction sent: {AsyncWeb3.to_hex(tx_hash)}")
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        if receipt["status"] != 1:
            raise TransactionReverted(AsyncWeb3.to_hex(tx_hash))
        return receipt

# =========================
# ROUND STORE
# =========================

def _to_event(log) -> ChainEvent:
    args = dict(log["args"])
    for key, value in args.items():
        if isinstance(value, (bytes, bytearray)):
            args[key] = normalize_hash(bytes(value))
    return ChainEvent(
        name=log["event"],
        args=args,
        tx_hash=AsyncWeb3.to_hex(log["transactionHash"]),
        block_number=int(log["blockNumber"]),
    )


class ContractRoundStore(RoundStore):

    def __init__(
        self,
        client: ChainClient,
        address: str,
        *,
        poll_interval: float = GameConfig.LOG_POLL_INTERVAL_SEC,
    ) -> None:
        self._client = client
        self._address = AsyncWeb3.to_checksum_address(address)
        self._contract = client.w3.eth.contract(address=self._address, abi=CRASH_GAME_ABI)
        self._poll_interval = poll_interval

    @property
    def address(self) -> str:
        return self._address

    @property
    def sender(self) -> str:
        return self._client.address

    def _decode(self, receipt) -> TxReceipt:
        events: List[ChainEvent] = []
        for name in GAME_EVENTS:
            for log in getattr(self._contract.events, name)().process_receipt(receipt, errors=DISCARD):
                events.append(_to_event(log))
        return TxReceipt(
            tx_hash=AsyncWeb3.to_hex(receipt["transactionHash"]),
            events=events,
            block_number=int(receipt["blockNumber"]),
        )

    async def _transact(self, fn) -> TxReceipt:
        receipt = await self._client.send(fn)
        return self._decode(receipt)

    # --- state changing ---

    async def place_bet(self, amount: int, client_seed: int) -> TxReceipt:
        return await self._transact(self._contract.functions.placeBet(amount, client_seed))

    async def reveal_crash(self, round_id: int, server_seed: int) -> TxReceipt:
        return await self._transact(self._contract.functions.revealCrash(round_id, server_seed))

    async def cash_out(self, round_id: int, multiplier: int) -> TxReceipt:
        return await self._transact(self._contract.functions.cashOut(round_id, multiplier))

    async def settle_loss(self, round_id: int) -> TxReceipt:
        return await self._transact(self._contract.functions.settleLoss(round_id))

    async def commit_server_seed(self, seed_hash: str) -> TxReceipt:
        return await self._transact(
            self._contract.functions.commitServerSeed(bytes.fromhex(normalize_hash(seed_hash)[2:]))
        )

    # --- views ---

    async def get_round(self, round_id: int) -> Round:
        (player, bet_amount, client_seed, server_seed, seed_hash,
         crash, cash_out, timestamp, settled, won) = await self._contract.functions.getRound(round_id).call()
        return Round(
            round_id=round_id,
            player=player,
            bet_amount=bet_amount,
            client_seed=client_seed,
            server_seed=server_seed,
            server_seed_hash=normalize_hash(seed_hash),
            crash_multiplier=crash,
            cash_out_multiplier=cash_out,
            timestamp=timestamp,
            settled=settled,
            won=won,
        )

    async def get_player_rounds(self, player: str) -> List[int]:
        ids = await self._contract.functions.getPlayerRounds(AsyncWeb3.to_checksum_address(player)).call()
        return [int(i) for i in ids]

    async def get_stats(self) -> GameStats:
        total_bets, total_winnings, total_losses, liquidity, current = (
            await self._contract.functions.getStats().call()
        )
        return GameStats(total_bets, total_winnings, total_losses, liquidity, current)

    async def current_round_id(self) -> int:
        return await self._contract.functions.currentRoundId().call()

    async def min_bet(self) -> int:
        return await self._contract.functions.minBet().call()

    async def max_bet(self) -> int:
        return await self._contract.functions.maxBet().call()

    async def house_edge(self) -> int:
        return await self._contract.functions.houseEdge().call()

    async def pending_commitments(self) -> int:
        return await self._contract.functions.pendingCommitments().call()

    async def is_deployed(self) -> bool:
        code = await self._client.w3.eth.get_code(self._address)
        return len(code) > 0

    # --- events ---

    def subscribe(self) -> AsyncIterator[ChainEvent]:
        return self._poll_logs()

    async def _poll_logs(self) -> AsyncIterator[ChainEvent]:
        w3 = self._client.w3
        last_block = await w3.eth.block_number
        while True:
            await asyncio.sleep(self._poll_interval)
            head = await w3.eth.block_number
            if head <= last_block:
                continue
            batch: List[ChainEvent] = []
            for name in GAME_EVENTS:
                logs = await getattr(self._contract.events, name).get_logs(
                    from_block=last_block + 1, to_block=head
                )
                batch.extend(_to_event(log) for log in logs)
            batch.sort(key=lambda e: e.block_number)
            last_block = head
            for event in batch:
                yield event

# =========================
# TOKEN
# =========================

class ContractToken(TokenLedger):

    def __init__(self, client: ChainClient, address: str) -> None:
        self._client = client
        self._address = AsyncWeb3.to_checksum_address(address)
        self._contract = client.w3.eth.contract(address=self._address, abi=ERC20_ABI)

    @property
    def address(self) -> str:
        return self._address

    @property
    def sender(self) -> str:
        return self._client.address

    async def balance_of(self, owner: str) -> int:
        return await self._contract.functions.balanceOf(AsyncWeb3.to_checksum_address(owner)).call()

    async def allowance(self, owner: str, spender: str) -> int:
        return await self._contract.functions.allowance(
            AsyncWeb3.to_checksum_address(owner), AsyncWeb3.to_checksum_address(spender)
        ).call()

    async def approve(self, spender: str, amount: int) -> TxReceipt:
        receipt = await self._client.send(
            self._contract.functions.approve(AsyncWeb3.to_checksum_address(spender), amount)
        )
        return TxReceipt(
            tx_hash=AsyncWeb3.to_hex(receipt["transactionHash"]),
            block_number=int(receipt["blockNumber"]),
        )


def connect_chain(
    rpc_url: str,
    private_key: str,
    game_address: str,
    token_address: Optional[str] = None,
) -> tuple:
    """(ContractRoundStore, ContractToken | None) bound to the key's account."""
    client = ChainClient(make_w3(rpc_url), private_key)
    store = ContractRoundStore(client, game_address)
    token = ContractToken(client, token_address) if token_address else None
    return store, token
