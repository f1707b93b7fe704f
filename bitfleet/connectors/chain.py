"""Chain client for the bonding-curve bits contract on Base.

Wraps a synchronous web3.py HTTP provider. Every call runs in a worker
thread via ``asyncio.to_thread`` and passes the ``rpc`` rate-limit
bucket; read calls retry with exponential backoff.

Transactions are signed locally with the fleet key and submitted raw.
The ``on_submitted`` callback fires once the node has accepted the
transaction and BEFORE the receipt is awaited, so callers can record a
pending order while the transaction is still in flight.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential
from web3 import Web3

from bitfleet.config import ChainConfig, FeedsConfig
from bitfleet.connectors.rate_limiter import rate_limiter
from bitfleet.errors import ChainError
from bitfleet.observability.logger import get_logger

log = get_logger(__name__)

OnSubmitted = Callable[[str], Awaitable[None]]


# ── Contract ABIs ────────────────────────────────────────────────────

def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[str] | None = None,
        mutability: str = "view") -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in (outputs or [])],
    }


BITS_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "Trade",
        "anonymous": False,
        "inputs": [
            {"name": "trader", "type": "address", "indexed": False},
            {"name": "gamer", "type": "address", "indexed": False},
            {"name": "isBuy", "type": "bool", "indexed": False},
            {"name": "bitAmount", "type": "uint256", "indexed": False},
            {"name": "ethAmount", "type": "uint256", "indexed": False},
            {"name": "protocolEthAmount", "type": "uint256", "indexed": False},
            {"name": "gamerEthAmount", "type": "uint256", "indexed": False},
            {"name": "supply", "type": "uint256", "indexed": False},
        ],
    },
    _fn("getBuyPrice", [("gamer", "address"), ("amount", "uint256")], ["uint256"]),
    _fn("getSellPrice", [("gamer", "address"), ("amount", "uint256")], ["uint256"]),
    _fn("bitsSupply", [("gamer", "address")], ["uint256"]),
    _fn("bitsBalance", [("gamer", "address"), ("holder", "address")], ["uint256"]),
    _fn(
        "buyBits",
        [("gamer", "address"), ("token", "string"), ("amount", "uint256"),
         ("tokenAmount", "uint256"), ("signedPayload", "bytes"), ("signature", "bytes")],
        mutability="nonpayable",
    ),
    _fn(
        "sellBits",
        [("gamer", "address"), ("token", "string"), ("amount", "uint256")],
        mutability="nonpayable",
    ),
]

ERC20_ABI: list[dict[str, Any]] = [
    _fn("balanceOf", [("owner", "address")], ["uint256"]),
]


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class TradeEvent:
    """A decoded ``Trade`` log."""
    trader: str
    gamer: str
    is_buy: bool
    bit_amount: int
    eth_amount: int
    protocol_eth_amount: int
    gamer_eth_amount: int
    supply: int
    block_number: int
    tx_hash: str

    @property
    def total_cost(self) -> int:
        """What the trader paid in total for a buy, fees included."""
        return self.eth_amount + self.protocol_eth_amount + self.gamer_eth_amount

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_log(cls, entry: Any) -> TradeEvent:
        args = entry["args"]
        return cls(
            trader=args["trader"],
            gamer=args["gamer"],
            is_buy=bool(args["isBuy"]),
            bit_amount=int(args["bitAmount"]),
            eth_amount=int(args["ethAmount"]),
            protocol_eth_amount=int(args["protocolEthAmount"]),
            gamer_eth_amount=int(args["gamerEthAmount"]),
            supply=int(args["supply"]),
            block_number=int(entry["blockNumber"]),
            tx_hash=Web3.to_hex(entry["transactionHash"]),
        )


# ── Client ───────────────────────────────────────────────────────────

class ChainClient:
    """Async facade over web3.py for the calls the bot needs."""

    def __init__(
        self,
        config: ChainConfig,
        feeds: FeedsConfig | None = None,
        w3: Web3 | None = None,
    ):
        self.config = config
        self.feeds = feeds or FeedsConfig()
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            config.provider_url, request_kwargs={"timeout": 30},
        ))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.contract_address), abi=BITS_ABI,
        )
        self._http = httpx.AsyncClient(
            timeout=self.feeds.request_timeout_secs,
            headers={"Content-Type": "application/json"},
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        await rate_limiter.get("rpc").acquire()
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            raise ChainError(f"{getattr(fn, '__name__', 'rpc')} failed: {e}") from e

    # ── Reads ────────────────────────────────────────────────────────

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_block_number(self) -> int:
        return int(await self._call(lambda: self.w3.eth.block_number))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_block(self, number: int | str = "latest") -> dict[str, Any]:
        return dict(await self._call(self.w3.eth.get_block, number))

    async def get_block_timestamp(self, number: int) -> int:
        block = await self.get_block(number)
        return int(block["timestamp"])

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def query_trade_events(self, from_block: int, to_block: int) -> list[TradeEvent]:
        """Decoded Trade events in log order for the inclusive range."""
        logs = await self._call(
            self.contract.events.Trade.get_logs,
            from_block=from_block, to_block=to_block,
        )
        return [TradeEvent.from_log(entry) for entry in logs]

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_balance(self, address: str) -> int:
        return int(await self._call(
            self.w3.eth.get_balance, Web3.to_checksum_address(address),
        ))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_token_balance(self, token: str, address: str) -> int:
        erc20 = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        return int(await self._call(
            erc20.functions.balanceOf(Web3.to_checksum_address(address)).call,
        ))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_transaction_count(self, address: str) -> int:
        return int(await self._call(
            self.w3.eth.get_transaction_count, Web3.to_checksum_address(address),
        ))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_gas_price(self) -> int:
        return int(await self._call(lambda: self.w3.eth.gas_price))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_buy_price(self, gamer: str, amount: int) -> int:
        fn = self.contract.functions.getBuyPrice(Web3.to_checksum_address(gamer), amount)
        return int(await self._call(fn.call))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_sell_price(self, gamer: str, amount: int) -> int:
        fn = self.contract.functions.getSellPrice(Web3.to_checksum_address(gamer), amount)
        return int(await self._call(fn.call))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_bits_supply(self, gamer: str) -> int:
        fn = self.contract.functions.bitsSupply(Web3.to_checksum_address(gamer))
        return int(await self._call(fn.call))

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def get_bits_balance(self, gamer: str, holder: str) -> int:
        fn = self.contract.functions.bitsBalance(
            Web3.to_checksum_address(gamer), Web3.to_checksum_address(holder),
        )
        return int(await self._call(fn.call))

    # ── Writes ───────────────────────────────────────────────────────

    async def send_transaction(
        self,
        private_key: str,
        call: Any,
        gas_limit: int,
        on_submitted: OnSubmitted | None = None,
    ) -> str:
        """Sign and submit a contract call, then wait for its receipt.

        Not retried: a resubmission could double-spend.
        """
        account = self.w3.eth.account.from_key(private_key)
        nonce = await self.get_transaction_count(account.address)
        gas_price = await self.get_gas_price()
        tx = await self._call(call.build_transaction, {
            "from": account.address,
            "nonce": nonce,
            "gas": gas_limit,
            "gasPrice": gas_price,
        })
        signed = self.w3.eth.account.sign_transaction(tx, private_key)
        raw_hash = await self._call(self.w3.eth.send_raw_transaction, signed.raw_transaction)
        tx_hash = Web3.to_hex(raw_hash)
        log.info("chain.tx_sent", tx_hash=tx_hash, holder=account.address, nonce=nonce)

        if on_submitted is not None:
            await on_submitted(tx_hash)

        receipt = await self._call(
            self.w3.eth.wait_for_transaction_receipt, raw_hash,
            timeout=self.config.receipt_timeout_secs,
        )
        if receipt.get("status", 1) != 1:
            raise ChainError(f"transaction {tx_hash} reverted")
        log.info("chain.tx_mined", tx_hash=tx_hash, block=receipt.get("blockNumber"))
        return tx_hash

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        await rate_limiter.get("signature_api").acquire()
        resp = await self._http.post(url, json=body)
        resp.raise_for_status()
        return resp.json()

    async def fetch_buy_signature(self, holder: str, gamer: str) -> tuple[bytes, bytes]:
        """Resolve platform ids for the pair and fetch the whitelist signature."""
        uids = await self._post(self.feeds.uid_mapping_url, {
            "uidAddress": holder.lower(),
            "playerIdAddress": gamer.lower(),
        })
        if not uids or not uids.get("uidAddress") or not uids.get("playerIdAddress"):
            raise ChainError(f"uid mapping incomplete for holder={holder} gamer={gamer}")

        signed = await self._post(self.feeds.buy_signature_url, {
            "uid": uids["uidAddress"].lower(),
            "playerId": uids["playerIdAddress"].lower(),
        })
        try:
            payload = signed["signedPayload"]
            signature = signed["signature"]["signature"]
        except (KeyError, TypeError) as e:
            raise ChainError(f"buy signature response malformed: {e}") from e
        return Web3.to_bytes(hexstr=payload), Web3.to_bytes(hexstr=signature)

    async def buy_bits(
        self,
        private_key: str,
        holder: str,
        gamer: str,
        amount: int,
        token_amount: int,
        on_submitted: OnSubmitted | None = None,
    ) -> str:
        signed_payload, signature = await self.fetch_buy_signature(holder, gamer)
        call = self.contract.functions.buyBits(
            Web3.to_checksum_address(gamer),
            self.config.payment_token_symbol,
            amount,
            token_amount,
            signed_payload,
            signature,
        )
        log.info("chain.buy_bits", holder=holder, gamer=gamer, amount=amount)
        return await self.send_transaction(
            private_key, call, self.config.buy_gas_limit, on_submitted,
        )

    async def sell_bits(
        self,
        private_key: str,
        holder: str,
        gamer: str,
        amount: int,
        on_submitted: OnSubmitted | None = None,
    ) -> str:
        call = self.contract.functions.sellBits(
            Web3.to_checksum_address(gamer), self.config.payment_token_symbol, amount,
        )
        log.info("chain.sell_bits", holder=holder, gamer=gamer, amount=amount)
        return await self.send_transaction(
            private_key, call, self.config.sell_gas_limit, on_submitted,
        )
