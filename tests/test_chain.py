"""Tests for the chain client with a stubbed web3 instance."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import httpx
import pytest

from bitfleet.config import ChainConfig, FeedsConfig
from bitfleet.connectors.chain import ChainClient, TradeEvent
from bitfleet.errors import ChainError


TRADER = "0x52908400098527886E0F7030069857D2E4169EE7"
GAMER = "0x8617E340B3D01FA5F11F306F4090FD50E238070D"


def _client() -> ChainClient:
    return ChainClient(ChainConfig(provider_url="http://localhost:8545"), FeedsConfig(), w3=MagicMock())


class TestTradeEvent:
    def test_from_log(self) -> None:
        entry = {
            "args": {
                "trader": TRADER, "gamer": GAMER, "isBuy": True, "bitAmount": 3,
                "ethAmount": 900, "protocolEthAmount": 45, "gamerEthAmount": 45, "supply": 12,
            },
            "blockNumber": 101,
            "transactionHash": bytes.fromhex("ab" * 32),
        }
        event = TradeEvent.from_log(entry)
        assert event.is_buy and event.bit_amount == 3
        assert event.total_cost == 990
        assert event.tx_hash == "0x" + "ab" * 32
        assert event.to_dict()["block_number"] == 101


class TestChainClient:
    @pytest.mark.asyncio
    async def test_contract_reads(self) -> None:
        client = _client()
        client.contract.functions.bitsBalance.return_value.call.return_value = 4
        assert await client.get_bits_balance(GAMER, TRADER) == 4
        client.contract.functions.bitsBalance.assert_called_with(GAMER, TRADER)
        await client.close()

    @pytest.mark.asyncio
    async def test_submission_callback_before_receipt(self) -> None:
        client = _client()
        eth = client.w3.eth
        eth.account.from_key.return_value.address = TRADER
        eth.get_transaction_count.return_value = 7
        eth.gas_price = 2
        eth.account.sign_transaction.return_value.raw_transaction = b"raw"
        eth.send_raw_transaction.return_value = bytes.fromhex("12" * 32)

        order = []

        def receipt(tx_hash, timeout):
            order.append("receipt")
            return {"status": 1, "blockNumber": 9}

        async def on_submitted(tx_hash):
            order.append(f"submitted:{tx_hash}")

        eth.wait_for_transaction_receipt.side_effect = receipt
        call = MagicMock()
        call.build_transaction.return_value = {"to": GAMER}

        tx_hash = await client.send_transaction("0xkey", call, 180000, on_submitted)

        assert tx_hash == "0x" + "12" * 32
        assert order == [f"submitted:{tx_hash}", "receipt"]
        built = call.build_transaction.call_args.args[0]
        assert (built["nonce"], built["gas"], built["gasPrice"]) == (7, 180000, 2)
        await client.close()

    @pytest.mark.asyncio
    async def test_reverted_transaction(self) -> None:
        client = _client()
        eth = client.w3.eth
        eth.account.from_key.return_value.address = TRADER
        eth.get_transaction_count.return_value = 1
        eth.gas_price = 1
        eth.send_raw_transaction.return_value = b"\x01"
        eth.wait_for_transaction_receipt.return_value = {"status": 0}

        with pytest.raises(ChainError, match="reverted"):
            await client.send_transaction("0xkey", MagicMock(), 180000)
        await client.close()

    @pytest.mark.asyncio
    async def test_buy_signature(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if "getUIDByAddress" in str(request.url):
                return httpx.Response(200, json={"uidAddress": "U1", "playerIdAddress": "P1"})
            assert json.loads(request.read()) == {"uid": "u1", "playerId": "p1"}
            return httpx.Response(200, json={
                "signedPayload": "0x0102", "signature": {"signature": "0x0a0b"},
            })

        client = _client()
        await client._http.aclose()
        client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        payload, signature = await client.fetch_buy_signature(TRADER, GAMER)
        assert (payload, signature) == (b"\x01\x02", b"\x0a\x0b")
        await client.close()

    @pytest.mark.asyncio
    async def test_incomplete_uid_mapping(self) -> None:
        client = _client()
        await client._http.aclose()
        client._http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"uidAddress": "U1"}),
        ))
        with pytest.raises(ChainError, match="uid mapping incomplete"):
            await client.fetch_buy_signature(TRADER, GAMER)
        await client.close()
