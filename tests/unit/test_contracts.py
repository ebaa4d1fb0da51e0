"""
Unit tests for swap log decoding, the per-pool worker and the arbitrage
contract bindings.
"""

import logging
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import eth_abi
import pytest
from web3 import Web3

from flash_arbitrage.contracts import (
    FlashArbitrageContract,
    PoolContract,
    SwapEventDecoder,
)
from flash_arbitrage.types import (
    ArbitrageConcluded,
    ArbitragePlan,
    FlashLoanError,
    FlashLoanSuccess,
    SwapLeg,
    VenueKind,
)

from conftest import POOL_AC, Q96, TOKEN_A, TOKEN_B, TOKEN_C, decode_flash_loan_calldata

UNISWAP_V3_SWAP_TOPIC = "0xc42079f94a6350d7e6235f29174924f928cc2ac818eb64fed8004e115fbcca67"
CONTRACT_ADDRESS = "0x" + "fa" * 20
SWAP_DATA_TYPES = ["int256", "int256", "uint160", "uint128", "int24"]


def topic_for(abi_type, value):
    return Web3.to_hex(eth_abi.encode([abi_type], [value]))


def swap_log(amount0, amount1, sqrt_price_x96, kind=VenueKind.UNISWAP_V3, **extra):
    decoder = SwapEventDecoder(kind)
    types = list(SWAP_DATA_TYPES)
    values = [amount0, amount1, sqrt_price_x96, 10**20, -5]
    if kind == VenueKind.PANCAKESWAP_V3:
        types += ["uint128", "uint128"]
        values += [7, 8]
    log = {
        "address": POOL_AC.id.upper().replace("0X", "0x"),
        "topics": [
            decoder.topic,
            topic_for("address", "0x" + "11" * 20),
            topic_for("address", "0x" + "22" * 20),
        ],
        "data": Web3.to_hex(eth_abi.encode(types, values)),
        "blockNumber": "0x10",
        "transactionHash": "0x" + "33" * 32,
    }
    log.update(extra)
    return log


def contract_log(name, indexed, data_types, data_values, address=CONTRACT_ADDRESS):
    contract = FlashArbitrageContract(CONTRACT_ADDRESS)
    return {
        "address": address,
        "topics": [contract._events[name].topic, topic_for("uint32", indexed)],
        "data": eth_abi.encode(data_types, data_values),
        "transactionHash": bytes.fromhex("44" * 32),
    }


class TestSwapEventDecoder:
    def test_uniswap_topic(self):
        assert SwapEventDecoder(VenueKind.UNISWAP_V3).topic == UNISWAP_V3_SWAP_TOPIC

    def test_pancakeswap_topic_differs(self):
        assert SwapEventDecoder(VenueKind.PANCAKESWAP_V3).topic != UNISWAP_V3_SWAP_TOPIC

    @pytest.mark.parametrize("kind", [VenueKind.UNISWAP_V3, VenueKind.PANCAKESWAP_V3])
    def test_decode(self, kind):
        swap = SwapEventDecoder(kind).decode(swap_log(10**21, -(10**21), 3 * 2**94, kind))

        assert swap.pool_id == POOL_AC.id
        assert swap.amount0 == 10**21
        assert swap.amount1 == -(10**21)
        assert swap.sqrt_price_x96 == 3 * 2**94
        assert swap.liquidity == 10**20
        assert swap.tick == -5
        assert swap.block_number == 16
        assert swap.transaction_hash == "0x" + "33" * 32

    def test_wrong_event_is_rejected(self):
        log = swap_log(1, -1, Q96)
        log["topics"][0] = "0x" + "00" * 32
        with pytest.raises(ValueError):
            SwapEventDecoder(VenueKind.UNISWAP_V3).decode(log)

    def test_missing_indexed_topics_are_rejected(self):
        log = swap_log(1, -1, Q96)
        log["topics"] = log["topics"][:1]
        with pytest.raises(ValueError):
            SwapEventDecoder(VenueKind.UNISWAP_V3).decode(log)


class TestPoolContract:
    def make_contract(self):
        calls = []

        async def handler(swap, last_sqrt_price_x96):
            calls.append((swap.sqrt_price_x96, last_sqrt_price_x96))

        contract = PoolContract(POOL_AC, SwapEventDecoder(VenueKind.UNISWAP_V3), handler, "test")
        return contract, calls

    def test_log_filter(self):
        contract, _ = self.make_contract()
        assert contract.log_filter == {"address": POOL_AC.id, "topics": [UNISWAP_V3_SWAP_TOPIC]}
        assert not contract.is_bound

    @pytest.mark.asyncio
    async def test_handler_sees_previous_price(self):
        contract, calls = self.make_contract()

        await contract.handle_log(swap_log(1, -1, Q96))
        await contract.handle_log(swap_log(1, -1, 2 * Q96))

        assert calls == [(Q96, 0), (2 * Q96, Q96)]
        assert contract.last_sqrt_price_x96 == 2 * Q96

    @pytest.mark.asyncio
    async def test_price_is_updated_when_handler_fails(self):
        async def handler(swap, last_sqrt_price_x96):
            raise RuntimeError("handler failed")

        contract = PoolContract(POOL_AC, SwapEventDecoder(VenueKind.UNISWAP_V3), handler)
        await contract.handle_log(swap_log(1, -1, Q96))
        assert contract.last_sqrt_price_x96 == Q96

    @pytest.mark.asyncio
    async def test_undecodable_log_is_skipped(self, caplog):
        contract, calls = self.make_contract()
        log = swap_log(1, -1, Q96)
        log["data"] = "0x00"

        with caplog.at_level(logging.WARNING):
            await contract.handle_log(log)

        assert calls == []
        assert contract.last_sqrt_price_x96 == 0
        assert "Failed to decode swap" in caplog.text

    @pytest.mark.asyncio
    async def test_bound_worker_processes_logs_in_order(self):
        contract, calls = self.make_contract()
        subscription = Mock()
        connection = Mock()
        connection.subscribe = AsyncMock(return_value=subscription)
        connection.unsubscribe = AsyncMock()

        await contract.bind(connection)
        contract.on_log(swap_log(1, -1, Q96))
        contract.on_log(swap_log(1, -1, 2 * Q96, removed=True))
        contract.on_log(swap_log(1, -1, 3 * Q96))
        await contract.drain()

        assert contract.is_bound
        connection.subscribe.assert_awaited_once_with(contract.log_filter, contract.on_log)
        assert calls == [(Q96, 0), (3 * Q96, Q96)]

        await contract.unbind(connection)
        connection.unsubscribe.assert_awaited_once_with(subscription)
        assert not contract.is_bound

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest_log(self, caplog):
        calls = []

        async def handler(swap, last_sqrt_price_x96):
            calls.append((swap.sqrt_price_x96, last_sqrt_price_x96))

        contract = PoolContract(
            POOL_AC, SwapEventDecoder(VenueKind.UNISWAP_V3), handler, "test", max_pending_logs=2
        )
        connection = Mock()
        connection.subscribe = AsyncMock(return_value=Mock())
        await contract.bind(connection)

        with caplog.at_level(logging.WARNING):
            for multiple in (1, 2, 3):
                contract.on_log(swap_log(1, -1, multiple * Q96))
        await contract.drain()

        assert contract.dropped_logs == 1
        assert calls == [(2 * Q96, 0), (3 * Q96, 2 * Q96)]
        assert "Swap queue full" in caplog.text
        contract._stop_worker()

    @pytest.mark.asyncio
    async def test_failed_bind_stops_worker(self):
        contract, _ = self.make_contract()
        connection = Mock()
        connection.subscribe = AsyncMock(side_effect=RuntimeError("stream down"))

        with pytest.raises(RuntimeError):
            await contract.bind(connection)

        assert not contract.is_bound
        assert contract._worker is None


class TestFlashArbitrageContract:
    def make_plan(self):
        return ArbitragePlan(
            leg1=SwapLeg(TOKEN_A, TOKEN_B, fee_tier=500),
            leg2=SwapLeg(TOKEN_B, TOKEN_C, fee_tier=3000),
            leg3=SwapLeg(TOKEN_C, TOKEN_A, fee_tier=10000, minimum_amount_out=1),
            estimated_gas_cost=Decimal("12345.9"),
        )

    def test_selector(self):
        contract = FlashArbitrageContract(CONTRACT_ADDRESS)
        signature = (
            "initiateFlashLoan(((address,address,uint24,uint256),"
            "(address,address,uint24,uint256),(address,address,uint24,uint256),"
            "uint256),uint256)"
        )
        assert contract.selector == bytes(Web3.keccak(text=signature)[:4])
        assert contract.address == Web3.to_checksum_address(CONTRACT_ADDRESS)

    def test_calldata_layout(self):
        contract = FlashArbitrageContract(CONTRACT_ADDRESS)
        calldata = contract.encode_initiate_flash_loan(self.make_plan(), 10**20)

        arbit_info, token_a_in = decode_flash_loan_calldata(calldata)

        assert calldata[:4] == contract.selector
        assert token_a_in == 10**20
        swap1, swap2, swap3, extra_cost = arbit_info
        assert swap1[0].lower() == TOKEN_A.id
        assert swap1[1].lower() == TOKEN_B.id
        assert (swap1[2], swap2[2], swap3[2]) == (500, 3000, 10000)
        assert swap3[3] == 1
        assert extra_cost == 12345

    def test_decode_events(self):
        contract = FlashArbitrageContract(CONTRACT_ADDRESS)
        concluded = contract_log(
            "ArbitrageConcluded", 7, ["uint256"] * 5, [100, 101, 102, 103, 3]
        )
        success = contract_log("FlashLoanSuccess", 7, ["uint256"], [100])
        error = contract_log("FlashloanError", 8, ["string"], ["swap2 failed"])

        assert contract.decode_event(concluded) == ArbitrageConcluded(
            execution_id=7,
            input_amount=100,
            swap1_amount_out=101,
            swap2_amount_out=102,
            swap3_amount_out=103,
            profit=3,
            transaction_hash="0x" + "44" * 32,
        )
        assert contract.decode_event(success) == FlashLoanSuccess(7, 100, "0x" + "44" * 32)
        assert contract.decode_event(error) == FlashLoanError(8, "swap2 failed", "0x" + "44" * 32)

    def test_receipt_events_skip_foreign_and_broken_logs(self):
        contract = FlashArbitrageContract(CONTRACT_ADDRESS)
        foreign = contract_log("FlashLoanSuccess", 1, ["uint256"], [5], address="0x" + "01" * 20)
        broken = contract_log("FlashLoanSuccess", 2, ["uint256"], [5])
        broken["data"] = b"\x00"
        success = contract_log("FlashLoanSuccess", 3, ["uint256"], [5])

        events = contract.decode_receipt_events({"logs": [foreign, broken, success]})

        assert [event.execution_id for event in events] == [3]
