"""
Tests for swap-driven opportunity detection.

The triggering pool is A/C (token0 = A). A swap selling A into it pushes
the A price down, which makes A -> B -> C -> A profitable when A/B and B/C
are still at their old prices.
"""

import logging
from decimal import Decimal

import pytest

from flash_arbitrage.config_loader import DetectionConfig
from flash_arbitrage.detection import OpportunityDetector
from flash_arbitrage.token_index import TokenIndexBuilder
from flash_arbitrage.types import SwapEvent

from conftest import (
    POOL_AB,
    POOL_AC,
    POOL_AD,
    POOL_BC,
    POOL_DC,
    Q96,
    TOKEN_A,
    TOKEN_B,
    TOKEN_C,
    TOKEN_D,
)

ONE = 10**18
# sqrt(0.5625) = 0.75, the A price after the large sell
POST_SWAP_SQRT_PRICE = 3 * 2**94


def build_detector(pools, price_states, config):
    builder = TokenIndexBuilder()
    for pool in pools:
        builder.add_pool(pool)
    return OpportunityDetector(
        builder.freeze(), lambda pool_id: price_states.get(pool_id, 0), config, "test"
    )


def sell_a_swap(amount_out=-990 * ONE, sqrt_price=POST_SWAP_SQRT_PRICE):
    return SwapEvent(
        pool_id=POOL_AC.id,
        amount0=1000 * ONE,
        amount1=amount_out,
        sqrt_price_x96=sqrt_price,
    )


@pytest.fixture
def priced():
    return {POOL_AB.id: Q96, POOL_BC.id: Q96, POOL_AD.id: Q96, POOL_DC.id: Q96}


def test_profitable_cycle(triangle_pools, priced, detection_config):
    detector = build_detector(triangle_pools, priced, detection_config)

    opportunity = detector.evaluate(sell_a_swap(), Q96, POOL_AC)

    assert opportunity is not None
    assert opportunity.token_a_in == Decimal(100 * ONE)
    assert opportunity.raw_swap_input == Decimal(1000 * ONE)
    assert opportunity.price_impact_bps == Decimal(100)
    assert opportunity.plan.describe() == "A -> B -> C -> A"
    assert [leg.fee_tier for leg in opportunity.plan.legs] == [3000, 3000, 3000]
    assert all(leg.minimum_amount_out == 0 for leg in opportunity.plan.legs)
    # 100 A * 0.997^3 / 0.5625 - 100 A
    assert round(opportunity.expected_profit / Decimal(100 * ONE), 6) == Decimal("0.761826")


def test_insignificant_impact_is_ignored(triangle_pools, priced, detection_config):
    detector = build_detector(triangle_pools, priced, detection_config)
    # 999.5 out of 1000 is 5 bps
    assert detector.evaluate(sell_a_swap(amount_out=-9995 * ONE // 10), Q96, POOL_AC) is None


def test_invalid_price_state_is_rejected(triangle_pools, priced, detection_config, caplog):
    detector = build_detector(triangle_pools, priced, detection_config)
    with caplog.at_level(logging.WARNING):
        assert detector.evaluate(sell_a_swap(), 0, POOL_AC) is None
    assert "Invalid lastPoolSqrtPriceX96" in caplog.text


def test_zero_amount_swap_is_skipped(triangle_pools, priced, detection_config):
    detector = build_detector(triangle_pools, priced, detection_config)
    assert detector.evaluate(sell_a_swap(amount_out=0), Q96, POOL_AC) is None


def test_no_intermediary_tokens(priced, detection_config):
    detector = build_detector([POOL_AC], priced, detection_config)
    assert detector.evaluate(sell_a_swap(), Q96, POOL_AC) is None


def test_unprofitable_when_price_did_not_move(triangle_pools, priced, detection_config):
    detector = build_detector(triangle_pools, priced, detection_config)
    assert detector.evaluate(sell_a_swap(sqrt_price=Q96), Q96, POOL_AC) is None


def test_gas_cost_is_deducted(triangle_pools, priced):
    config = DetectionConfig(gas_cost_by_symbol={"A": Decimal(10)})
    detector = build_detector(triangle_pools, priced, config)

    opportunity = detector.evaluate(sell_a_swap(), Q96, POOL_AC)

    assert opportunity.plan.estimated_gas_cost == Decimal(10 * ONE)
    assert round(opportunity.expected_profit / Decimal(100 * ONE), 6) == Decimal("0.661826")


def test_gas_cost_can_make_cycle_unprofitable(triangle_pools, priced):
    config = DetectionConfig(default_gas_cost=Decimal(100))
    detector = build_detector(triangle_pools, priced, config)
    assert detector.evaluate(sell_a_swap(), Q96, POOL_AC) is None


def test_most_profitable_pivot_wins(priced, detection_config):
    # D/C quotes 4 C per D, so routing through D returns far more A
    priced[POOL_DC.id] = 2 * Q96
    detector = build_detector(
        [POOL_AB, POOL_BC, POOL_AC, POOL_AD, POOL_DC], priced, detection_config
    )

    opportunity = detector.evaluate(sell_a_swap(), Q96, POOL_AC)

    assert opportunity.plan.leg1.token_out == TOKEN_D
    assert opportunity.plan.describe() == "A -> D -> C -> A"


def test_tie_keeps_first_candidate(priced, detection_config):
    detector = build_detector(
        [POOL_AB, POOL_BC, POOL_AC, POOL_AD, POOL_DC], priced, detection_config
    )
    opportunity = detector.evaluate(sell_a_swap(), Q96, POOL_AC)
    assert opportunity.plan.leg1.token_out == TOKEN_B


def test_candidate_without_priced_pool_is_skipped(priced, detection_config):
    priced[POOL_AB.id] = 0
    detector = build_detector(
        [POOL_AB, POOL_BC, POOL_AC, POOL_AD, POOL_DC], priced, detection_config
    )
    opportunity = detector.evaluate(sell_a_swap(), Q96, POOL_AC)
    assert opportunity.plan.leg1.token_out == TOKEN_D


def test_no_priced_candidates(triangle_pools, detection_config):
    detector = build_detector(triangle_pools, {}, detection_config)
    assert detector.evaluate(sell_a_swap(), Q96, POOL_AC) is None


def test_reverse_direction_starts_from_token1(triangle_pools, priced, detection_config):
    detector = build_detector(triangle_pools, priced, detection_config)
    # C sold into the pool; the A price rises to 1.5625 C
    swap = SwapEvent(
        pool_id=POOL_AC.id,
        amount0=-990 * ONE,
        amount1=1000 * ONE,
        sqrt_price_x96=5 * 2**94,
    )

    opportunity = detector.evaluate(swap, Q96, POOL_AC)

    assert opportunity is not None
    assert opportunity.plan.start_token == TOKEN_C
    assert opportunity.plan.describe() == "C -> B -> A -> C"
    assert opportunity.token_a_in == Decimal(100 * ONE)
    assert opportunity.expected_profit > 0


def test_find_intermediary_tokens(triangle_pools, priced, detection_config):
    detector = build_detector(triangle_pools, priced, detection_config)
    assert detector.find_intermediary_tokens(TOKEN_A, TOKEN_C) == [TOKEN_B]
