"""Unit tests for MarketRegistry."""
from dataclasses import replace

import pytest

from coreyield.data.market_registry import MarketRegistry
from coreyield.domain.models import Market, PoolSpec
from coreyield.exceptions import UnknownMarket, UnknownPool, ValidationError

from conftest import BTC_PT, BTC_YT, ST1_PT, ST1_SY, ST1_YT, ST_UNDERLYING


def test_lookup_by_id(registry, markets):
    assert registry.get_market("stCORE-30d") is markets[0]
    assert len(registry) == 3
    assert "lstBTC-30d" in registry
    assert "nope" not in registry
    assert [m.market_id for m in registry.list_markets()] == ["stCORE-30d", "stCORE-90d", "lstBTC-30d"]


def test_unknown_market_and_pool(registry):
    with pytest.raises(UnknownMarket):
        registry.get_market("missing")
    with pytest.raises(UnknownPool):
        registry.get_pool("missing")


def test_markets_grouped_by_underlying(registry):
    ids = [m.market_id for m in registry.markets_for_underlying(ST_UNDERLYING)]
    assert ids == ["stCORE-30d", "stCORE-90d"]
    assert len(registry.underlyings()) == 2


def test_market_for_token(registry):
    assert registry.market_for_token(ST1_PT).market_id == "stCORE-30d"
    assert registry.market_for_token(BTC_YT).market_id == "lstBTC-30d"
    assert registry.market_for_token(ST_UNDERLYING) is None


def test_pools_stored_in_canonical_order(registry):
    pool = registry.get_pool("lstBTC-pt-yt")
    # configured as (YT, PT); PT sorts first
    assert pool.token_a == BTC_PT
    assert pool.token_b == BTC_YT
    assert pool.has_token(BTC_YT)


def test_token_decimals(registry, contracts):
    assert registry.token_decimals(BTC_PT) == 8
    assert registry.token_decimals(ST1_YT) == 18
    assert registry.token_decimals(contracts.staking_token) == 18
    assert registry.token_decimals("0x" + "ff" * 20) == 18


def test_rejects_duplicate_market_id(markets):
    with pytest.raises(ValidationError):
        MarketRegistry([markets[0], replace(markets[1], market_id="stCORE-30d")])


def test_rejects_token_shared_across_markets(markets):
    clash = replace(markets[1], market_id="clash", sy_token=ST1_SY)
    with pytest.raises(ValidationError):
        MarketRegistry([markets[0], clash])


def test_rejects_market_referencing_unknown_pool(markets):
    with pytest.raises(ValidationError):
        MarketRegistry(markets, pools=[])


def test_rejects_duplicate_pool_id(markets, pools):
    with pytest.raises(ValidationError):
        MarketRegistry(markets, pools + [PoolSpec("stCORE-pt-yt", ST1_PT, ST1_SY)])


def test_market_requires_distinct_tokens():
    with pytest.raises(ValidationError):
        Market(
            market_id="bad",
            asset="X",
            underlying="0x" + "01" * 20,
            sy_token="0x" + "02" * 20,
            pt_token="0x" + "02" * 20,
            yt_token="0x" + "03" * 20,
            maturity=1,
        )


def test_market_maturity_helpers(markets):
    market = markets[0]
    assert not market.is_matured(market.maturity - 1)
    assert market.is_matured(market.maturity)
    assert market.seconds_to_maturity(market.maturity - 10) == 10
    assert market.seconds_to_maturity(market.maturity + 10) == 0
