"""
Pytest configuration and shared fixtures.

Markets, pools and contract addresses are synthetic; every test runs against
the in-memory SimulatedLedger or an AsyncMock gateway.
"""
import pytest

from coreyield.config.config import ContractsConfig, ExecutionConfig
from coreyield.data.market_registry import MarketRegistry
from coreyield.domain.models import Market, PoolSpec
from coreyield.execution.position_orchestrator import PositionOrchestrator
from coreyield.monitoring.notifications import Notifier
from coreyield.runtime.session import AccountSession
from coreyield.sim.ledger_sim import LedgerSimConfig, SimulatedLedger

E18 = 10 ** 18
E8 = 10 ** 8
NOW = 1_750_000_000
DAY = 24 * 3600

ACCOUNT = "0x" + "a1" * 20
MINTER = "0x" + "d0" * 20

# stCORE: two maturities over the same underlying
ST_UNDERLYING = "0x" + "11" * 20
ST1_SY = "0x" + "12" * 20
ST1_PT = "0x" + "13" * 20
ST1_YT = "0x" + "14" * 20
ST2_SY = "0x" + "22" * 20
ST2_PT = "0x" + "23" * 20
ST2_YT = "0x" + "24" * 20

# lstBTC: 8 decimals
BTC_UNDERLYING = "0x" + "31" * 20
BTC_SY = "0x" + "32" * 20
BTC_PT = "0x" + "33" * 20
BTC_YT = "0x" + "34" * 20


class FakeClock:
    """Settable unix clock."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def markets():
    return [
        Market(
            market_id="stCORE-30d",
            asset="stCORE",
            underlying=ST_UNDERLYING,
            sy_token=ST1_SY,
            pt_token=ST1_PT,
            yt_token=ST1_YT,
            maturity=NOW + 30 * DAY,
            pool_id="stCORE-pt-yt",
        ),
        Market(
            market_id="stCORE-90d",
            asset="stCORE",
            underlying=ST_UNDERLYING,
            sy_token=ST2_SY,
            pt_token=ST2_PT,
            yt_token=ST2_YT,
            maturity=NOW + 90 * DAY,
        ),
        Market(
            market_id="lstBTC-30d",
            asset="lstBTC",
            underlying=BTC_UNDERLYING,
            sy_token=BTC_SY,
            pt_token=BTC_PT,
            yt_token=BTC_YT,
            maturity=NOW + 30 * DAY,
            decimals=8,
            pool_id="lstBTC-pt-yt",
        ),
    ]


@pytest.fixture
def pools():
    return [
        PoolSpec(pool_id="stCORE-pt-yt", token_a=ST1_PT, token_b=ST1_YT),
        PoolSpec(pool_id="lstBTC-pt-yt", token_a=BTC_YT, token_b=BTC_PT),
    ]


@pytest.fixture
def sim_config():
    return LedgerSimConfig(minter=MINTER)


@pytest.fixture
def contracts(sim_config):
    return ContractsConfig(
        staking=sim_config.staking,
        token_operations=sim_config.token_operations,
        amm=sim_config.amm,
        router=sim_config.router,
        staking_token=sim_config.staking_token,
        staking_token_decimals=18,
        minter=sim_config.minter,
    )


@pytest.fixture
def registry(markets, pools, contracts):
    return MarketRegistry(
        markets,
        pools,
        extra_token_decimals={contracts.staking_token: contracts.staking_token_decimals},
    )


@pytest.fixture
def ledger(markets, sim_config, clock):
    return SimulatedLedger(markets, sim_config, clock=clock)


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def notifications(notifier):
    """Every notification published during the test, in order."""
    received = []
    notifier.subscribe(received.append)
    return received


@pytest.fixture
def session(clock):
    return AccountSession(ACCOUNT, chain_id=1114, clock=clock)


@pytest.fixture
def orchestrator(ledger, registry, session, contracts, notifier, clock):
    return PositionOrchestrator(
        ledger,
        registry,
        session,
        contracts,
        ExecutionConfig(),
        notifier=notifier,
        clock=clock,
        faucet_url="https://faucet.example/",
    )
