"""
Integration tests: end-to-end operation flows against the SimulatedLedger.
"""
import asyncio
from decimal import Decimal

import pytest

from coreyield.config.config import load_config
from coreyield.domain.models import OperationKind, OperationOutcome, OperationStatus, TxStage
from coreyield.exceptions import (
    AmountExceedsPoolCap,
    LockPeriodActive,
    OperationInProgress,
    TransactionReverted,
)
from coreyield.execution.position_orchestrator import PositionOrchestrator
from coreyield.sim.ledger_sim import LedgerSimConfig, SimulatedLedger

from conftest import (
    ACCOUNT,
    DAY,
    E18,
    NOW,
    ST1_PT,
    ST1_SY,
    ST1_YT,
    ST2_SY,
    ST_UNDERLYING,
)


@pytest.mark.asyncio
async def test_stake_increases_staked_amount_by_amount(orchestrator, ledger, contracts):
    """Allowance 0: approve 100, stake 100, refreshed stake grows by 100."""
    ledger.set_stake(ACCOUNT, 50 * E18, lock_period_end=NOW - 1)
    ledger.set_balance(contracts.staking_token, ACCOUNT, 100 * E18)
    before = (await orchestrator.refresh_balances()).stake.staked_amount

    result = await orchestrator.stake(100)

    assert result.ok
    approve, stake = ledger.calls()
    assert approve.args == (contracts.staking, 100 * E18)
    assert stake.args == (100 * E18,)
    assert orchestrator.balances.stake.staked_amount - before == Decimal("100")
    assert orchestrator.balances.stake.lock_period_end == NOW + 7 * DAY


@pytest.mark.asyncio
async def test_merge_yt_approval_failure_keeps_pt_approval(orchestrator, ledger, contracts):
    ledger.set_balance(ST1_PT, ACCOUNT, 10 * E18)
    ledger.set_balance(ST1_YT, ACCOUNT, 10 * E18)
    ledger.fail_next("approve", "ERC20: approve paused", target=ST1_YT)
    ops = contracts.token_operations

    result = await orchestrator.merge("stCORE-30d", 10, 10)

    assert result.outcome == OperationOutcome.FAILED
    assert isinstance(result.error, TransactionReverted)
    assert result.error.stage == TxStage.APPROVAL.value
    assert result.error.reason == "ERC20: approve paused"
    assert len(result.tx_hashes) == 2
    assert [c.target for c in ledger.calls()] == [ST1_PT, ST1_YT]
    assert ledger.calls("mergePTYT") == []
    # PT approval is not undone
    assert ledger.allowance_of(ST1_PT, ACCOUNT, ops) == 10 * E18
    assert ledger.allowance_of(ST1_YT, ACCOUNT, ops) == 0
    assert orchestrator.status(OperationKind.MERGE) == OperationStatus.FAILED

    orchestrator.reset(OperationKind.MERGE)
    retry = await orchestrator.merge("stCORE-30d", 10, 10)

    assert retry.ok
    # only the missing YT approval is sent again
    assert [c.target for c in ledger.calls()[2:]] == [ST1_YT, ops]
    assert orchestrator.market_balance("stCORE-30d").sy == Decimal("10")


@pytest.mark.asyncio
async def test_unstake_blocked_during_lock_period(orchestrator, ledger, clock, contracts):
    ledger.set_stake(ACCOUNT, 50 * E18, lock_period_end=NOW + 3600)

    result = await orchestrator.unstake(10)

    assert isinstance(result.error, LockPeriodActive)
    assert result.error.remaining_seconds == Decimal("3600")
    assert ledger.submitted == []
    assert orchestrator.status(OperationKind.UNSTAKE) == OperationStatus.FAILED

    orchestrator.reset(OperationKind.UNSTAKE)
    clock.advance(3600)
    result = await orchestrator.unstake(10)

    assert result.ok
    assert ledger.balance_of(contracts.staking_token, ACCOUNT) == 10 * E18
    assert orchestrator.balances.stake.staked_amount == Decimal("40")


@pytest.mark.asyncio
async def test_same_kind_cannot_run_concurrently(orchestrator, ledger, contracts):
    ledger.set_balance(contracts.staking_token, ACCOUNT, 200 * E18)

    first, second = await asyncio.gather(
        orchestrator.stake(100),
        orchestrator.stake(100),
        return_exceptions=True,
    )

    assert first.ok
    assert isinstance(second, OperationInProgress)
    assert len(ledger.calls("stake")) == 1
    assert orchestrator.status(OperationKind.STAKE) == OperationStatus.IDLE


@pytest.mark.asyncio
async def test_distinct_kinds_run_concurrently(orchestrator, ledger, contracts):
    ledger.set_balance(contracts.staking_token, ACCOUNT, 100 * E18)
    ledger.set_balance(ST_UNDERLYING, ACCOUNT, 10 * E18)

    staked, wrapped = await asyncio.gather(orchestrator.stake(100), orchestrator.wrap("stCORE-90d", 10))

    assert staked.ok and wrapped.ok
    snapshot = await orchestrator.refresh_balances()
    assert snapshot.stake.staked_amount == Decimal("100")
    assert snapshot.per_market["stCORE-90d"].sy == Decimal("10")
    assert ledger.balance_of(ST2_SY, ACCOUNT) == 10 * E18


@pytest.mark.asyncio
async def test_full_yield_cycle(orchestrator, ledger):
    """wrap -> split -> swap PT for YT -> merge -> unwrap."""
    ledger.set_balance(ST_UNDERLYING, ACCOUNT, 100 * E18)
    ledger.add_pool(ST1_PT, ST1_YT, 1000 * E18, 1000 * E18)

    assert (await orchestrator.wrap("stCORE-30d", 100)).ok
    assert (await orchestrator.split("stCORE-30d", 100)).ok
    swap = await orchestrator.swap("stCORE-pt-yt", ST1_PT, 50)
    assert swap.ok

    balance = orchestrator.market_balance("stCORE-30d")
    assert balance.pt == Decimal("50")
    assert balance.yt > Decimal("100")

    assert (await orchestrator.merge("stCORE-30d", 50, 50)).ok
    assert (await orchestrator.unwrap("stCORE-30d", 50)).ok

    balance = orchestrator.market_balance("stCORE-30d")
    assert balance.sy == Decimal("0")
    assert balance.pt == Decimal("0")
    assert balance.underlying == Decimal("50")
    assert orchestrator.asset_balance(ST_UNDERLYING).underlying == Decimal("50")
    assert len(orchestrator.history.records(OperationKind.SWAP)) == 2


@pytest.mark.asyncio
async def test_swap_over_pool_cap_fails_before_submitting(orchestrator, ledger):
    ledger.add_pool(ST1_PT, ST1_YT, 100 * E18, 100 * E18)
    ledger.set_balance(ST1_PT, ACCOUNT, 50 * E18)

    result = await orchestrator.swap("stCORE-pt-yt", ST1_PT, 11)

    assert isinstance(result.error, AmountExceedsPoolCap)
    assert ledger.submitted == []


@pytest.mark.asyncio
async def test_refresh_after_operation_degrades_failed_market(orchestrator, ledger):
    ledger.set_balance(ST_UNDERLYING, ACCOUNT, 10 * E18)
    ledger.fail_reads(ST2_SY)

    result = await orchestrator.wrap("stCORE-30d", 5)

    assert result.ok
    snapshot = orchestrator.balances
    assert snapshot.is_partial
    assert set(snapshot.errors) == {"stCORE-90d"}
    assert snapshot.per_market["stCORE-30d"].sy == Decimal("5")


@pytest.mark.asyncio
async def test_disconnect_during_operation(orchestrator, ledger, contracts):
    ledger.set_balance(contracts.staking_token, ACCOUNT, 100 * E18)
    confirm = ledger.await_confirmation

    async def confirm_then_disconnect(tx_handle):
        orchestrator.disconnect()
        return await confirm(tx_handle)

    ledger.await_confirmation = confirm_then_disconnect

    result = await orchestrator.stake(100)

    # the chain still executed it; the session just stopped caring
    assert result.ok
    assert ledger.stake_of(ACCOUNT).staked == 100 * E18
    assert orchestrator.balances is None
    assert len(orchestrator.history) == 0
    assert orchestrator.status(OperationKind.STAKE) == OperationStatus.IDLE


@pytest.mark.asyncio
async def test_packaged_config_drives_orchestrator(clock, monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    config = load_config()
    c = config.contracts
    ledger = SimulatedLedger(
        config.build_markets(),
        LedgerSimConfig(
            staking=c.staking,
            staking_token=c.staking_token,
            token_operations=c.token_operations,
            amm=c.amm,
            router=c.router,
            minter=c.minter,
        ),
        clock=clock,
    )
    orchestrator = PositionOrchestrator.from_config(config, ledger, ACCOUNT, clock=clock)
    ledger.set_balance(c.staking_token, ACCOUNT, 5 * E18)

    result = await orchestrator.stake("2.5")

    assert result.ok
    assert orchestrator.balances.stake.staked_amount == Decimal("2.5")
    assert set(orchestrator.balances.per_market) == {m.market_id for m in config.build_markets()}
    assert orchestrator.history.page().total == 2

    redirect = await orchestrator.mint(config.markets[0].underlying, 1)
    assert redirect.outcome == OperationOutcome.REDIRECTED
    assert redirect.instruction.faucet_url == config.network.faucet_url
