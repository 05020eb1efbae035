"""
Balance Aggregator.

Reads each market's balances for one account in parallel and folds them
into per-underlying totals. A market whose reads fail is zeroed and flagged
in the snapshot's `errors`, never dropped silently.
"""
import asyncio
import time
from typing import Dict, List, Optional, Tuple

from coreyield.data.market_registry import MarketRegistry
from coreyield.domain.models import AssetBalance, BalanceSnapshot, Market, StakePosition
from coreyield.domain.protocols import Clock, LedgerGateway
from coreyield.exceptions import OperationalError
from coreyield.monitoring.logger import get_logger
from coreyield.utils.units import from_base_units

logger = get_logger(__name__)

STAKING_ERROR_KEY = "staking"


def aggregate_by_underlying(
    markets: List[Market],
    per_market: Dict[str, AssetBalance],
    failed: Optional[Dict[str, str]] = None,
) -> Dict[str, AssetBalance]:
    """
    Fold market-level balances into one AssetBalance per underlying address.

    sy, pt, yt and claimable_yield are summed over every market sharing the
    underlying. `underlying` is the account's wallet balance of that token,
    identical in every market that reads it, so it is taken once from the
    first market whose read succeeded.
    """
    failed = failed or {}
    totals: Dict[str, AssetBalance] = {}
    wallet_seen: Dict[str, bool] = {}

    for market in markets:
        balance = per_market.get(market.market_id)
        if balance is None:
            continue
        key = market.underlying
        current = totals.get(key, AssetBalance())

        underlying = current.underlying
        if not wallet_seen.get(key) and market.market_id not in failed:
            underlying = balance.underlying
            wallet_seen[key] = True

        totals[key] = AssetBalance(
            underlying=underlying,
            sy=current.sy + balance.sy,
            pt=current.pt + balance.pt,
            yt=current.yt + balance.yt,
            claimable_yield=current.claimable_yield + balance.claimable_yield,
        )
    return totals


class BalanceAggregator:
    """Computes BalanceSnapshots for an account from the ledger."""

    def __init__(
        self,
        gateway: LedgerGateway,
        registry: MarketRegistry,
        staking_decimals: int = 18,
        clock: Clock = time.time,
    ):
        self.gateway = gateway
        self.registry = registry
        self.staking_decimals = staking_decimals
        self._clock = clock

    async def refresh_balances(self, account: str) -> BalanceSnapshot:
        """
        Read every market (and the stake position) for `account` concurrently.

        Always runs to completion. Transient read failures degrade the
        affected entry to zero and are recorded in `errors`.
        """
        markets = self.registry.list_markets()

        results = await asyncio.gather(
            *(self._read_market(market, account) for market in markets),
            self._read_stake(account),
        )
        market_results: List[Tuple[AssetBalance, Optional[str]]] = list(results[:-1])
        stake, stake_error = results[-1]

        per_market: Dict[str, AssetBalance] = {}
        errors: Dict[str, str] = {}
        for market, (balance, error) in zip(markets, market_results):
            per_market[market.market_id] = balance
            if error is not None:
                errors[market.market_id] = error
        if stake_error is not None:
            errors[STAKING_ERROR_KEY] = stake_error

        per_asset = aggregate_by_underlying(markets, per_market, errors)

        if errors:
            logger.warning(
                "Balance refresh completed with failed reads",
                account=account,
                failed=sorted(errors),
                markets=len(markets),
            )
        else:
            logger.debug("Balance refresh completed", account=account, markets=len(markets))

        return BalanceSnapshot(
            per_market=per_market,
            per_asset=per_asset,
            stake=stake,
            errors=errors,
            taken_at=self._clock(),
        )

    async def _read_market(self, market: Market, account: str) -> Tuple[AssetBalance, Optional[str]]:
        try:
            underlying, sy, pt, yt, claimable = await asyncio.gather(
                self.gateway.read_balance(market.underlying, account),
                self.gateway.read_balance(market.sy_token, account),
                self.gateway.read_balance(market.pt_token, account),
                self.gateway.read_balance(market.yt_token, account),
                self.gateway.read_claimable_yield(market.yt_token, account),
            )
        except OperationalError as e:
            logger.warning(
                "Market balance read failed, zeroing entry",
                market_id=market.market_id,
                account=account,
                error=str(e),
            )
            return AssetBalance(), str(e)

        d = market.decimals
        return AssetBalance(
            underlying=from_base_units(underlying, d),
            sy=from_base_units(sy, d),
            pt=from_base_units(pt, d),
            yt=from_base_units(yt, d),
            claimable_yield=from_base_units(claimable, d),
        ), None

    async def _read_stake(self, account: str) -> Tuple[Optional[StakePosition], Optional[str]]:
        try:
            reading = await self.gateway.read_stake_position(account)
        except OperationalError as e:
            logger.warning("Stake position read failed", account=account, error=str(e))
            return None, str(e)
        return StakePosition(
            staked_amount=from_base_units(reading.staked_amount, self.staking_decimals),
            last_stake_time=reading.last_stake_time,
            lock_period_end=reading.lock_period_end,
            earned_rewards=from_base_units(reading.earned_rewards, self.staking_decimals),
        ), None
