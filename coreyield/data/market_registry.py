"""
Market Registry: static catalog of yield markets and AMM pools.

Built once at startup from configuration. Pure lookup, no ledger I/O.
"""
from typing import Dict, Iterable, List, Optional

from coreyield.constants import DEFAULT_TOKEN_DECIMALS
from coreyield.domain.models import Market, PoolSpec
from coreyield.exceptions import UnknownMarket, UnknownPool, ValidationError
from coreyield.monitoring.logger import get_logger

logger = get_logger(__name__)


class MarketRegistry:
    """
    Catalog of markets (SY/PT/YT triples) and the pools they trade in.

    Responsibilities:
    - Reject duplicate market ids and SY/PT/YT tokens shared across markets
    - Keep pool tokens in canonical order
    - Resolve token decimals for unit conversion
    - Raise UnknownMarket / UnknownPool on lookups of ids it does not hold
    """

    def __init__(
        self,
        markets: Iterable[Market],
        pools: Iterable[PoolSpec] = (),
        extra_token_decimals: Optional[Dict[str, int]] = None,
    ):
        self._markets: Dict[str, Market] = {}
        self._pools: Dict[str, PoolSpec] = {}
        self._token_decimals: Dict[str, int] = {}

        derivative_owner: Dict[str, str] = {}
        for market in markets:
            if market.market_id in self._markets:
                raise ValidationError(f"Duplicate market id: {market.market_id}")
            for token in (market.sy_token, market.pt_token, market.yt_token):
                owner = derivative_owner.get(token.lower())
                if owner is not None:
                    raise ValidationError(
                        f"Token {token} of market {market.market_id} already belongs to market {owner}"
                    )
                derivative_owner[token.lower()] = market.market_id
            self._markets[market.market_id] = market
            for token in market.tokens():
                self._token_decimals.setdefault(token.lower(), market.decimals)

        for pool in pools:
            if pool.pool_id in self._pools:
                raise ValidationError(f"Duplicate pool id: {pool.pool_id}")
            self._pools[pool.pool_id] = pool.canonical()

        for market in self._markets.values():
            if market.pool_id is not None and market.pool_id not in self._pools:
                raise ValidationError(
                    f"Market {market.market_id} references unknown pool {market.pool_id}"
                )

        for token, decimals in (extra_token_decimals or {}).items():
            self._token_decimals[token.lower()] = decimals

        logger.info(
            "Market registry loaded",
            markets=len(self._markets),
            pools=len(self._pools),
        )

    # ---- markets ----

    def list_markets(self) -> List[Market]:
        return list(self._markets.values())

    def get_market(self, market_id: str) -> Market:
        try:
            return self._markets[market_id]
        except KeyError:
            raise UnknownMarket(f"Unknown market id: {market_id}") from None

    def markets_for_underlying(self, underlying: str) -> List[Market]:
        key = underlying.lower()
        return [m for m in self._markets.values() if m.underlying.lower() == key]

    def underlyings(self) -> List[str]:
        """Distinct underlying addresses, in market declaration order."""
        seen: Dict[str, str] = {}
        for market in self._markets.values():
            seen.setdefault(market.underlying.lower(), market.underlying)
        return list(seen.values())

    def market_for_token(self, token: str) -> Optional[Market]:
        """Market whose SY, PT or YT is `token` (None for underlyings and strangers)."""
        key = token.lower()
        for market in self._markets.values():
            if key in (market.sy_token.lower(), market.pt_token.lower(), market.yt_token.lower()):
                return market
        return None

    # ---- pools ----

    def list_pools(self) -> List[PoolSpec]:
        return list(self._pools.values())

    def get_pool(self, pool_id: str) -> PoolSpec:
        try:
            return self._pools[pool_id]
        except KeyError:
            raise UnknownPool(f"Unknown pool id: {pool_id}") from None

    # ---- units ----

    def token_decimals(self, token: str) -> int:
        return self._token_decimals.get(token.lower(), DEFAULT_TOKEN_DECIMALS)

    def __len__(self) -> int:
        return len(self._markets)

    def __contains__(self, market_id: str) -> bool:
        return market_id in self._markets
