"""
AMM Quote Engine.

Mirrors the pool's constant-product math to estimate a swap output and a
slippage-protected minimum. Fees are applied by the pool contract, not here.
Side-effect free; safe to call speculatively.
"""
from coreyield.constants import (
    BPS_DENOMINATOR,
    DEFAULT_MIN_OUTPUT_RATIO_BPS,
    DEFAULT_POOL_CAP_BPS,
)
from coreyield.domain.models import Pool, SwapQuote
from coreyield.exceptions import (
    AmountExceedsPoolCap,
    InsufficientLiquidity,
    NoLiquidity,
    PoolInactive,
    ValidationError,
)


def quote(
    pool: Pool,
    token_in: str,
    amount_in: int,
    slippage_bps: int,
    pool_cap_bps: int = DEFAULT_POOL_CAP_BPS,
    min_output_ratio_bps: int = DEFAULT_MIN_OUTPUT_RATIO_BPS,
) -> SwapQuote:
    """
    Quote a swap of `amount_in` base units of `token_in` against `pool`.

    Args:
        pool: Live pool (reserves already read)
        token_in: Address of the token being sold
        amount_in: Input amount in base units (> 0)
        slippage_bps: Tolerance applied to derive min_amount_out
        pool_cap_bps: Largest input allowed, as bps of reserve_in
        min_output_ratio_bps: Smallest sane output, as bps of amount_in

    Returns:
        SwapQuote with floor-rounded amount_out and min_amount_out

    Raises:
        PoolInactive: pool.is_active is False
        NoLiquidity: either reserve is zero
        ValidationError: bad amount, slippage, or token not in pool
        AmountExceedsPoolCap: amount_in > reserve_in * pool_cap_bps / 10000
        InsufficientLiquidity: output below min_output_ratio_bps of input
    """
    if amount_in <= 0:
        raise ValidationError(f"amount_in must be > 0, got {amount_in}")
    if not 0 <= slippage_bps < BPS_DENOMINATOR:
        raise ValidationError(f"slippage_bps must be in [0, {BPS_DENOMINATOR}), got {slippage_bps}")

    if not pool.is_active:
        raise PoolInactive(f"Pool {pool.pool_id} is inactive")
    if pool.reserve_a <= 0 or pool.reserve_b <= 0:
        raise NoLiquidity(f"Pool {pool.pool_id} has no liquidity")

    token_out, reserve_in, reserve_out = pool.orient(token_in)

    # integer form of amount_in > reserve_in * cap
    if amount_in * BPS_DENOMINATOR > reserve_in * pool_cap_bps:
        raise AmountExceedsPoolCap(
            f"Swap of {amount_in} exceeds {pool_cap_bps / 100:g}% of reserve {reserve_in} in pool {pool.pool_id}"
        )

    amount_out = amount_in * reserve_out // (reserve_in + amount_in)

    if amount_out * BPS_DENOMINATOR < amount_in * min_output_ratio_bps:
        raise InsufficientLiquidity(
            f"Output {amount_out} is below {min_output_ratio_bps / 100:g}% of input {amount_in} in pool {pool.pool_id}"
        )

    min_amount_out = amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR

    return SwapQuote(
        pool_id=pool.pool_id,
        token_in=token_in,
        token_out=token_out,
        amount_in=amount_in,
        amount_out=amount_out,
        min_amount_out=min_amount_out,
        slippage_bps=slippage_bps,
    )
