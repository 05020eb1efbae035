"""
Domain models for the position orchestration engine.

Ledger-facing amounts are integer base units; caller-facing balances are
Decimal whole-token amounts. All timestamps are unix seconds.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple, Union

from coreyield.exceptions import ValidationError
from coreyield.utils.units import require_positive


class OperationKind(str, Enum):
    """User-initiated operation kinds. Each kind owns one status slot."""
    STAKE = "stake"
    UNSTAKE = "unstake"
    WRAP = "wrap"
    UNWRAP = "unwrap"
    SPLIT = "split"
    MERGE = "merge"
    SWAP = "swap"
    CLAIM = "claim"
    BRIDGE = "bridge"
    MINT = "mint"


class OperationStatus(str, Enum):
    """Status slot value read by the presentation layer."""
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class OperationOutcome(str, Enum):
    """How an orchestrator call ended."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REDIRECTED = "redirected"   # mint by a non-minter; no transaction attempted


class TxStage(str, Enum):
    """Which step of an operation a transaction belongs to."""
    APPROVAL = "approval"
    PRIMARY = "primary"


# ============ CATALOG ============

@dataclass(frozen=True)
class Market:
    """
    One SY/PT/YT triple over an underlying asset with a fixed maturity.

    Immutable; loaded once at startup from configuration.
    """
    market_id: str
    asset: str  # display symbol, e.g. "stCORE"
    underlying: str
    sy_token: str
    pt_token: str
    yt_token: str
    maturity: int
    decimals: int = 18
    pool_id: Optional[str] = None

    def __post_init__(self):
        if not self.market_id:
            raise ValidationError("Market id must be non-empty")
        triple = {self.sy_token.lower(), self.pt_token.lower(), self.yt_token.lower()}
        if len(triple) != 3:
            raise ValidationError(f"Market {self.market_id}: SY/PT/YT must be three distinct tokens")
        if self.underlying.lower() in triple:
            raise ValidationError(f"Market {self.market_id}: underlying cannot be one of SY/PT/YT")
        if self.decimals < 0:
            raise ValidationError(f"Market {self.market_id}: decimals must be >= 0")

    def is_matured(self, now: float) -> bool:
        return now >= self.maturity

    def seconds_to_maturity(self, now: float) -> int:
        return max(0, int(self.maturity - now))

    def tokens(self) -> Tuple[str, str, str, str]:
        """(underlying, sy, pt, yt)"""
        return (self.underlying, self.sy_token, self.pt_token, self.yt_token)


@dataclass(frozen=True)
class PoolSpec:
    """Static AMM pool entry: which two tokens it pairs."""
    pool_id: str
    token_a: str
    token_b: str

    def __post_init__(self):
        if self.token_a.lower() == self.token_b.lower():
            raise ValidationError(f"Pool {self.pool_id}: token_a and token_b must differ")

    def canonical(self) -> "PoolSpec":
        """Return this spec with tokens in canonical (lowercase-sorted) order."""
        if self.token_a.lower() <= self.token_b.lower():
            return self
        return PoolSpec(pool_id=self.pool_id, token_a=self.token_b, token_b=self.token_a)

    def has_token(self, token: str) -> bool:
        return token.lower() in (self.token_a.lower(), self.token_b.lower())


@dataclass(frozen=True)
class PoolReserves:
    """Raw pool state as read from the ledger."""
    reserve_a: int
    reserve_b: int
    is_active: bool
    fee_bps: int


@dataclass(frozen=True)
class Pool:
    """
    Live AMM pool: static spec joined with reserves.

    Swaps require both reserves > 0 and is_active.
    """
    pool_id: str
    token_a: str
    token_b: str
    reserve_a: int
    reserve_b: int
    is_active: bool
    trading_fee_bps: int = 0

    @classmethod
    def from_reserves(cls, spec: PoolSpec, reserves: PoolReserves) -> "Pool":
        return cls(
            pool_id=spec.pool_id,
            token_a=spec.token_a,
            token_b=spec.token_b,
            reserve_a=reserves.reserve_a,
            reserve_b=reserves.reserve_b,
            is_active=reserves.is_active,
            trading_fee_bps=reserves.fee_bps,
        )

    def orient(self, token_in: str) -> Tuple[str, int, int]:
        """
        Return (token_out, reserve_in, reserve_out) for a swap of `token_in`.

        Raises:
            ValidationError: token_in is not one of the pool's tokens
        """
        key = token_in.lower()
        if key == self.token_a.lower():
            return self.token_b, self.reserve_a, self.reserve_b
        if key == self.token_b.lower():
            return self.token_a, self.reserve_b, self.reserve_a
        raise ValidationError(f"Token {token_in} is not in pool {self.pool_id}")


# ============ BALANCES ============

ZERO = Decimal("0")


@dataclass(frozen=True)
class AssetBalance:
    """
    Holdings for one market, or the sum over all markets of one underlying.

    Market-level entries are the source of truth; asset-level entries are
    always recomputed from them.
    """
    underlying: Decimal = ZERO
    sy: Decimal = ZERO
    pt: Decimal = ZERO
    yt: Decimal = ZERO
    claimable_yield: Decimal = ZERO

    def __post_init__(self):
        for name in ("underlying", "sy", "pt", "yt", "claimable_yield"):
            if getattr(self, name) < 0:
                raise ValidationError(f"AssetBalance.{name} cannot be negative")


@dataclass(frozen=True)
class StakeReading:
    """Staking state in base units, as returned by the ledger."""
    staked_amount: int
    last_stake_time: int
    lock_period_end: int
    earned_rewards: int


@dataclass(frozen=True)
class StakePosition:
    """Account's staking position in whole-token units."""
    staked_amount: Decimal
    last_stake_time: int
    lock_period_end: int
    earned_rewards: Decimal

    def remaining_lock(self, now: float) -> Decimal:
        """Seconds until unstaking is allowed (0 once unlocked)."""
        remaining = Decimal(self.lock_period_end) - Decimal(str(now))
        return remaining if remaining > 0 else ZERO

    def is_locked(self, now: float) -> bool:
        return now < self.lock_period_end


@dataclass(frozen=True)
class BalanceSnapshot:
    """
    One complete refresh of the account's balances.

    `errors` maps a market id (or "staking") to the read error that zeroed it.
    `taken_at` is excluded from equality so two refreshes over an unchanged
    ledger compare equal.
    """
    per_market: Dict[str, AssetBalance]
    per_asset: Dict[str, AssetBalance]
    stake: Optional[StakePosition] = None
    errors: Dict[str, str] = field(default_factory=dict)
    taken_at: float = field(default=0.0, compare=False)

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)


# ============ LEDGER CALLS ============

@dataclass(frozen=True)
class ContractCall:
    """
    A contract function call: target address, canonical signature, arguments.

    e.g. ContractCall(staking, "stake(uint256)", (amount,))
    """
    target: str
    signature: str
    args: Tuple = ()

    @property
    def function_name(self) -> str:
        return self.signature.split("(", 1)[0]

    @property
    def arg_types(self) -> List[str]:
        inner = self.signature[self.signature.index("(") + 1:self.signature.rindex(")")]
        return [t.strip() for t in inner.split(",")] if inner.strip() else []


@dataclass(frozen=True)
class Receipt:
    """Outcome of a mined transaction."""
    tx_hash: str
    success: bool
    revert_reason: Optional[str] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class ApprovalRequest:
    """An allowance the account must grant before the primary call."""
    token: str
    spender: str
    amount: int


@dataclass
class OperationPlan:
    """Approvals (in order) followed by one primary call."""
    kind: OperationKind
    primary: ContractCall
    approvals: List[ApprovalRequest] = field(default_factory=list)
    market_id: Optional[str] = None


# ============ OPERATION REQUESTS (one payload shape per kind) ============

@dataclass(frozen=True)
class StakeRequest:
    kind: ClassVar[OperationKind] = OperationKind.STAKE
    amount: Decimal

    def __post_init__(self):
        require_positive(self.amount)


@dataclass(frozen=True)
class UnstakeRequest:
    kind: ClassVar[OperationKind] = OperationKind.UNSTAKE
    amount: Decimal

    def __post_init__(self):
        require_positive(self.amount)


@dataclass(frozen=True)
class WrapRequest:
    """Wrap underlying into the market's SY token."""
    kind: ClassVar[OperationKind] = OperationKind.WRAP
    market_id: str
    amount: Decimal

    def __post_init__(self):
        require_positive(self.amount)


@dataclass(frozen=True)
class UnwrapRequest:
    kind: ClassVar[OperationKind] = OperationKind.UNWRAP
    market_id: str
    amount: Decimal

    def __post_init__(self):
        require_positive(self.amount)


@dataclass(frozen=True)
class SplitRequest:
    """Split SY into equal amounts of PT and YT."""
    kind: ClassVar[OperationKind] = OperationKind.SPLIT
    market_id: str
    amount: Decimal

    def __post_init__(self):
        require_positive(self.amount)


@dataclass(frozen=True)
class MergeRequest:
    """Merge PT + YT back into SY."""
    kind: ClassVar[OperationKind] = OperationKind.MERGE
    market_id: str
    pt_amount: Decimal
    yt_amount: Decimal

    def __post_init__(self):
        require_positive(self.pt_amount, "pt_amount")
        require_positive(self.yt_amount, "yt_amount")


@dataclass(frozen=True)
class SwapRequest:
    """Swap one pool token for the other. slippage_bps=None uses the configured default."""
    kind: ClassVar[OperationKind] = OperationKind.SWAP
    pool_id: str
    token_in: str
    amount_in: Decimal
    slippage_bps: Optional[int] = None

    def __post_init__(self):
        require_positive(self.amount_in, "amount_in")
        if self.slippage_bps is not None and not 0 <= self.slippage_bps < 10_000:
            raise ValidationError(f"slippage_bps must be in [0, 10000), got {self.slippage_bps}")


@dataclass(frozen=True)
class ClaimRequest:
    """Claim YT yield for a market, or staking rewards when market_id is None."""
    kind: ClassVar[OperationKind] = OperationKind.CLAIM
    market_id: Optional[str] = None


@dataclass(frozen=True)
class BridgeRequest:
    kind: ClassVar[OperationKind] = OperationKind.BRIDGE
    target_chain_id: int
    token: str
    amount: Decimal

    def __post_init__(self):
        require_positive(self.amount)
        if self.target_chain_id <= 0:
            raise ValidationError(f"target_chain_id must be > 0, got {self.target_chain_id}")


@dataclass(frozen=True)
class MintRequest:
    """Test-asset faucet mint to the connected account."""
    kind: ClassVar[OperationKind] = OperationKind.MINT
    token: str
    amount: Decimal

    def __post_init__(self):
        require_positive(self.amount)


OperationRequest = Union[
    StakeRequest,
    UnstakeRequest,
    WrapRequest,
    UnwrapRequest,
    SplitRequest,
    MergeRequest,
    SwapRequest,
    ClaimRequest,
    BridgeRequest,
    MintRequest,
]


# ============ RESULTS ============

@dataclass(frozen=True)
class SwapQuote:
    """Constant-product estimate in base units."""
    pool_id: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    min_amount_out: int
    slippage_bps: int


@dataclass(frozen=True)
class MintInstruction:
    """Out-of-band instructions returned to non-minters instead of a transaction."""
    token: str
    faucet_url: str
    message: str


@dataclass
class OperationResult:
    """What an orchestrator operation returns to its caller."""
    kind: OperationKind
    outcome: OperationOutcome
    tx_hashes: List[str] = field(default_factory=list)
    error: Optional[Exception] = None
    quote: Optional[SwapQuote] = None
    instruction: Optional[MintInstruction] = None
    market_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == OperationOutcome.CONFIRMED
