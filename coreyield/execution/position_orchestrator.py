"""
Position Orchestrator: the public surface, one instance per connected account.

Every operation follows the same template:
1. Guard: a wallet must be connected (WalletNotConnected, no transition)
2. Static checks: unknown market/pool, bad token, bad slippage (propagate, no transition)
3. Status -> PENDING (re-entrancy guard per kind)
4. Ledger preconditions: lock period, maturity, swap quote
5. Approvals (sequential, confirmed) then the primary call (confirmed)
6. Success: full balance refresh, status -> IDLE, notify
   Failure: status -> FAILED, refresh if anything reached the chain, notify

Balances are never patched locally; every mutation is followed by a full
refresh from the ledger.
"""
import asyncio
import time
from typing import Dict, List, Optional

from coreyield.config.config import Config, ContractsConfig, ExecutionConfig
from coreyield.constants import DEFAULT_FAUCET_URL
from coreyield.data.balance_aggregator import BalanceAggregator
from coreyield.data.market_registry import MarketRegistry
from coreyield.domain.models import (
    ApprovalRequest,
    AssetBalance,
    BalanceSnapshot,
    BridgeRequest,
    ClaimRequest,
    ContractCall,
    Market,
    MergeRequest,
    MintInstruction,
    MintRequest,
    OperationKind,
    OperationOutcome,
    OperationPlan,
    OperationRequest,
    OperationResult,
    OperationStatus,
    Pool,
    SplitRequest,
    StakeRequest,
    SwapQuote,
    SwapRequest,
    UnstakeRequest,
    UnwrapRequest,
    WrapRequest,
)
from coreyield.domain.protocols import Clock, LedgerGateway
from coreyield.exceptions import (
    LockPeriodActive,
    MarketMatured,
    OperationalError,
    OperationFailed,
    ProgrammerError,
    TransactionReverted,
    ValidationError,
)
from coreyield.execution.amm_quote import quote
from coreyield.execution.operation_state_machine import OperationRunner
from coreyield.execution.transaction_history import TransactionHistory
from coreyield.monitoring.logger import get_logger
from coreyield.monitoring.notifications import Notifier
from coreyield.runtime.session import AccountSession
from coreyield.utils.units import Number, to_base_units, to_decimal

logger = get_logger(__name__)


_SUCCESS_TITLES: Dict[OperationKind, str] = {
    OperationKind.STAKE: "Stake confirmed",
    OperationKind.UNSTAKE: "Unstake confirmed",
    OperationKind.WRAP: "Wrap confirmed",
    OperationKind.UNWRAP: "Unwrap confirmed",
    OperationKind.SPLIT: "Split confirmed",
    OperationKind.MERGE: "Merge confirmed",
    OperationKind.SWAP: "Swap confirmed",
    OperationKind.CLAIM: "Claim confirmed",
    OperationKind.BRIDGE: "Bridge deposit confirmed",
    OperationKind.MINT: "Mint confirmed",
}


class PositionOrchestrator:
    """Drives approve-then-act operations for one account session."""

    def __init__(
        self,
        gateway: LedgerGateway,
        registry: MarketRegistry,
        session: AccountSession,
        contracts: ContractsConfig,
        execution: Optional[ExecutionConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = time.time,
        faucet_url: str = DEFAULT_FAUCET_URL,
    ):
        self.gateway = gateway
        self.registry = registry
        self.session = session
        self.contracts = contracts
        self.execution = execution or ExecutionConfig()
        self.notifier = notifier or Notifier()
        self.faucet_url = faucet_url
        self._clock = clock

        self.aggregator = BalanceAggregator(
            gateway,
            registry,
            staking_decimals=contracts.staking_token_decimals,
            clock=clock,
        )
        self.runner = OperationRunner(
            gateway,
            session.history,
            approval_policy=self.execution.approval_policy,
            unlimited_approval_kinds=self.execution.unlimited_approval_kinds,
        )

    @classmethod
    def from_config(
        cls,
        config: Config,
        gateway: LedgerGateway,
        account: Optional[str],
        notifier: Optional[Notifier] = None,
        clock: Clock = time.time,
    ) -> "PositionOrchestrator":
        registry = MarketRegistry(
            config.build_markets(),
            config.build_pools(),
            extra_token_decimals=config.token_decimals(),
        )
        session = AccountSession(
            account,
            chain_id=config.network.chain_id,
            history_max_records=config.history.max_records,
            clock=clock,
        )
        return cls(
            gateway,
            registry,
            session,
            config.contracts,
            config.execution,
            notifier=notifier,
            clock=clock,
            faucet_url=config.network.faucet_url,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def stake(self, amount: Number) -> OperationResult:
        return await self.execute(StakeRequest(amount=to_decimal(amount)))

    async def unstake(self, amount: Number) -> OperationResult:
        return await self.execute(UnstakeRequest(amount=to_decimal(amount)))

    async def wrap(self, market_id: str, amount: Number) -> OperationResult:
        return await self.execute(WrapRequest(market_id=market_id, amount=to_decimal(amount)))

    async def unwrap(self, market_id: str, amount: Number) -> OperationResult:
        return await self.execute(UnwrapRequest(market_id=market_id, amount=to_decimal(amount)))

    async def split(self, market_id: str, amount: Number) -> OperationResult:
        return await self.execute(SplitRequest(market_id=market_id, amount=to_decimal(amount)))

    async def merge(self, market_id: str, pt_amount: Number, yt_amount: Number) -> OperationResult:
        return await self.execute(
            MergeRequest(market_id=market_id, pt_amount=to_decimal(pt_amount), yt_amount=to_decimal(yt_amount))
        )

    async def swap(
        self,
        pool_id: str,
        token_in: str,
        amount_in: Number,
        slippage_bps: Optional[int] = None,
    ) -> OperationResult:
        return await self.execute(
            SwapRequest(pool_id=pool_id, token_in=token_in, amount_in=to_decimal(amount_in), slippage_bps=slippage_bps)
        )

    async def claim(self, market_id: Optional[str] = None) -> OperationResult:
        return await self.execute(ClaimRequest(market_id=market_id))

    async def bridge(self, target_chain_id: int, token: str, amount: Number) -> OperationResult:
        return await self.execute(
            BridgeRequest(target_chain_id=target_chain_id, token=token, amount=to_decimal(amount))
        )

    async def mint(self, token: str, amount: Number) -> OperationResult:
        return await self.execute(MintRequest(token=token, amount=to_decimal(amount)))

    async def execute(self, request: OperationRequest) -> OperationResult:
        """
        Run one operation to completion.

        Returns:
            OperationResult (CONFIRMED, FAILED with the error, or REDIRECTED for mint)

        Raises:
            SessionError: no wallet, kind already pending, or kind not reset
            ProgrammerError: unknown market/pool, invalid amounts or tokens
        """
        kind = request.kind
        account = self.session.require_account()

        if isinstance(request, MintRequest) and not self._is_minter(account):
            return await self._redirect_mint(request)

        # static validation: ProgrammerErrors surface before the slot moves
        self._build_plan(request, account, None)

        statuses = self.session.statuses
        statuses.begin(kind)
        logger.info("Operation started", kind=kind.value, market_id=getattr(request, "market_id", None))

        submitted: List[str] = []
        swap_quote: Optional[SwapQuote] = None
        try:
            swap_quote = await self._preflight(request, account)
            plan = self._build_plan(request, account, swap_quote)
            await self.runner.run(account, plan, submitted)
        except (OperationFailed, OperationalError) as e:
            return await self._handle_failure(request, e, submitted, swap_quote)
        except (asyncio.CancelledError, Exception) as e:
            if self.session.is_connected:
                statuses.fail(kind, e)
            logger.error(
                "Operation aborted by unexpected error",
                kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
                submitted=len(submitted),
            )
            raise

        result = OperationResult(
            kind=kind,
            outcome=OperationOutcome.CONFIRMED,
            tx_hashes=list(submitted),
            quote=swap_quote,
            market_id=getattr(request, "market_id", None),
        )
        if not self.session.is_connected:
            logger.warning("Operation confirmed after disconnect", kind=kind.value, tx_hashes=submitted)
            return result

        # confirmed on-chain: the slot re-arms even if the refresh below blows up
        statuses.complete(kind)
        try:
            await self.refresh_balances()
        except Exception as e:
            logger.error(
                "Balance refresh after confirmed operation failed",
                kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
                tx_hashes=submitted,
            )
            raise
        await self.notifier.success(
            _SUCCESS_TITLES[kind],
            f"{kind.value} confirmed in {len(submitted)} transaction(s)",
            kind=kind.value,
            tx_hash=submitted[-1] if submitted else None,
        )
        return result

    async def _handle_failure(
        self,
        request: OperationRequest,
        error: Exception,
        submitted: List[str],
        swap_quote: Optional[SwapQuote],
    ) -> OperationResult:
        kind = request.kind
        result = OperationResult(
            kind=kind,
            outcome=OperationOutcome.FAILED,
            tx_hashes=list(submitted),
            error=error,
            quote=swap_quote,
            market_id=getattr(request, "market_id", None),
        )
        if not self.session.is_connected:
            logger.warning("Operation failed after disconnect", kind=kind.value, error=str(error))
            return result

        self.session.statuses.fail(kind, error)
        logger.error(
            "Operation failed",
            kind=kind.value,
            error=str(error),
            error_type=type(error).__name__,
            submitted=len(submitted),
        )

        # approvals may have landed; re-read rather than assume
        if submitted:
            await self.refresh_balances()

        await self.notifier.error(
            f"{kind.value.capitalize()} failed",
            str(error),
            kind=kind.value,
            tx_hash=error.tx_hash if isinstance(error, TransactionReverted) else None,
            error_type=type(error).__name__,
        )
        return result

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _preflight(self, request: OperationRequest, account: str) -> Optional[SwapQuote]:
        """Ledger-dependent preconditions. Fails before anything is submitted."""
        now = self._clock()

        if isinstance(request, UnstakeRequest):
            reading = await self.gateway.read_stake_position(account)
            if now < reading.lock_period_end:
                remaining = to_decimal(reading.lock_period_end) - to_decimal(str(now))
                raise LockPeriodActive(remaining, reading.lock_period_end)

        elif isinstance(request, (WrapRequest, SplitRequest)):
            market = self.registry.get_market(request.market_id)
            if market.is_matured(now):
                raise MarketMatured(f"Market {market.market_id} matured at {market.maturity}")

        elif isinstance(request, SwapRequest):
            return await self.quote_swap(request.pool_id, request.token_in, request.amount_in, request.slippage_bps)

        return None

    def _build_plan(
        self,
        request: OperationRequest,
        account: str,
        swap_quote: Optional[SwapQuote],
    ) -> OperationPlan:
        c = self.contracts

        if isinstance(request, StakeRequest):
            amount = self._to_base(request.amount, c.staking_token_decimals)
            return OperationPlan(
                kind=request.kind,
                approvals=[ApprovalRequest(c.staking_token, c.staking, amount)],
                primary=ContractCall(c.staking, "stake(uint256)", (amount,)),
            )

        elif isinstance(request, UnstakeRequest):
            amount = self._to_base(request.amount, c.staking_token_decimals)
            return OperationPlan(
                kind=request.kind,
                primary=ContractCall(c.staking, "unstake(uint256)", (amount,)),
            )

        elif isinstance(request, WrapRequest):
            market = self.registry.get_market(request.market_id)
            amount = self._to_base(request.amount, market.decimals)
            return OperationPlan(
                kind=request.kind,
                approvals=[ApprovalRequest(market.underlying, market.sy_token, amount)],
                primary=ContractCall(market.sy_token, "wrap(uint256)", (amount,)),
                market_id=market.market_id,
            )

        elif isinstance(request, UnwrapRequest):
            market = self.registry.get_market(request.market_id)
            amount = self._to_base(request.amount, market.decimals)
            return OperationPlan(
                kind=request.kind,
                primary=ContractCall(market.sy_token, "unwrap(uint256)", (amount,)),
                market_id=market.market_id,
            )

        elif isinstance(request, SplitRequest):
            market = self.registry.get_market(request.market_id)
            amount = self._to_base(request.amount, market.decimals)
            return OperationPlan(
                kind=request.kind,
                approvals=[ApprovalRequest(market.sy_token, c.token_operations, amount)],
                primary=ContractCall(c.token_operations, "splitSY(address,uint256)", (market.sy_token, amount)),
                market_id=market.market_id,
            )

        elif isinstance(request, MergeRequest):
            market = self.registry.get_market(request.market_id)
            pt_amount = self._to_base(request.pt_amount, market.decimals)
            yt_amount = self._to_base(request.yt_amount, market.decimals)
            return OperationPlan(
                kind=request.kind,
                # PT then YT, each confirmed before the next
                approvals=[
                    ApprovalRequest(market.pt_token, c.token_operations, pt_amount),
                    ApprovalRequest(market.yt_token, c.token_operations, yt_amount),
                ],
                primary=ContractCall(
                    c.token_operations,
                    "mergePTYT(address,uint256,uint256)",
                    (market.sy_token, pt_amount, yt_amount),
                ),
                market_id=market.market_id,
            )

        elif isinstance(request, SwapRequest):
            pool = self.registry.get_pool(request.pool_id)
            if not pool.has_token(request.token_in):
                raise ValidationError(f"Token {request.token_in} is not in pool {pool.pool_id}")
            self._resolve_slippage(request.slippage_bps)
            amount_in = self._to_base(request.amount_in, self.registry.token_decimals(request.token_in))
            token_out = pool.token_b if pool.token_a.lower() == request.token_in.lower() else pool.token_a
            min_out = swap_quote.min_amount_out if swap_quote is not None else 0
            market = self.registry.market_for_token(request.token_in)
            return OperationPlan(
                kind=request.kind,
                approvals=[ApprovalRequest(request.token_in, c.amm, amount_in)],
                primary=ContractCall(
                    c.amm,
                    "swap(address,address,uint256,uint256,address)",
                    (request.token_in, token_out, amount_in, min_out, account),
                ),
                market_id=market.market_id if market else None,
            )

        elif isinstance(request, ClaimRequest):
            if request.market_id is None:
                return OperationPlan(kind=request.kind, primary=ContractCall(c.staking, "claimRewards()"))
            market = self.registry.get_market(request.market_id)
            return OperationPlan(
                kind=request.kind,
                primary=ContractCall(market.yt_token, "claimYield()"),
                market_id=market.market_id,
            )

        elif isinstance(request, BridgeRequest):
            amount = self._to_base(request.amount, self.registry.token_decimals(request.token))
            return OperationPlan(
                kind=request.kind,
                approvals=[ApprovalRequest(request.token, c.router, amount)],
                primary=ContractCall(
                    c.router,
                    "bridgeAndTrack(uint256,address,uint256)",
                    (request.target_chain_id, request.token, amount),
                ),
            )

        elif isinstance(request, MintRequest):
            amount = self._to_base(request.amount, self.registry.token_decimals(request.token))
            return OperationPlan(
                kind=request.kind,
                primary=ContractCall(request.token, "mint(address,uint256)", (account, amount)),
            )

        else:
            logger.warning(f"Unhandled operation request: {type(request).__name__}")
            raise ProgrammerError(f"Unhandled operation request: {type(request).__name__}")

    @staticmethod
    def _to_base(amount: Number, decimals: int) -> int:
        base = to_base_units(amount, decimals)
        if base <= 0:
            raise ValidationError(f"Amount {amount} is below the token's smallest unit")
        return base

    def _resolve_slippage(self, slippage_bps: Optional[int]) -> int:
        if slippage_bps is None:
            return self.execution.default_slippage_bps
        if slippage_bps > self.execution.max_slippage_bps:
            raise ValidationError(
                f"slippage_bps {slippage_bps} exceeds the configured maximum {self.execution.max_slippage_bps}"
            )
        return slippage_bps

    # ------------------------------------------------------------------
    # Mint faucet
    # ------------------------------------------------------------------

    def _is_minter(self, account: str) -> bool:
        minter = self.contracts.minter
        return minter is not None and minter.lower() == account.lower()

    async def _redirect_mint(self, request: MintRequest) -> OperationResult:
        market = self.registry.market_for_token(request.token)
        symbol = market.asset if market else request.token
        instruction = MintInstruction(
            token=request.token,
            faucet_url=self.faucet_url,
            message=(
                f"Only the protocol deployer can mint test {symbol}. "
                f"Request testnet tokens from the faucet at {self.faucet_url}."
            ),
        )
        logger.info("Mint redirected to faucet", token=request.token)
        await self.notifier.info("Mint not available", instruction.message, kind=OperationKind.MINT.value)
        return OperationResult(
            kind=OperationKind.MINT,
            outcome=OperationOutcome.REDIRECTED,
            instruction=instruction,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def refresh_balances(self) -> BalanceSnapshot:
        """Rebuild the session's balance cache from the ledger."""
        account = self.session.require_account()
        snapshot = await self.aggregator.refresh_balances(account)
        self.session.apply_snapshot(snapshot)
        return snapshot

    @property
    def balances(self) -> Optional[BalanceSnapshot]:
        return self.session.snapshot

    def market_balance(self, market_id: str) -> AssetBalance:
        self.registry.get_market(market_id)
        snapshot = self.session.snapshot
        if snapshot is None:
            return AssetBalance()
        return snapshot.per_market.get(market_id, AssetBalance())

    def asset_balance(self, underlying: str) -> AssetBalance:
        snapshot = self.session.snapshot
        if snapshot is None:
            return AssetBalance()
        for key, balance in snapshot.per_asset.items():
            if key.lower() == underlying.lower():
                return balance
        return AssetBalance()

    async def get_pool(self, pool_id: str) -> Pool:
        spec = self.registry.get_pool(pool_id)
        reserves = await self.gateway.read_pool_reserves(spec)
        return Pool.from_reserves(spec, reserves)

    async def quote_swap(
        self,
        pool_id: str,
        token_in: str,
        amount_in: Number,
        slippage_bps: Optional[int] = None,
    ) -> SwapQuote:
        """Speculative quote against live reserves. Submits nothing."""
        slippage = self._resolve_slippage(slippage_bps)
        spec = self.registry.get_pool(pool_id)
        if not spec.has_token(token_in):
            raise ValidationError(f"Token {token_in} is not in pool {pool_id}")
        amount = self._to_base(amount_in, self.registry.token_decimals(token_in))
        pool = await self.get_pool(pool_id)
        return quote(
            pool,
            token_in,
            amount,
            slippage,
            pool_cap_bps=self.execution.pool_cap_bps,
            min_output_ratio_bps=self.execution.min_output_ratio_bps,
        )

    def list_markets(self) -> List[Market]:
        return self.registry.list_markets()

    # ------------------------------------------------------------------
    # Status slots
    # ------------------------------------------------------------------

    def status(self, kind: OperationKind) -> OperationStatus:
        return self.session.statuses.status(OperationKind(kind))

    def statuses(self) -> Dict[OperationKind, OperationStatus]:
        return self.session.statuses.snapshot()

    def last_error(self, kind: OperationKind) -> Optional[Exception]:
        return self.session.statuses.last_error(OperationKind(kind))

    def reset(self, kind: OperationKind) -> None:
        """Re-arm a failed kind so it can be invoked again."""
        self.session.statuses.reset(OperationKind(kind))

    @property
    def history(self) -> TransactionHistory:
        return self.session.history

    def disconnect(self) -> None:
        self.session.disconnect()
