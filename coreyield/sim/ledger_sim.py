"""
SimulatedLedger: in-memory chain that implements the LedgerGateway interface.

Models:
- ERC20 balances and allowances (transferFrom consumes allowance; MAX_UINT256 is standing)
- Staking with a lock period and accrued rewards
- SY wrap/unwrap and SY -> PT + YT split / merge at 1:1
- Constant-product PT/YT pools with a trading fee and min-out check
- YT yield claims, minter-gated test-token mint, bridge deposits
- Atomic transactions: a revert restores the pre-call state

Fault injection:
- fail_next(function, reason, target=None): next call to `function` (on `target`, if given) reverts
- fail_reads(token): every read touching `token` raises LedgerUnavailable
- set_unavailable(True): every read and submit raises LedgerUnavailable

This is a drop-in replacement for JsonRpcLedgerGateway in tests and dry runs.
"""
import asyncio
import copy
import itertools
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from coreyield.constants import BPS_DENOMINATOR, MAX_UINT256
from coreyield.domain.models import (
    ContractCall,
    Market,
    PoolReserves,
    PoolSpec,
    Receipt,
    StakeReading,
)
from coreyield.domain.protocols import Clock
from coreyield.exceptions import LedgerUnavailable
from coreyield.monitoring.logger import get_logger

logger = get_logger(__name__)


class _Revert(Exception):
    """Raised inside a simulated call; becomes a failed Receipt."""
    pass


# ---------------------------------------------------------------------------
# State models
# ---------------------------------------------------------------------------

@dataclass
class SimPool:
    token_a: str
    token_b: str
    reserve_a: int
    reserve_b: int
    is_active: bool = True
    fee_bps: int = 30


@dataclass
class SimStake:
    staked: int = 0
    last_stake_time: int = 0
    lock_period_end: int = 0
    earned: int = 0


@dataclass
class SubmittedTx:
    tx_hash: str
    account: str
    call: ContractCall


@dataclass
class LedgerSimConfig:
    """Contract addresses and protocol parameters for the simulated chain."""
    staking: str = "0x00000000000000000000000000000000005a4b10"
    staking_token: str = "0x00000000000000000000000000000000000dc0e1"
    token_operations: str = "0x00000000000000000000000000000000000070b5"
    amm: str = "0x0000000000000000000000000000000000000a33"
    router: str = "0x0000000000000000000000000000000000000b1d"
    minter: Optional[str] = None
    lock_period_seconds: int = 7 * 24 * 3600


def _k(address: str) -> str:
    return address.lower()


def _pool_key(token_a: str, token_b: str) -> Tuple[str, str]:
    a, b = _k(token_a), _k(token_b)
    return (a, b) if a <= b else (b, a)


# ---------------------------------------------------------------------------
# Simulated ledger
# ---------------------------------------------------------------------------

class SimulatedLedger:
    """In-memory ledger. All methods are async to match the real gateway."""

    def __init__(
        self,
        markets: Iterable[Market] = (),
        config: Optional[LedgerSimConfig] = None,
        clock: Clock = time.time,
    ):
        self.config = config or LedgerSimConfig()
        self._clock = clock
        self._markets = list(markets)
        self._sy_market: Dict[str, Market] = {_k(m.sy_token): m for m in self._markets}
        self._yt_market: Dict[str, Market] = {_k(m.yt_token): m for m in self._markets}

        self._balances: Dict[Tuple[str, str], int] = {}
        self._allowances: Dict[Tuple[str, str, str], int] = {}
        self._pools: Dict[Tuple[str, str], SimPool] = {}
        self._stakes: Dict[str, SimStake] = {}
        self._claimable: Dict[Tuple[str, str], int] = {}
        self._bridged: List[Tuple[str, int, str, int]] = []

        self._receipts: Dict[str, Receipt] = {}
        self.submitted: List[SubmittedTx] = []
        self._tx_counter = itertools.count(1)
        self._block = 1

        self._fail_next: Dict[Tuple[str, Optional[str]], str] = {}
        self._failing_reads: Set[str] = set()
        self._unavailable = False

        self._handlers: Dict[str, Callable[[str, ContractCall], None]] = {
            "approve": self._approve,
            "stake": self._stake,
            "unstake": self._unstake,
            "claimRewards": self._claim_rewards,
            "wrap": self._wrap,
            "unwrap": self._unwrap,
            "splitSY": self._split,
            "mergePTYT": self._merge,
            "swap": self._swap,
            "claimYield": self._claim_yield,
            "mint": self._mint,
            "bridgeAndTrack": self._bridge,
        }

    # ---- seeding ----

    def set_balance(self, token: str, account: str, amount: int) -> None:
        self._balances[(_k(token), _k(account))] = amount

    def set_allowance(self, token: str, owner: str, spender: str, amount: int) -> None:
        self._allowances[(_k(token), _k(owner), _k(spender))] = amount

    def add_pool(
        self,
        token_a: str,
        token_b: str,
        reserve_a: int,
        reserve_b: int,
        is_active: bool = True,
        fee_bps: int = 30,
    ) -> None:
        key = _pool_key(token_a, token_b)
        if key[0] != _k(token_a):
            token_a, token_b, reserve_a, reserve_b = token_b, token_a, reserve_b, reserve_a
        self._pools[key] = SimPool(token_a, token_b, reserve_a, reserve_b, is_active, fee_bps)

    def set_pool_active(self, token_a: str, token_b: str, is_active: bool) -> None:
        self._pools[_pool_key(token_a, token_b)].is_active = is_active

    def set_stake(
        self,
        account: str,
        staked: int,
        lock_period_end: int,
        last_stake_time: int = 0,
        earned: int = 0,
    ) -> None:
        self._stakes[_k(account)] = SimStake(staked, last_stake_time, lock_period_end, earned)
        self._credit(self.config.staking_token, self.config.staking, staked)

    def set_claimable_yield(self, yt_token: str, account: str, amount: int) -> None:
        self._claimable[(_k(yt_token), _k(account))] = amount

    # ---- fault injection ----

    def fail_next(self, function: str, reason: str = "Simulated revert", target: Optional[str] = None) -> None:
        self._fail_next[(function, _k(target) if target else None)] = reason

    def fail_reads(self, token: str) -> None:
        self._failing_reads.add(_k(token))

    def restore_reads(self, token: Optional[str] = None) -> None:
        if token is None:
            self._failing_reads.clear()
        else:
            self._failing_reads.discard(_k(token))

    def set_unavailable(self, unavailable: bool = True) -> None:
        self._unavailable = unavailable

    # ---- inspection ----

    def balance_of(self, token: str, account: str) -> int:
        return self._balances.get((_k(token), _k(account)), 0)

    def allowance_of(self, token: str, owner: str, spender: str) -> int:
        return self._allowances.get((_k(token), _k(owner), _k(spender)), 0)

    def stake_of(self, account: str) -> SimStake:
        return self._stakes.get(_k(account), SimStake())

    def pool_state(self, token_a: str, token_b: str) -> SimPool:
        return self._pools[_pool_key(token_a, token_b)]

    def calls(self, function: Optional[str] = None) -> List[ContractCall]:
        return [tx.call for tx in self.submitted if function is None or tx.call.function_name == function]

    @property
    def bridged(self) -> List[Tuple[str, int, str, int]]:
        """(account, target_chain_id, token, amount) per bridge deposit."""
        return list(self._bridged)

    # ---- LedgerGateway: reads ----

    def _check_read(self, *tokens: str) -> None:
        if self._unavailable:
            raise LedgerUnavailable("Simulated ledger unavailable")
        for token in tokens:
            if _k(token) in self._failing_reads:
                raise LedgerUnavailable(f"Simulated read failure for {token}")

    async def read_balance(self, token: str, account: str) -> int:
        await asyncio.sleep(0)
        self._check_read(token)
        return self.balance_of(token, account)

    async def read_allowance(self, token: str, owner: str, spender: str) -> int:
        await asyncio.sleep(0)
        self._check_read(token)
        return self.allowance_of(token, owner, spender)

    async def read_pool_reserves(self, pool: PoolSpec) -> PoolReserves:
        await asyncio.sleep(0)
        self._check_read(self.config.amm)
        state = self._pools.get(_pool_key(pool.token_a, pool.token_b))
        if state is None:
            return PoolReserves(reserve_a=0, reserve_b=0, is_active=False, fee_bps=0)
        if _k(state.token_a) == _k(pool.token_a):
            return PoolReserves(state.reserve_a, state.reserve_b, state.is_active, state.fee_bps)
        return PoolReserves(state.reserve_b, state.reserve_a, state.is_active, state.fee_bps)

    async def read_stake_position(self, account: str) -> StakeReading:
        await asyncio.sleep(0)
        self._check_read(self.config.staking)
        stake = self.stake_of(account)
        return StakeReading(
            staked_amount=stake.staked,
            last_stake_time=stake.last_stake_time,
            lock_period_end=stake.lock_period_end,
            earned_rewards=stake.earned,
        )

    async def read_claimable_yield(self, yt_token: str, account: str) -> int:
        await asyncio.sleep(0)
        self._check_read(yt_token)
        return self._claimable.get((_k(yt_token), _k(account)), 0)

    # ---- LedgerGateway: writes ----

    async def submit(self, account: str, call: ContractCall) -> str:
        await asyncio.sleep(0)
        if self._unavailable:
            raise LedgerUnavailable("Simulated ledger unavailable")

        tx_hash = f"0x{next(self._tx_counter):064x}"
        self.submitted.append(SubmittedTx(tx_hash=tx_hash, account=account, call=call))
        self._block += 1

        reason = self._fail_next.pop((call.function_name, _k(call.target)), None)
        if reason is None:
            reason = self._fail_next.pop((call.function_name, None), None)
        if reason is None:
            reason = self._execute(account, call)

        self._receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            success=reason is None,
            revert_reason=reason,
            block_number=self._block,
        )
        return tx_hash

    async def await_confirmation(self, tx_handle: str) -> Receipt:
        await asyncio.sleep(0)
        try:
            return self._receipts[tx_handle]
        except KeyError:
            raise LedgerUnavailable(f"Unknown transaction {tx_handle}") from None

    # ---- execution ----

    def _execute(self, account: str, call: ContractCall) -> Optional[str]:
        """Apply `call` atomically. Returns the revert reason, or None on success."""
        handler = self._handlers.get(call.function_name)
        if handler is None:
            return f"Unknown function {call.signature}"

        saved = self._save_state()
        try:
            handler(account, call)
        except _Revert as e:
            self._restore_state(saved)
            logger.debug("Simulated call reverted", function=call.function_name, reason=str(e))
            return str(e)
        return None

    def _save_state(self):
        return copy.deepcopy((self._balances, self._allowances, self._pools, self._stakes, self._claimable, self._bridged))

    def _restore_state(self, saved) -> None:
        (self._balances, self._allowances, self._pools, self._stakes, self._claimable, self._bridged) = saved

    def _now(self) -> int:
        return int(self._clock())

    def _credit(self, token: str, account: str, amount: int) -> None:
        key = (_k(token), _k(account))
        self._balances[key] = self._balances.get(key, 0) + amount

    def _debit(self, token: str, account: str, amount: int) -> None:
        key = (_k(token), _k(account))
        balance = self._balances.get(key, 0)
        if balance < amount:
            raise _Revert("ERC20: transfer amount exceeds balance")
        self._balances[key] = balance - amount

    def _transfer_from(self, token: str, owner: str, spender: str, to: str, amount: int) -> None:
        key = (_k(token), _k(owner), _k(spender))
        allowance = self._allowances.get(key, 0)
        if allowance < amount:
            raise _Revert("ERC20: insufficient allowance")
        if allowance != MAX_UINT256:
            self._allowances[key] = allowance - amount
        self._debit(token, owner, amount)
        self._credit(token, to, amount)

    def _sy_market_for(self, sy_token: str) -> Market:
        market = self._sy_market.get(_k(sy_token))
        if market is None:
            raise _Revert("Invalid SY token")
        return market

    # ---- handlers ----

    def _approve(self, account: str, call: ContractCall) -> None:
        spender, amount = call.args
        self._allowances[(_k(call.target), _k(account), _k(spender))] = amount

    def _stake(self, account: str, call: ContractCall) -> None:
        (amount,) = call.args
        if amount <= 0:
            raise _Revert("Cannot stake 0")
        self._transfer_from(self.config.staking_token, account, self.config.staking, self.config.staking, amount)
        stake = self._stakes.setdefault(_k(account), SimStake())
        now = self._now()
        stake.staked += amount
        stake.last_stake_time = now
        stake.lock_period_end = now + self.config.lock_period_seconds

    def _unstake(self, account: str, call: ContractCall) -> None:
        (amount,) = call.args
        stake = self._stakes.get(_k(account), SimStake())
        if self._now() < stake.lock_period_end:
            raise _Revert("Tokens are still locked")
        if stake.staked < amount:
            raise _Revert("Insufficient staked amount")
        stake.staked -= amount
        self._debit(self.config.staking_token, self.config.staking, amount)
        self._credit(self.config.staking_token, account, amount)

    def _claim_rewards(self, account: str, call: ContractCall) -> None:
        stake = self._stakes.get(_k(account))
        if stake is None or stake.earned <= 0:
            raise _Revert("No rewards to claim")
        self._credit(self.config.staking_token, account, stake.earned)
        stake.earned = 0

    def _wrap(self, account: str, call: ContractCall) -> None:
        (amount,) = call.args
        market = self._sy_market_for(call.target)
        self._transfer_from(market.underlying, account, market.sy_token, market.sy_token, amount)
        self._credit(market.sy_token, account, amount)

    def _unwrap(self, account: str, call: ContractCall) -> None:
        (amount,) = call.args
        market = self._sy_market_for(call.target)
        self._debit(market.sy_token, account, amount)
        self._debit(market.underlying, market.sy_token, amount)
        self._credit(market.underlying, account, amount)

    def _split(self, account: str, call: ContractCall) -> None:
        sy_token, amount = call.args
        market = self._sy_market_for(sy_token)
        if self._now() >= market.maturity:
            raise _Revert("Market has matured")
        ops = self.config.token_operations
        self._transfer_from(market.sy_token, account, ops, ops, amount)
        self._credit(market.pt_token, account, amount)
        self._credit(market.yt_token, account, amount)

    def _merge(self, account: str, call: ContractCall) -> None:
        sy_token, pt_amount, yt_amount = call.args
        market = self._sy_market_for(sy_token)
        ops = self.config.token_operations
        amount = min(pt_amount, yt_amount)
        self._transfer_from(market.pt_token, account, ops, ops, amount)
        self._transfer_from(market.yt_token, account, ops, ops, amount)
        self._credit(market.sy_token, account, amount)

    def _swap(self, account: str, call: ContractCall) -> None:
        token_in, token_out, amount_in, min_out, recipient = call.args
        pool = self._pools.get(_pool_key(token_in, token_out))
        if pool is None:
            raise _Revert("Pool does not exist")
        if not pool.is_active:
            raise _Revert("Pool is not active")
        if _k(token_in) == _k(pool.token_a):
            reserve_in, reserve_out = pool.reserve_a, pool.reserve_b
        else:
            reserve_in, reserve_out = pool.reserve_b, pool.reserve_a

        after_fee = amount_in * (BPS_DENOMINATOR - pool.fee_bps) // BPS_DENOMINATOR
        amount_out = after_fee * reserve_out // (reserve_in + after_fee)
        if amount_out < min_out:
            raise _Revert("Insufficient output amount")

        self._transfer_from(token_in, account, self.config.amm, self.config.amm, amount_in)
        self._credit(token_out, recipient, amount_out)

        if _k(token_in) == _k(pool.token_a):
            pool.reserve_a += amount_in
            pool.reserve_b -= amount_out
        else:
            pool.reserve_b += amount_in
            pool.reserve_a -= amount_out

    def _claim_yield(self, account: str, call: ContractCall) -> None:
        market = self._yt_market.get(_k(call.target))
        if market is None:
            raise _Revert("Invalid YT token")
        key = (_k(call.target), _k(account))
        amount = self._claimable.get(key, 0)
        if amount <= 0:
            raise _Revert("No yield to claim")
        self._claimable[key] = 0
        self._credit(market.underlying, account, amount)

    def _mint(self, account: str, call: ContractCall) -> None:
        to, amount = call.args
        if self.config.minter is None or _k(account) != _k(self.config.minter):
            raise _Revert("Ownable: caller is not the owner")
        self._credit(call.target, to, amount)

    def _bridge(self, account: str, call: ContractCall) -> None:
        chain_id, token, amount = call.args
        router = self.config.router
        self._transfer_from(token, account, router, router, amount)
        self._bridged.append((account, chain_id, token, amount))
