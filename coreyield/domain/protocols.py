"""
Domain protocols (interfaces) for dependency inversion.

The orchestration core reaches the chain only through LedgerGateway.
JsonRpcLedgerGateway implements it against a node; SimulatedLedger
implements it in memory for tests and dry runs.
"""
from typing import Callable, Protocol, runtime_checkable

from coreyield.domain.models import ContractCall, PoolReserves, PoolSpec, Receipt, StakeReading


@runtime_checkable
class LedgerGateway(Protocol):
    """
    Read and write access to the external ledger.

    All amounts are integer base units. Reads raise LedgerUnavailable on
    transport failure. `submit` returns an opaque transaction handle that
    `await_confirmation` resolves into a Receipt.
    """

    async def read_balance(self, token: str, account: str) -> int: ...

    async def read_allowance(self, token: str, owner: str, spender: str) -> int: ...

    async def read_pool_reserves(self, pool: PoolSpec) -> PoolReserves: ...

    async def read_stake_position(self, account: str) -> StakeReading: ...

    async def read_claimable_yield(self, yt_token: str, account: str) -> int: ...

    async def submit(self, account: str, call: ContractCall) -> str: ...

    async def await_confirmation(self, tx_handle: str) -> Receipt: ...


Clock = Callable[[], float]
"""Returns the current unix time in seconds. time.time in production."""
