"""
Custom exception hierarchy for the position orchestration engine.

Hierarchy:

    CoreYieldError (base)
    ├── OperationalError         transient/retryable (RPC, network, timeouts)
    │   └── LedgerUnavailable
    │       └── LedgerReadError  revert or undecodable read, not retried
    ├── OperationFailed          one user operation failed, status -> failed
    │   ├── TransactionReverted
    │   ├── PoolInactive
    │   ├── InsufficientLiquidity
    │   │   └── NoLiquidity
    │   ├── AmountExceedsPoolCap
    │   ├── LockPeriodActive
    │   └── MarketMatured
    ├── InsufficientAllowance    internal, becomes an approval step
    ├── SessionError             call rejected before any status transition
    │   ├── WalletNotConnected
    │   ├── OperationInProgress
    │   └── OperationNotReset
    └── ProgrammerError          fatal, never retried
        ├── UnknownMarket
        ├── UnknownPool
        └── ValidationError

Rules:
    - OperationalError: safe to retry. Ledger reads retry with backoff;
      submissions never do. Inside an operation it fails the operation.
    - OperationFailed: catch at the orchestrator boundary, log, mark the
      kind failed, notify, return it in the OperationResult.
    - SessionError / ProgrammerError: propagate to the caller unchanged.
    - Everything else: let it crash.
"""
from decimal import Decimal
from typing import Optional


class CoreYieldError(Exception):
    """Base exception for all orchestration errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(CoreYieldError):
    """Transient/retryable error: RPC node, network, timeouts."""
    pass


class LedgerUnavailable(OperationalError):
    """The ledger could not be reached or did not answer in time."""
    pass


class LedgerReadError(LedgerUnavailable):
    """A read was answered, but with a revert or data that does not decode.

    Deterministic: asking again returns the same answer, so it is never
    retried. Still a LedgerUnavailable for callers that degrade on reads.
    """
    pass


# ============ OPERATION FAILURES (user-visible) ============

class OperationFailed(CoreYieldError):
    """A single user operation failed.

    Treatment: mark the operation kind failed, surface to the user,
    wait for a user-initiated retry.
    """
    pass


class TransactionReverted(OperationFailed):
    """A submitted transaction was mined but did not succeed."""

    def __init__(
        self,
        reason: Optional[str],
        tx_hash: Optional[str] = None,
        stage: str = "primary",
    ):
        self.reason = reason
        self.tx_hash = tx_hash
        self.stage = stage
        label = "Approval" if stage == "approval" else "Transaction"
        super().__init__(f"{label} reverted: {reason or 'no revert reason'}")


class PoolInactive(OperationFailed):
    """The AMM pool is flagged inactive; swaps are forbidden."""
    pass


class InsufficientLiquidity(OperationFailed):
    """The pool cannot produce a meaningful output for the requested input."""
    pass


class NoLiquidity(InsufficientLiquidity):
    """At least one pool reserve is zero."""
    pass


class AmountExceedsPoolCap(OperationFailed):
    """The requested input is larger than the single-swap cap on the input reserve."""
    pass


class LockPeriodActive(OperationFailed):
    """Staked funds are still inside their lock period."""

    def __init__(self, remaining_seconds: Decimal, lock_period_end: int):
        self.remaining_seconds = remaining_seconds
        self.lock_period_end = lock_period_end
        super().__init__(
            f"Stake is locked for another {remaining_seconds}s (until {lock_period_end})"
        )


class MarketMatured(OperationFailed):
    """The market is past maturity; splitting and wrapping are closed."""
    pass


# ============ INTERNAL ============

class InsufficientAllowance(CoreYieldError):
    """Current allowance is below the requested amount.

    Never surfaced to the user: the operation runner turns it into an
    approval transaction.
    """

    def __init__(self, token: str, spender: str, current: int, required: int):
        self.token = token
        self.spender = spender
        self.current = current
        self.required = required
        super().__init__(
            f"Allowance {current} < {required} for token {token} spender {spender}"
        )


# ============ SESSION (rejected before any transition) ============

class SessionError(CoreYieldError):
    """The call cannot start in the current session state."""
    pass


class WalletNotConnected(SessionError):
    """No account is connected to the session."""
    pass


class OperationInProgress(SessionError):
    """An operation of the same kind is already pending."""
    pass


class OperationNotReset(SessionError):
    """The operation kind is in `failed` and must be reset before retrying."""
    pass


# ============ PROGRAMMER ERRORS (fatal) ============

class ProgrammerError(CoreYieldError):
    """Caller or configuration bug. Never retried."""
    pass


class UnknownMarket(ProgrammerError):
    """Market id is not in the registry."""
    pass


class UnknownPool(ProgrammerError):
    """Pool id is not in the registry."""
    pass


class ValidationError(ProgrammerError):
    """Invalid input: non-positive amount, token not in pool, bad config."""
    pass
