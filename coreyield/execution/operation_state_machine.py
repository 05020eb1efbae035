"""
Operation State Machine.

Two halves:
1. StatusBoard: one status slot per OperationKind, mutated only through
   legal transitions. Distinct kinds never share a slot.
2. OperationRunner: executes an OperationPlan strictly in order
   (allowance read -> approval -> confirmation -> primary call -> confirmation).

State Machine (per kind):
    IDLE    -> PENDING   (operation invoked)
    PENDING -> SUCCESS   (primary call confirmed; immediately -> IDLE)
    PENDING -> FAILED    (any step failed)
    FAILED  -> IDLE      (explicit reset)
    SUCCESS -> IDLE

A kind in PENDING cannot be invoked again; a kind in FAILED must be reset first.
"""
from typing import Dict, FrozenSet, Iterable, List, Optional

from coreyield.constants import MAX_UINT256
from coreyield.domain.models import (
    ApprovalRequest,
    ContractCall,
    OperationKind,
    OperationPlan,
    OperationStatus,
    TxStage,
)
from coreyield.domain.protocols import LedgerGateway
from coreyield.exceptions import (
    InsufficientAllowance,
    OperationInProgress,
    OperationNotReset,
    ProgrammerError,
    TransactionReverted,
)
from coreyield.execution.transaction_history import TransactionHistory
from coreyield.monitoring.logger import get_logger

logger = get_logger(__name__)


# ============ INVARIANT CHECKING ============

class InvariantViolation(ProgrammerError):
    """Raised when a status transition breaks the state machine."""
    pass


def check_invariant(condition: bool, message: str) -> None:
    """Assert an invariant. Raises InvariantViolation if false."""
    if not condition:
        logger.critical(f"INVARIANT VIOLATION: {message}")
        raise InvariantViolation(message)


_VALID_TRANSITIONS: Dict[OperationStatus, FrozenSet[OperationStatus]] = {
    OperationStatus.IDLE: frozenset({OperationStatus.PENDING}),
    OperationStatus.PENDING: frozenset({OperationStatus.SUCCESS, OperationStatus.FAILED}),
    OperationStatus.SUCCESS: frozenset({OperationStatus.IDLE}),
    OperationStatus.FAILED: frozenset({OperationStatus.IDLE}),
}


class StatusBoard:
    """Status slot per operation kind, plus the last failure of each kind."""

    def __init__(self):
        self._slots: Dict[OperationKind, OperationStatus] = {
            kind: OperationStatus.IDLE for kind in OperationKind
        }
        self._last_error: Dict[OperationKind, Exception] = {}

    def status(self, kind: OperationKind) -> OperationStatus:
        return self._slots[kind]

    def snapshot(self) -> Dict[OperationKind, OperationStatus]:
        return dict(self._slots)

    def last_error(self, kind: OperationKind) -> Optional[Exception]:
        return self._last_error.get(kind)

    def is_pending(self, kind: OperationKind) -> bool:
        return self._slots[kind] == OperationStatus.PENDING

    def begin(self, kind: OperationKind) -> None:
        """
        Enter PENDING. This is the re-entrancy guard.

        Raises:
            OperationInProgress: kind is already PENDING
            OperationNotReset: kind is FAILED (or SUCCESS) and was not reset
        """
        current = self._slots[kind]
        if current == OperationStatus.PENDING:
            raise OperationInProgress(f"{kind.value} is already in progress")
        if current != OperationStatus.IDLE:
            raise OperationNotReset(f"{kind.value} is {current.value}; reset it before retrying")
        self._last_error.pop(kind, None)
        self._transition(kind, OperationStatus.PENDING)

    def complete(self, kind: OperationKind) -> None:
        """PENDING -> SUCCESS -> IDLE. Success is transient so the kind re-arms."""
        self._transition(kind, OperationStatus.SUCCESS)
        self._transition(kind, OperationStatus.IDLE)

    def fail(self, kind: OperationKind, error: Exception) -> None:
        self._last_error[kind] = error
        self._transition(kind, OperationStatus.FAILED)

    def reset(self, kind: OperationKind) -> None:
        """
        Return a FAILED (or SUCCESS) kind to IDLE. No-op when already IDLE.

        Raises:
            OperationInProgress: kind is PENDING; a submitted transaction cannot be abandoned
        """
        current = self._slots[kind]
        if current == OperationStatus.IDLE:
            return
        if current == OperationStatus.PENDING:
            raise OperationInProgress(f"{kind.value} is in progress and cannot be reset")
        self._last_error.pop(kind, None)
        self._transition(kind, OperationStatus.IDLE)

    def clear(self) -> None:
        """Force every slot back to IDLE (session teardown)."""
        for kind in OperationKind:
            self._slots[kind] = OperationStatus.IDLE
        self._last_error.clear()

    def _transition(self, kind: OperationKind, new_status: OperationStatus) -> None:
        current = self._slots[kind]
        check_invariant(
            new_status in _VALID_TRANSITIONS[current],
            f"Illegal status transition for {kind.value}: {current.value} -> {new_status.value}",
        )
        self._slots[kind] = new_status
        logger.debug("Operation status changed", kind=kind.value, old=current.value, new=new_status.value)


class OperationRunner:
    """
    Executes an OperationPlan against the ledger.

    Approvals run one at a time, each confirmed before the next step starts.
    Any failed step raises and nothing after it is attempted. Every submitted
    transaction hash is appended to the caller's `submitted` list as soon as
    the ledger accepts it, so the caller knows what reached the chain even
    when the run fails.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        history: TransactionHistory,
        approval_policy: str = "exact",
        unlimited_approval_kinds: Iterable[OperationKind] = (),
    ):
        if approval_policy not in ("exact", "unlimited"):
            raise ProgrammerError(f"Unknown approval policy: {approval_policy}")
        self.gateway = gateway
        self.history = history
        self.approval_policy = approval_policy
        self.unlimited_approval_kinds = frozenset(OperationKind(k) for k in unlimited_approval_kinds)

    async def run(self, account: str, plan: OperationPlan, submitted: List[str]) -> None:
        for approval in plan.approvals:
            try:
                await self._check_allowance(account, approval)
            except InsufficientAllowance as shortfall:
                call = ContractCall(
                    target=approval.token,
                    signature="approve(address,uint256)",
                    args=(approval.spender, self._approval_amount(plan.kind, shortfall.required)),
                )
                logger.info(
                    "Allowance short, submitting approval",
                    kind=plan.kind.value,
                    token=approval.token,
                    spender=approval.spender,
                    current=shortfall.current,
                    required=shortfall.required,
                )
                await self._submit_and_confirm(account, plan, call, TxStage.APPROVAL, submitted)

        logger.info(
            "Submitting primary call",
            kind=plan.kind.value,
            function=plan.primary.function_name,
            target=plan.primary.target,
            market_id=plan.market_id,
        )
        await self._submit_and_confirm(account, plan, plan.primary, TxStage.PRIMARY, submitted)

    async def _check_allowance(self, account: str, approval: ApprovalRequest) -> None:
        current = await self.gateway.read_allowance(approval.token, account, approval.spender)
        if current < approval.amount:
            raise InsufficientAllowance(approval.token, approval.spender, current, approval.amount)

    def _approval_amount(self, kind: OperationKind, required: int) -> int:
        if self.approval_policy == "unlimited" or kind in self.unlimited_approval_kinds:
            return MAX_UINT256
        return required

    async def _submit_and_confirm(
        self,
        account: str,
        plan: OperationPlan,
        call: ContractCall,
        stage: TxStage,
        submitted: List[str],
    ) -> str:
        try:
            tx_hash = await self.gateway.submit(account, call)
        except TransactionReverted as e:
            # rejected before broadcast (e.g. gas estimation); tag with this stage
            raise TransactionReverted(e.reason, e.tx_hash, stage.value) from e

        submitted.append(tx_hash)
        record = self.history.record_submission(plan.kind, stage, call, tx_hash, plan.market_id)

        receipt = await self.gateway.await_confirmation(tx_hash)
        self.history.record_receipt(record, receipt.success, receipt.revert_reason)

        if not receipt.success:
            raise TransactionReverted(receipt.revert_reason, tx_hash, stage.value)

        logger.info(
            "Transaction confirmed",
            kind=plan.kind.value,
            stage=stage.value,
            function=call.function_name,
            tx_hash=tx_hash,
        )
        return tx_hash
