"""
AccountSession: everything bound to one connected account.

Constructed on connect and passed by reference to the orchestrator.
disconnect() discards the balance cache, history and status slots; after
that every operation is rejected with WalletNotConnected.
"""
import time
from typing import Optional

from coreyield.domain.models import BalanceSnapshot
from coreyield.domain.protocols import Clock
from coreyield.exceptions import WalletNotConnected
from coreyield.execution.operation_state_machine import StatusBoard
from coreyield.execution.transaction_history import TransactionHistory
from coreyield.monitoring.logger import bind_session_context, clear_session_context, get_logger

logger = get_logger(__name__)


class AccountSession:
    def __init__(
        self,
        account: Optional[str],
        chain_id: Optional[int] = None,
        history_max_records: int = 500,
        clock: Clock = time.time,
    ):
        self._account = account
        self.chain_id = chain_id
        self.statuses = StatusBoard()
        self._history_max_records = history_max_records
        self._clock = clock
        self.history = TransactionHistory(max_records=history_max_records, clock=clock)
        self._snapshot: Optional[BalanceSnapshot] = None
        if account:
            bind_session_context(account, chain_id)
            logger.info("Session connected", account=account, chain_id=chain_id)

    @property
    def is_connected(self) -> bool:
        return bool(self._account)

    @property
    def account(self) -> Optional[str]:
        return self._account

    def require_account(self) -> str:
        if not self._account:
            raise WalletNotConnected("No wallet connected")
        return self._account

    @property
    def snapshot(self) -> Optional[BalanceSnapshot]:
        """Last completed balance refresh (None before the first one)."""
        return self._snapshot

    def apply_snapshot(self, snapshot: BalanceSnapshot) -> None:
        """Replace the whole cache. The refresh that finishes last wins."""
        if not self.is_connected:
            # refresh finished after disconnect; drop it
            return
        self._snapshot = snapshot

    def disconnect(self) -> None:
        account = self._account
        self._account = None
        self._snapshot = None
        # in-flight runners keep writing to the old log; the session no longer sees it
        self.history = TransactionHistory(max_records=self._history_max_records, clock=self._clock)
        self.statuses.clear()
        clear_session_context()
        logger.info("Session disconnected", account=account)
