"""
Transaction History: one record per submitted transaction.

Written by the OperationRunner for every approval and primary call.
Bounded: the oldest records are evicted once max_records is reached.
Queried newest-first, optionally filtered by operation kind, paginated.
"""
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from coreyield.constants import DEFAULT_HISTORY_MAX_RECORDS, DEFAULT_HISTORY_PAGE_SIZE
from coreyield.domain.models import ContractCall, OperationKind, TxStage
from coreyield.domain.protocols import Clock
from coreyield.exceptions import ValidationError
from coreyield.monitoring.logger import get_logger

logger = get_logger(__name__)


class TxOutcome:
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass
class TransactionRecord:
    """A transaction this session sent to the ledger."""
    record_id: str
    kind: OperationKind
    stage: TxStage
    target: str
    function: str
    tx_hash: str
    submitted_at: float
    outcome: str = TxOutcome.SUBMITTED
    revert_reason: Optional[str] = None
    confirmed_at: Optional[float] = None
    market_id: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.outcome != TxOutcome.SUBMITTED


@dataclass
class HistoryPage:
    records: List[TransactionRecord]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return max(1, -(-self.total // self.page_size))

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


class TransactionHistory:
    """Bounded, in-memory log of this session's transactions."""

    def __init__(self, max_records: int = DEFAULT_HISTORY_MAX_RECORDS, clock: Clock = time.time):
        if max_records <= 0:
            raise ValidationError(f"max_records must be > 0, got {max_records}")
        self._records: Deque[TransactionRecord] = deque(maxlen=max_records)
        self._clock = clock

    def record_submission(
        self,
        kind: OperationKind,
        stage: TxStage,
        call: ContractCall,
        tx_hash: str,
        market_id: Optional[str] = None,
    ) -> TransactionRecord:
        record = TransactionRecord(
            record_id=str(uuid.uuid4()),
            kind=kind,
            stage=stage,
            target=call.target,
            function=call.function_name,
            tx_hash=tx_hash,
            submitted_at=self._clock(),
            market_id=market_id,
        )
        self._records.append(record)
        return record

    def record_receipt(self, record: TransactionRecord, success: bool, revert_reason: Optional[str] = None) -> None:
        record.outcome = TxOutcome.CONFIRMED if success else TxOutcome.REVERTED
        record.revert_reason = revert_reason
        record.confirmed_at = self._clock()
        if not success:
            logger.info(
                "Transaction reverted",
                kind=record.kind.value,
                stage=record.stage.value,
                tx_hash=record.tx_hash,
                revert_reason=revert_reason,
            )

    def records(self, kind: Optional[OperationKind] = None) -> List[TransactionRecord]:
        """All records, newest first."""
        items = reversed(self._records)
        if kind is None:
            return list(items)
        return [r for r in items if r.kind == kind]

    def page(
        self,
        page: int = 1,
        page_size: int = DEFAULT_HISTORY_PAGE_SIZE,
        kind: Optional[OperationKind] = None,
    ) -> HistoryPage:
        """1-based page of records, newest first."""
        if page < 1 or page_size < 1:
            raise ValidationError(f"page and page_size must be >= 1, got {page}/{page_size}")
        items = self.records(kind)
        start = (page - 1) * page_size
        return HistoryPage(
            records=items[start:start + page_size],
            page=page,
            page_size=page_size,
            total=len(items),
        )

    def find(self, tx_hash: str) -> Optional[TransactionRecord]:
        for record in reversed(self._records):
            if record.tx_hash == tx_hash:
                return record
        return None

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
