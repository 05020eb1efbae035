"""
Execution module.

Contains the quote engine, the per-kind operation state machine, and the
orchestrator that ties them to one account session.

ARCHITECTURE:
    PositionOrchestrator (single entry point for all operations)
        │
        ├── StatusBoard (one status slot per OperationKind)
        │
        ├── OperationRunner (allowance -> approval -> primary call)
        │       │
        │       └── TransactionHistory (every submitted tx)
        │
        ├── AMM quote (constant-product estimate + min out)
        │
        └── BalanceAggregator (full refresh after every mutation)
"""

# Quote engine
from coreyield.execution.amm_quote import quote

# State machine
from coreyield.execution.operation_state_machine import (
    InvariantViolation,
    OperationRunner,
    StatusBoard,
    check_invariant,
)

# History
from coreyield.execution.transaction_history import (
    HistoryPage,
    TransactionHistory,
    TransactionRecord,
    TxOutcome,
)

# PositionOrchestrator is imported from its module directly; it depends on
# coreyield.runtime, which itself imports this package.

__all__ = [
    # Quote
    "quote",

    # State Machine
    "InvariantViolation",
    "OperationRunner",
    "StatusBoard",
    "check_invariant",

    # History
    "HistoryPage",
    "TransactionHistory",
    "TransactionRecord",
    "TxOutcome",
]
