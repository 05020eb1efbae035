"""Unit tests for AccountSession lifecycle."""
import pytest
import structlog

from coreyield.domain.models import BalanceSnapshot, OperationKind, OperationStatus
from coreyield.exceptions import WalletNotConnected
from coreyield.runtime.session import AccountSession

from conftest import ACCOUNT


def _snapshot() -> BalanceSnapshot:
    return BalanceSnapshot(per_market={}, per_asset={})


def test_connected_session_binds_log_context():
    session = AccountSession(ACCOUNT, chain_id=1114)

    assert session.require_account() == ACCOUNT
    context = structlog.contextvars.get_contextvars()
    assert context["account"] == ACCOUNT
    assert context["chain_id"] == 1114

    session.disconnect()
    assert "account" not in structlog.contextvars.get_contextvars()


def test_disconnected_session_rejects_account_access():
    session = AccountSession(None)

    assert not session.is_connected
    with pytest.raises(WalletNotConnected):
        session.require_account()


def test_snapshot_replaced_wholesale():
    session = AccountSession(ACCOUNT)
    first, second = _snapshot(), _snapshot()

    session.apply_snapshot(first)
    session.apply_snapshot(second)

    assert session.snapshot is second
    session.disconnect()


def test_late_snapshot_after_disconnect_is_dropped():
    session = AccountSession(ACCOUNT)
    session.disconnect()

    session.apply_snapshot(_snapshot())

    assert session.snapshot is None


def test_disconnect_discards_statuses_and_history():
    session = AccountSession(ACCOUNT)
    session.statuses.begin(OperationKind.STAKE)
    old_history = session.history

    session.disconnect()

    assert session.statuses.status(OperationKind.STAKE) == OperationStatus.IDLE
    assert session.history is not old_history
    assert len(session.history) == 0
