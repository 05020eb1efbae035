"""Unit tests for the JSON-RPC ledger gateway (transport mocked)."""
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from eth_abi import encode as abi_encode
from eth_utils import keccak

from coreyield.data.ledger_client import (
    JsonRpcLedgerGateway,
    RpcResponseError,
    decode_revert_reason,
    encode_call,
)
from coreyield.domain.models import ContractCall, PoolSpec
from coreyield.exceptions import LedgerReadError, LedgerUnavailable, TransactionReverted

ACCOUNT = "0x" + "a1" * 20
TOKEN = "0x" + "12" * 20
SPENDER = "0x" + "70" * 20
AMM = "0x" + "0a" * 20
STAKING = "0x" + "5a" * 20
TX_HASH = "0x" + "ee" * 32


def _word(*values, types=None) -> str:
    types = types or ["uint256"] * len(values)
    return "0x" + abi_encode(types, list(values)).hex()


def _revert_data(reason: str) -> str:
    return "0x08c379a0" + abi_encode(["string"], [reason]).hex()


def _selector(signature: str) -> str:
    return "0x" + keccak(text=signature)[:4].hex()


def _gateway(**kwargs) -> JsonRpcLedgerGateway:
    kwargs.setdefault("read_retries", 0)
    kwargs.setdefault("poll_interval_seconds", 0)
    return JsonRpcLedgerGateway("http://rpc.test", amm=AMM, staking=STAKING, **kwargs)


# ============ ENCODING ============

def test_encode_call_uses_keccak_selector():
    data = encode_call(ContractCall(TOKEN, "balanceOf(address)", (ACCOUNT,)))

    assert data.startswith("0x70a08231")
    assert data.endswith("a1" * 20)
    assert len(data) == 2 + 8 + 64


def test_encode_approve():
    data = encode_call(ContractCall(TOKEN, "approve(address,uint256)", (SPENDER, 100)))

    assert data.startswith("0x095ea7b3")
    assert int(data[-64:], 16) == 100


def test_encode_call_without_args():
    assert encode_call(ContractCall(STAKING, "claimRewards()")) == _selector("claimRewards()")


def test_encode_call_rejects_arity_mismatch():
    with pytest.raises(ValueError):
        encode_call(ContractCall(TOKEN, "approve(address,uint256)", (SPENDER,)))


def test_decode_revert_reason():
    assert decode_revert_reason(_revert_data("Tokens are still locked")) == "Tokens are still locked"
    assert decode_revert_reason({"data": _revert_data("x")}) == "x"
    assert decode_revert_reason("0xdeadbeef") is None
    assert decode_revert_reason(None) is None
    assert decode_revert_reason("0x08c379a0ff") is None
    assert decode_revert_reason("0x08c") is None


def test_rpc_error_revert_detection():
    assert RpcResponseError("eth_call", 3, "execution reverted").is_revert
    assert RpcResponseError("eth_call", -32000, "execution reverted: nope").is_revert
    assert not RpcResponseError("eth_call", -32603, "internal error").is_revert


# ============ READS ============

@pytest.mark.asyncio
async def test_read_balance():
    gateway = _gateway()
    gateway._rpc = AsyncMock(return_value=_word(123))

    assert await gateway.read_balance(TOKEN, ACCOUNT) == 123

    method, params = gateway._rpc.call_args.args
    assert method == "eth_call"
    assert params[0]["to"] == TOKEN
    assert params[0]["data"].startswith("0x70a08231")
    assert params[1] == "latest"


@pytest.mark.asyncio
async def test_read_allowance():
    gateway = _gateway()
    gateway._rpc = AsyncMock(return_value=_word(7))

    assert await gateway.read_allowance(TOKEN, ACCOUNT, SPENDER) == 7
    assert gateway._rpc.call_args.args[1][0]["data"].startswith(_selector("allowance(address,address)"))


@pytest.mark.asyncio
async def test_read_pool_reserves():
    gateway = _gateway()
    gateway._rpc = AsyncMock(return_value=_word(1000, 2000, True, 30, types=["uint256", "uint256", "bool", "uint256"]))

    reserves = await gateway.read_pool_reserves(PoolSpec("p", TOKEN, SPENDER))

    assert (reserves.reserve_a, reserves.reserve_b, reserves.is_active, reserves.fee_bps) == (1000, 2000, True, 30)
    assert gateway._rpc.call_args.args[1][0]["to"] == AMM


@pytest.mark.asyncio
async def test_read_stake_position_combines_info_and_earned():
    info_selector = _selector("getUserStakingInfo(address)")

    async def rpc(method, params):
        if params[0]["data"].startswith(info_selector):
            return _word(100, 1, 1_700_000_000, 1_700_604_800, 5)
        return _word(9)

    gateway = _gateway()
    gateway._rpc = AsyncMock(side_effect=rpc)

    reading = await gateway.read_stake_position(ACCOUNT)

    assert reading.staked_amount == 100
    assert reading.last_stake_time == 1_700_000_000
    assert reading.lock_period_end == 1_700_604_800
    assert reading.earned_rewards == 9


@pytest.mark.asyncio
async def test_read_claimable_yield_targets_yt():
    gateway = _gateway()
    gateway._rpc = AsyncMock(return_value=_word(55))

    assert await gateway.read_claimable_yield(TOKEN, ACCOUNT) == 55
    assert gateway._rpc.call_args.args[1][0]["to"] == TOKEN


@pytest.mark.asyncio
async def test_reads_retry_transient_errors():
    gateway = _gateway(read_retries=2)
    gateway._rpc = AsyncMock(side_effect=[LedgerUnavailable("timeout"), _word(5)])

    with patch("coreyield.utils.retry.asyncio.sleep", new=AsyncMock()):
        assert await gateway.read_balance(TOKEN, ACCOUNT) == 5
    assert gateway._rpc.await_count == 2


@pytest.mark.asyncio
async def test_empty_call_result_is_unavailable():
    gateway = _gateway()
    gateway._rpc = AsyncMock(return_value="0x")

    with pytest.raises(LedgerUnavailable):
        await gateway.read_balance(TOKEN, ACCOUNT)


@pytest.mark.asyncio
async def test_undecodable_result_is_read_error_and_not_retried():
    gateway = _gateway(read_retries=3)
    gateway._rpc = AsyncMock(return_value="0x0102")

    with pytest.raises(LedgerReadError) as exc_info:
        await gateway.read_balance(TOKEN, ACCOUNT)

    assert isinstance(exc_info.value, LedgerUnavailable)
    assert gateway._rpc.await_count == 1


@pytest.mark.asyncio
async def test_short_pool_info_is_read_error():
    gateway = _gateway()
    gateway._rpc = AsyncMock(return_value=_word(1000, 2000))

    with pytest.raises(LedgerReadError):
        await gateway.read_pool_reserves(PoolSpec("p", TOKEN, SPENDER))


@pytest.mark.asyncio
async def test_short_staking_info_is_read_error():
    gateway = _gateway()
    gateway._rpc = AsyncMock(return_value=_word(1))

    with pytest.raises(LedgerReadError):
        await gateway.read_stake_position(ACCOUNT)


@pytest.mark.asyncio
async def test_read_revert_is_not_retried():
    gateway = _gateway(read_retries=3)
    gateway._rpc = AsyncMock(
        side_effect=RpcResponseError("eth_call", 3, "execution reverted", _revert_data("not a token"))
    )

    with pytest.raises(LedgerReadError) as exc_info:
        await gateway.read_balance(TOKEN, ACCOUNT)

    assert "not a token" in str(exc_info.value)
    assert gateway._rpc.await_count == 1


@pytest.mark.asyncio
async def test_non_revert_rpc_error_on_read_is_retried():
    gateway = _gateway(read_retries=1)
    gateway._rpc = AsyncMock(side_effect=[RpcResponseError("eth_call", -32603, "internal error"), _word(3)])

    with patch("coreyield.utils.retry.asyncio.sleep", new=AsyncMock()):
        assert await gateway.read_balance(TOKEN, ACCOUNT) == 3
    assert gateway._rpc.await_count == 2


# ============ WRITES ============

@pytest.mark.asyncio
async def test_submit_sends_transaction_from_account():
    gateway = _gateway()
    gateway._rpc = AsyncMock(return_value=TX_HASH)

    tx_hash = await gateway.submit(ACCOUNT, ContractCall(STAKING, "stake(uint256)", (10,)))

    assert tx_hash == TX_HASH
    method, params = gateway._rpc.call_args.args
    assert method == "eth_sendTransaction"
    assert params[0]["from"] == ACCOUNT
    assert params[0]["to"] == STAKING


@pytest.mark.asyncio
async def test_submit_revert_becomes_transaction_reverted():
    gateway = _gateway()
    gateway._rpc = AsyncMock(
        side_effect=RpcResponseError("eth_sendTransaction", 3, "execution reverted", _revert_data("Cannot stake 0"))
    )

    with pytest.raises(TransactionReverted) as exc_info:
        await gateway.submit(ACCOUNT, ContractCall(STAKING, "stake(uint256)", (0,)))
    assert exc_info.value.reason == "Cannot stake 0"


@pytest.mark.asyncio
async def test_submit_is_not_retried():
    gateway = _gateway(read_retries=3)
    gateway._rpc = AsyncMock(side_effect=LedgerUnavailable("down"))

    with pytest.raises(LedgerUnavailable):
        await gateway.submit(ACCOUNT, ContractCall(STAKING, "stake(uint256)", (1,)))
    assert gateway._rpc.await_count == 1


@pytest.mark.asyncio
async def test_await_confirmation_polls_until_receipt():
    gateway = _gateway()
    gateway._rpc = AsyncMock(side_effect=[None, None, {"status": "0x1", "blockNumber": "0x10"}])

    receipt = await gateway.await_confirmation(TX_HASH)

    assert receipt.success
    assert receipt.block_number == 16
    assert gateway._rpc.await_count == 3


@pytest.mark.asyncio
async def test_failed_receipt_replays_for_revert_reason():
    async def rpc(method, params):
        if method == "eth_getTransactionReceipt":
            return {"status": "0x0", "blockNumber": "0x10"}
        if method == "eth_getTransactionByHash":
            return {"from": ACCOUNT, "to": TOKEN, "input": "0x095ea7b3"}
        raise RpcResponseError("eth_call", 3, "execution reverted", _revert_data("ERC20: approve paused"))

    gateway = _gateway()
    gateway._rpc = AsyncMock(side_effect=rpc)

    receipt = await gateway.await_confirmation(TX_HASH)

    assert not receipt.success
    assert receipt.revert_reason == "ERC20: approve paused"
    replay_method, replay_params = gateway._rpc.call_args.args
    assert replay_method == "eth_call"
    assert replay_params[1] == "0x10"


@pytest.mark.asyncio
async def test_failed_receipt_without_recoverable_reason():
    async def rpc(method, params):
        if method == "eth_getTransactionReceipt":
            return {"status": "0x0", "blockNumber": "0x10"}
        raise LedgerUnavailable("archive data unavailable")

    gateway = _gateway()
    gateway._rpc = AsyncMock(side_effect=rpc)

    receipt = await gateway.await_confirmation(TX_HASH)

    assert not receipt.success
    assert receipt.revert_reason is None


@pytest.mark.asyncio
async def test_confirmation_timeout():
    gateway = _gateway(confirmation_timeout_seconds=0)
    gateway._rpc = AsyncMock(return_value=None)

    with pytest.raises(LedgerUnavailable):
        await gateway.await_confirmation(TX_HASH)


# ============ TRANSPORT ============

def _session_returning(payload, status=200):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.text = AsyncMock(return_value=str(payload))
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=response)
    cm.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.closed = False
    session.post.return_value = cm
    return session


@pytest.mark.asyncio
async def test_rpc_returns_result():
    gateway = _gateway(session=_session_returning({"jsonrpc": "2.0", "id": 1, "result": "0x1"}))
    assert await gateway._rpc("eth_chainId", []) == "0x1"


@pytest.mark.asyncio
async def test_rpc_error_object_maps_to_rpc_response_error():
    session = _session_returning({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "nonce too low"}})
    gateway = _gateway(session=session)

    with pytest.raises(RpcResponseError) as exc_info:
        await gateway._rpc("eth_sendTransaction", [{}])
    assert isinstance(exc_info.value, LedgerUnavailable)
    assert exc_info.value.code == -32000


@pytest.mark.asyncio
async def test_rpc_http_error_is_unavailable():
    gateway = _gateway(session=_session_returning({}, status=502))

    with pytest.raises(LedgerUnavailable):
        await gateway._rpc("eth_call", [])


@pytest.mark.asyncio
async def test_rpc_transport_error_is_unavailable():
    session = MagicMock()
    session.closed = False
    session.post.side_effect = aiohttp.ClientConnectionError("connection refused")
    gateway = _gateway(session=session)

    with pytest.raises(LedgerUnavailable):
        await gateway._rpc("eth_call", [])


@pytest.mark.asyncio
async def test_close_leaves_injected_session_open():
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()

    async with _gateway(session=session):
        pass

    session.close.assert_not_awaited()
