"""
JSON-RPC Ledger Gateway.

Implements LedgerGateway against an EVM node:
- Reads via eth_call (ABI-encoded with eth-abi, selectors via keccak)
- Submission via eth_sendTransaction (node/wallet-managed signer)
- Confirmation by polling eth_getTransactionReceipt
- Revert reasons recovered by replaying the call at the receipt's block

Reads retry on LedgerUnavailable with exponential backoff, except a read
that reverts or returns undecodable data (LedgerReadError). Submissions
are never retried.
"""
import asyncio
import itertools
import ssl
from typing import Any, Dict, List, Optional

import aiohttp
import certifi
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

from coreyield.constants import (
    DEFAULT_CONFIRMATION_POLL_SECONDS,
    DEFAULT_CONFIRMATION_TIMEOUT_SECONDS,
    DEFAULT_RPC_TIMEOUT_SECONDS,
    MAX_READ_RETRIES,
)
from coreyield.domain.models import ContractCall, PoolReserves, PoolSpec, Receipt, StakeReading
from coreyield.exceptions import LedgerReadError, LedgerUnavailable, TransactionReverted
from coreyield.monitoring.logger import get_logger
from coreyield.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

# Error(string)
_ERROR_SELECTOR = bytes.fromhex("08c379a0")


class RpcResponseError(LedgerUnavailable):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: Optional[int], message: str, data: Any = None):
        self.method = method
        self.code = code
        self.rpc_message = message
        self.data = data
        super().__init__(f"RPC {method} failed ({code}): {message}")

    @property
    def is_revert(self) -> bool:
        return self.code == 3 or "revert" in (self.rpc_message or "").lower()


def encode_call(call: ContractCall) -> str:
    """ABI-encode a ContractCall into 0x-prefixed calldata."""
    arg_types = call.arg_types
    if len(arg_types) != len(call.args):
        raise ValueError(f"{call.signature} expects {len(arg_types)} args, got {len(call.args)}")
    args = [
        to_checksum_address(arg) if arg_type == "address" else arg
        for arg_type, arg in zip(arg_types, call.args)
    ]
    selector = keccak(text=call.signature)[:4]
    return "0x" + (selector + abi_encode(arg_types, args)).hex()


def decode_revert_reason(data: Any) -> Optional[str]:
    """Decode Error(string) revert data. Returns None for custom errors / empty data."""
    if isinstance(data, dict):
        data = data.get("data")
    if not isinstance(data, str) or not data.startswith("0x"):
        return None
    try:
        raw = bytes.fromhex(data[2:])
    except ValueError:
        return None
    if not raw.startswith(_ERROR_SELECTOR):
        return None
    try:
        (reason,) = abi_decode(["string"], raw[4:])
    except DecodingError:
        return None
    return reason


def _hex_to_bytes(value: Any) -> bytes:
    if not isinstance(value, str):
        raise TypeError(f"expected hex string, got {type(value).__name__}")
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def _parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16) if str(value).startswith("0x") else int(value)


class JsonRpcLedgerGateway:
    """
    LedgerGateway over Ethereum JSON-RPC (aiohttp).

    Usage:
        async with JsonRpcLedgerGateway(rpc_url, amm=..., staking=...) as ledger:
            balance = await ledger.read_balance(token, account)
    """

    def __init__(
        self,
        rpc_url: str,
        amm: str,
        staking: str,
        *,
        timeout_seconds: int = DEFAULT_RPC_TIMEOUT_SECONDS,
        confirmation_timeout_seconds: float = DEFAULT_CONFIRMATION_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_CONFIRMATION_POLL_SECONDS,
        read_retries: int = MAX_READ_RETRIES,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.rpc_url = rpc_url
        self.amm = amm
        self.staking = staking
        self.timeout_seconds = timeout_seconds
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._session = session
        self._owns_session = session is None
        self._ssl_context: Optional[ssl.SSLContext] = None
        self._ids = itertools.count(1)
        self._read = retry_on_transient_errors(
            max_retries=read_retries,
            transient_errors=(LedgerUnavailable,),
            permanent_errors=(LedgerReadError,),
        )(self._eth_call)

    async def __aenter__(self) -> "JsonRpcLedgerGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_ssl_context(self) -> ssl.SSLContext:
        """Reusable SSL context with certifi certificates."""
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            self._owns_session = True
        return self._session

    # ---- transport ----

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with self._get_session().post(self.rpc_url, json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    raise LedgerUnavailable(f"RPC {method} HTTP {response.status}: {body[:200]}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LedgerUnavailable(f"RPC {method} transport error: {e}") from e

        if not isinstance(data, dict):
            raise LedgerUnavailable(f"RPC {method} returned non-object payload")
        error = data.get("error")
        if error:
            raise RpcResponseError(method, error.get("code"), str(error.get("message", "")), error.get("data"))
        if "result" not in data:
            raise LedgerUnavailable(f"RPC {method} response missing result")
        return data["result"]

    async def _eth_call(self, call: ContractCall, block: str = "latest", sender: Optional[str] = None) -> bytes:
        tx: Dict[str, str] = {"to": call.target, "data": encode_call(call)}
        if sender:
            tx["from"] = sender
        try:
            result = await self._rpc("eth_call", [tx, block])
        except RpcResponseError as e:
            if e.is_revert:
                reason = decode_revert_reason(e.data) or e.rpc_message
                raise LedgerReadError(f"{call.function_name} on {call.target} reverted: {reason}") from e
            raise
        try:
            raw = _hex_to_bytes(result)
        except (TypeError, ValueError) as e:
            raise LedgerReadError(f"{call.function_name} on {call.target} returned non-hex data") from e
        if not raw:
            # no code at the target, or a function it does not implement
            raise LedgerReadError(f"{call.function_name} on {call.target} returned no data")
        return raw

    @staticmethod
    def _decode(types: List[str], raw: bytes, call: ContractCall) -> tuple:
        try:
            return abi_decode(types, raw)
        except DecodingError as e:
            raise LedgerReadError(
                f"{call.function_name} on {call.target} returned undecodable data ({len(raw)} bytes)"
            ) from e

    async def _read_uint(self, call: ContractCall) -> int:
        raw = await self._read(call)
        (value,) = self._decode(["uint256"], raw, call)
        return value

    # ---- reads ----

    async def read_balance(self, token: str, account: str) -> int:
        return await self._read_uint(ContractCall(token, "balanceOf(address)", (account,)))

    async def read_allowance(self, token: str, owner: str, spender: str) -> int:
        return await self._read_uint(ContractCall(token, "allowance(address,address)", (owner, spender)))

    async def read_pool_reserves(self, pool: PoolSpec) -> PoolReserves:
        call = ContractCall(self.amm, "getPoolInfo(address,address)", (pool.token_a, pool.token_b))
        raw = await self._read(call)
        reserve_a, reserve_b, is_active, fee_bps = self._decode(["uint256", "uint256", "bool", "uint256"], raw, call)
        return PoolReserves(reserve_a=reserve_a, reserve_b=reserve_b, is_active=is_active, fee_bps=fee_bps)

    async def read_stake_position(self, account: str) -> StakeReading:
        info_call = ContractCall(self.staking, "getUserStakingInfo(address)", (account,))
        info_raw, earned = await asyncio.gather(
            self._read(info_call),
            self._read_uint(ContractCall(self.staking, "earned(address)", (account,))),
        )
        staked, _rewards, last_stake_time, lock_period_end, _total = self._decode(["uint256"] * 5, info_raw, info_call)
        return StakeReading(
            staked_amount=staked,
            last_stake_time=last_stake_time,
            lock_period_end=lock_period_end,
            earned_rewards=earned,
        )

    async def read_claimable_yield(self, yt_token: str, account: str) -> int:
        return await self._read_uint(ContractCall(yt_token, "claimableYield(address)", (account,)))

    # ---- writes ----

    async def submit(self, account: str, call: ContractCall) -> str:
        tx = {"from": account, "to": call.target, "data": encode_call(call)}
        try:
            tx_hash = await self._rpc("eth_sendTransaction", [tx])
        except RpcResponseError as e:
            if e.is_revert:
                raise TransactionReverted(decode_revert_reason(e.data) or e.rpc_message) from e
            raise
        logger.info("Transaction submitted", function=call.function_name, to=call.target, tx_hash=tx_hash)
        return tx_hash

    async def await_confirmation(self, tx_handle: str) -> Receipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirmation_timeout_seconds

        while True:
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_handle])
            if receipt:
                break
            if loop.time() >= deadline:
                raise LedgerUnavailable(
                    f"No receipt for {tx_handle} after {self.confirmation_timeout_seconds}s"
                )
            await asyncio.sleep(self.poll_interval_seconds)

        block_number = _parse_int(receipt["blockNumber"]) if receipt.get("blockNumber") else None
        if _parse_int(receipt.get("status", "0x0")) == 1:
            return Receipt(tx_hash=tx_handle, success=True, block_number=block_number)

        try:
            reason = await self._replay_revert_reason(tx_handle, receipt.get("blockNumber"))
        except LedgerUnavailable as e:
            logger.warning("Could not recover revert reason", tx_hash=tx_handle, error=str(e))
            reason = None
        return Receipt(tx_hash=tx_handle, success=False, revert_reason=reason, block_number=block_number)

    async def _replay_revert_reason(self, tx_hash: str, block: Optional[str]) -> Optional[str]:
        """Re-run a failed transaction as eth_call to recover its Error(string)."""
        tx = await self._rpc("eth_getTransactionByHash", [tx_hash])
        if not tx:
            return None
        replay = {"from": tx["from"], "to": tx["to"], "data": tx.get("input") or tx.get("data", "0x")}
        try:
            await self._rpc("eth_call", [replay, block or "latest"])
        except RpcResponseError as e:
            return decode_revert_reason(e.data) or e.rpc_message
        # replay succeeded: state moved on since the block; reason unknown
        logger.warning("Revert replay did not revert", tx_hash=tx_hash, block=block)
        return None
