import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
)

from bitredict.data.abi import CONTRACTS, INDEXED_EVENTS

from .config import Settings, settings
from .decimalutils import gwei_to_wei
from .errors import ChainUnreachable, FatalConfigError, PermanentChainError, RevertError, TransientError
from .http import backoff_delay
from .logger import get_logger

log = get_logger("chain")

ALREADY_SETTLED = "ALREADY_SETTLED"
ORACLE_NOT_SET = "ORACLE_NOT_SET"

# Normalised revert reason -> whitelisted code. Anything else is permanent.
REVERT_WHITELIST = {
    "ALREADY_SETTLED": ALREADY_SETTLED,
    "POOL_ALREADY_SETTLED": ALREADY_SETTLED,
    "ALREADY_RESOLVED": ALREADY_SETTLED,
    "CYCLE_ALREADY_RESOLVED": ALREADY_SETTLED,
    "OUTCOME_ALREADY_SET": ALREADY_SETTLED,
    "OUTCOME_ALREADY_SUBMITTED": ALREADY_SETTLED,
    "ORACLE_NOT_SET": ORACLE_NOT_SET,
    "OUTCOME_NOT_SET": ORACLE_NOT_SET,
    "ORACLE_RESULT_NOT_SET": ORACLE_NOT_SET,
    "OUTCOME_NOT_AVAILABLE": ORACLE_NOT_SET,
}

_NONCE_MARKERS = ("nonce too low", "nonce too high", "replacement transaction underpriced", "already known")
_TRANSPORT_ERRORS = (asyncio.TimeoutError, OSError, aiohttp.ClientError, ProviderConnectionError)


def normalize_revert_reason(raw: str | None) -> str:
    """``'execution reverted: Already settled'`` -> ``'ALREADY_SETTLED'``."""
    text = (raw or "").strip()
    text = re.sub(r"^(execution reverted:?|reverted:?|VM Exception while processing transaction:)\s*", "", text, flags=re.I)
    text = re.sub(r"^revert\s+", "", text, flags=re.I)
    text = text.strip().strip("'\"")
    return re.sub(r"[^A-Z0-9]+", "_", text.upper()).strip("_")


def classify_revert(raw: str | None, *, tx_hash: str | None = None) -> BaseException:
    code = normalize_revert_reason(raw)
    whitelisted = REVERT_WHITELIST.get(code)
    if whitelisted:
        return RevertError(whitelisted, raw or "", tx_hash=tx_hash)
    return PermanentChainError(code or "REVERTED_WITHOUT_REASON", tx_hash=tx_hash)


def classify_rpc_error(exc: BaseException) -> BaseException:
    if isinstance(exc, (TransientError, RevertError, PermanentChainError)):
        return exc
    if isinstance(exc, ContractLogicError):
        return classify_revert(getattr(exc, "message", None) or str(exc))
    if isinstance(exc, TimeExhausted):
        return TransientError(f"receipt timeout: {exc}")
    if isinstance(exc, _TRANSPORT_ERRORS):
        return TransientError(f"rpc transport: {type(exc).__name__}: {exc}")
    if isinstance(exc, Web3RPCError):
        msg = str(exc).lower()
        if any(marker in msg for marker in _NONCE_MARKERS):
            return TransientError(f"nonce race: {exc}")
        if "execution reverted" in msg:
            return classify_revert(str(exc))
        return TransientError(f"rpc error: {exc}")
    return exc


@dataclass(frozen=True)
class TxResult:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int


class NonceManager:
    """Local monotonic nonce per signer, resynced from the node periodically."""

    def __init__(self, fetch, resync_seconds: float, *, _clock=time.monotonic):
        self._fetch = fetch
        self._resync_seconds = float(resync_seconds)
        self._clock = _clock
        self._next: int | None = None
        self._synced_at = 0.0
        self.lock = asyncio.Lock()

    async def reserve(self) -> int:
        if self._next is None or self._clock() - self._synced_at >= self._resync_seconds:
            chain_nonce = int(await self._fetch())
            # Never move backwards past nonces we already broadcast.
            self._next = chain_nonce if self._next is None else max(chain_nonce, self._next)
            self._synced_at = self._clock()
        nonce = self._next
        self._next += 1
        return nonce

    def invalidate(self) -> None:
        self._next = None


class ChainClient:
    def __init__(
        self,
        *,
        rpc_url: str,
        addresses: dict[str, str],
        private_key: str = "",
        chain_id: int | None = None,
        confirmations: int = 2,
        read_timeout: float = 10.0,
        send_timeout: float = 60.0,
        read_retries: int = 4,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        gas_limits: Optional[dict[str, int]] = None,
        max_fee_cap_wei: int = 0,
        priority_fee_wei: int = 0,
        nonce_resync_seconds: float = 300.0,
        w3: AsyncWeb3 | None = None,
        _sleep=asyncio.sleep,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": read_timeout}))
        self._addresses = {}
        for name, addr in addresses.items():
            if addr:
                if not Web3.is_address(addr):
                    raise FatalConfigError(f"invalid contract address for {name}: {addr}")
                self._addresses[name] = Web3.to_checksum_address(addr)
        self._contracts: dict[str, Any] = {}
        self._account = Account.from_key(private_key) if private_key else None
        self._chain_id = chain_id
        self.confirmations = max(1, int(confirmations))
        self.read_timeout = float(read_timeout)
        self.send_timeout = float(send_timeout)
        self.read_retries = int(read_retries)
        self.backoff_base = float(backoff_base)
        self.backoff_max = float(backoff_max)
        self.gas_limits = dict(gas_limits or {})
        self.max_fee_cap_wei = int(max_fee_cap_wei)
        self.priority_fee_wei = int(priority_fee_wei)
        self._sleep = _sleep
        self.nonces = NonceManager(self._pending_nonce, nonce_resync_seconds)

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "ChainClient":
        if not (cfg.rpc_url or "").strip():
            raise FatalConfigError("RPC_URL is not configured")
        return cls(
            rpc_url=cfg.rpc_url,
            addresses={name: cfg.contract_address(name) for name in CONTRACTS},
            private_key=(cfg.oracle_private_key or "").strip(),
            chain_id=cfg.chain_id,
            confirmations=cfg.confirmations,
            read_timeout=cfg.rpc_read_timeout_seconds,
            send_timeout=cfg.rpc_send_timeout_seconds,
            read_retries=cfg.rpc_retries,
            backoff_base=cfg.rpc_backoff_base_seconds,
            backoff_max=cfg.rpc_backoff_max_seconds,
            gas_limits={
                "settle": cfg.gas_limit_settle,
                "submit": cfg.gas_limit_submit,
                "resolve": cfg.gas_limit_resolve,
                "refund": cfg.gas_limit_refund,
            },
            max_fee_cap_wei=gwei_to_wei(cfg.max_fee_gwei_cap),
            priority_fee_wei=gwei_to_wei(cfg.priority_fee_gwei),
            nonce_resync_seconds=cfg.nonce_resync_seconds,
        )

    @property
    def signer_address(self) -> str | None:
        return self._account.address if self._account else None

    def address(self, name: str) -> str:
        addr = self._addresses.get(name)
        if not addr:
            raise FatalConfigError(f"contract address for {name} is not configured")
        return addr

    def contract(self, name: str):
        if name not in self._contracts:
            self._contracts[name] = self.w3.eth.contract(address=self.address(name), abi=CONTRACTS[name])
        return self._contracts[name]

    def encode_call(self, contract: str, fn: str, *args) -> bytes:
        data = self.contract(contract).encode_abi(fn, args=list(args))
        return bytes(Web3.to_bytes(hexstr=data))

    async def ping(self) -> int:
        try:
            return await self.block_number()
        except TransientError as e:
            raise ChainUnreachable(f"chain unreachable: {e}") from e

    async def _read(self, factory, what: str):
        for attempt in range(self.read_retries + 1):
            try:
                return await asyncio.wait_for(factory(), timeout=self.read_timeout)
            except Exception as e:  # classified below; unknown errors re-raise unchanged
                err = classify_rpc_error(e)
                if not isinstance(err, TransientError):
                    if err is e:
                        raise
                    raise err from e
                if attempt >= self.read_retries:
                    raise err from e
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_max)
                log.warning("rpc_read_retry what=%s attempt=%s delay=%.1fs err=%s", what, attempt + 1, delay, err)
                await self._sleep(delay)
        raise RuntimeError("rpc read: exhausted retries")

    async def call(self, contract: str, fn: str, *args, block: int | str = "latest"):
        bound = self.contract(contract).functions[fn](*args)
        return await self._read(lambda: bound.call(block_identifier=block), f"{contract}.{fn}")

    async def block_number(self) -> int:
        return int(await self._read(lambda: self.w3.eth.block_number, "block_number"))

    async def block_hash(self, number: int) -> str:
        block = await self._read(lambda: self.w3.eth.get_block(int(number)), "get_block")
        return Web3.to_hex(block["hash"])

    async def block_timestamp(self, number: int) -> int:
        block = await self._read(lambda: self.w3.eth.get_block(int(number)), "get_block")
        return int(block["timestamp"])

    async def _pending_nonce(self) -> int:
        return int(
            await self._read(
                lambda: self.w3.eth.get_transaction_count(self.signer_address, "pending"),
                "get_transaction_count",
            )
        )

    async def _fees(self) -> dict[str, int]:
        block = await self._read(lambda: self.w3.eth.get_block("latest"), "get_block")
        base = int(block.get("baseFeePerGas") or 0)
        tip = self.priority_fee_wei
        max_fee = 2 * base + tip
        if self.max_fee_cap_wei > 0:
            max_fee = min(max_fee, self.max_fee_cap_wei)
        return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": min(tip, max_fee)}

    async def _gas_limit(self, bound, gas_kind: str) -> int:
        configured = int(self.gas_limits.get(gas_kind) or 0)
        if configured > 0:
            return configured
        estimate = await self._read(lambda: bound.estimate_gas({"from": self.signer_address}), "estimate_gas")
        return int(int(estimate) * 12 // 10)

    async def _wait_confirmed(self, tx_hash, deadline: float) -> dict:
        remaining = max(1.0, deadline - time.monotonic())
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=remaining, poll_latency=1.0)
        target = int(receipt["blockNumber"]) + self.confirmations - 1
        while True:
            head = await self.block_number()
            if head >= target:
                break
            if time.monotonic() >= deadline:
                raise TransientError(f"confirmation timeout tx={Web3.to_hex(tx_hash)} head={head} target={target}")
            await self._sleep(1.0)
        # Re-read so a receipt dropped by a reorg is noticed before we trust it.
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound as e:
            raise TransientError(f"receipt vanished after confirmations tx={Web3.to_hex(tx_hash)}") from e

    async def transact(self, contract: str, fn: str, *args, gas_kind: str) -> TxResult:
        """Simulate, sign, broadcast and wait for N confirmations.

        Raises ``RevertError`` for whitelisted reverts, ``PermanentChainError``
        for any other revert and ``TransientError`` for RPC/timeout/nonce
        failures. Never retries a broadcast itself.
        """
        if self._account is None:
            raise FatalConfigError("ORACLE_PRIVATE_KEY is not configured")
        bound = self.contract(contract).functions[fn](*args)
        what = f"{contract}.{fn}"

        # A dry run surfaces the revert reason before any gas is spent.
        await self._read(lambda: bound.call({"from": self.signer_address}), f"simulate {what}")

        deadline = time.monotonic() + self.send_timeout
        async with self.nonces.lock:
            try:
                if self._chain_id is None:
                    self._chain_id = int(await self._read(lambda: self.w3.eth.chain_id, "chain_id"))
                gas = await self._gas_limit(bound, gas_kind)
                fees = await self._fees()
                nonce = await self.nonces.reserve()
                tx = await bound.build_transaction(
                    {
                        "from": self.signer_address,
                        "nonce": nonce,
                        "gas": gas,
                        "chainId": self._chain_id,
                        **fees,
                    }
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = await asyncio.wait_for(
                    self.w3.eth.send_raw_transaction(signed.raw_transaction), timeout=self.read_timeout
                )
            except Exception as e:  # classified below; unknown errors re-raise unchanged
                err = classify_rpc_error(e)
                if isinstance(err, TransientError):
                    self.nonces.invalidate()
                if err is e:
                    raise
                raise err from e

        tx_hex = Web3.to_hex(tx_hash)
        log.info("tx_sent call=%s tx=%s nonce=%s gas=%s", what, tx_hex, nonce, gas)
        try:
            receipt = await self._wait_confirmed(tx_hash, deadline)
        except Exception as e:  # classified below; unknown errors re-raise unchanged
            err = classify_rpc_error(e)
            if err is e:
                raise
            raise err from e

        status = int(receipt.get("status", 0))
        result = TxResult(
            tx_hash=tx_hex,
            block_number=int(receipt["blockNumber"]),
            status=status,
            gas_used=int(receipt.get("gasUsed") or 0),
        )
        if status != 1:
            # Replay against the current head to recover the revert reason.
            try:
                await self._read(lambda: bound.call({"from": self.signer_address}), f"replay {what}")
            except RevertError as e:
                raise RevertError(e.code, e.raw_reason, tx_hash=tx_hex) from e
            except PermanentChainError as e:
                raise PermanentChainError(e.reason, tx_hash=tx_hex) from e
            raise PermanentChainError("REVERTED_WITHOUT_REASON", tx_hash=tx_hex)
        log.info("tx_confirmed call=%s tx=%s block=%s gas_used=%s", what, tx_hex, result.block_number, result.gas_used)
        return result

    async def get_events(self, from_block: int, to_block: int) -> list[dict]:
        """Decoded logs of every indexed event in ``[from_block, to_block]``, in chain order."""
        out: list[dict] = []
        for name, events in INDEXED_EVENTS.items():
            if name not in self._addresses:
                continue
            contract = self.contract(name)
            for event_name in events:
                event = contract.events[event_name]
                logs = await self._read(
                    lambda: event.get_logs(from_block=int(from_block), to_block=int(to_block)),
                    f"get_logs {name}.{event_name}",
                )
                for entry in logs:
                    out.append(_event_row(name, entry))
        out.sort(key=lambda e: (e["block_number"], e["log_index"]))
        return out

    async def close(self) -> None:
        provider = getattr(self.w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


def _plain(value):
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if hasattr(value, "items"):
        return {k: _plain(v) for k, v in value.items()}
    return value


def _event_row(contract: str, entry) -> dict:
    return {
        "contract": contract,
        "event": entry["event"],
        "args": _plain(dict(entry["args"])),
        "tx_hash": Web3.to_hex(entry["transactionHash"]),
        "log_index": int(entry["logIndex"]),
        "block_number": int(entry["blockNumber"]),
        "block_hash": Web3.to_hex(entry["blockHash"]),
    }
