"""
Zcash node JSON-RPC backend (zcashd or zebrad).

Uses address-index RPCs for UTXO listing, so the node must run with
``-addressindex`` (zcashd) or an equivalent indexer in front of zebrad.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any

import httpx
from loguru import logger

from zinscribe.backends.base import ChainBackend, TaintOracle
from zinscribe.constants import BRANCH_ID_CACHE_TTL
from zinscribe.errors import BackendError, BroadcastRejected, InvalidContent
from zinscribe.models import UnspentOutput
from zinscribe.script import parse_envelope, split_reveal_script_sig

DEFAULT_RPC_TIMEOUT = 30.0
RPC_MAX_RETRIES = 3
RPC_BASE_DELAY = 0.5


class RPCError(BackendError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, code: Any, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC error {code}: {message}")


def parse_branch_id(info: dict[str, Any]) -> int | None:
    """
    Extract the branch id from a ``getblockchaininfo`` result.

    Prefers ``consensus.nextblock`` over ``consensus.branchid`` because
    transactions are mined into the next block.
    """
    consensus = info.get("consensus") or {}
    value = consensus.get("nextblock") or consensus.get("branchid")
    if not isinstance(value, str):
        return None
    try:
        return int(value.removeprefix("0x"), 16)
    except ValueError:
        return None


class ZcashRPCBackend(ChainBackend, TaintOracle):
    """
    Chain backend over a Zcash node's JSON-RPC interface.

    Also serves as a fallback taint oracle: an output is treated as
    inscribed when it is output 0 of a transaction whose input carries an
    inscription envelope.
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:8232",
        rpc_user: str = "",
        rpc_password: str = "",
        branch_id_fallback: int | None = None,
        max_retries: int = RPC_MAX_RETRIES,
        base_delay: float = RPC_BASE_DELAY,
        timeout: float = DEFAULT_RPC_TIMEOUT,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        auth = (rpc_user, rpc_password) if rpc_user else None
        self.client = httpx.AsyncClient(timeout=timeout, auth=auth)
        self.branch_id_fallback = branch_id_fallback
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._request_id = 0
        self._branch_id_cache: tuple[int, float] | None = None

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make an RPC call, retrying transport failures with backoff.

        Raises:
            RPCError: On an RPC error response (never retried)
            BackendError: When every attempt failed at the transport level
        """
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            self._request_id += 1
            payload = {
                "jsonrpc": "2.0",
                "id": self._request_id,
                "method": method,
                "params": params or [],
            }
            try:
                response = await self.client.post(self.rpc_url, json=payload)
                # Nodes answer RPC errors with HTTP 500 and a JSON body
                if response.status_code != 500:
                    response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                if attempt + 1 >= self.max_retries:
                    break
                delay = self.base_delay * (2**attempt) + random.uniform(0, 0.5)
                logger.warning(
                    f"RPC {method} failed (attempt {attempt + 1}/{self.max_retries}): {e}, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            if data.get("error"):
                error_info = data["error"]
                raise RPCError(error_info.get("code", "unknown"), error_info.get("message", ""))
            return data.get("result")

        raise BackendError(f"RPC {method} failed after {self.max_retries} attempts: {last_error}")

    async def list_unspent(self, address: str) -> list[UnspentOutput]:
        result = await self._rpc_call("getaddressutxos", [{"addresses": [address]}])
        utxos = [
            UnspentOutput(
                txid=entry["txid"],
                vout=entry["outputIndex"],
                value=entry["satoshis"],
                script=entry.get("script", ""),
                height=entry.get("height"),
            )
            for entry in result or []
        ]
        logger.debug(f"Found {len(utxos)} UTXOs for {address}")
        return utxos

    async def broadcast(self, raw_hex: str) -> str:
        try:
            txid = await self._rpc_call("sendrawtransaction", [raw_hex])
        except RPCError as e:
            raise BroadcastRejected(e.message) from e
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def get_consensus_branch_id(self) -> int:
        now = time.monotonic()
        if self._branch_id_cache and self._branch_id_cache[1] > now:
            return self._branch_id_cache[0]

        try:
            info = await self._rpc_call("getblockchaininfo")
            branch_id = parse_branch_id(info or {})
        except BackendError as e:
            if self.branch_id_fallback is None:
                raise
            logger.warning(f"getblockchaininfo failed ({e}), using configured branch id")
            branch_id = None

        if branch_id is None:
            if self.branch_id_fallback is None:
                raise BackendError("Node did not report a consensus branch id")
            branch_id = self.branch_id_fallback

        self._branch_id_cache = (branch_id, now + BRANCH_ID_CACHE_TTL)
        logger.debug(f"Consensus branch id: {branch_id:#010x}")
        return branch_id

    async def is_tainted(self, txid: str, vout: int) -> bool:
        if vout != 0:
            return False
        tx = await self._rpc_call("getrawtransaction", [txid, 1])
        for vin in (tx or {}).get("vin", []):
            script_hex = (vin.get("scriptSig") or {}).get("hex", "")
            if script_hex and _carries_envelope(bytes.fromhex(script_hex)):
                return True
        return False

    async def close(self) -> None:
        await self.client.aclose()


def _carries_envelope(script_sig: bytes) -> bool:
    """True if an unlocking script starts with an inscription envelope."""
    try:
        envelope, _, _ = split_reveal_script_sig(script_sig)
        parse_envelope(envelope)
    except (ValueError, InvalidContent):
        return False
    return True
