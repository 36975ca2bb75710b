"""
Authenticated HTTP gateway to the engine.

A single ``POST /gate`` endpoint takes ``{"op": ..., "params": {...}}``.
Requests are authenticated with a shared secret: the caller sends a
millisecond timestamp in ``x-gate-ts`` and
``hex(HMAC-SHA256(secret, f"{ts}.{body}"))`` in ``x-gate-sign``. Timestamps
more than five minutes from the server clock are refused.

The gateway never sees private keys; signing requests go out as digests
and signatures come back in a later call.
"""

from __future__ import annotations

import contextlib
import hashlib
import hmac
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from zinscribe.constants import DEFAULT_FEE
from zinscribe.content import InscriptionContent
from zinscribe.errors import (
    ContextNotFound,
    GatewayAuthError,
    InsufficientFunds,
    LeaseConflict,
    ZinscribeError,
)
from zinscribe.jobs import BATCH_MINT, BatchMintParams
from zinscribe.models import InscriptionAmounts
from zinscribe.service import InscriptionService

TS_HEADER = "x-gate-ts"
SIGN_HEADER = "x-gate-sign"
MAX_CLOCK_SKEW_MS = 5 * 60 * 1000


def compute_signature(secret: str, ts: str, body: str) -> str:
    preimage = f"{ts}.{body}".encode()
    return hmac.new(secret.encode(), preimage, hashlib.sha256).hexdigest()


def sign_request(secret: str, body: str, ts_ms: int | None = None) -> dict[str, str]:
    """Headers authenticating ``body`` for the gateway."""
    ts = str(ts_ms if ts_ms is not None else int(time.time() * 1000))
    return {TS_HEADER: ts, SIGN_HEADER: compute_signature(secret, ts, body)}


def verify_request(
    secret: str, ts: str, signature: str, body: str, now_ms: int | None = None
) -> None:
    """
    Check a gateway request's timestamp and HMAC.

    Raises:
        GatewayAuthError: 401 for missing or stale headers, 403 for a bad MAC
    """
    if not ts or not signature:
        raise GatewayAuthError("Missing auth headers", status=401)
    try:
        ts_num = int(ts)
    except ValueError as e:
        raise GatewayAuthError("Stale or invalid timestamp", status=401) from e
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    if abs(now_ms - ts_num) > MAX_CLOCK_SKEW_MS:
        raise GatewayAuthError("Stale or invalid timestamp", status=401)
    expected = compute_signature(secret, ts, body)
    if not hmac.compare_digest(signature.lower().encode(), expected.encode()):
        raise GatewayAuthError("Unauthorized", status=403)


class _Params(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CommitParams(_Params):
    address: str
    public_key: str
    content: InscriptionContent
    amounts: InscriptionAmounts | None = None
    exclude: list[str] = Field(default_factory=list)


class SignaturesParams(_Params):
    context_id: str
    signatures: list[str]


class SplitBuildParams(_Params):
    address: str
    public_key: str
    count: int
    amount: int
    fee: int = DEFAULT_FEE


class SplitBroadcastParams(_Params):
    split_id: str
    signatures: list[str]


class BatchMintRequest(_Params):
    address: str
    public_key: str
    content: InscriptionContent
    count: int
    amounts: InscriptionAmounts | None = None


class JobParams(_Params):
    job_id: str


class JobStepParams(_Params):
    job_id: str
    signatures: list[str] | None = None


class AbortParams(_Params):
    context_id: str
    reason: str = "aborted by caller"


def _error_status(error: ZinscribeError) -> int:
    if isinstance(error, ContextNotFound):
        return 404
    if isinstance(error, LeaseConflict):
        return 409
    if isinstance(error, InsufficientFunds):
        return 402
    return 400


Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class GatewayServer:
    def __init__(self, service: InscriptionService, secret: str | None = None) -> None:
        self.service = service
        self.secret = (secret if secret is not None else service.settings.gateway_secret) or ""
        self.secret = self.secret.strip()
        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self.ops: dict[str, Handler] = {
            "ping": self._op_ping,
            "unsignedCommit": self._op_unsigned_commit,
            "finalizeCommit": self._op_finalize_commit,
            "broadcastReveal": self._op_broadcast_reveal,
            "abort": self._op_abort,
            "splitBuild": self._op_split_build,
            "splitBroadcast": self._op_split_broadcast,
            "batchMint": self._op_batch_mint,
            "jobStatus": self._op_job_status,
            "jobCancel": self._op_job_cancel,
            "jobStep": self._op_job_step,
        }
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_post("/gate", self._handle_gate)
        self.app.router.add_get("/health", self._handle_health)

    async def _handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy", "configured": bool(self.secret)})

    async def _handle_gate(self, request: web.Request) -> web.Response:
        if not self.secret:
            return web.Response(text="Gateway not configured", status=503)

        body = await request.text()
        try:
            verify_request(
                self.secret,
                request.headers.get(TS_HEADER, ""),
                request.headers.get(SIGN_HEADER, ""),
                body,
            )
        except GatewayAuthError as e:
            logger.warning(f"Gateway auth failed from {request.remote}: {e}")
            return web.Response(text=str(e), status=e.status)

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return web.Response(text="Invalid JSON", status=400)
        if not isinstance(payload, dict):
            return web.Response(text="Invalid JSON", status=400)

        op = payload.get("op")
        handler = self.ops.get(op) if isinstance(op, str) else None
        if handler is None:
            return web.Response(text="Unknown op", status=400)

        params = payload.get("params") or {}
        try:
            result = await handler(params)
        except ValidationError as e:
            return web.json_response({"error": str(e), "type": "ValidationError"}, status=400)
        except ZinscribeError as e:
            logger.warning(f"Gateway op {op} failed: {e}")
            return web.json_response(
                {"error": str(e), "type": type(e).__name__}, status=_error_status(e)
            )
        except ValueError as e:
            return web.json_response({"error": str(e), "type": "ValueError"}, status=400)
        except Exception as e:
            logger.exception(f"Gateway op {op} crashed")
            return web.json_response({"error": str(e) or type(e).__name__}, status=500)
        return web.json_response(result)

    async def _op_ping(self, _params: dict[str, Any]) -> dict[str, Any]:
        return {"ok": True, "ts": int(time.time() * 1000)}

    async def _op_unsigned_commit(self, params: dict[str, Any]) -> dict[str, Any]:
        p = CommitParams.model_validate(params)
        request = await self.service.orchestrator.begin(
            p.address,
            p.public_key,
            p.content,
            p.amounts or self.service.settings.default_amounts(),
            p.exclude,
        )
        ctx = self.service.orchestrator.get(request.context_id)
        return {**request.model_dump(mode="json"), "commitTx": ctx.commit_tx}

    async def _op_finalize_commit(self, params: dict[str, Any]) -> dict[str, Any]:
        p = SignaturesParams.model_validate(params)
        request = await self.service.orchestrator.submit_commit_signatures(
            p.context_id, p.signatures
        )
        ctx = self.service.orchestrator.get(p.context_id)
        return {**request.model_dump(mode="json"), "commitTxid": ctx.commit_txid}

    async def _op_broadcast_reveal(self, params: dict[str, Any]) -> dict[str, Any]:
        p = SignaturesParams.model_validate(params)
        inscription_id = await self.service.orchestrator.submit_reveal_signatures(
            p.context_id, p.signatures
        )
        ctx = self.service.orchestrator.get(p.context_id)
        return {
            "inscriptionId": inscription_id,
            "commitTxid": ctx.commit_txid,
            "revealTxid": ctx.reveal_txid,
        }

    async def _op_abort(self, params: dict[str, Any]) -> dict[str, Any]:
        p = AbortParams.model_validate(params)
        ctx = self.service.orchestrator.abort(p.context_id, p.reason)
        return {"contextId": ctx.context_id, "phase": ctx.phase.value}

    async def _op_split_build(self, params: dict[str, Any]) -> dict[str, Any]:
        p = SplitBuildParams.model_validate(params)
        split = await self.service.splits.build(p.address, p.public_key, p.count, p.amount, p.fee)
        return split.model_dump(mode="json")

    async def _op_split_broadcast(self, params: dict[str, Any]) -> dict[str, Any]:
        p = SplitBroadcastParams.model_validate(params)
        txid = await self.service.splits.finalize(p.split_id, p.signatures)
        return {"splitId": p.split_id, "txid": txid}

    async def _op_batch_mint(self, params: dict[str, Any]) -> dict[str, Any]:
        p = BatchMintRequest.model_validate(params)
        job = self.service.jobs.create_job(
            BATCH_MINT,
            BatchMintParams(
                address=p.address,
                public_key=p.public_key,
                content=p.content,
                amounts=p.amounts or self.service.settings.default_amounts(),
            ),
            p.count,
        )
        return job.model_dump(mode="json")

    async def _op_job_status(self, params: dict[str, Any]) -> dict[str, Any]:
        p = JobParams.model_validate(params)
        return self.service.jobs.get(p.job_id).model_dump(mode="json")

    async def _op_job_cancel(self, params: dict[str, Any]) -> dict[str, Any]:
        p = JobParams.model_validate(params)
        return self.service.jobs.cancel(p.job_id).model_dump(mode="json")

    async def _op_job_step(self, params: dict[str, Any]) -> dict[str, Any]:
        p = JobStepParams.model_validate(params)
        step = await self.service.jobs.step(p.job_id, p.signatures)
        return {
            "job": step.job.model_dump(mode="json"),
            "request": None if step.request is None else step.request.model_dump(mode="json"),
        }

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        host = host or self.service.settings.gateway_host
        port = port or self.service.settings.gateway_port
        if not self.secret:
            logger.warning("Gateway secret not set; every /gate request will get 503")

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host, port)
        await self.site.start()
        logger.info(f"Gateway listening on http://{host}:{port}/gate")

    async def stop(self) -> None:
        logger.info("Stopping gateway...")
        if self.site:
            with contextlib.suppress(RuntimeError):
                await self.site.stop()
            self.site = None
        if self.runner:
            with contextlib.suppress(RuntimeError):
                await self.runner.cleanup()
            self.runner = None
