"""
Command-line interface for zinscribe.

Signing happens outside this tool: ``build`` prints the commit digests,
``commit`` takes their signatures and prints the reveal digest, ``reveal``
takes that signature and prints the inscription id.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from loguru import logger

from zinscribe.config import Settings, get_settings
from zinscribe.content import BinaryContent, ContentModel, TextContent, parse_content
from zinscribe.errors import ZinscribeError
from zinscribe.gateway import GatewayServer
from zinscribe.service import InscriptionService

T = TypeVar("T")

REAP_INTERVAL = 60.0

app = typer.Typer(
    name="zinscribe",
    help="zinscribe - Zcash transparent inscriptions and atomic swaps",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _settings(log_level: str | None) -> Settings:
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    return settings


def _echo(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


def _run(settings: Settings, action: Callable[[InscriptionService], Awaitable[T]]) -> T:
    """Run ``action`` against a freshly wired service, exiting 1 on engine errors."""

    async def runner() -> T:
        service = InscriptionService.from_settings(settings)
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except (ZinscribeError, ValueError) as e:
        logger.error(str(e))
        raise typer.Exit(1)


def load_content(
    text: str | None, file: Path | None, mime: str | None, content_json: str | None
) -> ContentModel:
    """Build inscription content from exactly one of the content options."""
    given = [opt for opt in (text, file, content_json) if opt is not None]
    if len(given) != 1:
        raise ValueError("Give exactly one of --text, --file or --content")
    if text is not None:
        return TextContent(text=text)
    if file is not None:
        if not mime:
            raise ValueError("--mime is required with --file")
        return BinaryContent(mime_type=mime, data=file.read_bytes())
    return parse_content(json.loads(content_json or "{}"))


LogLevel = Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")]
ContextId = Annotated[str, typer.Option("--context-id", "-c", help="Context id")]
Signatures = Annotated[
    list[str], typer.Option("--signature", "-s", help="Hex r||s signature, once per digest")
]


@app.command()
def utxos(
    address: Annotated[str, typer.Argument(help="Transparent address")],
    log_level: LogLevel = None,
) -> None:
    """List spendable outputs of an address with their taint status."""
    settings = _settings(log_level)

    async def action(service: InscriptionService) -> list[dict[str, Any]]:
        rows = []
        for utxo in await service.backend.list_unspent(address):
            tainted = utxo.tainted
            if not tainted and service.taint_oracle is not None:
                tainted = await service.taint_oracle.is_tainted(utxo.txid, utxo.vout)
            leased = service.leases.is_leased(utxo.outpoint)
            rows.append({**utxo.model_dump(mode="json"), "tainted": tainted, "leased": leased})
        return rows

    _echo(_run(settings, action))


@app.command("branch-id")
def branch_id(log_level: LogLevel = None) -> None:
    """Show the consensus branch id the next block is built under."""
    settings = _settings(log_level)

    async def action(service: InscriptionService) -> int:
        return await service.backend.get_consensus_branch_id()

    value = _run(settings, action)
    typer.echo(f"{value:08x}")


@app.command()
def build(
    address: Annotated[str, typer.Option("--address", "-a", help="Funding address")],
    public_key: Annotated[str, typer.Option("--pubkey", "-k", help="Compressed public key hex")],
    text: Annotated[str | None, typer.Option("--text", help="Inscribe plain text")] = None,
    file: Annotated[Path | None, typer.Option("--file", help="Inscribe a file")] = None,
    mime: Annotated[str | None, typer.Option("--mime", help="MIME type for --file")] = None,
    content_json: Annotated[
        str | None, typer.Option("--content", help='Content as JSON, e.g. {"kind":"name",...}')
    ] = None,
    log_level: LogLevel = None,
) -> None:
    """Build an unsigned commit and print the digests to sign."""
    settings = _settings(log_level)
    try:
        content = load_content(text, file, mime, content_json)
    except (ValueError, ZinscribeError) as e:
        logger.error(str(e))
        raise typer.Exit(1)

    async def action(service: InscriptionService) -> dict[str, Any]:
        request = await service.orchestrator.begin(
            address, public_key, content, settings.default_amounts()
        )
        return request.model_dump(mode="json")

    _echo(_run(settings, action))


@app.command()
def commit(context_id: ContextId, signatures: Signatures, log_level: LogLevel = None) -> None:
    """Broadcast the signed commit and print the reveal digest."""
    settings = _settings(log_level)

    async def action(service: InscriptionService) -> dict[str, Any]:
        request = await service.orchestrator.submit_commit_signatures(context_id, signatures)
        ctx = service.orchestrator.get(context_id)
        return {**request.model_dump(mode="json"), "commit_txid": ctx.commit_txid}

    _echo(_run(settings, action))


@app.command()
def reveal(context_id: ContextId, signatures: Signatures, log_level: LogLevel = None) -> None:
    """Broadcast the signed reveal and print the inscription id."""
    settings = _settings(log_level)

    async def action(service: InscriptionService) -> str:
        return await service.orchestrator.submit_reveal_signatures(context_id, signatures)

    typer.echo(_run(settings, action))


@app.command()
def abort(
    context_id: ContextId,
    reason: Annotated[str, typer.Option("--reason", help="Reason recorded")] = "aborted by caller",
    log_level: LogLevel = None,
) -> None:
    """Abort a pending context and release its outputs."""
    settings = _settings(log_level)

    async def action(service: InscriptionService) -> str:
        return service.orchestrator.abort(context_id, reason).phase.value

    typer.echo(_run(settings, action))


@app.command()
def reap(log_level: LogLevel = None) -> None:
    """Abort timed-out contexts and prune expired leases."""
    settings = _settings(log_level)

    async def action(service: InscriptionService) -> dict[str, Any]:
        reaped = service.orchestrator.reap_expired()
        pruned = service.leases.prune_expired()
        return {"reaped": reaped, "pruned_leases": pruned}

    _echo(_run(settings, action))


@app.command("job-status")
def job_status(
    job_id: Annotated[str | None, typer.Argument(help="Job id; all jobs when omitted")] = None,
    log_level: LogLevel = None,
) -> None:
    """Show batch job progress."""
    settings = _settings(log_level)

    async def action(service: InscriptionService) -> Any:
        if job_id:
            return service.jobs.get(job_id).model_dump(mode="json")
        return [job.model_dump(mode="json") for job in service.jobs.list_jobs()]

    _echo(_run(settings, action))


@app.command("job-step")
def job_step(
    job_id: Annotated[str, typer.Argument(help="Job id")],
    signatures: Annotated[
        list[str] | None,
        typer.Option("--signature", "-s", help="Hex r||s signature for the pending digests"),
    ] = None,
    log_level: LogLevel = None,
) -> None:
    """Advance a batch job by one signing round and print the next digests."""
    settings = _settings(log_level)

    async def action(service: InscriptionService) -> Any:
        step = await service.jobs.step(job_id, signatures or None)
        return step.model_dump(mode="json")

    _echo(_run(settings, action))


@app.command()
def serve(
    host: Annotated[str | None, typer.Option("--host", help="Bind address")] = None,
    port: Annotated[int | None, typer.Option("--port", "-p", help="Bind port")] = None,
    log_level: LogLevel = None,
) -> None:
    """Run the authenticated HTTP gateway."""
    settings = _settings(log_level)
    if not settings.gateway_secret:
        logger.error("ZINSCRIBE_GATEWAY_SECRET is not set")
        raise typer.Exit(1)

    async def action(service: InscriptionService) -> None:
        server = GatewayServer(service)
        await server.start(host, port)
        try:
            while True:
                await asyncio.sleep(REAP_INTERVAL)
                service.orchestrator.reap_expired()
                service.leases.prune_expired()
        finally:
            await server.stop()

    try:
        _run(settings, action)
    except KeyboardInterrupt:
        logger.info("Shutting down...")


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
