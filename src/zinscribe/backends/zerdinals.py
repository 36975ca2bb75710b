"""
Zerdinals inscription indexer, UTXO service and broadcast relay.
"""

from __future__ import annotations

import asyncio
import random
import re
from typing import Any

import httpx
from loguru import logger

from zinscribe.backends.base import Broadcaster, TaintOracle
from zinscribe.errors import BackendError, BroadcastRejected
from zinscribe.models import UnspentOutput

DEFAULT_INDEXER_URL = "https://indexer.zerdinals.com"
DEFAULT_UTXO_URL = "https://utxos.zerdinals.com"
DEFAULT_TIMEOUT = 20.0

TXID_PATTERN = re.compile(r"\b[0-9a-fA-F]{64}\b")


def location_is_inscribed(body: dict[str, Any]) -> bool:
    """
    Interpret an indexer ``/location`` response.

    Only explicit inscription indicators count, so an unrelated payload
    never marks an output as inscribed.
    """
    if body.get("code") == 404:
        return False
    return bool(
        body.get("inscriptionId")
        or (isinstance(body.get("inscriptions"), list) and body["inscriptions"])
        or (isinstance(body.get("locations"), list) and body["locations"])
        or body.get("inscribed") is True
    )


def extract_txid(text: str) -> str | None:
    match = TXID_PATTERN.search(text)
    return match.group(0).lower() if match else None


class ZerdinalsClient(Broadcaster, TaintOracle):
    """
    HTTP client for the Zerdinals services.

    Taint lookups fail closed: if the indexer cannot be reached after
    retries a BackendError is raised rather than guessing "clean".
    """

    def __init__(
        self,
        indexer_url: str = DEFAULT_INDEXER_URL,
        utxo_url: str = DEFAULT_UTXO_URL,
        max_retries: int = 3,
        base_delay: float = 0.5,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.indexer_url = indexer_url.rstrip("/")
        self.utxo_url = utxo_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.client = httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                last_error = e
            else:
                if response.status_code < 500:
                    return response
                last_error = httpx.HTTPStatusError(
                    f"Server error {response.status_code}",
                    request=response.request,
                    response=response,
                )
            if attempt + 1 < self.max_retries:
                delay = self.base_delay * (2**attempt) + random.uniform(0, 0.5)
                logger.debug(f"{method} {url} failed ({last_error}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
        raise BackendError(f"{method} {url} failed after {self.max_retries} attempts: {last_error}")

    async def is_tainted(self, txid: str, vout: int) -> bool:
        location = f"{txid}:{vout}"
        response = await self._request("GET", f"{self.indexer_url}/location/{location}")
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise BackendError(f"Indexer returned {response.status_code} for {location}")
        try:
            body = response.json()
        except ValueError as e:
            raise BackendError(f"Indexer returned invalid JSON for {location}") from e
        inscribed = isinstance(body, dict) and location_is_inscribed(body)
        logger.debug(f"Inscription check {location}: {'inscribed' if inscribed else 'clean'}")
        return inscribed

    async def list_unspent(self, address: str) -> list[UnspentOutput]:
        response = await self._request("GET", f"{self.utxo_url}/api/utxos/{address}")
        if response.status_code >= 400:
            raise BackendError(f"UTXO service returned {response.status_code} for {address}")
        return [
            UnspentOutput(
                txid=entry["txid"],
                vout=int(entry.get("vout", entry.get("outputIndex", 0))),
                value=int(entry.get("value", entry.get("satoshis", 0))),
                script=entry.get("script", ""),
                height=entry.get("height"),
            )
            for entry in response.json()
        ]

    async def broadcast(self, raw_hex: str) -> str:
        response = await self._request(
            "POST", f"{self.utxo_url}/api/send-transaction", json={"rawTransaction": raw_hex}
        )
        text = response.text
        if response.status_code >= 400:
            raise BroadcastRejected(text[:240].strip() or f"HTTP {response.status_code}")
        txid = extract_txid(text)
        if txid is None:
            raise BroadcastRejected(f"No txid in relay response: {text[:240].strip()}")
        logger.info(f"Relay accepted transaction {txid}")
        return txid

    async def close(self) -> None:
        await self.client.aclose()
