"""
Document store used to persist contexts, leases, jobs and listings.

Documents are plain JSON-compatible dicts grouped by collection and keyed by
a string id. The concrete technology is a collaborator; an in-memory store
and a JSON-file store are provided.
"""

from __future__ import annotations

import copy
import fcntl
import json
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Any

from loguru import logger

Document = dict[str, Any]


class DocumentStore(ABC):
    """Abstract document store."""

    @abstractmethod
    def create(self, collection: str, doc_id: str, document: Document) -> None:
        """Insert a new document. Raises KeyError if the id exists."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Document | None:
        """Fetch a document or None."""

    @abstractmethod
    def put(self, collection: str, doc_id: str, document: Document) -> None:
        """Insert or replace a document."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document. Missing ids are ignored."""

    @abstractmethod
    def list(
        self, collection: str, predicate: Callable[[Document], bool] | None = None
    ) -> list[Document]:
        """All documents in a collection, optionally filtered."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """
        Exclusive section for read-modify-write sequences across collections.

        Re-entrant: operations called inside an open transaction join it.
        """


class InMemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._data: dict[str, dict[str, Document]] = {}
        self._lock = threading.RLock()

    def create(self, collection: str, doc_id: str, document: Document) -> None:
        with self.transaction():
            docs = self._data.setdefault(collection, {})
            if doc_id in docs:
                raise KeyError(f"{collection}/{doc_id} already exists")
            docs[doc_id] = copy.deepcopy(document)
            self._persist()

    def get(self, collection: str, doc_id: str) -> Document | None:
        with self.transaction():
            doc = self._data.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def put(self, collection: str, doc_id: str, document: Document) -> None:
        with self.transaction():
            self._data.setdefault(collection, {})[doc_id] = copy.deepcopy(document)
            self._persist()

    def delete(self, collection: str, doc_id: str) -> None:
        with self.transaction():
            if self._data.get(collection, {}).pop(doc_id, None) is not None:
                self._persist()

    def list(
        self, collection: str, predicate: Callable[[Document], bool] | None = None
    ) -> list[Document]:
        with self.transaction():
            docs = [copy.deepcopy(d) for d in self._data.get(collection, {}).values()]
        if predicate is None:
            return docs
        return [d for d in docs if predicate(d)]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def _persist(self) -> None:
        """Hook for subclasses that write through to disk."""


class JsonFileDocumentStore(InMemoryDocumentStore):
    """
    Document store backed by a single JSON file, shareable between processes.

    Every operation runs under an exclusive ``flock`` on a sidecar ``.lock``
    file and starts from the file's current contents, so a gateway and
    one-shot CLI commands pointed at the same path see each other's leases.
    Mutations rewrite the file atomically (write to a temp file, then rename).
    POSIX only.
    """

    def __init__(self, path: Path | str):
        super().__init__()
        self.path = Path(path)
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock_path.open("a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    self._reload()
                    self._depth = 1
                    yield
                finally:
                    self._depth = 0
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _reload(self) -> None:
        if not self.path.exists():
            self._data = {}
            return
        with self.path.open("r", encoding="utf-8") as f:
            self._data = json.load(f)
        logger.trace(f"Reloaded state from {self.path}")

    def _persist(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)
