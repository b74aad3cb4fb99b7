"""Document store used by the session engine.

The engine only needs a hierarchical key/value store with per-document
upserts:

    runs/{run_id}                         session aggregate
    runs/{run_id}/commits/{block_id}      published digest (no salt, no pairs)
    runs/{run_id}/reveal/{block_id}       salt + pairs, written after the block
    runs/{run_id}/sealed_envelope/{id}    per-trial bytes before the response
    runs/{run_id}/logs/{trial_doc_id}     trial records

No multi-document transactions are used. Each path persists independently, so
a missing reveal document never invalidates trial logs.
"""

from __future__ import annotations

import abc
import copy
import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import SEP_E_STORE, sep_error


def _check_path(path: str) -> List[str]:
    parts = [p for p in str(path).split("/") if p]
    if not parts or any(p in (".", "..") for p in parts):
        raise sep_error(SEP_E_STORE, f"invalid document path: {path!r}")
    return parts


def document_path(*parts: str) -> str:
    path = "/".join(str(p) for p in parts)
    if len(_check_path(path)) % 2 != 0:
        raise sep_error(SEP_E_STORE, f"document paths have an even number of segments: {path!r}")
    return path


class DocumentStore(abc.ABC):
    """Minimal hierarchical document store."""

    @abc.abstractmethod
    def get(self, path: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abc.abstractmethod
    def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def list(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Direct child documents of ``collection`` as ``(doc_id, data)``, ordered by id."""
        raise NotImplementedError

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Create a document with a generated id; returns the id."""
        doc_id = uuid.uuid4().hex
        self.set(f"{collection}/{doc_id}", data)
        return doc_id

    def exists(self, path: str) -> bool:
        return self.get(path) is not None


class MemoryStore(DocumentStore):
    """In-process store; every read returns a deep copy."""

    def __init__(self) -> None:
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        key = "/".join(_check_path(path))
        with self._lock:
            doc = self._docs.get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        key = "/".join(_check_path(path))
        with self._lock:
            if merge and key in self._docs:
                merged = dict(self._docs[key])
                merged.update(copy.deepcopy(data))
                self._docs[key] = merged
            else:
                self._docs[key] = copy.deepcopy(data)

    def list(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        prefix = "/".join(_check_path(collection)) + "/"
        with self._lock:
            out = [
                (k[len(prefix):], copy.deepcopy(v))
                for k, v in self._docs.items()
                if k.startswith(prefix) and "/" not in k[len(prefix):]
            ]
        return sorted(out, key=lambda kv: kv[0])


class SQLiteStore(DocumentStore):
    """File-backed store: one row per document, JSON bodies."""

    def __init__(self, db_path: str = "sep_store.db"):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0)
        except sqlite3.Error as e:
            raise sep_error(SEP_E_STORE, f"cannot open store: {e}", retryable=True, http_status=503) from e
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise sep_error(SEP_E_STORE, f"store operation failed: {e}", retryable=True, http_status=503) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._lock, self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    parent TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    body TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents(parent)")

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        key = "/".join(_check_path(path))
        with self._lock, self._db() as conn:
            row = conn.execute("SELECT body FROM documents WHERE path = ?", (key,)).fetchone()
        return json.loads(row[0]) if row else None

    def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        parts = _check_path(path)
        key = "/".join(parts)
        parent = "/".join(parts[:-1])
        with self._lock, self._db() as conn:
            body = dict(data)
            if merge:
                row = conn.execute("SELECT body FROM documents WHERE path = ?", (key,)).fetchone()
                if row:
                    body = {**json.loads(row[0]), **body}
            conn.execute(
                "INSERT OR REPLACE INTO documents (path, parent, doc_id, body) VALUES (?, ?, ?, ?)",
                (key, parent, parts[-1], json.dumps(body, sort_keys=True, separators=(",", ":"))),
            )

    def list(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        parent = "/".join(_check_path(collection))
        with self._lock, self._db() as conn:
            rows = conn.execute(
                "SELECT doc_id, body FROM documents WHERE parent = ? ORDER BY doc_id", (parent,)
            ).fetchall()
        return [(doc_id, json.loads(body)) for doc_id, body in rows]
