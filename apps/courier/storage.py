"""Storage port with a Firestore primary and a JSON-file fallback.

Every component talks to a :class:`DualStore`. An operation is a callable that
receives one :class:`DocumentBackend` and runs start to finish against it, so a
read-modify-write never straddles the two backends.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .errors import DomainError, PersistenceUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DocumentBackend:
    """Keyed collections of JSON-compatible documents."""

    name = "backend"

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def query(self, collection: str, **equals: Any) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> bool:
        raise NotImplementedError


class JsonFileBackend(DocumentBackend):
    name = "file"

    def __init__(self, base_dir: str = "./data"):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, collection: str) -> str:
        return os.path.join(self.base_dir, f"{collection}.json")

    def _read(self, collection: str) -> Dict[str, Dict[str, Any]]:
        path = self._path(collection)
        if not os.path.exists(path):
            return {}
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data.get("documents", {})

    def _write(self, collection: str, docs: Dict[str, Dict[str, Any]]):
        path = self._path(collection)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"documents": docs}, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._read(collection).get(str(doc_id))
        return dict(doc) if doc is not None else None

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            docs = self._read(collection)
            docs[str(doc_id)] = dict(data)
            self._write(collection, docs)

    def query(self, collection: str, **equals: Any) -> List[Dict[str, Any]]:
        with self._lock:
            docs = list(self._read(collection).values())
        return [dict(d) for d in docs if all(d.get(k) == v for k, v in equals.items())]

    def all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in self._read(collection).items()}

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            docs = self._read(collection)
            if str(doc_id) not in docs:
                return False
            del docs[str(doc_id)]
            self._write(collection, docs)
            return True


class FirestoreBackend(DocumentBackend):
    name = "firestore"

    def __init__(self, client, timeout: Optional[float] = None):
        self._client = client
        self._timeout = timeout

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        snap = self._client.collection(collection).document(str(doc_id)).get(timeout=self._timeout)
        if not snap.exists:
            return None
        return snap.to_dict() or {}

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._client.collection(collection).document(str(doc_id)).set(dict(data), timeout=self._timeout)

    def query(self, collection: str, **equals: Any) -> List[Dict[str, Any]]:
        q = self._client.collection(collection)
        for field_name, value in equals.items():
            q = q.where(field_name, "==", value)
        return [s.to_dict() or {} for s in q.stream(timeout=self._timeout)]

    def all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return {s.id: s.to_dict() or {} for s in self._client.collection(collection).stream(timeout=self._timeout)}

    def delete(self, collection: str, doc_id: str) -> bool:
        ref = self._client.collection(collection).document(str(doc_id))
        if not ref.get(timeout=self._timeout).exists:
            return False
        ref.delete(timeout=self._timeout)
        return True


@dataclass
class DivergenceReport:
    # The fallback only receives writes during a primary outage, so documents
    # that exist solely in the primary are the normal case and are not reported.
    collection: str
    only_fallback: List[str] = field(default_factory=list)
    mismatched: List[str] = field(default_factory=list)

    @property
    def diverged(self) -> bool:
        return bool(self.only_fallback or self.mismatched)


class DualStore:
    """Primary-first execution with transparent fallback.

    Primary errors are logged and the same operation is replayed on the
    fallback. Domain errors propagate from whichever backend raised them.
    """

    def __init__(self, primary: Optional[DocumentBackend], fallback: DocumentBackend):
        self.primary = primary
        self.fallback = fallback

    @property
    def has_primary(self) -> bool:
        return self.primary is not None

    def run(self, op: str, fn: Callable[[DocumentBackend], T]) -> T:
        if self.primary is not None:
            try:
                return fn(self.primary)
            except DomainError:
                raise
            except Exception as e:
                logger.warning("%s failed on %s backend, falling back to %s: %s", op, self.primary.name, self.fallback.name, e)
        try:
            return fn(self.fallback)
        except DomainError:
            raise
        except Exception as e:
            logger.error("%s failed on %s backend: %s", op, self.fallback.name, e)
            raise PersistenceUnavailable(f"{op}: no storage backend available ({e})") from e

    def divergence(self, collection: str) -> DivergenceReport:
        """Compare fallback documents against the primary. Read-only, no repair."""
        report = DivergenceReport(collection=collection)
        if self.primary is None:
            return report
        try:
            primary_docs = self.primary.all(collection)
            fallback_docs = self.fallback.all(collection)
        except Exception as e:
            raise PersistenceUnavailable(f"divergence check on {collection}: {e}") from e

        for doc_id in sorted(fallback_docs):
            if doc_id not in primary_docs:
                report.only_fallback.append(doc_id)
            elif primary_docs[doc_id] != fallback_docs[doc_id]:
                report.mismatched.append(doc_id)
        return report
