from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from apps.courier.services import build_services
from apps.courier.settings import Settings
from apps.courier.storage import DocumentBackend, DualStore, FirestoreBackend, JsonFileBackend


@dataclass
class _Snap:
    id: str
    _data: Optional[Dict[str, Any]]

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data or {})


class _DocRef:
    def __init__(self, col: "_Collection", doc_id: str):
        self._col = col
        self.id = doc_id

    def get(self, transaction=None, timeout=None):
        _ = transaction, timeout
        return _Snap(self.id, self._col._docs.get(self.id))

    def set(self, data: Dict[str, Any], merge: bool = False, timeout=None):
        _ = timeout
        if not merge or self.id not in self._col._docs:
            self._col._docs[self.id] = dict(data)
            return
        merged = dict(self._col._docs[self.id])
        merged.update(dict(data))
        self._col._docs[self.id] = merged

    def delete(self, timeout=None):
        _ = timeout
        self._col._docs.pop(self.id, None)


class _Query:
    def __init__(self, col: "_Collection", filters: List[Tuple[str, str, Any]]):
        self._col = col
        self._filters = filters

    def where(self, field: str, op: str, value: Any):
        return _Query(self._col, [*self._filters, (field, op, value)])

    def stream(self, timeout=None) -> Iterable[_Snap]:
        _ = timeout
        out: List[_Snap] = []
        for doc_id, data in self._col._docs.items():
            if self._matches(data):
                out.append(_Snap(doc_id, data))
        return out

    def _matches(self, data: Dict[str, Any]) -> bool:
        for field, op, value in self._filters:
            if op != "==":
                raise AssertionError(f"Unsupported op in fake db: {op}")
            if data.get(field) != value:
                return False
        return True


class _Collection(_Query):
    def __init__(self, docs: Dict[str, Dict[str, Any]]):
        self._docs = docs
        super().__init__(self, [])

    def document(self, doc_id: str) -> _DocRef:
        return _DocRef(self, doc_id)


class FakeFirestore:
    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.down = False

    def collection(self, name: str) -> _Collection:
        if self.down:
            raise ConnectionError("firestore unreachable")
        docs = self._collections.setdefault(name, {})
        return _Collection(docs)

    def docs(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.get(name, {})


class BrokenBackend(DocumentBackend):
    name = "broken"

    def _fail(self, *args, **kwargs):
        raise OSError("disk unavailable")

    get = set = query = all = delete = _fail


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.value = float(start)

    def __call__(self) -> float:
        # Strictly increasing so creation order is unambiguous.
        self.value += 0.001
        return self.value

    def advance(self, seconds: float):
        self.value += float(seconds)


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def fake_db():
    return FakeFirestore()


@pytest.fixture()
def file_backend(tmp_path):
    return JsonFileBackend(base_dir=str(tmp_path / "data"))


@pytest.fixture()
def store(fake_db, file_backend):
    return DualStore(primary=FirestoreBackend(fake_db, timeout=5), fallback=file_backend)


@pytest.fixture()
def cfg(tmp_path):
    return Settings(DATA_DIR=str(tmp_path / "data"), FIREBASE_CREDENTIALS_PATH="", WEBHOOK_SECRET="")


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def services(cfg, store, clock, sleeps):
    return build_services(cfg, store=store, clock=clock, sleep=sleeps.append)
