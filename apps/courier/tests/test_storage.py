from __future__ import annotations

import json

import pytest

from apps.courier.errors import NotFound, PersistenceUnavailable
from apps.courier.storage import DualStore, FirestoreBackend, JsonFileBackend

from .conftest import BrokenBackend


def test_json_backend_roundtrip_and_atomic_layout(tmp_path):
    b = JsonFileBackend(base_dir=str(tmp_path))
    assert b.get("tasks", "T1") is None
    assert b.all("tasks") == {}

    b.set("tasks", "T1", {"job_id": "T1", "fleet_id": "F1"})
    b.set("tasks", "T2", {"job_id": "T2", "fleet_id": "F2"})

    assert b.get("tasks", "T1") == {"job_id": "T1", "fleet_id": "F1"}
    assert b.query("tasks", fleet_id="F2") == [{"job_id": "T2", "fleet_id": "F2"}]

    on_disk = json.loads((tmp_path / "tasks.json").read_text(encoding="utf-8"))
    assert set(on_disk["documents"]) == {"T1", "T2"}
    assert not (tmp_path / "tasks.json.tmp").exists()

    assert b.delete("tasks", "T1") is True
    assert b.delete("tasks", "T1") is False
    assert list(b.all("tasks")) == ["T2"]


def test_json_backend_returns_copies(tmp_path):
    b = JsonFileBackend(base_dir=str(tmp_path))
    b.set("tasks", "T1", {"job_id": "T1"})
    doc = b.get("tasks", "T1")
    doc["job_id"] = "mutated"
    assert b.get("tasks", "T1") == {"job_id": "T1"}


def test_json_backend_corrupt_file_raises(tmp_path):
    (tmp_path / "tasks.json").write_text("{not json", encoding="utf-8")
    b = JsonFileBackend(base_dir=str(tmp_path))
    with pytest.raises(ValueError):
        b.get("tasks", "T1")


def test_firestore_backend_against_fake_client(fake_db):
    b = FirestoreBackend(fake_db, timeout=3)
    b.set("cod_entries", "C1", {"cod_id": "C1", "driver_id": "D1", "status": "PENDING"})
    b.set("cod_entries", "C2", {"cod_id": "C2", "driver_id": "D2", "status": "PENDING"})

    assert b.get("cod_entries", "C1")["driver_id"] == "D1"
    assert b.get("cod_entries", "nope") is None
    assert [d["cod_id"] for d in b.query("cod_entries", driver_id="D2", status="PENDING")] == ["C2"]
    assert set(b.all("cod_entries")) == {"C1", "C2"}
    assert b.delete("cod_entries", "C1") is True
    assert b.delete("cod_entries", "C1") is False


def test_dual_store_prefers_primary(store, fake_db, file_backend):
    store.run("write", lambda b: b.set("tasks", "T1", {"job_id": "T1"}))
    assert "T1" in fake_db.docs("tasks")
    assert file_backend.get("tasks", "T1") is None


def test_dual_store_falls_back_when_primary_fails(store, fake_db, file_backend, caplog):
    fake_db.down = True
    store.run("write", lambda b: b.set("tasks", "T1", {"job_id": "T1"}))

    assert file_backend.get("tasks", "T1") == {"job_id": "T1"}
    assert "falling back" in caplog.text


def test_dual_store_without_primary_uses_fallback(file_backend):
    store = DualStore(primary=None, fallback=file_backend)
    assert store.has_primary is False
    store.run("write", lambda b: b.set("tasks", "T1", {"job_id": "T1"}))
    assert store.run("read", lambda b: b.get("tasks", "T1")) == {"job_id": "T1"}


def test_dual_store_raises_when_both_backends_fail(fake_db):
    fake_db.down = True
    store = DualStore(primary=FirestoreBackend(fake_db), fallback=BrokenBackend())
    with pytest.raises(PersistenceUnavailable):
        store.run("read", lambda b: b.get("tasks", "T1"))


def test_domain_errors_do_not_fall_back(store, file_backend):
    calls = []

    def op(b):
        calls.append(b.name)
        raise NotFound("missing")

    with pytest.raises(NotFound):
        store.run("lookup", op)
    assert calls == ["firestore"]


def test_divergence_reports_outage_writes(store, fake_db, file_backend):
    store.run("write", lambda b: b.set("tasks", "T1", {"job_id": "T1", "v": 1}))
    fake_db.down = True
    store.run("write", lambda b: b.set("tasks", "T2", {"job_id": "T2"}))
    store.run("write", lambda b: b.set("tasks", "T1", {"job_id": "T1", "v": 2}))
    fake_db.down = False

    report = store.divergence("tasks")
    assert report.diverged is True
    assert report.only_fallback == ["T2"]
    assert report.mismatched == ["T1"]


def test_divergence_without_primary_is_empty(file_backend):
    file_backend.set("tasks", "T1", {"job_id": "T1"})
    report = DualStore(primary=None, fallback=file_backend).divergence("tasks")
    assert report.diverged is False


def test_divergence_wraps_backend_errors(store, fake_db):
    fake_db.down = True
    with pytest.raises(PersistenceUnavailable):
        store.divergence("tasks")


def test_build_store_without_credentials_is_file_only(cfg):
    from apps.courier.database import build_store

    store = build_store(cfg)
    assert store.has_primary is False
    assert isinstance(store.fallback, JsonFileBackend)


def test_build_store_wraps_given_client(cfg, fake_db):
    from apps.courier.database import build_store

    store = build_store(cfg, client=fake_db)
    assert store.has_primary is True
    store.run("write", lambda b: b.set("tasks", "T1", {"job_id": "T1"}))
    assert "T1" in fake_db.docs("tasks")
