from __future__ import annotations


def test_history_list_newest_first_with_filter_and_limit(services):
    services.history.append("T1", "cod", None, 1)
    services.history.append("T2", "cod", None, 2)
    services.history.append("T1", "cod", 1, 3, source="manual")

    rows = services.history.list(task_id="T1")
    assert [r.new_value for r in rows] == [3, 1]
    assert rows[0].source == "manual"

    assert len(services.history.list()) == 3
    assert [r.job_id for r in services.history.list(limit=1)] == ["T1"]


def test_task_store_exposes_history(services):
    services.tasks.merge_from_event({"job_id": "T1", "cod_amount": 1})
    services.tasks.merge_from_event({"job_id": "T2", "cod_amount": 2})

    assert [h.job_id for h in services.tasks.get_history()] == ["T2", "T1"]
    assert [h.job_id for h in services.tasks.get_history("T1")] == ["T1"]


def test_history_append_to_explicit_backend(services, file_backend, fake_db):
    entry = services.history.append("T1", "cod", None, 1, backend=file_backend)
    assert entry.id in file_backend.all("task_history")
    assert fake_db.docs("task_history") == {}
