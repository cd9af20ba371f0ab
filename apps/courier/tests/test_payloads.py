from __future__ import annotations

from apps.courier.payloads import (
    derive_event_type,
    extract_cod,
    extract_task_id,
    extract_template_fields,
    is_task_event,
    normalize_task_fields,
    parse_amount,
    parse_bool,
)


def test_task_id_priority_and_blank_values():
    assert extract_task_id({"job_id": "J1", "order_id": "O1", "task_id": "T1"}) == "J1"
    assert extract_task_id({"job_id": "", "order_id": 42}) == "42"
    assert extract_task_id({"job_id": None, "task_id": " T9 "}) == "T9"
    assert extract_task_id({"foo": "bar"}) is None


def test_blank_task_id_falls_through_to_next_alias():
    assert extract_task_id({"job_id": "   ", "order_id": "O1"}) == "O1"
    assert extract_task_id({"job_id": " ", "order_id": "", "task_id": "\t"}) is None


def test_merge_accepts_order_id_behind_blank_job_id(services):
    task = services.tasks.merge_from_event({"job_id": "  ", "order_id": "O1", "cod_amount": 4})
    assert task.job_id == "O1"


def test_event_type_defaults_to_unknown():
    assert derive_event_type({"event_type": "task_updated"}) == "task_updated"
    assert derive_event_type({"type": "order.created"}) == "order.created"
    assert derive_event_type({}) == "unknown"


def test_is_task_event():
    assert is_task_event("anything", "T1") is True
    assert is_task_event("job_completed", None) is True
    assert is_task_event("driver_location", None) is False


def test_template_fields_accepts_dict_or_label_list():
    assert extract_template_fields({"templateFields": {"cod_amount": "20"}}) == {"cod_amount": "20"}
    listed = {"custom_fields": [{"label": "cod_amount", "data": "15.5"}, {"label": "", "data": "x"}, "junk"]}
    assert extract_template_fields(listed) == {"cod_amount": "15.5"}
    assert extract_template_fields({}) == {}


def test_parse_bool_and_amount():
    assert parse_bool("Yes") is True
    assert parse_bool(0) is False
    assert parse_bool("maybe") is None

    assert parse_amount("1,250.456") == 1250.46
    assert parse_amount(0) == 0.0
    assert parse_amount("-5") is None
    assert parse_amount("abc") is None
    assert parse_amount("nan") is None
    assert parse_amount(True) is None


def test_extract_cod_prefers_template_then_top_level():
    payload = {"cod_amount": 99, "template_fields": {"COD": "12"}}
    assert extract_cod(payload, amount_field="COD") == (12.0, None)

    assert extract_cod({"cod_amount": 20}) == (20.0, None)
    assert extract_cod({"codCollected": "true"}) == (None, True)
    assert extract_cod({"template_fields": {"cod_amount": "bad"}, "cod": "7"}) == (7.0, None)


def test_normalize_task_fields_keeps_only_present_values():
    payload = {
        "job_id": "T1",
        "event_type": "task_updated",
        "job_status": 2,
        "fleetId": 17,
        "customer_name": "",
        "job_pickup_latitude": "12.5",
        "creation_datetime": "2024-01-02T03:04:05Z",
        "template_fields": [{"label": "cod_amount", "data": "20"}],
    }
    out = normalize_task_fields(payload)

    assert out["status"] == 2
    assert out["fleet_id"] == "17"
    assert out["pickup_latitude"] == 12.5
    assert out["creation_datetime"] == "2024-01-02T03:04:05"
    assert out["cod_amount"] == 20.0
    assert out["template_fields"] == {"cod_amount": "20"}
    assert out["event_type"] == "task_updated"
    assert "customer_name" not in out
    assert "cod_collected" not in out
    assert "job_id" not in out


def test_iso_timestamp_accepts_strings_and_epoch_seconds():
    from apps.courier.utils import iso_timestamp

    assert iso_timestamp("2024-01-02 10:00:00+02:00") == "2024-01-02T08:00:00"
    assert iso_timestamp(0) == "1970-01-01T00:00:00"
    assert iso_timestamp("not a date") is None
