"""Normalization of inbound dispatch-platform webhook payloads.

The platform sends the same attribute under several names depending on the
event and API version. Every alias list lives here; lookups are first-match-wins
and a value of ``None`` or ``""`` counts as absent (``0`` and ``False`` do not).
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, Optional, Tuple

from .utils import iso_timestamp

logger = logging.getLogger(__name__)


TASK_ID_FIELDS: Tuple[str, ...] = ("job_id", "order_id", "task_id")
EVENT_TYPE_FIELDS: Tuple[str, ...] = ("event_type", "type")
TEMPLATE_FIELD_KEYS: Tuple[str, ...] = ("template_fields", "templateFields", "custom_fields", "customFields")
TASK_EVENT_MARKERS: Tuple[str, ...] = ("task", "order", "job")

# Canonical record field -> candidate payload keys, in priority order.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "status": ("job_status", "status"),
    "job_type": ("job_type", "jobType"),
    "customer_id": ("customer_id", "customerId"),
    "customer_name": ("customer_name", "customerName", "customer_username"),
    "customer_phone": ("customer_phone", "customerPhone"),
    "customer_email": ("customer_email", "customerEmail"),
    "vendor_id": ("vendor_id", "vendorId"),
    "fleet_id": ("fleet_id", "fleetId"),
    "fleet_name": ("fleet_name", "fleetName", "driver_name"),
    "pickup_address": ("pickup_address", "pickupAddress", "job_pickup_address"),
    "delivery_address": ("delivery_address", "deliveryAddress", "customer_address", "job_address"),
    "pickup_latitude": ("pickup_latitude", "pickupLatitude", "job_pickup_latitude"),
    "pickup_longitude": ("pickup_longitude", "pickupLongitude", "job_pickup_longitude"),
    "delivery_latitude": ("delivery_latitude", "deliveryLatitude", "job_latitude"),
    "delivery_longitude": ("delivery_longitude", "deliveryLongitude", "job_longitude"),
    "distance": ("distance",),
    "order_fees": ("order_fees", "orderFees", "order_payment", "orderPayment"),
    "tags": ("tags",),
    "notes": ("notes", "description", "customer_comments"),
    "creation_datetime": ("creation_datetime", "created_at", "job_time"),
}

_ID_FIELDS = {"customer_id", "vendor_id", "fleet_id"}
_FLOAT_FIELDS = {
    "pickup_latitude",
    "pickup_longitude",
    "delivery_latitude",
    "delivery_longitude",
    "distance",
    "order_fees",
}
_TEXT_FIELDS = {
    "customer_name",
    "customer_phone",
    "customer_email",
    "fleet_name",
    "pickup_address",
    "delivery_address",
    "notes",
}

# Top-level keys consulted when the template fields carry no COD amount.
_TOP_LEVEL_COD_AMOUNT: Tuple[str, ...] = ("cod_amount", "cod", "codAmount")
_TOP_LEVEL_COD_COLLECTED: Tuple[str, ...] = ("cod_collected", "codCollected")


def _present(value: Any) -> bool:
    return value is not None and value != ""


def first_present(payload: Dict[str, Any], keys: Iterable[str]) -> Any:
    if not isinstance(payload, dict):
        return None
    for key in keys:
        value = payload.get(key)
        if _present(value):
            return value
    return None


def extract_task_id(payload: Dict[str, Any]) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    # Whitespace-only ids are as good as absent; keep looking.
    for key in TASK_ID_FIELDS:
        value = payload.get(key)
        text = str(value).strip() if value is not None else ""
        if text:
            return text
    return None


def derive_event_type(payload: Dict[str, Any]) -> str:
    value = first_present(payload, EVENT_TYPE_FIELDS)
    return str(value).strip() if value is not None else "unknown"


def is_task_event(event_type: Optional[str], task_id: Optional[str]) -> bool:
    if task_id:
        return True
    et = str(event_type or "").lower()
    return any(marker in et for marker in TASK_EVENT_MARKERS)


def extract_template_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    raw = first_present(payload, TEMPLATE_FIELD_KEYS)
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, list):
        # Platform form: [{"label": "cod_amount", "data": "20"}, ...]
        out: Dict[str, Any] = {}
        for item in raw:
            if isinstance(item, dict) and item.get("label"):
                out[str(item["label"])] = item.get("data")
        return out
    return {}


def parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return bool(value)
        return None
    text = str(value or "").strip().lower()
    if text in {"true", "1", "yes"}:
        return True
    if text in {"false", "0", "no"}:
        return False
    return None


def parse_amount(value: Any) -> Optional[float]:
    if not _present(value) or isinstance(value, bool):
        return None
    try:
        amount = float(str(value).strip().replace(",", ""))
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable COD amount %r", value)
        return None
    if not math.isfinite(amount) or amount < 0:
        logger.warning("Ignoring invalid COD amount %r", value)
        return None
    return round(amount, 2)


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_cod(
    payload: Dict[str, Any],
    *,
    amount_field: str = "cod_amount",
    collected_field: str = "cod_collected",
) -> Tuple[Optional[float], Optional[bool]]:
    """Return (cod_amount, cod_collected); either may be None when absent."""
    template = extract_template_fields(payload)
    amount_keys = tuple(dict.fromkeys((amount_field, "cod_amount", "codAmount")))
    collected_keys = tuple(dict.fromkeys((collected_field, "cod_collected", "codCollected")))

    amount = parse_amount(first_present(template, amount_keys))
    if amount is None:
        amount = parse_amount(first_present(payload, _TOP_LEVEL_COD_AMOUNT))

    collected = None
    raw = first_present(template, collected_keys)
    if raw is None:
        raw = first_present(payload, _TOP_LEVEL_COD_COLLECTED)
    if raw is not None:
        collected = parse_bool(raw)
    return amount, collected


def normalize_task_fields(
    payload: Dict[str, Any],
    *,
    amount_field: str = "cod_amount",
    collected_field: str = "cod_collected",
) -> Dict[str, Any]:
    """Map a raw payload onto canonical task fields, keeping only present values."""
    out: Dict[str, Any] = {}
    for name, keys in FIELD_ALIASES.items():
        value = first_present(payload, keys)
        if value is None:
            continue
        if name in _ID_FIELDS:
            value = str(value).strip()
        elif name in _FLOAT_FIELDS:
            value = _to_float(value)
        elif name in _TEXT_FIELDS:
            value = str(value)
        elif name == "creation_datetime":
            value = iso_timestamp(value) or str(value)
        if _present(value):
            out[name] = value

    amount, collected = extract_cod(payload, amount_field=amount_field, collected_field=collected_field)
    if amount is not None:
        out["cod_amount"] = amount
    if collected is not None:
        out["cod_collected"] = collected

    template = extract_template_fields(payload)
    if template:
        out["template_fields"] = template

    event_type = first_present(payload, EVENT_TYPE_FIELDS)
    if event_type is not None:
        out["event_type"] = str(event_type).strip()
    return out
