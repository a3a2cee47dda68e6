"""Idempotency key derivation."""

from __future__ import annotations

import hashlib
import math

import orjson

from signalgate.models import Alert


def _number(value: float | None) -> str:
    if value is None:
        return ""
    return format(float(value), ".10g")


def derive_key(alert: Alert, bucket_sec: int = 60) -> str:
    """Stable key for an alert.

    An explicit ``alert_id`` wins. Otherwise the normalized trade fields plus
    the time bucket are hashed, so a redelivery inside the same bucket maps to
    the same key.
    """
    if alert.alert_id:
        return f"alert:{alert.alert_id}"
    bucket = math.floor(alert.timestamp.timestamp() / bucket_sec)
    material = {
        "symbol": alert.symbol,
        "action": alert.action.value,
        "quantity": _number(alert.quantity),
        "price_hint": _number(alert.price_hint),
        "bucket": bucket,
    }
    digest = hashlib.sha256(orjson.dumps(material, option=orjson.OPT_SORT_KEYS)).hexdigest()
    return f"hash:{digest[:32]}"
