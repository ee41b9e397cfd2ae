# shared/utils.py

import datetime
import math
import time
import uuid
from typing import Any, Optional

# Значения больше 10^12 считаются миллисекундами
MILLISECONDS_THRESHOLD = 10 ** 12
# 9999-12-31 23:59:59 UTC, предел datetime
MAX_TIMESTAMP = 253402300799


def normalize_timestamp(value: Any) -> Optional[float]:
    """
    Приводит момент отправки к секундам с эпохи (UTC).

    Принимает int/float или числовую строку, в секундах или миллисекундах.
    Возвращает None для пустых, нечисловых, бесконечных и отрицательных
    значений, а также для моментов позже 9999 года.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(ts):
        return None
    if ts > MILLISECONDS_THRESHOLD:
        ts = ts / 1000
    if ts < 0 or ts > MAX_TIMESTAMP:
        return None
    return ts


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def utc_now_ts() -> float:
    return time.time()


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


def ts_to_iso(ts: Optional[float], tz: datetime.tzinfo = datetime.timezone.utc) -> Optional[str]:
    if ts is None:
        return None
    try:
        return datetime.datetime.fromtimestamp(ts, tz).isoformat(timespec="seconds")
    except (OverflowError, ValueError, OSError):
        return None
