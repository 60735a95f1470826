from datetime import datetime, timezone
from typing import Any


def parse_store_datetime(value: Any) -> Any:
    """Accept record-store timestamps ("2024-01-01 10:00:00.000Z") and epoch values."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and len(value) > 10 and value[10] == " ":
        return f"{value[:10]}T{value[11:]}"
    return value


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_store_datetime(value: datetime) -> str:
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%d %H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def from_epoch_millis(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
