from datetime import datetime, timezone
from typing import Any, Dict, Union
import json
import re
import secrets
import uuid

from .exceptions import ParseError


def utcnow() -> datetime:
    """Timezone aware UTC timestamp used for every stored entity."""
    return datetime.now(timezone.utc)


def generate_command_id() -> str:
    return str(uuid.uuid4())


def generate_correlation_id(now: datetime = None) -> str:
    """
    Generate a correlation ID for an outbound downlink.
    Format: dl-{epoch_ms}-{hex8}
    Example: dl-1736245496789-9f1c2a7b

    The random suffix handles several downlinks queued in the same millisecond.
    """
    now = now or utcnow()
    return f"dl-{int(now.timestamp() * 1000)}-{secrets.token_hex(4)}"


def generate_alarm_id(target_id: str, now: datetime = None) -> str:
    """
    Alarm IDs sort by creation time within a target.
    Format: {target_id}_{timestamp}_{random3}
    """
    now = now or utcnow()
    ts = now.strftime('%Y%m%d%H%M%S%f')
    return f"{target_id}_{ts}_{secrets.randbelow(1000):03d}"


_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any, default: datetime = None) -> datetime:
    """
    Parse an RFC 3339 timestamp as sent by LoRaWAN network servers.
    Nanosecond fractions are truncated to microseconds; naive values are UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value.strip(), count=1)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return default or utcnow()
    else:
        return default or utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_json_payload(topic: str, payload: Union[bytes, str]) -> Dict[str, Any]:
    """Decode a JSON object payload or raise ParseError"""
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(topic, f"invalid JSON ({e})")
    if not isinstance(data, dict):
        raise ParseError(topic, f"expected a JSON object, got {type(data).__name__}")
    return data


def parse_online_flag(topic: str, payload: Union[bytes, str]) -> bool:
    """Online messages carry plain 'true'/'false' text"""
    if isinstance(payload, bytes):
        try:
            payload = payload.decode()
        except UnicodeDecodeError:
            raise ParseError(topic, "online flag is not valid text")
    text = payload.strip().strip('"').lower()
    if text in ("true", "1", "online"):
        return True
    if text in ("false", "0", "offline"):
        return False
    raise ParseError(topic, f"unrecognised online flag {payload!r}")
