import math
import re
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
duration_regex = re.compile(r"^\s*(\d+)\s*(ms|s|m|h|d|w)?\s*$", re.IGNORECASE)

DURATION_UNITS = {
    "ms": "milliseconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}

USER_SUMMARY_FIELDS = ("username", "email", "avatar_url", "role")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def parse_duration(value, default: timedelta) -> timedelta:
    """Parse ``15m`` / ``7d`` / ``3600`` style durations (bare numbers are seconds)."""
    if value is None:
        return default
    match = duration_regex.match(str(value))
    if not match:
        return default
    amount = int(match.group(1))
    unit = (match.group(2) or "s").lower()
    return timedelta(**{DURATION_UNITS[unit]: amount})


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_int(value, default=0):
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def safe_positive_int(value, default=0):
    return max(default, safe_int(value, default))


def to_cents(value) -> int:
    """Convert a money amount to integer cents, rounding half up."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return 0
    if not amount.is_finite():
        return 0
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return float(Decimal(cents) / 100)


def normalize_object_id_value(value):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def normalize_object_id_list(values) -> List[ObjectId]:
    normalized_ids: List[ObjectId] = []
    if not values:
        return normalized_ids
    for value in values:
        object_id = normalize_object_id_value(value)
        if object_id is not None:
            normalized_ids.append(object_id)
    return normalized_ids


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def truncate_preview(content: str, limit: int = 160) -> str:
    if len(content) > limit:
        return content[: limit - 3] + "..."
    return content


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, (bytes, bytearray)):
        return None
    if isinstance(value, dict):
        return serialize_document(value)
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def serialize_document(document: Optional[Dict], exclude: Iterable[str] = ()) -> Dict:
    """JSON-friendly copy of a Mongo document: ``_id`` becomes ``id``."""
    if not document:
        return {}
    excluded = set(exclude)
    serialized: Dict[str, object] = {}
    for key, value in document.items():
        if key in excluded:
            continue
        if key == "_id":
            serialized["id"] = serialize_value(value)
            continue
        serialized[key] = serialize_value(value)
    return serialized


def fetch_user_summaries(db, user_ids, fields=USER_SUMMARY_FIELDS) -> Dict[ObjectId, Dict]:
    normalized_ids = normalize_object_id_list(user_ids)
    if not normalized_ids:
        return {}
    projection = {field: 1 for field in fields}
    summaries: Dict[ObjectId, Dict] = {}
    for document in db.users.find({"_id": {"$in": list(set(normalized_ids))}}, projection):
        summaries[document["_id"]] = serialize_document(document)
    return summaries


def fetch_user_summary(db, user_id, fields=USER_SUMMARY_FIELDS) -> Optional[Dict]:
    object_id = normalize_object_id_value(user_id)
    if object_id is None:
        return None
    return fetch_user_summaries(db, [object_id], fields).get(object_id)


def get_client_ip(request) -> str:
    # ProxyFix has already resolved trusted X-Forwarded-For hops into remote_addr
    return request.remote_addr or ""


def months_ago(reference: datetime, months: int) -> datetime:
    month_index = reference.month - 1 - months
    year = reference.year + month_index // 12
    month = month_index % 12 + 1
    day = min(reference.day, 28)
    return reference.replace(year=year, month=month, day=day)
