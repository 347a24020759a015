import time
import re
import random
import string
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


_B36 = string.digits + string.ascii_lowercase


def new_order_id(ts: float | None = None) -> str:
    # order_<epoch-ms>_<9 base36 chars>
    ms = int((ts if ts is not None else now_ts()) * 1000)
    suffix = "".join(random.choices(_B36, k=9))
    return f"order_{ms}_{suffix}"


def new_order_number(kind: str, ts: float | None = None) -> str:
    """ORD-<TYPE>-<YYYYMMDD>-<4 digits>; not guaranteed unique."""
    day = datetime.fromtimestamp(
        ts if ts is not None else now_ts(), tz=timezone.utc
    ).strftime("%Y%m%d")
    return f"ORD-{kind.upper()}-{day}-{random.randint(1000, 9999)}"


def format_amount(value: float) -> str:
    return f"{value:.2f}"
