import datetime as dt
import re
import secrets
import string
from typing import Optional

ALPHANUMERIC = string.digits + string.ascii_uppercase + string.ascii_lowercase

# S shop, M membership first payment, R recurring MIT, D refund, X other
PREFIXES = "SMRDX"

_ORDER_RE = re.compile(r"^\d{4}[0-9A-Za-z]{0,8}$")


def generate_order_number(prefix: str = "X", now: Optional[dt.datetime] = None) -> str:
    """Return a 12-char gateway order: YYMM, a prefix letter, 7 random chars."""
    if prefix not in PREFIXES:
        raise ValueError(f"Unknown order prefix {prefix!r}")
    now = now or dt.datetime.now(dt.timezone.utc)
    random_part = "".join(secrets.choice(ALPHANUMERIC) for _ in range(7))
    return f"{now:%y%m}{prefix}{random_part}"


def is_valid_order_number(value: str) -> bool:
    return bool(value) and _ORDER_RE.match(value) is not None
