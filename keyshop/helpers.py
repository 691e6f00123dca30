import time
import hmac
import hashlib
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def hmac_sha256_hex(secret: str, message: str | bytes) -> str:
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def payment_signature(secret: str, gateway_order_id: str,
                      gateway_payment_id: str) -> str:
    # what the gateway signs after checkout: "<order_id>|<payment_id>"
    return hmac_sha256_hex(secret, f"{gateway_order_id}|{gateway_payment_id}")


def to_minor_units(amount: float) -> int:
    # 299.995 -> 30000, avoids float artifacts of round(amount * 100)
    q = Decimal(str(amount)) * 100
    return int(q.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
