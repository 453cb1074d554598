"""
Invoice / external reference generation.

Ids combine a millisecond time component with a random suffix so they are
unique without a central sequence and sort by creation time.
"""

import re
import secrets
import threading
import time

_lock = threading.Lock()
_last_ms = 0

_USER_REF_RE = re.compile(r"[^A-Za-z0-9]+")


def _next_millis() -> int:
    """Wall-clock milliseconds, strictly increasing within this process."""
    global _last_ms
    with _lock:
        now = int(time.time() * 1000)
        if now <= _last_ms:
            now = _last_ms + 1
        _last_ms = now
        return now


def new_invoice_id() -> str:
    """INV-<13-digit ms>-<8 hex>, e.g. INV-1760880000123-9f2c41ab."""
    return f"INV-{_next_millis():013d}-{secrets.token_hex(4)}"


def new_external_id(user_id: str) -> str:
    """Gateway-facing reference: saldo-<user>-<ms>-<6 hex>."""
    user_ref = _USER_REF_RE.sub("", str(user_id))[:24] or "anon"
    return f"saldo-{user_ref}-{_next_millis()}-{secrets.token_hex(3)}"
