from __future__ import annotations
from datetime import datetime, timezone
from typing import NamedTuple, Tuple
import hashlib
import hmac
import math
import struct
import time

from .compare import constant_time_equal
from .policy import CODE_DIGITS, CODE_PREVIOUS_WINDOWS, CODE_WINDOW_SECONDS

class CodeCheck(NamedTuple):
    valid: bool
    window_offset: int  # 0 = current window, -1 = previous window

def _now() -> float:
    return time.time()

def time_window(timestamp: float) -> int:
    return math.floor(timestamp / CODE_WINDOW_SECONDS)

def _code_for_window(secret: str, window: int) -> str:
    # RFC 4226 HOTP with HMAC-SHA256 and the window index as the moving counter
    digest = hmac.new(secret.encode("utf-8"), struct.pack(">Q", window), hashlib.sha256).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10 ** CODE_DIGITS)).zfill(CODE_DIGITS)

def generate_code(secret: str, timestamp: float | None = None) -> str:
    """Rotating code for the 30s window containing ``timestamp`` (defaults to now)."""
    if not secret:
        raise ValueError("venue secret must not be empty")
    ts = _now() if timestamp is None else timestamp
    return _code_for_window(secret, time_window(ts))

def verify_code(candidate: str, secret: str, timestamp: float | None = None) -> CodeCheck:
    """
    Accept the code of the current window or of the immediately preceding one.
    Every accepted window is compared, so a match does not end the loop early.
    """
    if not secret or not candidate:
        return CodeCheck(False, 0)
    ts = _now() if timestamp is None else timestamp
    window = time_window(ts)
    result = CodeCheck(False, 0)
    for offset in range(0, -(CODE_PREVIOUS_WINDOWS + 1), -1):
        expected = _code_for_window(secret, window + offset)
        if constant_time_equal(candidate, expected) and not result.valid:
            result = CodeCheck(True, offset)
    return result

def current_code(secret: str, timestamp: float | None = None) -> Tuple[str, int, datetime]:
    """Return (code, seconds until it rotates, rotation instant) for kiosk displays."""
    ts = _now() if timestamp is None else timestamp
    code = generate_code(secret, ts)
    rotates_at = (time_window(ts) + 1) * CODE_WINDOW_SECONDS
    refresh_in = max(1, math.ceil(rotates_at - ts))
    valid_until = datetime.fromtimestamp(rotates_at, tz=timezone.utc)
    return code, refresh_in, valid_until
