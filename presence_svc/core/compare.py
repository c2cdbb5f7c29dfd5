from __future__ import annotations
import hmac

def constant_time_equal(a: str | None, b: str | None) -> bool:
    """
    Compare two strings without returning early on the first differing byte.
    Only the overall length can influence timing; a mismatch position never does.
    """
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
