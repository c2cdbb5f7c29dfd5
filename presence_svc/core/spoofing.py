from __future__ import annotations
from typing import NamedTuple, Optional

from .geo import haversine_meters
from .policy import (
    COARSE_ACCURACY_METERS,
    ELEVATED_SPEED_KMH,
    MAX_PLAUSIBLE_DECIMALS,
    MAX_RISK_SCORE,
    MIN_PLAUSIBLE_ACCURACY_METERS,
    RISK_COARSE_ACCURACY,
    RISK_ELEVATED_SPEED,
    RISK_EXCESS_PRECISION,
    RISK_INCONSISTENT_ACCURACY,
    RISK_SUSPICIOUS_SPEED,
    SUSPICIOUS_SPEED_KMH,
)

class RiskAssessment(NamedTuple):
    suspicious_speed: bool = False
    inconsistent_accuracy: bool = False
    risk_score: int = 0

def _decimals(value: float) -> int:
    text = repr(float(value))
    if "e" in text or "E" in text or "." not in text:
        return 0
    return len(text.split(".", 1)[1])

def implied_speed_kmh(
    prev_lat: float, prev_lng: float, cur_lat: float, cur_lng: float, prev_ts: float, cur_ts: float
) -> Optional[float]:
    elapsed = cur_ts - prev_ts
    if elapsed <= 0:
        return None
    return haversine_meters(prev_lat, prev_lng, cur_lat, cur_lng) / elapsed * 3.6

def assess_risk(
    prev_lat: Optional[float] = None,
    prev_lng: Optional[float] = None,
    cur_lat: Optional[float] = None,
    cur_lng: Optional[float] = None,
    prev_ts: Optional[float] = None,
    cur_ts: Optional[float] = None,
    accuracy: Optional[float] = None,
) -> RiskAssessment:
    """
    Score a location report for signs of spoofing. Timestamps are unix seconds.

    The result is advisory: callers attach it to the verdict for fraud review
    and must not fail a check-in on it.
    """
    risk = 0
    suspicious_speed = False
    inconsistent_accuracy = False

    if cur_lat is not None and cur_lng is not None:
        if _decimals(cur_lat) > MAX_PLAUSIBLE_DECIMALS or _decimals(cur_lng) > MAX_PLAUSIBLE_DECIMALS:
            risk += RISK_EXCESS_PRECISION

        if None not in (prev_lat, prev_lng, prev_ts, cur_ts):
            speed = implied_speed_kmh(prev_lat, prev_lng, cur_lat, cur_lng, prev_ts, cur_ts)
            if speed is not None:
                if speed > SUSPICIOUS_SPEED_KMH:
                    suspicious_speed = True
                    risk += RISK_SUSPICIOUS_SPEED
                elif speed > ELEVATED_SPEED_KMH:
                    risk += RISK_ELEVATED_SPEED

    if accuracy is not None:
        # real receivers never report a perfect fix
        if accuracy < MIN_PLAUSIBLE_ACCURACY_METERS:
            inconsistent_accuracy = True
            risk += RISK_INCONSISTENT_ACCURACY
        elif accuracy > COARSE_ACCURACY_METERS:
            risk += RISK_COARSE_ACCURACY

    return RiskAssessment(
        suspicious_speed=suspicious_speed,
        inconsistent_accuracy=inconsistent_accuracy,
        risk_score=min(MAX_RISK_SCORE, risk),
    )
