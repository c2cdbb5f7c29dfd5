"""
Scoring and freshness policy for presence verification.

Every weight, threshold and window used by the verifiers lives here; the
other modules import these names instead of repeating the numbers.
"""
from __future__ import annotations

# --- score weights (total 100)
MAX_CODE_SCORE = 40
MAX_LOCATION_SCORE = 40
MAX_RECEIPT_SCORE = 20
MAX_TOTAL_SCORE = MAX_CODE_SCORE + MAX_LOCATION_SCORE + MAX_RECEIPT_SCORE

# a check-in passes at or above this total
PASS_THRESHOLD = 60
# passed totals at or above this are reported as a full success
SUCCESS_BADGE_SCORE = 70

# --- rotating code
CODE_WINDOW_SECONDS = 30
CODE_DIGITS = 6
# number of preceding windows still accepted (clock drift / latency)
CODE_PREVIOUS_WINDOWS = 1

# consumed markers must outlive every window a code can verify in
REPLAY_TTL_SECONDS = 90

# --- geolocation
MIN_LATITUDE, MAX_LATITUDE = -90.0, 90.0
MIN_LONGITUDE, MAX_LONGITUDE = -180.0, 180.0
MAX_ACCURACY_METERS = 10_000.0
DEFAULT_MAX_DISTANCE_METERS = 100.0
# distance bands reported next to the score
EXACT_BAND_METERS = 20.0
CLOSE_BAND_METERS = 50.0
# 4 decimal places is roughly 11 m
STORED_COORDINATE_DECIMALS = 4

# --- spoofing heuristics (advisory only)
SUSPICIOUS_SPEED_KMH = 300.0
ELEVATED_SPEED_KMH = 50.0
MIN_PLAUSIBLE_ACCURACY_METERS = 1.0
COARSE_ACCURACY_METERS = 500.0
MAX_PLAUSIBLE_DECIMALS = 10

RISK_SUSPICIOUS_SPEED = 40
RISK_ELEVATED_SPEED = 10
RISK_INCONSISTENT_ACCURACY = 30
RISK_COARSE_ACCURACY = 10
RISK_EXCESS_PRECISION = 20
MAX_RISK_SCORE = 100

# venue statuses that accept check-ins
OPEN_VENUE_STATUSES = frozenset({"confirmed", "completed"})
