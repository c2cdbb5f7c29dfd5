from __future__ import annotations
import math
from numbers import Real
from typing import Any, List, NamedTuple, Optional

from .policy import (
    CLOSE_BAND_METERS,
    EXACT_BAND_METERS,
    MAX_ACCURACY_METERS,
    MAX_LATITUDE,
    MAX_LOCATION_SCORE,
    MAX_LONGITUDE,
    MIN_LATITUDE,
    MIN_LONGITUDE,
    STORED_COORDINATE_DECIMALS,
)

EARTH_RADIUS_METERS = 6371e3

class Coordinates(NamedTuple):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None  # meters, as reported by the device

class FieldError(NamedTuple):
    field: str
    message: str

class ValidationResult(NamedTuple):
    valid: bool
    errors: List[FieldError]

class LocationScore(NamedTuple):
    score: int
    distance: int  # whole meters
    band: str      # exact | close | near | far

def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a coordinate
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)

def validate_coordinates(lat: Any, lng: Any, accuracy: Any = None) -> ValidationResult:
    """Range-check raw device coordinates; NaN, infinities and non-numbers are rejected."""
    errors: List[FieldError] = []

    if not _is_number(lat):
        errors.append(FieldError("latitude", "Latitude must be a valid finite number"))
    elif not MIN_LATITUDE <= lat <= MAX_LATITUDE:
        errors.append(FieldError("latitude", "Latitude must be between -90 and 90"))

    if not _is_number(lng):
        errors.append(FieldError("longitude", "Longitude must be a valid finite number"))
    elif not MIN_LONGITUDE <= lng <= MAX_LONGITUDE:
        errors.append(FieldError("longitude", "Longitude must be between -180 and 180"))

    if accuracy is not None:
        if not _is_number(accuracy):
            errors.append(FieldError("accuracy", "GPS accuracy must be a valid finite number"))
        elif not 0 <= accuracy <= MAX_ACCURACY_METERS:
            errors.append(FieldError("accuracy", "GPS accuracy must be between 0 and 10000 meters"))

    return ValidationResult(not errors, errors)

def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

def distance_band(distance: float, max_distance_meters: float) -> str:
    if distance >= max_distance_meters:
        return "far"
    if distance <= EXACT_BAND_METERS:
        return "exact"
    if distance <= CLOSE_BAND_METERS:
        return "close"
    return "near"

def score_location(user: Coordinates, venue: Coordinates, max_distance_meters: float) -> LocationScore:
    """
    Linear decay from MAX_LOCATION_SCORE at the venue to 0 at ``max_distance_meters``.
    Non-increasing in distance; anything at or beyond the radius scores 0.
    """
    if max_distance_meters <= 0:
        raise ValueError("max_distance_meters must be positive")
    distance = round(haversine_meters(user.latitude, user.longitude, venue.latitude, venue.longitude))
    if distance >= max_distance_meters:
        score = 0
    else:
        score = math.floor(MAX_LOCATION_SCORE * (max_distance_meters - distance) / max_distance_meters)
    return LocationScore(score=score, distance=distance, band=distance_band(distance, max_distance_meters))

def round_coordinate(value: float) -> float:
    return round(value, STORED_COORDINATE_DECIMALS)
