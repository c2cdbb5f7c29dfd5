from __future__ import annotations
from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime

class CheckinCreate(BaseModel):
    venue_id: UUID
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None  # meters
    code: str | None = Field(default=None, max_length=100)  # scanned rotating code

class ScoreBreakdown(BaseModel):
    code: int
    location: int
    receipt: int
    total: int
    threshold: int

class VenueRef(BaseModel):
    id: UUID
    name: str

class CheckinRef(BaseModel):
    id: UUID
    verified_at: datetime

class LocationDetail(BaseModel):
    distance_meters: int
    band: str  # exact | close | near | far
    accuracy_meters: float | None = None

class CodeDetail(BaseModel):
    matched: bool
    window_offset: int

class RiskDetail(BaseModel):
    suspicious_speed: bool
    inconsistent_accuracy: bool
    risk_score: int

class Summary(BaseModel):
    badge: str  # success | partial | fail
    message: str

class VerificationRead(BaseModel):
    passed: bool
    scores: ScoreBreakdown
    venue: VenueRef
    checkin: CheckinRef
    location: LocationDetail | None = None
    code: CodeDetail | None = None
    risk: RiskDetail
    summary: Summary

class CodeRead(BaseModel):
    venue_id: UUID
    venue_name: str
    code: str
    refresh_in: int       # seconds until the code rotates
    valid_until: datetime

class CheckinRead(BaseModel):
    id: UUID
    venue_id: UUID
    user_id: UUID
    code_score: int
    location_score: int
    receipt_score: int
    total_score: int
    passed: bool
    code_matched: bool
    distance_meters: int | None = None
    distance_band: str | None = None
    risk_score: int
    attempts: int
    verified_at: datetime
