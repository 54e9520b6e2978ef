# techdispatch/core/dispatch/views.py
"""
Pydantic request/response models for the dispatch engine.

These are the only shapes that leave the engine: internal technician
fields (bank details, counters, account status) are never copied into
them.  They live outside any transport layer so callers can validate
payloads without depending on a web framework.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from techdispatch.core.domain import (
    EtaEstimate,
    GeoPoint,
    JobLocation,
    JobStatus,
    Technician,
    TrackingStatus,
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class LocationUpdate(BaseModel):
    """Position ping from a technician's device."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class Coordinates(BaseModel):
    latitude: float
    longitude: float
    updated_at: Optional[datetime] = None

    @classmethod
    def from_point(cls, point: Optional[GeoPoint]) -> Optional["Coordinates"]:
        if point is None:
            return None
        return cls(latitude=point.latitude, longitude=point.longitude, updated_at=point.updated_at)


class Eta(BaseModel):
    minutes: int
    text: str

    @classmethod
    def from_estimate(cls, eta: Optional[EtaEstimate]) -> Optional["Eta"]:
        if eta is None:
            return None
        return cls(minutes=eta.minutes, text=eta.text)


class TechnicianProfile(BaseModel):
    """Public technician profile shown to customers and operators."""

    model_config = ConfigDict(frozen=True)

    id: str
    full_name: str
    phone_number: Optional[str] = None
    email: Optional[str] = None
    profile_picture_url: Optional[str] = None
    average_rating: float = 0.0
    completed_jobs_count: int = 0
    skills: list[str] = Field(default_factory=list)

    @classmethod
    def from_technician(cls, tech: Technician) -> "TechnicianProfile":
        return cls(
            id=tech.id,
            full_name=tech.full_name,
            phone_number=tech.phone_number,
            email=tech.email,
            profile_picture_url=tech.profile_picture_url,
            average_rating=tech.average_rating,
            completed_jobs_count=tech.completed_jobs_count,
            skills=list(tech.skills),
        )


class CandidateView(TechnicianProfile):
    """One ranked technician, best first in the ranker's output."""

    distance_km: Optional[float] = None
    eta: Optional[Eta] = None
    score: float
    current_location: Optional[Coordinates] = None
    is_online: bool = False


class TrackingInfo(BaseModel):
    """Read-only tracking view for a job's stakeholders."""

    job_id: str
    status: JobStatus
    tracking_status: Optional[TrackingStatus] = None
    technician: Optional[TechnicianProfile] = None
    destination: Optional[Coordinates] = None
    destination_address: str = ""
    technician_location: Optional[Coordinates] = None
    distance_km: Optional[float] = None
    eta: Optional[Eta] = None
    last_updated: Optional[datetime] = None
    journey_started_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None


class JobEta(BaseModel):
    job_id: str
    distance_km: Optional[float] = None
    eta: Optional[Eta] = None
    message: Optional[str] = None


def destination_of(location: JobLocation) -> Optional[Coordinates]:
    return Coordinates.from_point(location.point())
