from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# STATUS ENUMS
# ============================================================================

class JobStatus(str, Enum):
    """Job lifecycle states the dispatch engine reads or writes."""
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    IN_PROGRESS = "In Progress"
    DIAGNOSED = "Diagnosed"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


# Jobs whose tracking snapshot follows the technician's position
TRACKABLE_STATUSES: tuple[JobStatus, ...] = (JobStatus.ACCEPTED, JobStatus.IN_PROGRESS)

# Jobs a technician is currently working on
ACTIVE_JOB_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.ACCEPTED,
    JobStatus.IN_PROGRESS,
    JobStatus.DIAGNOSED,
)


class CandidateStatus(str, Enum):
    """Per-technician state inside a job's candidate pool."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    REMOVED = "removed"


class TrackingStatus(str, Enum):
    ONWAY = "onway"
    ARRIVED = "arrived"


class TechnicianAccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING = "pending"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair, optionally stamped with when it was reported."""
    latitude: float
    longitude: float
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class EtaEstimate:
    """Travel time estimate derived from distance at a fixed average speed."""
    minutes: int
    text: str


@dataclass(frozen=True)
class JobLocation:
    """
    Service destination.  Coordinates are optional: without them the
    ranker falls back to city-level matching.
    """
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    house_building: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def point(self) -> Optional[GeoPoint]:
        if not self.has_coordinates:
            return None
        return GeoPoint(self.latitude, self.longitude)

    @property
    def address(self) -> str:
        """Best-effort one-line address; empty parts are dropped."""
        parts = [self.house_building, self.street, self.city, self.state, self.pincode]
        return ", ".join(p for p in parts if p)


@dataclass(frozen=True)
class WorkingLocation:
    """Where a technician is based (fallback when no live position is known)."""
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_km: float = 10.0

    def point(self) -> Optional[GeoPoint]:
        if self.latitude is None or self.longitude is None:
            return None
        return GeoPoint(self.latitude, self.longitude)


# ============================================================================
# TECHNICIAN (owned by the Technician Directory)
# ============================================================================

@dataclass(frozen=True)
class Technician:
    """
    Directory view of a technician.  Read-only to the dispatch engine apart
    from the two counters and the location/online fields.
    """
    id: str
    full_name: str
    phone_number: Optional[str] = None
    email: Optional[str] = None
    profile_picture_url: Optional[str] = None
    skills: tuple[str, ...] = ()
    average_rating: float = 0.0
    completed_jobs_count: int = 0
    complaints_count: int = 0
    response_rate: float = 0.5
    is_available: bool = False
    is_online: bool = False
    current_location: Optional[GeoPoint] = None
    working_location: WorkingLocation = field(default_factory=WorkingLocation)
    active_jobs_count: int = 0
    rejection_count: int = 0
    status: TechnicianAccountStatus = TechnicianAccountStatus.ACTIVE

    # Internal-only; never projected into any public view
    bank_details: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def search_location(self) -> Optional[GeoPoint]:
        """Live position if known, otherwise the working-location coordinates."""
        if self.current_location is not None:
            return self.current_location
        return self.working_location.point()


# ============================================================================
# JOB (owned by the Job Store)
# ============================================================================

@dataclass(frozen=True)
class CandidateEntry:
    """One technician notified for a job at some search radius."""
    technician_id: str
    notified_at: datetime
    status: CandidateStatus = CandidateStatus.PENDING
    distance_km: Optional[float] = None
    eta: Optional[EtaEstimate] = None
    # Set once the technician's accept/reject counter has been bumped
    counted: bool = False


@dataclass(frozen=True)
class TrackingSnapshot:
    """Live position of the assigned technician relative to the job."""
    location: GeoPoint
    distance_remaining_km: float
    eta: EtaEstimate
    last_updated: datetime


@dataclass(frozen=True)
class Job:
    """
    Persisted service job as seen by the dispatch engine.

    ``version`` is bumped by the store on every write and guards the
    optimistic compare-and-swap used for all state transitions.
    """
    id: str
    appliance_type: str
    location: JobLocation = field(default_factory=JobLocation)
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    customer_id: Optional[str] = None

    # Search state
    current_radius_km: Optional[float] = None
    radius_expanded_at: Optional[datetime] = None
    candidates: tuple[CandidateEntry, ...] = ()

    # Assignment
    assigned_technician_id: Optional[str] = None
    accepted_at: Optional[datetime] = None

    # Tracking
    technician_tracking: Optional[TrackingSnapshot] = None
    tracking_status: Optional[TrackingStatus] = None
    journey_started_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None

    version: int = 0

    def pending_candidates(self) -> list[CandidateEntry]:
        return [c for c in self.candidates if c.status == CandidateStatus.PENDING]

    def candidate_for(self, technician_id: str) -> Optional[CandidateEntry]:
        """Most recent pool entry for a technician, if any."""
        for entry in reversed(self.candidates):
            if entry.technician_id == technician_id:
                return entry
        return None

    def rejected_technician_ids(self) -> set[str]:
        return {
            c.technician_id for c in self.candidates
            if c.status == CandidateStatus.REJECTED
        }
