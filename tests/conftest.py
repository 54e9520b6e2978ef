# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from techdispatch.core.dispatch.geo import EARTH_RADIUS_KM
from techdispatch.core.dispatch.policy import DispatchPolicy
from techdispatch.core.domain import GeoPoint, Job, JobLocation, Technician, WorkingLocation
from techdispatch.infra.memory_store import InMemoryJobStore, InMemoryTechnicianDirectory
from techdispatch.infra.metrics import get_metrics_collector

# Connaught Place, New Delhi
JOB_LAT = 28.6315
JOB_LON = 77.2167

KM_PER_DEGREE_LAT = EARTH_RADIUS_KM * 3.141592653589793 / 180


def north_of_job(km: float, updated_at: datetime | None = None) -> GeoPoint:
    """A point ``km`` due north of the job (exact on a meridian)."""
    return GeoPoint(JOB_LAT + km / KM_PER_DEGREE_LAT, JOB_LON, updated_at)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy():
    return DispatchPolicy()


@pytest.fixture
def make_technician():
    """Factory: technician ``km`` north of the job, available and online."""
    def _make(tech_id: str, km: float | None = 3.0, **overrides) -> Technician:
        fields = dict(
            id=tech_id,
            full_name=f"Tech {tech_id}",
            phone_number="+919800000000",
            email=f"{tech_id}@example.com",
            skills=("AC", "Air Conditioner"),
            average_rating=4.0,
            completed_jobs_count=40,
            is_available=True,
            is_online=True,
            current_location=north_of_job(km) if km is not None else None,
            working_location=WorkingLocation(city="Delhi", state="Delhi"),
            bank_details={"account_number": "000111222333"},
        )
        fields.update(overrides)
        return Technician(**fields)
    return _make


@pytest.fixture
def make_job(clock):
    """Factory: pending AC job at the reference point, created 'now'."""
    def _make(job_id: str = "job-1", **overrides) -> Job:
        fields = dict(
            id=job_id,
            appliance_type="AC",
            location=JobLocation(
                latitude=JOB_LAT,
                longitude=JOB_LON,
                house_building="12",
                street="Janpath",
                city="Delhi",
                state="Delhi",
                pincode="110001",
            ),
            created_at=clock(),
            customer_id="cust-1",
        )
        fields.update(overrides)
        return Job(**fields)
    return _make


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def directory():
    return InMemoryTechnicianDirectory()


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
