# tests/test_pg_stores.py
"""
Tests for the asyncpg job store and technician directory.

The connection context managers are patched; rows are plain dicts, which
support the same ``row["column"]`` access as asyncpg Records.
"""
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from techdispatch.core.domain import (
    CandidateEntry,
    CandidateStatus,
    EtaEstimate,
    GeoPoint,
    Job,
    JobLocation,
    JobStatus,
    TechnicianAccountStatus,
    TrackingSnapshot,
    TrackingStatus,
)
from techdispatch.infra.pg_job_store_async import (
    AsyncPostgresJobStore,
    _affected,
    _row_to_job,
    candidates_from_json,
    candidates_to_json,
    tracking_from_json,
    tracking_to_json,
)
from techdispatch.infra.pg_technician_directory_async import (
    AsyncPostgresTechnicianDirectory,
    _row_to_technician,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

JOB_DB = "techdispatch.infra.pg_job_store_async.protected_db_conn"
TECH_DB = "techdispatch.infra.pg_technician_directory_async.safe_db_conn"


def _job_row(**overrides) -> dict:
    row = {
        "id": "job-1",
        "customer_id": "cust-1",
        "appliance_type": "AC",
        "status": "Pending",
        "created_at": T0,
        "latitude": 28.6315,
        "longitude": 77.2167,
        "house_building": "12",
        "street": "Janpath",
        "city": "Delhi",
        "state": "Delhi",
        "pincode": "110001",
        "current_radius_km": 5.0,
        "radius_expanded_at": None,
        "candidates": "[]",
        "assigned_technician_id": None,
        "accepted_at": None,
        "technician_tracking": None,
        "tracking_status": None,
        "journey_started_at": None,
        "arrived_at": None,
        "version": 3,
    }
    row.update(overrides)
    return row


def _tech_row(**overrides) -> dict:
    row = {
        "id": "t1",
        "full_name": "Asha Verma",
        "phone_number": "+919800000000",
        "email": "asha@example.com",
        "profile_picture_url": None,
        "skills": ["AC", "Refrigerator"],
        "average_rating": 4.5,
        "completed_jobs_count": 120,
        "complaints_count": 1,
        "response_rate": 0.9,
        "is_available": True,
        "is_online": False,
        "current_lat": 28.64,
        "current_lon": 77.22,
        "location_updated_at": T0,
        "working_city": "Delhi",
        "working_state": "Delhi",
        "working_pincode": "110001",
        "working_lat": None,
        "working_lon": None,
        "working_radius_km": 10.0,
        "active_jobs_count": 2,
        "rejection_count": 0,
        "status": "active",
        "bank_details": '{"ifsc": "HDFC0001"}',
    }
    row.update(overrides)
    return row


def _patched(target, mock_conn):
    ctx = patch(target)
    mock_ctx = ctx.start()
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return ctx


SNAPSHOT = TrackingSnapshot(
    location=GeoPoint(28.64, 77.22, T0),
    distance_remaining_km=1.04,
    eta=EtaEstimate(minutes=3, text="3 mins"),
    last_updated=T0,
)


# ---------------------------------------------------------------------------
# jsonb encoding
# ---------------------------------------------------------------------------

class TestJsonColumns:
    def test_candidates_roundtrip(self):
        pool = (
            CandidateEntry("t1", T0, CandidateStatus.REJECTED, 2.5, EtaEstimate(5, "5 mins")),
            CandidateEntry("t2", T0, CandidateStatus.PENDING),
            CandidateEntry("t3", T0, CandidateStatus.ACCEPTED, counted=True),
        )
        assert candidates_from_json(candidates_to_json(pool)) == pool

    def test_candidates_already_decoded(self):
        raw = [{"technician_id": "t1", "notified_at": T0.isoformat(), "status": "pending"}]
        (entry,) = candidates_from_json(raw)
        assert entry.notified_at == T0
        assert entry.distance_km is None
        assert entry.eta is None
        assert entry.counted is False

    def test_empty_candidates(self):
        assert candidates_from_json(None) == ()
        assert candidates_from_json("[]") == ()

    def test_tracking_roundtrip(self):
        assert tracking_from_json(tracking_to_json(SNAPSHOT)) == SNAPSHOT

    def test_no_tracking(self):
        assert tracking_to_json(None) is None
        assert tracking_from_json(None) is None


class TestRowMapping:
    def test_row_to_job(self):
        job = _row_to_job(_job_row(
            status="In Progress",
            tracking_status="onway",
            assigned_technician_id="t1",
            technician_tracking=json.loads(tracking_to_json(SNAPSHOT)),
        ))
        assert job.status == JobStatus.IN_PROGRESS
        assert job.tracking_status == TrackingStatus.ONWAY
        assert job.location.address == "12, Janpath, Delhi, Delhi, 110001"
        assert job.technician_tracking == SNAPSHOT
        assert job.version == 3

    def test_row_to_technician(self):
        tech = _row_to_technician(_tech_row())
        assert tech.skills == ("AC", "Refrigerator")
        assert tech.current_location == GeoPoint(28.64, 77.22, T0)
        assert tech.working_location.city == "Delhi"
        assert tech.status == TechnicianAccountStatus.ACTIVE
        assert tech.bank_details == {"ifsc": "HDFC0001"}

    def test_technician_without_position(self):
        tech = _row_to_technician(_tech_row(current_lat=None, skills=None, bank_details=None))
        assert tech.current_location is None
        assert tech.skills == ()
        assert tech.bank_details == {}

    def test_affected(self):
        assert _affected("UPDATE 1") == 1
        assert _affected("UPDATE 0") == 0
        assert _affected(None) == 0


# ---------------------------------------------------------------------------
# Job store
# ---------------------------------------------------------------------------

class TestAsyncPostgresJobStore:
    @pytest.mark.asyncio
    async def test_get(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=_job_row())

        ctx = _patched(JOB_DB, mock_conn)
        try:
            job = await AsyncPostgresJobStore().get("job-1")
        finally:
            ctx.stop()

        assert job.id == "job-1"
        assert job.current_radius_km == 5.0

    @pytest.mark.asyncio
    async def test_get_missing(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)

        ctx = _patched(JOB_DB, mock_conn)
        try:
            assert await AsyncPostgresJobStore().get("nope") is None
        finally:
            ctx.stop()

    @pytest.mark.asyncio
    async def test_compare_and_swap_guard(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=_job_row(status="Accepted", version=4))
        job = Job(id="job-1", appliance_type="AC", location=JobLocation(city="Delhi"),
                  status=JobStatus.ACCEPTED, assigned_technician_id="t1", accepted_at=T0, version=3)

        ctx = _patched(JOB_DB, mock_conn)
        try:
            stored = await AsyncPostgresJobStore().compare_and_swap(
                job, expected_version=3, require_status=JobStatus.PENDING,
            )
        finally:
            ctx.stop()

        sql, *params = mock_conn.fetchrow.call_args[0]
        assert "id = $1 AND version = $2 AND status = $13" in sql
        assert "version = version + 1" in sql
        assert params[0] == "job-1"
        assert params[1] == 3
        assert params[2] == "Accepted"
        assert params[12] == "Pending"
        assert stored.version == 4

    @pytest.mark.asyncio
    async def test_compare_and_swap_without_status_guard(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        job = Job(id="job-1", appliance_type="AC")

        ctx = _patched(JOB_DB, mock_conn)
        try:
            stored = await AsyncPostgresJobStore().compare_and_swap(job, expected_version=0)
        finally:
            ctx.stop()

        sql, *params = mock_conn.fetchrow.call_args[0]
        assert "AND status =" not in sql
        assert len(params) == 12
        assert stored is None

    @pytest.mark.asyncio
    async def test_update_tracking(self):
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(side_effect=["UPDATE 1", "UPDATE 0"])
        store = AsyncPostgresJobStore()
        allowed = (JobStatus.ACCEPTED, JobStatus.IN_PROGRESS)

        ctx = _patched(JOB_DB, mock_conn)
        try:
            assert await store.update_tracking("job-1", SNAPSHOT, allowed) is True
            assert await store.update_tracking("job-2", SNAPSHOT, allowed) is False
        finally:
            ctx.stop()

        sql, job_id, payload, statuses = mock_conn.execute.call_args_list[0][0]
        assert "status = ANY($3::text[])" in sql
        assert job_id == "job-1"
        assert json.loads(payload)["distance_remaining_km"] == 1.04
        assert statuses == ["Accepted", "In Progress"]

    @pytest.mark.asyncio
    async def test_list_due_for_expansion(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[_job_row(id="a"), _job_row(id="b")])

        ctx = _patched(JOB_DB, mock_conn)
        try:
            jobs = await AsyncPostgresJobStore().list_due_for_expansion(T0, 25, max_current_radius_km=17.0)
        finally:
            ctx.stop()

        assert [j.id for j in jobs] == ["a", "b"]
        _, *params = mock_conn.fetch.call_args[0]
        assert params == ["Pending", T0, 25, 17.0]


# ---------------------------------------------------------------------------
# Technician directory
# ---------------------------------------------------------------------------

class TestAsyncPostgresTechnicianDirectory:
    @pytest.mark.asyncio
    async def test_list_available_in_city(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[_tech_row()])

        ctx = _patched(TECH_DB, mock_conn)
        try:
            techs = await AsyncPostgresTechnicianDirectory().list_available_in_city("DELHI")
        finally:
            ctx.stop()

        sql, status, city = mock_conn.fetch.call_args[0]
        assert "lower(working_city) = lower($2)" in sql
        assert status == "active"
        assert city == "DELHI"
        assert [t.id for t in techs] == ["t1"]

    @pytest.mark.asyncio
    async def test_update_location(self):
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(side_effect=["UPDATE 1", "UPDATE 0"])
        directory = AsyncPostgresTechnicianDirectory()
        point = GeoPoint(28.64, 77.22, T0)

        ctx = _patched(TECH_DB, mock_conn)
        try:
            assert await directory.update_location("t1", point) is True
            assert await directory.update_location("ghost", point) is False
        finally:
            ctx.stop()

        sql, *params = mock_conn.execute.call_args_list[0][0]
        assert "is_online = true" in sql
        assert params == ["t1", 28.64, 77.22, T0]

    @pytest.mark.asyncio
    async def test_counter_write_retried_on_transient_error(self):
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(side_effect=[ConnectionError("connection reset"), "UPDATE 1"])

        ctx = _patched(TECH_DB, mock_conn)
        try:
            await AsyncPostgresTechnicianDirectory().increment_active_jobs("t1")
        finally:
            ctx.stop()

        assert mock_conn.execute.await_count == 2
        sql, tech_id = mock_conn.execute.call_args[0]
        assert "active_jobs_count = active_jobs_count + 1" in sql
        assert tech_id == "t1"
