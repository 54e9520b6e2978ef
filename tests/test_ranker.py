# tests/test_ranker.py
"""
Tests for the candidate ranker:
- radius filter with live / working location
- city fallback for jobs without coordinates
- ordering, tie-break and top-N truncation
- public view projection
"""
from __future__ import annotations

import pytest

from techdispatch.core.dispatch.geo import estimate_eta
from techdispatch.core.dispatch.policy import DispatchPolicy
from techdispatch.core.dispatch.ranker import CandidateRanker
from techdispatch.core.domain import JobLocation, TechnicianAccountStatus, WorkingLocation
from techdispatch.infra.memory_store import InMemoryTechnicianDirectory

from conftest import JOB_LON, north_of_job


def _ranker(*technicians, **policy_overrides) -> CandidateRanker:
    return CandidateRanker(InMemoryTechnicianDirectory(technicians), DispatchPolicy(**policy_overrides))


class TestRadiusFilter:
    @pytest.mark.asyncio
    async def test_technician_inside_radius(self, make_technician, make_job):
        ranker = _ranker(make_technician("t1", km=3.0))
        views = await ranker.rank_technicians(make_job(), 5.0)
        assert [v.id for v in views] == ["t1"]
        assert views[0].distance_km == pytest.approx(3.0)
        assert views[0].eta.minutes == estimate_eta(views[0].distance_km).minutes

    @pytest.mark.asyncio
    async def test_technician_outside_radius(self, make_technician, make_job):
        ranker = _ranker(make_technician("t1", km=3.0))
        assert await ranker.rank_technicians(make_job(), 2.0) == []

    @pytest.mark.asyncio
    async def test_working_location_fallback(self, make_technician, make_job):
        base = north_of_job(4.0)
        tech = make_technician(
            "t1",
            km=None,
            working_location=WorkingLocation(city="Delhi", latitude=base.latitude, longitude=JOB_LON),
        )
        views = await _ranker(tech).rank_technicians(make_job(), 5.0)
        assert [v.id for v in views] == ["t1"]
        assert views[0].distance_km == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_live_location_preferred_over_working(self, make_technician, make_job):
        far_base = north_of_job(30.0)
        tech = make_technician(
            "t1",
            km=2.0,
            working_location=WorkingLocation(latitude=far_base.latitude, longitude=JOB_LON),
        )
        views = await _ranker(tech).rank_technicians(make_job(), 5.0)
        assert views[0].distance_km == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_no_location_dropped(self, make_technician, make_job):
        ranker = _ranker(make_technician("t1", km=None))
        assert await ranker.rank_technicians(make_job(), 50.0) == []

    @pytest.mark.asyncio
    async def test_inactive_accounts_skipped(self, make_technician, make_job):
        ranker = _ranker(
            make_technician("t1", status=TechnicianAccountStatus.SUSPENDED),
            make_technician("t2", status=TechnicianAccountStatus.PENDING),
        )
        assert await ranker.rank_technicians(make_job(), 5.0) == []


class TestCityFallback:
    @pytest.mark.asyncio
    async def test_matches_city_and_availability(self, make_technician, make_job):
        ranker = _ranker(
            make_technician("t1", km=None),
            make_technician("t2", km=None, working_location=WorkingLocation(city="delhi")),
            make_technician("t3", km=None, is_available=False),
            make_technician("t4", km=None, working_location=WorkingLocation(city="Mumbai")),
        )
        job = make_job(location=JobLocation(city="Delhi", street="Janpath"))

        views = await ranker.rank_technicians(job, 5.0)

        assert sorted(v.id for v in views) == ["t1", "t2"]
        assert all(v.distance_km is None and v.eta is None for v in views)

    @pytest.mark.asyncio
    async def test_no_radius_filter(self, make_technician, make_job):
        # Live position 500 km away does not matter without job coordinates
        ranker = _ranker(make_technician("t1", km=500.0))
        job = make_job(location=JobLocation(city="Delhi"))
        assert [v.id for v in await ranker.rank_technicians(job, 5.0)] == ["t1"]

    @pytest.mark.asyncio
    async def test_no_city_no_candidates(self, make_technician, make_job):
        ranker = _ranker(make_technician("t1"))
        assert await ranker.rank_technicians(make_job(location=JobLocation()), 5.0) == []


class TestOrdering:
    @pytest.mark.asyncio
    async def test_sorted_by_score(self, make_technician, make_job):
        ranker = _ranker(
            make_technician("low", average_rating=2.0),
            make_technician("high", average_rating=5.0),
            make_technician("mid", average_rating=3.5),
        )
        views = await ranker.rank_technicians(make_job(), 5.0)
        assert [v.id for v in views] == ["high", "mid", "low"]
        assert views[0].score > views[1].score > views[2].score

    @pytest.mark.asyncio
    async def test_ties_broken_by_id(self, make_technician, make_job):
        ranker = _ranker(
            make_technician("c"),
            make_technician("a"),
            make_technician("b"),
        )
        views = await ranker.rank_technicians(make_job(), 5.0)
        assert [v.id for v in views] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_truncated_to_top_ten(self, make_technician, make_job):
        techs = [
            make_technician(f"t{i:02d}", average_rating=i / 4)
            for i in range(12)
        ]
        views = await _ranker(*techs).rank_technicians(make_job(), 5.0)
        assert len(views) == 10
        assert [v.id for v in views] == [f"t{i:02d}" for i in range(11, 1, -1)]

    @pytest.mark.asyncio
    async def test_fewer_than_ten_all_returned(self, make_technician, make_job):
        techs = [make_technician(f"t{i}") for i in range(4)]
        assert len(await _ranker(*techs).rank_technicians(make_job(), 5.0)) == 4

    @pytest.mark.asyncio
    async def test_top_candidates_configurable(self, make_technician, make_job):
        techs = [make_technician(f"t{i}") for i in range(4)]
        views = await _ranker(*techs, top_candidates=2).rank_technicians(make_job(), 5.0)
        assert len(views) == 2


class TestCandidateView:
    @pytest.mark.asyncio
    async def test_public_fields_only(self, make_technician, make_job):
        ranker = _ranker(make_technician("t1"))
        view = (await ranker.rank_technicians(make_job(), 5.0))[0]
        data = view.model_dump()

        assert "bank_details" not in data
        assert "rejection_count" not in data
        assert "active_jobs_count" not in data
        assert "000111222333" not in view.model_dump_json()

        assert data["full_name"] == "Tech t1"
        assert data["email"] == "t1@example.com"
        assert data["is_online"] is True
        assert data["current_location"]["latitude"] == pytest.approx(north_of_job(3.0).latitude)
