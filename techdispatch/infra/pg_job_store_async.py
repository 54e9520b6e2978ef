# techdispatch/infra/pg_job_store_async.py
"""
Async PostgreSQL job store (asyncpg).

Every mutation is a conditional UPDATE ... RETURNING guarded by the row
``version`` (and optionally by ``status``), so two writers that read the
same version can never both succeed.  The candidate pool and the tracking
snapshot are stored as jsonb.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence

from techdispatch.core.domain import (
    CandidateEntry,
    CandidateStatus,
    EtaEstimate,
    GeoPoint,
    Job,
    JobLocation,
    JobStatus,
    TrackingSnapshot,
    TrackingStatus,
)
from techdispatch.infra.db_resilience_async import protected_db_conn, retry_on_transient_error
from techdispatch.infra.logging_config import get_logger
from techdispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# jsonb encoding
# ---------------------------------------------------------------------------

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _eta_to_dict(eta: Optional[EtaEstimate]) -> Optional[dict[str, Any]]:
    if eta is None:
        return None
    return {"minutes": eta.minutes, "text": eta.text}


def _eta_from_dict(data: Optional[dict[str, Any]]) -> Optional[EtaEstimate]:
    if not data:
        return None
    return EtaEstimate(minutes=int(data["minutes"]), text=data["text"])


def candidates_to_json(candidates: Sequence[CandidateEntry]) -> str:
    return json.dumps([
        {
            "technician_id": c.technician_id,
            "notified_at": _ts(c.notified_at),
            "status": c.status.value,
            "distance_km": c.distance_km,
            "eta": _eta_to_dict(c.eta),
            "counted": c.counted,
        }
        for c in candidates
    ])


def candidates_from_json(raw: Any) -> tuple[CandidateEntry, ...]:
    if isinstance(raw, str):
        raw = json.loads(raw)
    return tuple(
        CandidateEntry(
            technician_id=item["technician_id"],
            notified_at=_parse_ts(item["notified_at"]),
            status=CandidateStatus(item["status"]),
            distance_km=item.get("distance_km"),
            eta=_eta_from_dict(item.get("eta")),
            counted=bool(item.get("counted", False)),
        )
        for item in raw or []
    )


def tracking_to_json(snapshot: Optional[TrackingSnapshot]) -> Optional[str]:
    if snapshot is None:
        return None
    return json.dumps({
        "location": {
            "latitude": snapshot.location.latitude,
            "longitude": snapshot.location.longitude,
            "updated_at": _ts(snapshot.location.updated_at),
        },
        "distance_remaining_km": snapshot.distance_remaining_km,
        "eta": _eta_to_dict(snapshot.eta),
        "last_updated": _ts(snapshot.last_updated),
    })


def tracking_from_json(raw: Any) -> Optional[TrackingSnapshot]:
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not raw:
        return None
    loc = raw["location"]
    return TrackingSnapshot(
        location=GeoPoint(loc["latitude"], loc["longitude"], _parse_ts(loc.get("updated_at"))),
        distance_remaining_km=raw["distance_remaining_km"],
        eta=_eta_from_dict(raw["eta"]),
        last_updated=_parse_ts(raw["last_updated"]),
    )


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job."""
    tracking_status = row["tracking_status"]
    return Job(
        id=row["id"],
        appliance_type=row["appliance_type"],
        location=JobLocation(
            latitude=row["latitude"],
            longitude=row["longitude"],
            house_building=row["house_building"],
            street=row["street"],
            city=row["city"],
            state=row["state"],
            pincode=row["pincode"],
        ),
        status=JobStatus(row["status"]),
        created_at=row["created_at"],
        customer_id=row["customer_id"],
        current_radius_km=row["current_radius_km"],
        radius_expanded_at=row["radius_expanded_at"],
        candidates=candidates_from_json(row["candidates"]),
        assigned_technician_id=row["assigned_technician_id"],
        accepted_at=row["accepted_at"],
        technician_tracking=tracking_from_json(row["technician_tracking"]),
        tracking_status=TrackingStatus(tracking_status) if tracking_status else None,
        journey_started_at=row["journey_started_at"],
        arrived_at=row["arrived_at"],
        version=row["version"],
    )


def _statuses(statuses: Sequence[JobStatus]) -> list[str]:
    return [s.value for s in statuses]


def _affected(result: str | None) -> int:
    # "UPDATE 1" -> 1
    return int(result.split()[-1]) if result else 0


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class AsyncPostgresJobStore:
    """Job store over the ``jobs`` table."""

    @retry_on_transient_error()
    async def get(self, job_id: str) -> Optional[Job]:
        async with protected_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
            return _row_to_job(row) if row else None

    async def create(self, job: Job) -> Job:
        async with protected_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO jobs (
                  id, customer_id, appliance_type, status, created_at,
                  latitude, longitude, house_building, street, city, state, pincode,
                  current_radius_km, radius_expanded_at, candidates
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15::jsonb)
                RETURNING *
                """,
                job.id,
                job.customer_id,
                job.appliance_type,
                job.status.value,
                job.created_at,
                job.location.latitude,
                job.location.longitude,
                job.location.house_building,
                job.location.street,
                job.location.city,
                job.location.state,
                job.location.pincode,
                job.current_radius_km,
                job.radius_expanded_at,
                candidates_to_json(job.candidates),
            )
            logger.debug("Job stored", extra={"job_id": job.id})
            return _row_to_job(row)

    async def compare_and_swap(
        self,
        job: Job,
        *,
        expected_version: int,
        require_status: Optional[JobStatus] = None,
    ) -> Optional[Job]:
        """
        Write the engine-owned fields of ``job`` if the row is still at
        ``expected_version`` (and ``require_status``).  None => guard failed.
        """
        guard = "id = $1 AND version = $2"
        params: list[Any] = [
            job.id,
            expected_version,
            job.status.value,
            job.current_radius_km,
            job.radius_expanded_at,
            candidates_to_json(job.candidates),
            job.assigned_technician_id,
            job.accepted_at,
            tracking_to_json(job.technician_tracking),
            job.tracking_status.value if job.tracking_status else None,
            job.journey_started_at,
            job.arrived_at,
        ]
        if require_status is not None:
            params.append(require_status.value)
            guard += f" AND status = ${len(params)}"

        try:
            async with protected_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE jobs
                    SET
                      status = $3,
                      current_radius_km = $4,
                      radius_expanded_at = $5,
                      candidates = $6::jsonb,
                      assigned_technician_id = $7,
                      accepted_at = $8,
                      technician_tracking = $9::jsonb,
                      tracking_status = $10,
                      journey_started_at = $11,
                      arrived_at = $12,
                      version = version + 1
                    WHERE {guard}
                    RETURNING *
                    """,
                    *params,
                )
        except Exception:
            DispatchMetrics.database_error("job_cas")
            raise

        if row is None:
            logger.debug(
                f"Versioned write rejected (expected v{expected_version})",
                extra={"job_id": job.id},
            )
            return None
        return _row_to_job(row)

    async def update_tracking(
        self,
        job_id: str,
        snapshot: TrackingSnapshot,
        allowed_statuses: Sequence[JobStatus],
    ) -> bool:
        async with protected_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET technician_tracking = $2::jsonb,
                    version = version + 1
                WHERE id = $1
                  AND status = ANY($3::text[])
                """,
                job_id,
                tracking_to_json(snapshot),
                _statuses(allowed_statuses),
            )
            return _affected(result) > 0

    @retry_on_transient_error()
    async def list_for_technician(
        self,
        technician_id: str,
        statuses: Sequence[JobStatus],
    ) -> list[Job]:
        async with protected_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE assigned_technician_id = $1
                  AND status = ANY($2::text[])
                ORDER BY accepted_at DESC NULLS LAST, id
                """,
                technician_id,
                _statuses(statuses),
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def list_due_for_expansion(
        self,
        before: datetime,
        limit: int,
        *,
        max_current_radius_km: Optional[float] = None,
    ) -> list[Job]:
        async with protected_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE status = $1
                  AND coalesce(radius_expanded_at, created_at) <= $2
                  AND ($4::double precision IS NULL
                       OR current_radius_km IS NULL
                       OR current_radius_km <= $4)
                ORDER BY coalesce(radius_expanded_at, created_at), id
                LIMIT $3
                """,
                JobStatus.PENDING.value,
                before,
                limit,
                max_current_radius_km,
            )
            return [_row_to_job(row) for row in rows]


# Global singleton
_job_store: AsyncPostgresJobStore | None = None


def get_job_store() -> AsyncPostgresJobStore:
    global _job_store
    if _job_store is None:
        _job_store = AsyncPostgresJobStore()
    return _job_store
