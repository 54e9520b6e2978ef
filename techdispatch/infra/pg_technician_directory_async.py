# techdispatch/infra/pg_technician_directory_async.py
"""
Async PostgreSQL technician directory (asyncpg).

Read model for ranking plus the few writes the dispatch engine is allowed
to make: two counters, live position and the online flag.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from techdispatch.core.domain import GeoPoint, Technician, TechnicianAccountStatus, WorkingLocation
from techdispatch.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from techdispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_technician(row) -> Technician:
    """Convert an asyncpg Record to a Technician."""
    current = None
    if row["current_lat"] is not None and row["current_lon"] is not None:
        current = GeoPoint(row["current_lat"], row["current_lon"], row["location_updated_at"])

    bank_details = row["bank_details"]
    if isinstance(bank_details, str):
        bank_details = json.loads(bank_details)

    return Technician(
        id=row["id"],
        full_name=row["full_name"],
        phone_number=row["phone_number"],
        email=row["email"],
        profile_picture_url=row["profile_picture_url"],
        skills=tuple(row["skills"] or ()),
        average_rating=row["average_rating"],
        completed_jobs_count=row["completed_jobs_count"],
        complaints_count=row["complaints_count"],
        response_rate=row["response_rate"],
        is_available=row["is_available"],
        is_online=row["is_online"],
        current_location=current,
        working_location=WorkingLocation(
            city=row["working_city"],
            state=row["working_state"],
            pincode=row["working_pincode"],
            latitude=row["working_lat"],
            longitude=row["working_lon"],
            radius_km=row["working_radius_km"],
        ),
        active_jobs_count=row["active_jobs_count"],
        rejection_count=row["rejection_count"],
        status=TechnicianAccountStatus(row["status"]),
        bank_details=bank_details or {},
    )


def _affected(result: str | None) -> int:
    return int(result.split()[-1]) if result else 0


class AsyncPostgresTechnicianDirectory:
    """Technician directory over the ``technicians`` table."""

    @retry_on_transient_error()
    async def get(self, technician_id: str) -> Optional[Technician]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM technicians WHERE id = $1", technician_id)
            return _row_to_technician(row) if row else None

    @retry_on_transient_error()
    async def list_active(self) -> list[Technician]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM technicians WHERE status = $1 ORDER BY id",
                TechnicianAccountStatus.ACTIVE.value,
            )
            return [_row_to_technician(row) for row in rows]

    @retry_on_transient_error()
    async def list_available_in_city(self, city: str) -> list[Technician]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM technicians
                WHERE status = $1
                  AND is_available
                  AND lower(working_city) = lower($2)
                ORDER BY id
                """,
                TechnicianAccountStatus.ACTIVE.value,
                city,
            )
            return [_row_to_technician(row) for row in rows]

    @retry_on_transient_error()
    async def increment_active_jobs(self, technician_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE technicians SET active_jobs_count = active_jobs_count + 1 WHERE id = $1",
                technician_id,
            )

    @retry_on_transient_error()
    async def increment_rejections(self, technician_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE technicians SET rejection_count = rejection_count + 1 WHERE id = $1",
                technician_id,
            )

    async def update_location(self, technician_id: str, location: GeoPoint) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE technicians
                SET current_lat = $2,
                    current_lon = $3,
                    location_updated_at = $4,
                    is_online = true,
                    last_seen_at = $4
                WHERE id = $1
                """,
                technician_id,
                location.latitude,
                location.longitude,
                location.updated_at,
            )
            return _affected(result) > 0

    async def set_online(self, technician_id: str, is_online: bool, at: datetime) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "UPDATE technicians SET is_online = $2, last_seen_at = $3 WHERE id = $1",
                technician_id,
                is_online,
                at,
            )
            return _affected(result) > 0


# Global singleton
_technician_directory: AsyncPostgresTechnicianDirectory | None = None


def get_technician_directory() -> AsyncPostgresTechnicianDirectory:
    global _technician_directory
    if _technician_directory is None:
        _technician_directory = AsyncPostgresTechnicianDirectory()
    return _technician_directory
