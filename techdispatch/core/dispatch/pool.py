# techdispatch/core/dispatch/pool.py
"""
Candidate pool reducers.

Every function takes the current pool (a tuple of ``CandidateEntry``) and
returns a new tuple; nothing is mutated in place.  The controller persists
the result with a single versioned write.

Pool lifecycle:
    new_pool              first search, replaces whatever was there
    merge_expanded_pool   keep settled entries, drop stale pending ones,
                          append the freshly ranked technicians
    accept_candidate      one entry -> accepted, other pending -> removed
    reject_candidate      one entry -> rejected
    mark_counted          the accepted/rejected entry's counter is applied
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional

from techdispatch.core.domain import CandidateEntry, CandidateStatus, EtaEstimate

__all__ = [
    "RankedCandidate", "new_pool", "merge_expanded_pool",
    "accept_candidate", "reject_candidate", "uncounted_response", "mark_counted",
]

Pool = tuple[CandidateEntry, ...]

# (technician_id, distance_km, eta) as produced by the ranker
RankedCandidate = tuple[str, Optional[float], Optional[EtaEstimate]]


def _entries(ranked: Iterable[RankedCandidate], notified_at: datetime) -> list[CandidateEntry]:
    return [
        CandidateEntry(
            technician_id=tid,
            notified_at=notified_at,
            status=CandidateStatus.PENDING,
            distance_km=distance_km,
            eta=eta,
        )
        for tid, distance_km, eta in ranked
    ]


def new_pool(ranked: Iterable[RankedCandidate], notified_at: datetime) -> Pool:
    """Fresh pool, every entry pending."""
    return tuple(_entries(ranked, notified_at))


def merge_expanded_pool(
    pool: Pool,
    ranked: Iterable[RankedCandidate],
    notified_at: datetime,
) -> Pool:
    """
    Pool after a radius expansion.

    Non-pending entries are history and stay.  Prior pending entries are
    dropped; anyone still in range is re-added by the new ranking.
    Technicians who rejected this job are never re-added.
    """
    rejected = {e.technician_id for e in pool if e.status == CandidateStatus.REJECTED}
    kept = [e for e in pool if e.status != CandidateStatus.PENDING]
    fresh = [r for r in ranked if r[0] not in rejected]
    return tuple(kept + _entries(fresh, notified_at))


def _index_of_pending(pool: Pool, technician_id: str) -> int:
    for i in range(len(pool) - 1, -1, -1):
        entry = pool[i]
        if entry.technician_id == technician_id and entry.status == CandidateStatus.PENDING:
            return i
    raise ValueError(f"no pending entry for technician {technician_id}")


def accept_candidate(pool: Pool, technician_id: str) -> Pool:
    """
    Close the pool on one technician.

    Raises ValueError when the technician has no pending entry.
    """
    idx = _index_of_pending(pool, technician_id)
    result = []
    for i, entry in enumerate(pool):
        if i == idx:
            result.append(replace(entry, status=CandidateStatus.ACCEPTED, counted=False))
        elif entry.status == CandidateStatus.PENDING:
            result.append(replace(entry, status=CandidateStatus.REMOVED))
        else:
            result.append(entry)
    return tuple(result)


def reject_candidate(pool: Pool, technician_id: str) -> Pool:
    """Raises ValueError when the technician has no pending entry."""
    idx = _index_of_pending(pool, technician_id)
    return tuple(
        replace(entry, status=CandidateStatus.REJECTED, counted=False) if i == idx else entry
        for i, entry in enumerate(pool)
    )


def uncounted_response(
    pool: Pool,
    technician_id: str,
    status: CandidateStatus,
) -> Optional[CandidateEntry]:
    """The technician's accepted/rejected entry whose counter is still owed."""
    for entry in reversed(pool):
        if entry.technician_id == technician_id and entry.status == status and not entry.counted:
            return entry
    return None


def mark_counted(pool: Pool, technician_id: str, status: CandidateStatus) -> Pool:
    """Flag the owed entry as counted; the pool is returned unchanged when none is owed."""
    owed = uncounted_response(pool, technician_id, status)
    return tuple(
        replace(entry, counted=True) if entry is owed else entry
        for entry in pool
    )
