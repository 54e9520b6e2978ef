# techdispatch/core/dispatch/policy.py
"""
Tunable thresholds for candidate search and radius expansion.

No logic here beyond sanity checks, so the search can be tuned
without touching the controller.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DispatchPolicy:
    """Search radius ladder, response timeout and pool size."""

    # --- Radius ladder ---
    # First search happens at initial_radius_km; each expansion adds
    # radius_increment_km until max_radius_km.
    initial_radius_km: float = 5.0
    radius_increment_km: float = 5.0
    max_radius_km: float = 50.0

    # --- Timeout ---
    # Minimum time since the last search before the next expansion.
    response_timeout_minutes: int = 30

    # --- Pool ---
    top_candidates: int = 10

    # --- ETA ---
    average_speed_kmh: float = 30.0

    # --- Concurrency ---
    # Attempts at an optimistic (version-guarded) write before giving up.
    max_cas_retries: int = 5

    def validate(self) -> None:
        """Basic sanity checks."""
        if self.initial_radius_km <= 0:
            raise ValueError("initial_radius_km must be > 0")

        if self.radius_increment_km <= 0:
            raise ValueError("radius_increment_km must be > 0")

        if self.max_radius_km < self.initial_radius_km:
            raise ValueError("max_radius_km must be >= initial_radius_km")

        if self.response_timeout_minutes < 0:
            raise ValueError("response_timeout_minutes must be >= 0")

        if self.top_candidates <= 0:
            raise ValueError("top_candidates must be > 0")

        if self.average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be > 0")

        if self.max_cas_retries <= 0:
            raise ValueError("max_cas_retries must be > 0")


def default_dispatch_policy() -> DispatchPolicy:
    """Convenience factory for the default policy."""
    p = DispatchPolicy()
    p.validate()
    return p
