from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal

from techdispatch.core.dispatch.policy import DispatchPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    store_backend: Literal["postgres", "memory"] = "postgres"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Dispatch search
    dispatch_initial_radius_km: float = 5.0
    dispatch_radius_increment_km: float = 5.0
    dispatch_max_radius_km: float = 50.0
    dispatch_response_timeout_minutes: int = 30   # Wait before widening the search
    dispatch_top_candidates: int = 10
    dispatch_average_speed_kmh: float = 30.0      # City traffic, used for ETA
    dispatch_max_cas_retries: int = 5             # Optimistic write attempts per operation

    # Expansion sweeper (optional in-process caller of expand_radius_for_job)
    expansion_sweeper_enabled: bool = False
    expansion_sweeper_poll_interval: float = 60.0  # Seconds between sweeps
    expansion_sweeper_batch_size: int = 50          # Jobs examined per sweep

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"host={self.pghost} port={self.pgport} "
            f"dbname={self.pgdatabase} user={self.pguser} "
            f"password={self.pgpassword} "
            f"connect_timeout={self.pg_connect_timeout} "
            f"options='-c statement_timeout={self.pg_statement_timeout_ms} "
            f"-c idle_in_transaction_session_timeout={self.pg_idle_in_tx_timeout_ms}'"
        )

    def dispatch_policy(self) -> DispatchPolicy:
        """Build the validated dispatch policy from env-driven settings."""
        policy = DispatchPolicy(
            initial_radius_km=self.dispatch_initial_radius_km,
            radius_increment_km=self.dispatch_radius_increment_km,
            max_radius_km=self.dispatch_max_radius_km,
            response_timeout_minutes=self.dispatch_response_timeout_minutes,
            top_candidates=self.dispatch_top_candidates,
            average_speed_kmh=self.dispatch_average_speed_kmh,
            max_cas_retries=self.dispatch_max_cas_retries,
        )
        policy.validate()
        return policy

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        if self.store_backend == "postgres" and not (self.database_url or self.pgpassword):
            missing.append("database_url or pgpassword")
        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.store_backend == "memory":
        warnings.append(
            "prod: store_backend=memory (state is per-process; acceptance is only "
            "serialized within one process)."
        )

    if s.dispatch_top_candidates > 25:
        warnings.append(
            f"dispatch_top_candidates={s.dispatch_top_candidates} notifies a very large pool per search."
        )

    if s.dispatch_response_timeout_minutes < 5:
        warnings.append(
            "dispatch_response_timeout_minutes < 5: technicians get little time to respond before expansion."
        )

    if s.is_production and not s.expansion_sweeper_enabled:
        warnings.append(
            "expansion_sweeper_enabled=False: an external scheduler must call expand_radius_for_job."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    from techdispatch.infra.logging_config import get_logger
    logger = get_logger(__name__)
    for msg in warn_on_risky_config(s):
        logger.warning(f"[config] {msg}")

settings = Settings()
validate_or_warn(settings)
