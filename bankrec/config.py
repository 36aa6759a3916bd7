from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APP_", env_file=".env", extra="ignore")

    database_url: str = "sqlite+pysqlite:///./bank_reconciliation.db"
    log_level: str = "INFO"

    # Matching defaults (overridable per call)
    amount_tolerance_pct: float = 5.0
    date_tolerance_days: int = 7
    confidence_threshold: float = 50.0
    matched_cutoff: float = 85.0
    amount_weight: float = 55.0
    date_weight: float = 25.0
    document_type_weight: float = 20.0
    closure_type_weight: float = 10.0
    rule_boost: float = 20.0
    reference_weight: float = 0.0

    # Auto-match batches
    auto_match_default_limit: int = 100
    auto_match_max_limit: int = 1000
    candidate_timeout_seconds: float = 5.0

    # Candidate documents
    candidate_source: str = "database"  # database|http
    candidate_api_base_url: str = "http://localhost:8001/api/candidates"
    candidate_api_timeout_seconds: float = 4.0


settings = Settings()
