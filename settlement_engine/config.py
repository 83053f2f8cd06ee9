import json
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ReconciliationMode = Literal["dry_run", "apply"]

DEFAULT_TRANSIENT_PHRASES = (
    "transakcja nierozliczona,nierozliczona,oczekujaca,oczekująca,blokada srodkow,"
    "blokada środków,blokada,w trakcie rozliczenia,unsettled,pending,in progress,"
    "processing,authorisation,authorization,hold"
)

# CRM stage ids per pipeline; key 0 is the default (Camps) pipeline.
DEFAULT_PIPELINE_STAGE_IDS: dict[int, dict[str, int]] = {
    0: {"awaiting_first_payment": 18, "awaiting_second_payment": 32, "fully_paid": 27},
    5: {"awaiting_first_payment": 37, "awaiting_second_payment": 38, "fully_paid": 39},
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(default="Settlement Engine", validation_alias="PROJECT_NAME")
    environment: str = Field(default="dev", validation_alias="ENVIRONMENT")
    build_version: Optional[str] = Field(default=None, validation_alias="BUILD_VERSION")
    database_url: str = Field(
        default="sqlite+pysqlite:///./settlement-dev.db", validation_alias="DATABASE_URL"
    )
    # API prefix used by FastAPI router include (e.g. "/api/v1").
    api_prefix: str = Field(default="", validation_alias="API_V1_STR")
    enable_docs: Optional[bool] = Field(default=None, validation_alias="ENABLE_DOCS")
    scheduler_enabled: bool = Field(default=True, validation_alias="SCHEDULER_ENABLED")

    # Settlement base currency; every aggregate has a *_base twin in this currency.
    base_currency: str = Field(default="PLN", validation_alias="BASE_CURRENCY")
    reconciliation_mode: ReconciliationMode = Field(
        default="dry_run", validation_alias="RECONCILIATION_MODE"
    )
    reconciliation_interval_minutes: int = Field(
        default=60, validation_alias="RECONCILIATION_INTERVAL_MINUTES"
    )
    reconciliation_max_workers: int = Field(default=1, validation_alias="RECONCILIATION_MAX_WORKERS")

    fuzzy_match_threshold: float = Field(default=0.90, validation_alias="FUZZY_MATCH_THRESHOLD")
    fuzzy_match_margin: float = Field(default=0.05, validation_alias="FUZZY_MATCH_MARGIN")
    match_amount_tolerance: Decimal = Field(
        default=Decimal("5.00"), validation_alias="MATCH_AMOUNT_TOLERANCE"
    )
    # Candidate proformas are issued at most this many days before / after the payment.
    issue_days_before_payment: int = Field(default=365, validation_alias="MATCH_ISSUE_DAYS_BEFORE_PAYMENT")
    issue_days_after_payment: int = Field(default=7, validation_alias="MATCH_ISSUE_DAYS_AFTER_PAYMENT")

    dedup_similarity_threshold: float = Field(
        default=0.85, validation_alias="DEDUP_SIMILARITY_THRESHOLD"
    )
    dedup_date_window_days: int = Field(default=3, validation_alias="DEDUP_DATE_WINDOW_DAYS")
    transient_description_phrases: str = Field(
        default=DEFAULT_TRANSIENT_PHRASES, validation_alias="TRANSIENT_DESCRIPTION_PHRASES"
    )

    split_schedule_min_days: int = Field(default=30, validation_alias="SPLIT_SCHEDULE_MIN_DAYS")
    full_payment_threshold: Decimal = Field(
        default=Decimal("0.90"), validation_alias="FULL_PAYMENT_THRESHOLD"
    )
    deposit_ratio: Decimal = Field(default=Decimal("0.50"), validation_alias="DEPOSIT_RATIO")
    deposit_tolerance: Decimal = Field(default=Decimal("0.05"), validation_alias="DEPOSIT_TOLERANCE")
    notification_min_interval_minutes: int = Field(
        default=60, validation_alias="NOTIFICATION_MIN_INTERVAL_MINUTES"
    )

    external_retry_attempts: int = Field(default=4, validation_alias="EXTERNAL_RETRY_ATTEMPTS")
    external_retry_base_delay_seconds: float = Field(
        default=0.5, validation_alias="EXTERNAL_RETRY_BASE_DELAY_SECONDS"
    )
    external_retry_max_delay_seconds: float = Field(
        default=8.0, validation_alias="EXTERNAL_RETRY_MAX_DELAY_SECONDS"
    )
    entity_lock_timeout_seconds: int = Field(default=30, validation_alias="ENTITY_LOCK_TIMEOUT_SECONDS")
    # JSON object: {"<pipeline_id>": {"awaiting_first_payment": 18, ...}}
    pipeline_stage_ids: Optional[str] = Field(default=None, validation_alias="PIPELINE_STAGE_IDS")

    @field_validator("enable_docs", mode="before")
    @classmethod
    def parse_enable_docs(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "y", "on"}
        return bool(value)

    @field_validator("base_currency")
    @classmethod
    def normalize_base_currency(cls, v: str) -> str:
        s = str(v or "").strip().upper()
        if not re.fullmatch(r"[A-Z]{3}", s):
            raise ValueError("BASE_CURRENCY must be a 3-letter ISO code")
        return s

    @field_validator("api_prefix", mode="before")
    @classmethod
    def normalize_api_prefix(cls, v) -> str:
        """
        Normalize API prefix coming from env/.env.

        On Windows Git Bash (MSYS), values like "/api/v1" may sometimes appear as a Windows path
        (e.g. "C:/Program Files/Git/api/v1"). When that happens, extract the trailing "/api/..."
        portion so routing keeps working.
        """
        if v is None:
            return ""
        s = str(v).strip()
        if not s:
            return ""

        if s.startswith("/api/") or s == "/api":
            return s

        m = re.search(r"(/api/[^\\s]+)$", s.replace("\\", "/"))
        if m:
            return m.group(1)

        if s.startswith("api/"):
            return f"/{s}"

        return s

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v) -> str:
        """Make SQLite relative paths stable across working directories.

        Relative sqlite URLs (sqlite+pysqlite:///./dev.db) resolve against the
        current working directory, which differs between the scheduler, the
        API process and ad hoc shells. Convert them to an absolute path rooted
        at the project folder. Postgres URLs are pinned to psycopg3.
        """

        if v is None:
            return v

        s = str(v).strip()
        if not s:
            return s

        if s.startswith("postgres://"):
            s = "postgresql://" + s[len("postgres://") :]
        if s.startswith("postgresql://"):
            return "postgresql+psycopg://" + s[len("postgresql://") :]
        if s.startswith("postgresql+psycopg2://"):
            return "postgresql+psycopg://" + s[len("postgresql+psycopg2://") :]

        if not s.startswith("sqlite"):
            return s

        marker = ":///"
        i = s.find(marker)
        if i == -1:
            return s

        path_part = s[i + len(marker) :]

        # Already absolute (e.g. /var/... or C:/...) or in-memory.
        if path_part.startswith("/") or re.match(r"^[A-Za-z]:/", path_part) or path_part == ":memory:":
            return s

        if path_part.startswith("./") or path_part.startswith(".\\"):
            project_root = Path(__file__).resolve().parents[1]
            abs_path = (project_root / path_part[2:]).resolve().as_posix()
            return f"{s[: i + len(marker)]}{abs_path}"

        return s

    @field_validator("database_url")
    @classmethod
    def validate_database_url_for_environment(cls, v: str, info) -> str:
        env = str(info.data.get("environment", "dev") or "dev").strip().lower()
        raw = os.getenv("DATABASE_URL")
        s = str(v or "").strip()

        if env in {"prod", "production"}:
            if not raw:
                raise ValueError("DATABASE_URL must be explicitly set in production")
            if s.startswith("sqlite"):
                raise ValueError("SQLite DATABASE_URL is not allowed in production")
            if "localhost" in s or "127.0.0.1" in s:
                raise ValueError("DATABASE_URL must not point to localhost in production")

        return s

    def parsed_pipeline_stage_ids(self) -> dict[int, dict[str, int]]:
        out = {k: dict(v) for k, v in DEFAULT_PIPELINE_STAGE_IDS.items()}
        if not self.pipeline_stage_ids:
            return out
        raw = json.loads(self.pipeline_stage_ids)
        for pipeline_id, stages in dict(raw).items():
            out[int(pipeline_id)] = {str(k): int(v) for k, v in dict(stages).items()}
        return out

    @property
    def docs_enabled(self) -> bool:
        if self.enable_docs is None:
            return self.environment.lower() in {"dev", "development", "test"}
        return bool(self.enable_docs)


@dataclass(frozen=True)
class ReconciliationConfig:
    """Explicit engine configuration passed into every reconciliation entry point.

    `mode="dry_run"` computes the full report but rolls back and performs no
    CRM writes or notifications; `mode="apply"` commits per record.
    """

    mode: ReconciliationMode = "dry_run"
    base_currency: str = "PLN"
    fuzzy_match_threshold: float = 0.90
    fuzzy_match_margin: float = 0.05
    match_amount_tolerance: Decimal = Decimal("5.00")
    issue_days_before_payment: int = 365
    issue_days_after_payment: int = 7
    dedup_similarity_threshold: float = 0.85
    dedup_date_window_days: int = 3
    transient_phrases: tuple[str, ...] = tuple(
        p.strip() for p in DEFAULT_TRANSIENT_PHRASES.split(",") if p.strip()
    )
    split_schedule_min_days: int = 30
    full_payment_threshold: Decimal = Decimal("0.90")
    deposit_ratio: Decimal = Decimal("0.50")
    deposit_tolerance: Decimal = Decimal("0.05")
    notification_min_interval_minutes: int = 60
    external_retry_attempts: int = 4
    external_retry_base_delay_seconds: float = 0.5
    external_retry_max_delay_seconds: float = 8.0
    max_workers: int = 1
    pipeline_stage_ids: dict[int, dict[str, int]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_PIPELINE_STAGE_IDS.items()}
    )

    @property
    def dry_run(self) -> bool:
        return self.mode == "dry_run"

    @classmethod
    def from_settings(cls, s: "Settings", **overrides) -> "ReconciliationConfig":
        values = dict(
            mode=s.reconciliation_mode,
            base_currency=s.base_currency,
            fuzzy_match_threshold=float(s.fuzzy_match_threshold),
            fuzzy_match_margin=float(s.fuzzy_match_margin),
            match_amount_tolerance=Decimal(str(s.match_amount_tolerance)),
            issue_days_after_payment=int(s.issue_days_after_payment),
            issue_days_before_payment=int(s.issue_days_before_payment),
            dedup_similarity_threshold=float(s.dedup_similarity_threshold),
            dedup_date_window_days=int(s.dedup_date_window_days),
            transient_phrases=tuple(
                p.strip() for p in str(s.transient_description_phrases).split(",") if p.strip()
            ),
            split_schedule_min_days=int(s.split_schedule_min_days),
            full_payment_threshold=Decimal(str(s.full_payment_threshold)),
            deposit_ratio=Decimal(str(s.deposit_ratio)),
            deposit_tolerance=Decimal(str(s.deposit_tolerance)),
            notification_min_interval_minutes=int(s.notification_min_interval_minutes),
            external_retry_attempts=int(s.external_retry_attempts),
            external_retry_base_delay_seconds=float(s.external_retry_base_delay_seconds),
            external_retry_max_delay_seconds=float(s.external_retry_max_delay_seconds),
            max_workers=max(1, int(s.reconciliation_max_workers)),
            pipeline_stage_ids=s.parsed_pipeline_stage_ids(),
        )
        values.update(overrides)
        return cls(**values)


settings = Settings()
