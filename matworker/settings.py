"""Centralized application configuration loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(env_file=None, extra="ignore", case_sensitive=False)

    log_level: str = Field(default="INFO", description="Python logging level (e.g. INFO, DEBUG).")
    LOG_JSON: bool = Field(
        default=True,
        description="Emit structured JSON log lines instead of plain text.",
    )

    # --- Anthropic inference service ---
    anthropic_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
        description="API key for the Anthropic vision/reasoning models.",
    )
    TRIAGE_MODEL: str = Field(
        default="claude-3-5-haiku-20241022",
        description="Lightweight vision model used for frame triage.",
    )
    PERCEPTION_MODEL: str = Field(
        default="claude-sonnet-4-20250514",
        description="Vision model used for Pass 1 perception batches.",
    )
    REASONING_MODEL: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model used for the Pass 2 structured reasoning call.",
    )
    INFERENCE_TIMEOUT_SEC: float = Field(
        default=120.0,
        description="Per-request HTTP timeout for inference calls (seconds).",
    )
    INFERENCE_MAX_RETRIES: int = Field(
        default=2,
        description="Extra attempts for rate-limited or transient inference failures.",
    )
    INFERENCE_BACKOFF_BASE_SEC: float = Field(
        default=1.0,
        description="Base delay in seconds for exponential inference retry backoff.",
    )
    TRIAGE_MAX_TOKENS: int = Field(default=1500, description="Max output tokens per triage batch.")
    PERCEPTION_MAX_TOKENS: int = Field(default=2000, description="Max output tokens per perception batch.")
    REASONING_MAX_TOKENS: int = Field(default=4096, description="Max output tokens for Pass 2.")

    # --- Frame preprocessing ---
    DEDUP_ENABLE: bool = Field(default=True, description="Drop near-identical consecutive frames.")
    DEDUP_METHOD: Literal["header", "phash"] = Field(
        default="header",
        description="Similarity heuristic: encoded-payload header comparison or perceptual hash.",
    )
    DEDUP_LENGTH_THRESHOLD_PCT: float = Field(
        default=2.0,
        description="Maximum relative payload size difference (percent) for two frames to be similar.",
    )
    DEDUP_HEADER_COMPARE_LENGTH: int = Field(
        default=200,
        description="Number of leading payload characters compared between frames.",
    )
    DEDUP_MIN_FRAMES: int = Field(
        default=8,
        description="Floor on the number of frames kept after deduplication.",
    )
    DEDUP_MAX_CONSECUTIVE_REMOVAL: int = Field(
        default=3,
        description="Maximum run of consecutive frames dropped before one is force-kept.",
    )
    DEDUP_PHASH_MAX_DISTANCE: int = Field(
        default=6,
        description="Maximum Hamming distance between difference hashes for phash similarity.",
    )

    TRIAGE_ENABLE: bool = Field(default=True, description="Filter non-action frames before perception.")
    TRIAGE_MIN_FRAMES: int = Field(
        default=12,
        description="Triage only runs when more than this many frames remain after dedup.",
    )
    TRIAGE_BATCH_SIZE: int = Field(default=8, description="Frames per triage classifier call.")
    TRIAGE_MIN_INTENSITY: Literal["none", "low", "medium", "high"] = Field(
        default="low",
        description="Minimum action intensity for a frame to survive triage.",
    )
    TRIAGE_EDGE_FRAMES: int = Field(
        default=2,
        description="Frames at each end of the clip that always survive triage.",
    )
    TRIAGE_MAX_OUTPUT_FRAMES: Optional[int] = Field(
        default=None,
        description="Optional hard cap on frames surviving triage.",
    )
    TRIAGE_MIN_SURVIVAL: float = Field(
        default=0.6,
        description="Minimum fraction of frames triage must keep for its output to be accepted.",
    )

    # --- Perception (Pass 1) ---
    PERCEPTION_BATCH_SIZE: int = Field(default=5, description="Frames per perception call.")
    PERCEPTION_MAX_BATCHES: int = Field(
        default=15,
        description="Hard cap on perception calls per analysis (first/last kept, middle resampled).",
    )
    COVERAGE_MIN_RATIO: float = Field(
        default=0.7,
        description="Observation coverage below this ratio of submitted frames is flagged.",
    )
    IDENTITY_MIN_CONFIDENCE: float = Field(
        default=0.5,
        description="Identity confidence below this ratio is flagged as identity_low.",
    )
    DISPLAY_MAX_FRAMES: int = Field(default=20, description="Maximum frames selected for display.")
    DISPLAY_MIN_FRAMES: int = Field(default=8, description="Display frame floor when enough observations exist.")

    # --- Quick mode ---
    QUICK_MAX_FRAMES: int = Field(
        default=8,
        description="Frames kept for a quick analysis (one Pass 1 call, no triage).",
    )
    QUICK_PERCEPTION_MAX_TOKENS: int = Field(default=1200, description="Pass 1 output tokens in quick mode.")
    QUICK_REASONING_MAX_TOKENS: int = Field(default=2500, description="Pass 2 output tokens in quick mode.")

    # --- Augmentation ---
    SUMMARIZE_MIN_OBSERVATIONS: int = Field(
        default=30,
        description="Observation count above which Pass 2 receives the summarized corpus.",
    )

    # --- Orchestration ---
    PIPELINE_TIMEOUT_SECONDS: float = Field(
        default=240.0,
        description="Wall-clock budget for a single analysis (seconds).",
    )
    MAX_CONCURRENCY: int = Field(
        default=2,
        description="Background analyses allowed to run at once.",
    )

    # watchdog / heartbeats
    JOB_WATCHDOG_SECONDS: int = Field(
        default=300,
        description="Hard cap on total background job runtime in seconds.",
    )
    JOB_HEARTBEAT_TTL_SECONDS: int = Field(
        default=180,
        description="Maximum allowable idle time between job heartbeats in seconds.",
    )
    JOB_STATUS_HEARTBEAT_MIN_INTERVAL: float = Field(
        default=0.75,
        description="Minimum interval in seconds between status heartbeat emissions.",
    )
    JOB_RETENTION_SECONDS: int = Field(
        default=3600,
        description="How long finished jobs stay in memory before being evicted.",
    )

    # --- Persistence ---
    storage_backend: Literal["local", "s3"] = Field(
        default="local", description="Persistence backend for jobs and analysis records."
    )
    local_storage_dir: str = Field(
        default="data",
        description="Base directory for the local JSON persistence backend.",
    )
    s3_bucket: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("S3_BUCKET", "S3_BUCKET_NAME"),
        description="Target S3 bucket when using the S3 storage backend.",
    )
    s3_prefix: str = Field(default="", description="Prefix applied to stored object keys.")
    aws_access_key_id: Optional[str] = Field(
        default=None, description="AWS access key used for S3 operations."
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, description="AWS secret key used for S3 operations."
    )
    aws_region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("AWS_REGION", "S3_REGION"),
        description="AWS region for S3 interactions.",
    )
    webhook_hmac_secret: Optional[str] = Field(
        default=None, description="Optional secret used to sign outbound webhooks."
    )
    WEBHOOK_MAX_ATTEMPTS: int = Field(default=5, description="Webhook delivery attempts.")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return (value or "INFO").strip()

    @field_validator("s3_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        raw = (value or "").strip()
        return raw.strip("/")

    @field_validator(
        "anthropic_api_key",
        "s3_bucket",
        "aws_access_key_id",
        "aws_secret_access_key",
        "webhook_hmac_secret",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = str(value).strip()
        return stripped or None

    @model_validator(mode="after")
    def _validate_backend(self) -> "Settings":
        if self.storage_backend == "s3":
            missing: list[str] = []
            if not self.s3_bucket:
                missing.append("S3_BUCKET")
            if not self.aws_access_key_id:
                missing.append("AWS_ACCESS_KEY_ID")
            if not self.aws_secret_access_key:
                missing.append("AWS_SECRET_ACCESS_KEY")
            if not self.aws_region:
                missing.append("AWS_REGION")
            if missing:
                joined = ", ".join(missing)
                raise ValueError(
                    "Missing required environment variables for S3 backend: " + joined
                )
        return self

    @property
    def logging_level(self) -> str:
        return self.log_level.upper()


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings, raising a friendly error on failure."""

    try:
        return Settings()
    except ValidationError as exc:  # pragma: no cover - startup guard
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())) or "settings"
            messages.append(f"{location}: {error.get('msg')}")
        joined = "; ".join(messages) or str(exc)
        raise RuntimeError(f"Configuration error: {joined}") from exc
    except ValueError as exc:  # pragma: no cover - startup guard
        raise RuntimeError(f"Configuration error: {exc}") from exc


settings = get_settings()
