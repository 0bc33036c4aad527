from typing import Optional
from urllib.parse import quote_plus

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Database configuration"""

    host: str = "localhost"
    port: int = 5432
    username: str = "postgres"
    password: SecretStr = Field(default=SecretStr("postgres"))
    database: str = "speech_coach"
    schema_name: Optional[str] = None
    serverless: bool = Field(
        default=True,
        description="If true, disable connection pooling so serverless DBs can pause.",
    )
    url_override: Optional[str] = Field(
        default=None,
        description="Full SQLAlchemy URL; takes precedence over host/port fields.",
    )

    @property
    def url(self) -> str:
        """Get database URL"""
        if self.url_override:
            return self.url_override
        username = quote_plus(self.username)
        password = quote_plus(self.password.get_secret_value())
        return (
            "postgresql+asyncpg://"
            f"{username}:{password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        secrets_dir=".secrets",
        case_sensitive=False,
        extra="ignore",
    )


class S3Config(BaseSettings):
    """S3 configuration for uploaded recordings."""

    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: str = "us-east-1"
    bucket_name: str = "speech-coach-recordings"
    purge_media_after_processing: bool = False

    model_config = SettingsConfigDict(
        env_prefix="S3_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


class BedrockConfig(BaseSettings):
    """Amazon Bedrock configuration."""

    region: str = Field(
        default="us-east-1",
        validation_alias="BEDROCK_REGION",
    )
    model_id: str = Field(
        default="amazon.nova-pro-v1:0",
        validation_alias="BEDROCK_MODEL_ID",
    )
    relevance_model_id: str = Field(
        default="amazon.nova-micro-v1:0",
        validation_alias="BEDROCK_RELEVANCE_MODEL_ID",
    )
    embedding_model_id: str = Field(
        default="amazon.titan-embed-text-v2:0",
        validation_alias="BEDROCK_EMBEDDING_MODEL_ID",
    )
    max_tokens: int = Field(
        default=2000,
        validation_alias="BEDROCK_MAX_TOKENS",
        ge=1,
        le=8192,
    )
    temperature: float = Field(
        default=0.0,
        validation_alias="BEDROCK_TEMPERATURE",
        ge=0.0,
        le=1.0,
    )
    top_p: float = Field(
        default=0.9,
        validation_alias="BEDROCK_TOP_P",
        ge=0.0,
        le=1.0,
    )
    timeout_seconds: float = Field(
        default=45.0,
        validation_alias="BEDROCK_TIMEOUT_SECONDS",
        gt=0,
    )
    daily_call_budget: int = Field(
        default=5000,
        validation_alias="BEDROCK_DAILY_CALL_BUDGET",
        ge=0,
    )
    enabled: bool = Field(default=True, validation_alias="BEDROCK_ENABLED")
    api_key: SecretStr | None = Field(
        default=None,
        validation_alias="BEDROCK_API_KEY",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        secrets_dir=".secrets",
        case_sensitive=False,
        extra="ignore",
    )


class TranscribeConfig(BaseSettings):
    """Amazon Transcribe streaming configuration."""

    region: str = "us-east-1"
    sample_rate_hz: int = 16000
    chunk_size_bytes: int = 8192
    timeout_seconds: float = Field(default=120.0, gt=0)
    default_language_code: str = "en-US"
    trial_language_model: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="TRANSCRIBE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


class QueueConfig(BaseSettings):
    """Background job execution and retry policy."""

    backend: str = Field(default="inline", pattern="^(inline|rabbitmq)$")
    worker_concurrency: int = Field(default=2, ge=1)
    session_max_attempts: int = Field(default=3, ge=1)
    trial_max_attempts: int = Field(default=2, ge=1)
    max_backoff_seconds: float = Field(default=300.0, ge=0)
    lease_ttl_seconds: int = Field(default=900, ge=1)
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_username: str = "guest"
    rabbitmq_password: SecretStr = Field(default=SecretStr("guest"))
    queue_name: str = "session_processing"

    model_config = SettingsConfigDict(
        env_prefix="QUEUE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


class AnalysisThresholds(BaseSettings):
    """Every tunable number the analysis pipeline relies on."""

    # Media
    min_duration_seconds: float = 1.0
    duration_tolerance_seconds: float = 5.0

    # Transcription
    min_words_required: int = 2
    trial_min_words_required: int = 3
    warn_words_threshold: int = 5
    min_timing_coverage: float = 0.8

    # Rules
    slow_wpm: float = 120.0
    fast_wpm: float = 180.0
    long_pause_ms: int = 3000
    default_context_window: int = 5

    # AI refinement
    ai_min_words: int = 50
    confidence_threshold: float = 0.7
    default_ai_confidence: float = 0.8
    cache_ttl_hours: float = 6.0
    max_json_retries: int = 2
    relevance_threshold: float = 0.6
    relevance_penalty: float = 0.5

    # Metrics
    ideal_wpm: float = 150.0
    pace_weight: float = 0.7
    filler_weight: float = 0.3
    filler_penalty_multiplier: float = 10.0
    engagement_band_low: float = 130.0
    engagement_band_high: float = 180.0
    engagement_band_margin: float = 30.0
    engagement_full_length_seconds: float = 25.0
    engagement_density_target: float = 2.0
    engagement_multiplier: float = 1.2
    min_pause_ms: int = 100
    clarity_weight: float = 0.3
    fluency_weight: float = 0.25
    engagement_weight: float = 0.25
    pace_consistency_weight: float = 0.2

    # Orchestration
    stuck_after_minutes: int = 30
    pipeline_version: str = "2.1"

    model_config = SettingsConfigDict(
        env_prefix="ANALYSIS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


class Settings(BaseSettings):
    """Application settings"""

    app_name: str = "Speech Coach Analysis Backend"
    app_version: str = "1.0.0"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    log_file: str = "logs/app.log"
    pipeline_log_file: str = "logs/analysis_pipeline.log"
    transcript_log_file: str = "logs/transcripts.log"

    # Database
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # S3
    s3: S3Config = Field(default_factory=S3Config)

    # Bedrock
    bedrock: BedrockConfig = Field(default_factory=BedrockConfig)

    # Transcribe
    transcribe: TranscribeConfig = Field(default_factory=TranscribeConfig)

    # Jobs
    queue: QueueConfig = Field(default_factory=QueueConfig)

    # Pipeline thresholds
    analysis: AnalysisThresholds = Field(default_factory=AnalysisThresholds)

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
