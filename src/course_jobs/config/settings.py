"""Configuration management for course_jobs.

This module provides:
- Settings class for environment variable configuration using pydantic-settings
- Pydantic models for the YAML runtime configuration (queues, pipelines, batches, cache)
- Loader functions for YAML configurations
- Cached settings access for process entry points
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from course_jobs.exceptions import ConfigurationError


class RetryConfig(BaseModel):
    """Retry policy for a job class.

    Attributes:
        max_attempts: Maximum executions before the job goes dead
        backoff_seconds: Delay before attempt n+1 after failure n; the last value repeats
    """

    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: List[float] = Field(default_factory=lambda: [60, 300, 900])

    @field_validator("backoff_seconds")
    @classmethod
    def validate_backoff(cls, v: List[float]) -> List[float]:
        """Backoff schedule must be non-empty and non-negative."""
        if not v:
            raise ValueError("backoff_seconds must not be empty")
        if any(delay < 0 for delay in v):
            raise ValueError("backoff_seconds must be non-negative")
        return v


class JobClassConfig(RetryConfig):
    """Per job-class settings.

    Attributes:
        queue: Default queue when the caller does not pick one
        rate_limit: Name of the rate limit bucket guarding this job class
    """

    queue: Optional[str] = None
    rate_limit: Optional[str] = None


class RateLimitConfig(BaseModel):
    """Rolling window limit for a metered external dependency."""

    max_calls: int = Field(default=60, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)


class QueueConfig(BaseModel):
    """Job queue engine configuration.

    Attributes:
        queues: Queue names in priority order, highest first
        visibility_timeout_seconds: Lease length of a dequeued job
        retention_hours: How long terminal jobs are kept before purge
        default_retry: Retry policy for job classes without their own entry
        job_classes: Per job-class retry, queue and rate limit settings
        rate_limits: Named rate limit buckets
    """

    queues: List[str] = Field(default_factory=lambda: ["critical", "emails", "default", "low"])
    visibility_timeout_seconds: float = 300.0
    retention_hours: float = 168.0
    default_retry: RetryConfig = Field(default_factory=RetryConfig)
    job_classes: Dict[str, JobClassConfig] = Field(default_factory=dict)
    rate_limits: Dict[str, RateLimitConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_references(self) -> "QueueConfig":
        """Job classes may only reference known queues and rate limits."""
        for name, job_class in self.job_classes.items():
            if job_class.queue and job_class.queue not in self.queues:
                raise ValueError(f"Job class {name} uses unknown queue {job_class.queue}")
            if job_class.rate_limit and job_class.rate_limit not in self.rate_limits:
                raise ValueError(f"Job class {name} uses unknown rate limit {job_class.rate_limit}")
        return self


class PipelineDefinition(BaseModel):
    """Ordered stage list of one pipeline."""

    stages: List[str]
    queue: str = "default"


class PipelineConfig(BaseModel):
    """Artifact pipeline configuration.

    Attributes:
        pipelines: Pipeline name to stage list
        buckets: Bucket profile (public/private/local_temp) to bucket name
        multipart_threshold_bytes: Uploads above this size use multipart
        part_size_bytes: Size of each multipart part
        max_upload_bytes: Largest accepted artifact
        allowed_extensions: Lower-case extensions accepted for course materials
        presigned_url_ttl_seconds: Lifetime of access URLs handed to notifications
    """

    pipelines: Dict[str, PipelineDefinition] = Field(
        default_factory=lambda: {
            "material": PipelineDefinition(stages=["upload", "metadata", "thumbnail", "notify"]),
            "submission": PipelineDefinition(stages=["upload", "plagiarism_check", "notify_owner"]),
        }
    )
    buckets: Dict[str, str] = Field(
        default_factory=lambda: {
            "public": "course-materials",
            "private": "course-private",
            "local_temp": "scratch",
        }
    )
    multipart_threshold_bytes: int = 20 * 1024 * 1024
    part_size_bytes: int = 8 * 1024 * 1024
    max_upload_bytes: int = 2 * 1024 * 1024 * 1024
    allowed_extensions: List[str] = Field(
        default_factory=lambda: [
            ".pdf", ".pptx", ".docx", ".txt", ".md", ".png", ".jpg", ".jpeg", ".mp4", ".mov", ".zip",
        ]
    )
    presigned_url_ttl_seconds: int = 3600


class OperationConfig(BaseModel):
    """Batch operation class settings."""

    queue: str = "default"
    chunk_size: Optional[int] = Field(default=None, ge=1)


class BatchConfig(BaseModel):
    """Batch coordinator configuration.

    Attributes:
        default_chunk_size: Units per chunk when the operation does not override it
        max_inflight_chunks: Chunks dispatched at once per batch
        max_failure_samples: Failure samples kept per chunk
        operations: Operation name to queue and chunk size
    """

    default_chunk_size: int = Field(default=100, ge=1)
    max_inflight_chunks: int = Field(default=20, ge=1)
    max_failure_samples: int = Field(default=20, ge=0)
    operations: Dict[str, OperationConfig] = Field(
        default_factory=lambda: {
            "enrollment": OperationConfig(queue="critical"),
            "certificate": OperationConfig(queue="default"),
            "reminder": OperationConfig(queue="low"),
        }
    )


class CacheConfig(BaseModel):
    """Tagged cache configuration."""

    default_ttl_seconds: float = 300.0
    stampede_timeout_seconds: float = 10.0
    warm_top_n: int = 10


class RuntimeConfig(BaseModel):
    """Aggregated runtime configuration for all components."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Uses pydantic-settings for type-safe configuration loading with
    automatic environment variable parsing and validation.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./course_jobs.db",
        description="Database connection URL for durable stores"
    )

    # Storage
    storage_base_path: str = Field(
        default="./data/storage",
        description="Base path for the filesystem storage gateway"
    )
    storage_base_url: str = Field(
        default="http://localhost:8000/files",
        description="Base URL for presigned object URLs"
    )
    storage_signing_secret: str = Field(
        default="change-me",
        description="HMAC secret for presigned URLs"
    )

    # Runtime YAML
    config_dir: Optional[str] = Field(
        default=None,
        description="Directory holding queues/pipelines/batches/cache YAML files"
    )

    # Workers
    worker_concurrency: int = Field(
        default=4,
        description="Number of concurrent workers per process"
    )
    worker_poll_interval: float = Field(
        default=1.0,
        description="Seconds a worker sleeps when no job is eligible"
    )
    run_workers_in_app: bool = Field(
        default=False,
        description="Start a worker pool inside the API process"
    )

    # Cache
    cache_backend: str = Field(
        default="memory",
        description="Cache backend: memory or sql"
    )

    # Server
    server_host: str = Field(
        default="0.0.0.0",
        description="Server host"
    )
    server_port: int = Field(
        default=8000,
        description="Server port"
    )

    @field_validator("server_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate server port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("cache_backend")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        """Only the memory and sql cache backends exist."""
        if v not in ("memory", "sql"):
            raise ValueError("cache_backend must be 'memory' or 'sql'")
        return v


def get_config_dir(settings: Optional[Settings] = None) -> Path:
    """Get the configuration directory path.

    Returns:
        Path object pointing to the config directory
    """
    if settings is not None and settings.config_dir:
        return Path(settings.config_dir)
    return Path(__file__).parent.parent.parent.parent / "config"


def load_yaml_config(config_name: str, config_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Load a YAML configuration file from the config directory.

    Args:
        config_name: Name of the YAML file without extension (e.g., 'queues')
        config_dir: Directory to read from, defaults to get_config_dir()

    Returns:
        Dictionary containing the loaded configuration

    Raises:
        ConfigurationError: If the file does not exist or is malformed
    """
    config_path = (config_dir or get_config_dir()) / f"{config_name}.yaml"

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e


def get_runtime_config(config_dir: Optional[Path] = None) -> RuntimeConfig:
    """Load and aggregate all runtime configurations.

    Returns:
        RuntimeConfig object containing every component's configuration

    Raises:
        ConfigurationError: If any configuration file is missing or invalid
    """
    config_mappings = {
        "queue": ("queues", QueueConfig),
        "pipeline": ("pipelines", PipelineConfig),
        "batch": ("batches", BatchConfig),
        "cache": ("cache", CacheConfig),
    }

    configs: Dict[str, Any] = {}
    for section, (file_name, config_class) in config_mappings.items():
        config_data = load_yaml_config(file_name, config_dir)
        try:
            configs[section] = config_class(**config_data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid {file_name}.yaml: {e}") from e

    return RuntimeConfig(**configs)


@lru_cache
def get_settings() -> Settings:
    """Get cached Settings instance.

    Only process entry points call this; components receive their
    configuration through constructors.

    Returns:
        Settings instance loaded from environment variables
    """
    return Settings()
