"""Configuration management for course_jobs."""

from course_jobs.config.settings import (
    BatchConfig,
    CacheConfig,
    JobClassConfig,
    OperationConfig,
    PipelineConfig,
    PipelineDefinition,
    QueueConfig,
    RateLimitConfig,
    RetryConfig,
    RuntimeConfig,
    Settings,
    get_config_dir,
    get_runtime_config,
    get_settings,
    load_yaml_config,
)

__all__ = [
    # Settings module exports
    "Settings",
    "get_settings",
    "load_yaml_config",
    "get_config_dir",
    "get_runtime_config",
    # Configuration model exports
    "RetryConfig",
    "JobClassConfig",
    "RateLimitConfig",
    "QueueConfig",
    "PipelineDefinition",
    "PipelineConfig",
    "OperationConfig",
    "BatchConfig",
    "CacheConfig",
    "RuntimeConfig",
]
