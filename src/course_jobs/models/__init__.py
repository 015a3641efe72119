"""Database models for course_jobs durable stores."""

from .batch import BatchChunkRecord, BatchRecord
from .cache_entry import CacheEntryRecord, CacheTagRecord, CacheTagVersionRecord
from .database import Base, Database
from .job import JobRecord
from .pipeline_run import PipelineRunRecord

__all__ = [
    "BatchChunkRecord",
    "BatchRecord",
    "CacheEntryRecord",
    "CacheTagRecord",
    "CacheTagVersionRecord",
    "JobRecord",
    "PipelineRunRecord",
    "Base",
    "Database",
]
