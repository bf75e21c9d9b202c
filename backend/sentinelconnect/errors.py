"""
Exception taxonomy for the sync engine.

Every failure the engine can observe maps to one of these. Only
ConfigurationError and JobAlreadyRunningError are expected to reach callers;
the rest terminate at the job record.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class SyncEngineError(Exception):
    """Base class for engine errors."""

    error_code = "SYNC_ENGINE_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(SyncEngineError):
    """Missing or invalid configuration (including cron expressions)."""

    error_code = "CONFIGURATION_ERROR"


class SourceConnectionError(SyncEngineError):
    """The source database is unreachable or rejected the credentials."""

    error_code = "CONNECTION_ERROR"


class ExtractionError(SyncEngineError):
    """A query or stream failed while extracting a table."""

    error_code = "EXTRACTION_ERROR"


class MaskingError(SyncEngineError):
    """Malformed masking parameters. Resolved to redact, never raised out of a run."""

    error_code = "MASKING_ERROR"


class JobAlreadyRunningError(SyncEngineError):
    """Another run of the same sync configuration is in flight."""

    error_code = "JOB_ALREADY_RUNNING"

    def __init__(self, config_id: str):
        super().__init__(
            message="A sync job is already running for this configuration",
            details={"config_id": config_id},
        )
        self.config_id = config_id


class JobNotFoundError(SyncEngineError):
    error_code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(message=f"Sync job {job_id} not found", details={"job_id": job_id})
        self.job_id = job_id
