"""
authdb Error Hierarchy — Structured exceptions for connection resolution.

Every error carries the configuration key (``origin``) and the stage it was
raised from, so the supervisor can log a masked, JSON-serializable record of
each failed attempt.

Hierarchy:
    AuthDBError
    ├── AuthDBConfigError          — Settings file or tuning values invalid
    ├── MalformedSourceError       — URL / discrete value cannot be parsed
    ├── PoolConfigurationError     — Pool tuning invalid, driver missing
    ├── ConnectionAcquisitionError — Pool exhausted or backend unreachable
    └── AllSourcesExhaustedError   — Every external source failed (absorbed)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from authdb.engine.masking import mask_text


class AuthDBError(Exception):
    """
    Base error for all authdb failures.
    All context is serializable to JSON; string values are masked on output.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.origin: Optional[str] = context.get("origin")
        self.stage: Optional[str] = context.get("stage")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict with secrets masked."""
        return {
            "error_type": self.error_type,
            "message": mask_text(self.message),
            "origin": self.origin,
            "stage": self.stage,
            "timestamp": self.timestamp,
            "context": {
                k: mask_text(str(v)) for k, v in self.context.items()
                if k not in ("origin", "stage")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {mask_text(self.message)}"]
        if self.origin:
            parts.append(f"origin={self.origin}")
        if self.stage:
            parts.append(f"stage={self.stage}")
        return " | ".join(parts)


class AuthDBConfigError(AuthDBError):
    """Configuration error — invalid authdb.yaml or tuning variables."""

    def __init__(self, message: str, **context: Any):
        self.key: Optional[str] = context.get("key")
        super().__init__(message, **context)


class MalformedSourceError(AuthDBError, ValueError):
    """
    A provider URL, JDBC URL or discrete value could not be parsed.
    Triggers fallback to the next source; never fatal.
    """

    def __init__(self, message: str, **context: Any):
        self.value: Optional[str] = context.get("value")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["value"] = mask_text(self.value) if self.value else None
        return d


class PoolConfigurationError(AuthDBError, ValueError):
    """
    Pool settings failed validation (e.g. max_pool_size < min_idle) or the
    pool could not be constructed for the descriptor's vendor.
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[list] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class ConnectionAcquisitionError(AuthDBError):
    """Pool exhausted (timeout) or backend unreachable."""

    def __init__(self, message: str, **context: Any):
        self.pool_name: Optional[str] = context.get("pool_name")
        self.timeout_ms: Optional[int] = context.get("timeout_ms")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["pool_name"] = self.pool_name
        d["timeout_ms"] = self.timeout_ms
        return d


class AllSourcesExhaustedError(AuthDBError):
    """
    Every external source failed. Built and logged by the supervisor right
    before it activates the in-memory fallback; never raised to callers.
    """

    def __init__(self, message: str, **context: Any):
        self.failures: List[Dict[str, Any]] = context.get("failures", [])
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["failures"] = self.failures
        d["context"].pop("failures", None)
        return d
