"""
authdb Health Check — Database liveness probe and subsystem aggregation.

Provides:
    - HealthProbe: one SELECT 1 against a borrowed connection → HealthReport
    - HealthCheckService: named checks, run concurrently, aggregated into the
      platform status served by the /health endpoint
    - Background monitoring that logs status changes

Probe failures are reported as data, never raised. A DOWN database degrades
the platform (DEGRADED) instead of taking it DOWN: process liveness is not
tied to database liveness.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import text

from authdb.engine.logging import log_health_event
from authdb.engine.masking import SecretMasker, default_masker

logger = logging.getLogger("authdb.engine.health")

DEFAULT_TEST_QUERY = "SELECT 1"


class HealthStatus(str, Enum):
    """Health status of the database or any other subsystem."""
    UP = "UP"
    DOWN = "DOWN"
    DEGRADED = "DEGRADED"
    NOT_CONFIGURED = "NOT_CONFIGURED"


@dataclass
class HealthReport:
    """Result of a single probe. Built fresh for every call."""
    status: HealthStatus
    detail: Dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_up(self) -> bool:
        return self.status == HealthStatus.UP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "detail": dict(self.detail),
            "timestamp": self.checked_at.isoformat(),
        }


class ConnectionSource(Protocol):
    """Anything with a ``connect()`` context manager: ConnectionPool, Engine."""

    def connect(self) -> AbstractContextManager:
        ...


class HealthProbe:
    """
    Executes the test query on one borrowed connection and classifies it.

    Without an explicit ``test_query`` the probe runs the query configured on
    the source (``source.config.test_query``, as on a ConnectionPool), falling
    back to ``SELECT 1``.

    Usage:
        report = HealthProbe().probe(pool)
        report.to_dict()  # {"status": "UP", "detail": {...}, "timestamp": ...}
    """

    def __init__(
        self,
        test_query: Optional[str] = None,
        expected_result: Any = 1,
        masker: Optional[SecretMasker] = None,
    ):
        self._test_query = test_query
        self._expected = expected_result
        self._masker = masker or default_masker

    def probe(self, source: Optional[ConnectionSource]) -> HealthReport:
        if source is None:
            return HealthReport(
                status=HealthStatus.NOT_CONFIGURED,
                detail={"database": "No connection source configured"},
            )

        start = time.monotonic()
        try:
            with source.connect() as conn:
                if conn is None or getattr(conn, "closed", False) is True:
                    return HealthReport(
                        status=HealthStatus.DOWN,
                        detail={"error": "connection is null or closed"},
                    )

                query = self._query_for(source)
                value = conn.execute(text(query)).scalar()
                latency_ms = round((time.monotonic() - start) * 1000, 2)
                if value == self._expected:
                    detail = {
                        "database": "Available",
                        "query": f"{query} - SUCCESS",
                        "latency_ms": latency_ms,
                    }
                    detail.update(self._describe(conn))
                    return HealthReport(status=HealthStatus.UP, detail=detail)

                return HealthReport(
                    status=HealthStatus.DOWN,
                    detail={
                        "error": "test query failed",
                        "result": self._masker.mask(value),
                    },
                )
        except Exception as e:
            cause = e.__cause__ or e.__context__
            logger.debug(f"Database probe failed: {type(e).__name__}: {self._masker.mask(e)}")
            return HealthReport(
                status=HealthStatus.DOWN,
                detail={
                    "error": "Database connection failed",
                    "exception": type(e).__name__,
                    "message": self._masker.mask(e),
                    "cause": self._masker.mask(cause) if cause is not None else "None",
                },
            )

    def _query_for(self, source: Any) -> str:
        if self._test_query:
            return self._test_query
        configured = getattr(getattr(source, "config", None), "test_query", None)
        return configured if isinstance(configured, str) and configured else DEFAULT_TEST_QUERY

    def _describe(self, conn: Any) -> Dict[str, Any]:
        """Masked URL, driver and server version from a SQLAlchemy connection."""
        info: Dict[str, Any] = {}
        engine = getattr(conn, "engine", None)
        url = getattr(engine, "url", None)
        if url is not None:
            rendered = (
                url.render_as_string(hide_password=False)
                if hasattr(url, "render_as_string") else str(url)
            )
            info["url"] = self._masker.mask(rendered)

        dialect = getattr(conn, "dialect", None)
        if dialect is not None:
            info["driver"] = f"{getattr(dialect, 'name', '?')}+{getattr(dialect, 'driver', '?')}"
            version = getattr(dialect, "server_version_info", None)
            if version:
                info["version"] = ".".join(str(part) for part in version)
        return info


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

@dataclass
class HealthCheckConfig:
    """Configuration for a registered check."""
    enabled: bool = True
    timeout: int = 10
    affects_liveness: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthCheckConfig":
        if not data:
            return cls()
        return cls(
            enabled=data.get("enabled", True),
            timeout=data.get("timeout", 10),
            affects_liveness=data.get("affects_liveness", True),
        )


@dataclass
class _RegisteredCheck:
    """Internal: a named check function plus its configuration."""
    name: str
    check_fn: Callable
    config: HealthCheckConfig


def aggregate_status(
    reports: Dict[str, HealthReport],
    liveness_checks: Optional[set] = None,
) -> HealthStatus:
    """
    Overall status from individual reports.

    A DOWN check listed in ``liveness_checks`` makes the platform DOWN; any
    other DOWN or DEGRADED check makes it DEGRADED. NOT_CONFIGURED is neutral.
    """
    liveness = liveness_checks if liveness_checks is not None else set(reports)
    overall = HealthStatus.UP
    for name, report in reports.items():
        if report.status == HealthStatus.DOWN and name in liveness:
            return HealthStatus.DOWN
        if report.status in (HealthStatus.DOWN, HealthStatus.DEGRADED):
            overall = HealthStatus.DEGRADED
    return overall


def http_status_for(status: HealthStatus) -> int:
    return 200 if status in (HealthStatus.UP, HealthStatus.NOT_CONFIGURED) else 503


class HealthCheckService:
    """
    Central health monitoring for the database and sibling subsystems.

    Usage:
        service = HealthCheckService()
        service.register_database_check(get_active_pool)
        service.register_check("mail", lambda: smtp_ok())
        summary = await service.get_platform_health()
    """

    def __init__(self, probe: Optional[HealthProbe] = None):
        self._checks: Dict[str, _RegisteredCheck] = {}
        self._probe = probe or HealthProbe()
        self._last_status: Dict[str, HealthStatus] = {}
        self._background_task: Optional[asyncio.Task] = None

    def register_check(
        self,
        name: str,
        check_fn: Callable,
        config: Optional[HealthCheckConfig] = None,
    ) -> None:
        """
        Register a health check function.

        Args:
            name: Unique check name.
            check_fn: Sync or async callable returning a HealthReport or a bool.
            config: Health check configuration.
        """
        self._checks[name] = _RegisteredCheck(
            name=name,
            check_fn=check_fn,
            config=config or HealthCheckConfig(),
        )
        logger.debug(f"Registered health check: {name}")

    def register_database_check(
        self,
        source_getter: Callable[[], Optional[ConnectionSource]],
        name: str = "database",
        timeout: int = 10,
    ) -> None:
        """
        Register the database probe. ``source_getter`` is called on every
        check so the probe always targets the currently active pool.
        """
        def db_check() -> HealthReport:
            return self._probe.probe(source_getter())

        self.register_check(
            name,
            db_check,
            HealthCheckConfig(timeout=timeout, affects_liveness=False),
        )

    async def check(self, name: str) -> HealthReport:
        """Run a single check by name. Never raises."""
        registered = self._checks.get(name)
        if registered is None:
            return HealthReport(
                status=HealthStatus.NOT_CONFIGURED,
                detail={"error": f"No health check registered for '{name}'"},
            )
        if not registered.config.enabled:
            return HealthReport(
                status=HealthStatus.NOT_CONFIGURED,
                detail={"error": "Health check disabled"},
            )

        try:
            check_fn = registered.check_fn
            if inspect.iscoroutinefunction(check_fn):
                outcome = await asyncio.wait_for(check_fn(), timeout=registered.config.timeout)
            else:
                outcome = await asyncio.wait_for(
                    asyncio.to_thread(check_fn), timeout=registered.config.timeout,
                )
        except asyncio.TimeoutError:
            return HealthReport(
                status=HealthStatus.DOWN,
                detail={"error": f"Timeout after {registered.config.timeout}s"},
            )
        except Exception as e:
            return HealthReport(
                status=HealthStatus.DOWN,
                detail={
                    "error": "Health check failed",
                    "exception": type(e).__name__,
                    "message": default_masker.mask(e),
                },
            )

        if isinstance(outcome, HealthReport):
            return outcome
        if outcome:
            return HealthReport(status=HealthStatus.UP)
        return HealthReport(status=HealthStatus.DOWN, detail={"error": "Check returned unhealthy"})

    async def check_all(self) -> Dict[str, HealthReport]:
        """Run all registered checks concurrently."""
        names = list(self._checks)
        reports = await asyncio.gather(*(self.check(name) for name in names))
        return dict(zip(names, reports))

    async def get_platform_health(self) -> Dict[str, Any]:
        """
        Overall platform health (for the /health endpoint).

        Returns:
            Dict with overall status, http_status and per-check reports.
        """
        reports = await self.check_all()
        liveness = {name for name, c in self._checks.items() if c.config.affects_liveness}
        overall = aggregate_status(reports, liveness)
        return {
            "status": overall.value,
            "http_status": http_status_for(overall),
            "checks": {name: r.to_dict() for name, r in reports.items()},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def _note_transitions(self, reports: Dict[str, HealthReport]) -> None:
        for name, report in reports.items():
            previous = self._last_status.get(name)
            if previous != report.status:
                log = logger.warning if report.status == HealthStatus.DOWN else logger.info
                log(f"Health check '{name}': {previous.value if previous else 'unknown'} → {report.status.value}")
                self._last_status[name] = report.status
                log_health_event(name, report)

    async def start_background_monitoring(self, interval_seconds: int = 60) -> None:
        """Start periodic background health checks."""
        if self._background_task is not None:
            logger.warning("Background health monitoring already running")
            return

        async def _monitor():
            while True:
                try:
                    self._note_transitions(await self.check_all())
                except Exception as e:
                    logger.error(f"Health check monitoring error: {e}")
                await asyncio.sleep(interval_seconds)

        self._background_task = asyncio.create_task(_monitor())
        logger.info(f"Started background health monitoring (interval={interval_seconds}s)")

    async def stop_background_monitoring(self) -> None:
        """Stop periodic background health checks."""
        if self._background_task:
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:
                pass
            self._background_task = None
            logger.info("Stopped background health monitoring")

    @property
    def registered_checks(self) -> List[str]:
        return list(self._checks.keys())


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_health_service: Optional[HealthCheckService] = None


def get_health_service() -> HealthCheckService:
    """Get or create the global HealthCheckService singleton."""
    global _health_service
    if _health_service is None:
        _health_service = HealthCheckService()
    return _health_service
