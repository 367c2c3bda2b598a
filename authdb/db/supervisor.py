"""
authdb Failover Supervisor — resolver → parser → configurator → pool, with fallback.

States:
    INIT → TRYING_SOURCE(i) → CONFIGURED        (first source that yields a pool)
                            → FALLBACK_ACTIVE   (every source failed)

Each stage returns a value or a StageFailure; the supervisor walks the
candidate list explicitly instead of relying on exceptions falling through.
FALLBACK_ACTIVE builds a shared in-memory SQLite store and never fails,
so process startup never fails because of the database.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from authdb.db.descriptor import ConnectionDescriptor, ConnectionDescriptorParser
from authdb.db.pool import ConnectionPool, PoolConfig, PoolConfigurator, build_pool
from authdb.db.sources import RawSource, SourceResolver
from authdb.engine.config import ConfigProvider, PoolTuning, tuning_from_config
from authdb.engine.errors import AllSourcesExhaustedError, AuthDBError
from authdb.engine.health import HealthProbe, HealthStatus
from authdb.engine.logging import log_resolution_event
from authdb.engine.masking import mask_text

logger = logging.getLogger("authdb.db.supervisor")

FALLBACK_ORIGIN = "fallback"

FALLBACK_DESCRIPTOR = ConnectionDescriptor(
    host="memory",
    port=3306,
    database="authdb",
    username="sa",
    password="",
    vendor="sqlite",
)

FALLBACK_TUNING = PoolTuning(max_pool_size=5, min_idle=1, pool_name="FallbackPool")


class SupervisorState(str, Enum):
    INIT = "init"
    TRYING_SOURCE = "trying_source"
    CONFIGURED = "configured"
    FALLBACK_ACTIVE = "fallback_active"


@dataclass
class StageFailure:
    """One failed attempt: which source, which stage, which error."""
    origin: str
    stage: str
    error: AuthDBError

    def to_dict(self) -> Dict[str, Any]:
        return {**self.error.to_dict(), "origin": self.origin, "stage": self.stage}


@dataclass
class ResolutionOutcome:
    """Terminal result of one resolution run."""
    state: SupervisorState
    pool: ConnectionPool
    pool_config: PoolConfig
    source: Optional[RawSource] = None
    failures: List[StageFailure] = field(default_factory=list)

    @property
    def is_fallback(self) -> bool:
        return self.state == SupervisorState.FALLBACK_ACTIVE

    @property
    def descriptor(self) -> ConnectionDescriptor:
        return self.pool_config.descriptor

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "origin": self.source.origin if self.source else FALLBACK_ORIGIN,
            "source_kind": self.source.kind.value if self.source else None,
            "pool": self.pool_config.to_dict(),
            "failures": [f.to_dict() for f in self.failures],
        }


PoolFactory = Callable[[PoolConfig], ConnectionPool]


class FailoverSupervisor:
    """
    Orchestrates connection resolution with multi-tier fallback.

    Usage:
        supervisor = FailoverSupervisor(EnvironmentConfig.from_environ())
        outcome = supervisor.start()
        engine = outcome.pool.engine
    """

    def __init__(
        self,
        config: ConfigProvider,
        *,
        tuning: Optional[PoolTuning] = None,
        resolver: Optional[SourceResolver] = None,
        parser: Optional[ConnectionDescriptorParser] = None,
        configurator: Optional[PoolConfigurator] = None,
        pool_factory: PoolFactory = build_pool,
        fallback_factory: PoolFactory = build_pool,
        probe: Optional[HealthProbe] = None,
    ):
        self._config = config
        self._base_tuning = tuning
        self._resolver = resolver or SourceResolver()
        self._parser = parser or ConnectionDescriptorParser()
        self._configurator = configurator or PoolConfigurator()
        self._pool_factory = pool_factory
        self._fallback_factory = fallback_factory
        self._probe = probe or HealthProbe()
        self._state = SupervisorState.INIT
        self._attempt = 0
        self._active: Optional[ResolutionOutcome] = None
        self._lock = threading.Lock()

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def attempt(self) -> int:
        """1-based index of the source being / last tried (0 before start)."""
        return self._attempt

    @property
    def active(self) -> Optional[ResolutionOutcome]:
        return self._active

    @property
    def active_pool(self) -> Optional[ConnectionPool]:
        return self._active.pool if self._active else None

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> ResolutionOutcome:
        """Resolve from INIT. Never raises."""
        with self._lock:
            outcome = self._resolve()
            self._active = outcome
            self._state = outcome.state
            return outcome

    def reresolve(self) -> ResolutionOutcome:
        """
        Restart resolution. The current pool stays in service until the
        replacement is built; a healthy CONFIGURED pool is not swapped for
        the in-memory fallback.
        """
        with self._lock:
            previous = self._active
            outcome = self._resolve()

            if (
                previous is not None
                and outcome.is_fallback
                and previous.state == SupervisorState.CONFIGURED
                and self._probe.probe(previous.pool).status == HealthStatus.UP
            ):
                logger.warning(
                    f"Re-resolution found no usable source; keeping healthy pool "
                    f"'{previous.pool.name}' ({previous.pool.masked_url})"
                )
                outcome.pool.dispose()
                self._state = previous.state
                return previous

            self._active = outcome
            self._state = outcome.state
            if previous is not None:
                previous.pool.dispose()
            return outcome

    def shutdown(self) -> None:
        with self._lock:
            if self._active is not None:
                self._active.pool.dispose()
            self._active = None
            self._state = SupervisorState.INIT
            self._attempt = 0

    # -- internals -----------------------------------------------------------

    def _resolve(self) -> ResolutionOutcome:
        self._state = SupervisorState.INIT
        self._attempt = 0
        tuning = self._resolve_tuning()
        failures: List[StageFailure] = []

        for source in self._resolver.candidates(self._config):
            self._attempt += 1
            self._state = SupervisorState.TRYING_SOURCE
            logger.info(f"Trying source {self._attempt}: {source.describe()}")
            log_resolution_event("attempt", index=self._attempt, source=source.describe())

            result = self._try_source(source, tuning)
            if isinstance(result, StageFailure):
                failures.append(result)
                logger.warning(
                    f"Source {source.origin} failed at {result.stage}: {result.error.message}"
                )
                log_resolution_event("failure", **result.to_dict())
                continue

            pool_config, pool = result
            logger.info(
                f"Database configured from {source.origin}: {pool.masked_url} "
                f"(pool '{pool.name}', max={pool_config.max_pool_size})"
            )
            log_resolution_event("configured", origin=source.origin, url=pool.masked_url)
            return ResolutionOutcome(
                state=SupervisorState.CONFIGURED,
                pool=pool,
                pool_config=pool_config,
                source=source,
                failures=failures,
            )

        return self._activate_fallback(failures)

    def _resolve_tuning(self) -> PoolTuning:
        try:
            return tuning_from_config(self._config, self._base_tuning)
        except AuthDBError as e:
            logger.warning(f"Ignoring invalid pool tuning: {e.message}")
            return self._base_tuning or PoolTuning()

    def _try_source(
        self,
        source: RawSource,
        tuning: PoolTuning,
    ) -> Union[StageFailure, tuple]:
        stage = "parse"
        try:
            descriptor = self._parser.parse(source)
            stage = "configure"
            pool_config = self._configurator.configure(descriptor, tuning)
            stage = "build"
            pool = self._pool_factory(pool_config)
        except AuthDBError as e:
            return StageFailure(origin=source.origin, stage=e.stage or stage, error=e)
        except Exception as e:
            error = AuthDBError(
                f"Unexpected {type(e).__name__} during {stage}: {mask_text(str(e))}",
                origin=source.origin,
                stage=stage,
            )
            error.__cause__ = e
            return StageFailure(origin=source.origin, stage=stage, error=error)
        return pool_config, pool

    def _activate_fallback(self, failures: List[StageFailure]) -> ResolutionOutcome:
        exhausted = AllSourcesExhaustedError(
            f"All {len(failures)} database source(s) failed; activating in-memory fallback",
            failures=[f.to_dict() for f in failures],
        )
        logger.error(exhausted.message)
        log_resolution_event("exhausted", **exhausted.to_dict())

        pool_config = self._configurator.configure(FALLBACK_DESCRIPTOR, FALLBACK_TUNING)
        pool = self._fallback_factory(pool_config)
        logger.warning(f"Fallback store active: {pool.masked_url} (pool '{pool.name}')")
        log_resolution_event("fallback", url=pool.masked_url)
        return ResolutionOutcome(
            state=SupervisorState.FALLBACK_ACTIVE,
            pool=pool,
            pool_config=pool_config,
            source=None,
            failures=failures,
        )
