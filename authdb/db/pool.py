"""
authdb Connection Pool — Turn a ConnectionDescriptor into a tuned pool.

Two steps:
    PoolConfigurator.configure(descriptor, tuning) -> PoolConfig   (pure, no I/O)
    build_pool(config)                             -> ConnectionPool (SQLAlchemy QueuePool)

The live pool enforces:
    - at most max_pool_size concurrent borrowers (no overflow); a borrower
      waits at most connection_timeout_ms before ConnectionAcquisitionError
    - max_lifetime via pool_recycle, idle_timeout on checkout
    - leak detection: a warning when a borrowed connection is held longer
      than leak_detection_threshold_ms (the connection is not reclaimed)
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import URL, Connection, Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from authdb.db.descriptor import ConnectionDescriptor
from authdb.engine.config import PoolTuning
from authdb.engine.errors import ConnectionAcquisitionError, PoolConfigurationError
from authdb.engine.masking import mask_text, mask_url

logger = logging.getLogger("authdb.db.pool")

DEFAULT_POOL_NAME = "AuthMySQLPool"

POOL_DEFAULTS: Dict[str, Any] = {
    "max_pool_size": 20,
    "min_idle": 5,
    "connection_timeout_ms": 30_000,
    "idle_timeout_ms": 600_000,
    "max_lifetime_ms": 1_800_000,
    "leak_detection_threshold_ms": 60_000,
    "test_query": "SELECT 1",
    "pool_name": DEFAULT_POOL_NAME,
}

# SQLAlchemy dialect+driver per descriptor vendor
DRIVERS: Dict[str, str] = {
    "mysql": "mysql+pymysql",
    "mariadb": "mariadb+pymysql",
    "sqlite": "sqlite+pysqlite",
}

MYSQL_VENDOR_PROPERTIES: Dict[str, str] = {
    # Statement caching / server-side prepared statements
    "cachePrepStmts": "true",
    "prepStmtCacheSize": "250",
    "prepStmtCacheSqlLimit": "2048",
    "useServerPrepStmts": "true",
    "useLocalSessionState": "true",
    "rewriteBatchedStatements": "true",
    "cacheResultSetMetadata": "true",
    "cacheServerConfiguration": "true",
    "elideSetAutoCommits": "true",
    "maintainTimeStats": "false",
    # Character set
    "useUnicode": "true",
    "characterEncoding": "UTF-8",
    "connectionCollation": "utf8mb4_unicode_ci",
    # TLS with optional verification
    "useSSL": "true",
    "requireSSL": "false",
    "allowPublicKeyRetrieval": "true",
    "verifyServerCertificate": "false",
    # Time handling
    "serverTimezone": "UTC",
    "useLegacyDatetimeCode": "false",
}

VENDOR_PROPERTIES: Dict[str, Dict[str, str]] = {
    "mysql": MYSQL_VENDOR_PROPERTIES,
    "mariadb": MYSQL_VENDOR_PROPERTIES,
    "sqlite": {"check_same_thread": "false"},
}

_UTC_NAMES = {"utc", "gmt", "z", "etc/utc"}


class PoolConfig(BaseModel):
    """Validated, immutable pool configuration. Replaced wholesale, never mutated."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    descriptor: ConnectionDescriptor
    pool_name: str = DEFAULT_POOL_NAME
    max_pool_size: int = Field(default=20, ge=1)
    min_idle: int = Field(default=5, ge=0)
    connection_timeout_ms: int = Field(default=30_000, gt=0)
    idle_timeout_ms: int = Field(default=600_000, gt=0)
    max_lifetime_ms: int = Field(default=1_800_000, gt=0)
    leak_detection_threshold_ms: int = Field(default=60_000, gt=0)
    test_query: str = "SELECT 1"
    vendor_properties: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_pool_bounds(self) -> "PoolConfig":
        if self.max_pool_size < self.min_idle:
            raise ValueError(
                f"max_pool_size ({self.max_pool_size}) must be >= min_idle ({self.min_idle})"
            )
        return self

    @property
    def effective_properties(self) -> Dict[str, str]:
        """Vendor defaults overlaid with flags given explicitly in the URL."""
        return {**self.vendor_properties, **self.descriptor.options}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_name": self.pool_name,
            "descriptor": self.descriptor.to_dict(),
            "max_pool_size": self.max_pool_size,
            "min_idle": self.min_idle,
            "connection_timeout_ms": self.connection_timeout_ms,
            "idle_timeout_ms": self.idle_timeout_ms,
            "max_lifetime_ms": self.max_lifetime_ms,
            "leak_detection_threshold_ms": self.leak_detection_threshold_ms,
            "test_query": self.test_query,
            "vendor_properties": dict(self.vendor_properties),
        }


class PoolConfigurator:
    """
    Pure function of (descriptor, tuning) -> PoolConfig.

    Usage:
        config = PoolConfigurator().configure(descriptor, PoolTuning(max_pool_size=10))
    """

    def __init__(self, defaults: Optional[Dict[str, Any]] = None):
        self._defaults = {**POOL_DEFAULTS, **(defaults or {})}

    def configure(
        self,
        descriptor: ConnectionDescriptor,
        tuning: Optional[PoolTuning] = None,
    ) -> PoolConfig:
        """
        Raises:
            PoolConfigurationError: Unsupported vendor or invalid sizing/timeouts
                (e.g. max_pool_size < min_idle).
        """
        if descriptor.vendor not in DRIVERS:
            raise PoolConfigurationError(
                f"Unsupported database vendor '{descriptor.vendor}'",
                stage="configure",
                vendor=descriptor.vendor,
            )

        values = dict(self._defaults)
        if tuning is not None:
            values.update(tuning.model_dump(exclude_none=True))

        try:
            return PoolConfig(
                descriptor=descriptor,
                vendor_properties=dict(VENDOR_PROPERTIES.get(descriptor.vendor, {})),
                **values,
            )
        except ValidationError as e:
            raise PoolConfigurationError(
                f"Invalid pool configuration: {e.error_count()} error(s)",
                stage="configure",
                validation_errors=e.errors(include_url=False),
            ) from e


# ---------------------------------------------------------------------------
# SQLAlchemy translation
# ---------------------------------------------------------------------------

def sqlalchemy_url(descriptor: ConnectionDescriptor) -> URL:
    """Build the SQLAlchemy URL; sqlite maps to a named shared in-memory DB."""
    if descriptor.vendor == "sqlite":
        return make_url(
            f"{DRIVERS['sqlite']}:///file:{descriptor.database}?mode=memory&cache=shared&uri=true"
        )
    return URL.create(
        DRIVERS[descriptor.vendor],
        username=descriptor.username or None,
        password=descriptor.password or None,
        host=descriptor.host,
        port=descriptor.port,
        database=descriptor.database,
    )


def _is_true(value: Optional[str]) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes")


def connect_args_for(config: PoolConfig) -> Dict[str, Any]:
    """
    Translate JDBC-style vendor flags into PyMySQL connect() arguments.

    Only flags with a driver equivalent are translated: characterEncoding,
    connectionCollation, useSSL/verifyServerCertificate and serverTimezone.
    The rest stay in PoolConfig.vendor_properties for reporting.
    """
    props = config.effective_properties

    if config.descriptor.vendor == "sqlite":
        return {"check_same_thread": _is_true(props.get("check_same_thread", "false"))}

    args: Dict[str, Any] = {
        "connect_timeout": max(1, config.connection_timeout_ms // 1000),
    }

    encoding = props.get("characterEncoding", "").replace("-", "").lower()
    if encoding in ("utf8", "utf8mb4"):
        args["charset"] = "utf8mb4"
    if props.get("connectionCollation"):
        args["collation"] = props["connectionCollation"]

    if _is_true(props.get("useSSL")):
        if _is_true(props.get("verifyServerCertificate", "true")):
            args["ssl"] = {"check_hostname": True, "verify_mode": "required"}
        else:
            args["ssl"] = {"check_hostname": False, "verify_mode": "none"}

    tz = props.get("serverTimezone")
    if tz:
        offset = "+00:00" if tz.lower() in _UTC_NAMES else tz
        args["init_command"] = f"SET time_zone = '{offset}'"

    return args


def engine_kwargs_for(config: PoolConfig) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "poolclass": QueuePool,
        "pool_size": config.max_pool_size,
        "max_overflow": 0,
        "pool_timeout": config.connection_timeout_ms / 1000.0,
        "pool_recycle": max(1, config.max_lifetime_ms // 1000),
        "pool_pre_ping": True,
        "connect_args": connect_args_for(config),
    }
    cache_size = config.vendor_properties.get("prepStmtCacheSize")
    if _is_true(config.vendor_properties.get("cachePrepStmts")) and cache_size and cache_size.isdigit():
        kwargs["query_cache_size"] = int(cache_size)
    return kwargs


# ---------------------------------------------------------------------------
# Live pool
# ---------------------------------------------------------------------------

class _LeakReaper:
    """
    One daemon thread per pool. Borrowed connections are tracked by a
    checkout timestamp and swept periodically; each borrow held past the
    threshold is reported once and never reclaimed.
    """

    def __init__(self, pool_name: str, threshold_s: float, on_leak: Callable[[float], None]):
        self._name = pool_name
        self._threshold = threshold_s
        self._interval = min(threshold_s / 2, 1.0)
        self._on_leak = on_leak
        # id(connection_record) -> [checked_out_at, reported]
        self._borrowed: Dict[int, List[Any]] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def track(self, key: int) -> None:
        with self._lock:
            self._borrowed[key] = [time.monotonic(), False]
            if self._thread is None and not self._stopped.is_set():
                self._thread = threading.Thread(
                    target=self._run, name=f"authdb-leak-reaper[{self._name}]", daemon=True,
                )
                self._thread.start()

    def release(self, key: int) -> None:
        with self._lock:
            self._borrowed.pop(key, None)

    def sweep(self) -> int:
        """Report borrows past the threshold; returns how many were reported."""
        now = time.monotonic()
        leaked = []
        with self._lock:
            for entry in self._borrowed.values():
                if not entry[1] and now - entry[0] >= self._threshold:
                    entry[1] = True
                    leaked.append((now - entry[0]) * 1000)
        for held_ms in leaked:
            self._on_leak(held_ms)
        return len(leaked)

    def stop(self) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._interval + 1.0)

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            self.sweep()


class ConnectionPool:
    """
    A live SQLAlchemy engine built from a PoolConfig.

    Usage:
        pool = build_pool(config)
        with pool.connect() as conn:
            conn.execute(text("SELECT 1"))
    """

    def __init__(self, config: PoolConfig, engine: Engine):
        self.config = config
        self.engine = engine
        self._leak_warnings = 0
        self._lock = threading.Lock()
        self._session_factory: Optional[sessionmaker] = None
        self._keeper: Any = None
        self._reaper = _LeakReaper(
            config.pool_name, config.leak_detection_threshold_ms / 1000.0, self._record_leak,
        )
        _install_pool_listeners(self)

    @property
    def name(self) -> str:
        return self.config.pool_name

    @property
    def masked_url(self) -> str:
        return mask_url(self.engine.url.render_as_string(hide_password=False))

    @property
    def leak_warnings(self) -> int:
        return self._leak_warnings

    def _acquire(self) -> Connection:
        try:
            return self.engine.connect()
        except sa_exc.TimeoutError as e:
            raise ConnectionAcquisitionError(
                f"Pool '{self.name}' exhausted: no connection available "
                f"within {self.config.connection_timeout_ms} ms",
                stage="acquire",
                pool_name=self.name,
                timeout_ms=self.config.connection_timeout_ms,
            ) from e
        except sa_exc.SQLAlchemyError as e:
            raise ConnectionAcquisitionError(
                f"Cannot connect to {self.masked_url}: {mask_text(str(e.__cause__ or e))}",
                stage="acquire",
                pool_name=self.name,
            ) from e

    @contextmanager
    def connect(self) -> Generator[Connection, None, None]:
        """Borrow one connection; always returned to the pool on exit."""
        conn = self._acquire()
        try:
            yield conn
        finally:
            conn.close()

    def warm_up(self) -> None:
        """
        Open min_idle connections (at least one) and return them to the pool.
        Fails fast with ConnectionAcquisitionError if the backend is unreachable.
        """
        opened = []
        try:
            for _ in range(max(1, self.config.min_idle)):
                opened.append(self._acquire())
        finally:
            for conn in opened:
                conn.close()
        logger.debug(f"Pool '{self.name}' warmed with {len(opened)} connection(s)")

    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self.engine)
        return self._session_factory

    def status(self) -> Dict[str, Any]:
        pool = self.engine.pool
        return {
            "pool_name": self.name,
            "url": self.masked_url,
            "size": pool.size(),
            "checked_out": pool.checkedout(),
            "idle": pool.checkedin(),
            "leak_warnings": self._leak_warnings,
        }

    def dispose(self) -> None:
        """Close idle connections and release the engine."""
        self._reaper.stop()
        if self._keeper is not None:
            self._keeper.close()
            self._keeper = None
        self.engine.dispose()
        logger.info(f"Disposed pool '{self.name}'")

    def _record_leak(self, held_ms: float) -> None:
        with self._lock:
            self._leak_warnings += 1
        logger.warning(
            f"Connection leak detection triggered for pool '{self.name}': "
            f"connection held for {held_ms:.0f} ms "
            f"(threshold {self.config.leak_detection_threshold_ms} ms)"
        )


def _install_pool_listeners(pool: ConnectionPool) -> None:
    """Idle timeout on checkout; leak tracking from checkout to checkin."""
    idle_timeout = pool.config.idle_timeout_ms / 1000.0

    @event.listens_for(pool.engine, "checkout")
    def _on_checkout(dbapi_conn, connection_record, connection_proxy):
        returned_at = connection_record.info.pop("returned_at", None)
        if returned_at is not None and time.monotonic() - returned_at > idle_timeout:
            # Pool invalidates this connection and retries with a fresh one
            raise sa_exc.DisconnectionError(
                f"Connection idle for more than {pool.config.idle_timeout_ms} ms"
            )

        pool._reaper.track(id(connection_record))

    @event.listens_for(pool.engine, "checkin")
    def _on_checkin(dbapi_conn, connection_record):
        pool._reaper.release(id(connection_record))
        connection_record.info["returned_at"] = time.monotonic()


def _open_keeper(engine: Engine) -> Any:
    """
    A DBAPI connection held outside the pool. A shared in-memory SQLite
    database lives only while one connection to it is open; idle timeout
    and recycling may close every pooled one.
    """
    cargs, cparams = engine.dialect.create_connect_args(engine.url)
    cparams["check_same_thread"] = False
    return engine.dialect.connect(*cargs, **cparams)


def build_pool(config: PoolConfig, *, verify: bool = True) -> ConnectionPool:
    """
    Instantiate a live pool for ``config``.

    Args:
        config: Validated PoolConfig.
        verify: Warm min_idle connections now so an unreachable backend
            fails here rather than on first use.

    Raises:
        PoolConfigurationError: Driver not installed / unsupported dialect.
        ConnectionAcquisitionError: ``verify`` and the backend is unreachable.
    """
    url = sqlalchemy_url(config.descriptor)
    try:
        engine = create_engine(url, **engine_kwargs_for(config))
    except (ImportError, sa_exc.ArgumentError) as e:
        raise PoolConfigurationError(
            f"Cannot create engine for {mask_url(url.render_as_string(hide_password=False))}: {e}",
            stage="build",
        ) from e

    pool = ConnectionPool(config, engine)
    if config.descriptor.vendor == "sqlite":
        pool._keeper = _open_keeper(engine)
    if verify:
        try:
            pool.warm_up()
        except ConnectionAcquisitionError as e:
            e.stage = "build"
            pool.dispose()
            raise

    logger.info(
        f"Pool '{pool.name}' ready: {pool.masked_url} "
        f"(max={config.max_pool_size}, min_idle={config.min_idle})"
    )
    return pool
