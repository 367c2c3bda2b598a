"""
authdb Database Session Management.

Single entry point for database initialisation plus context managers for
DB access by persistence collaborators. Wraps the FailoverSupervisor so the
rest of the service only sees "the active pool".
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session, scoped_session

from authdb.db.pool import ConnectionPool
from authdb.db.supervisor import FailoverSupervisor, ResolutionOutcome
from authdb.engine.config import ConfigProvider, build_config_provider, get_settings
from authdb.engine.health import HealthProbe, HealthReport

_supervisor: Optional[FailoverSupervisor] = None
_session_factory: Optional[scoped_session] = None


def init_database(
    config: Optional[ConfigProvider] = None,
    supervisor: Optional[FailoverSupervisor] = None,
) -> ResolutionOutcome:
    """
    Resolve, build and activate the database pool.

    All callers (service boot, CLI, tests) go through this function.

    Args:
        config: Configuration provider. Defaults to the environment layered
            over the ``properties`` section of authdb.yaml.
        supervisor: Pre-built supervisor (tests inject stub factories).

    Returns:
        The ResolutionOutcome — CONFIGURED or FALLBACK_ACTIVE, never an error.
    """
    global _supervisor

    if _supervisor is not None:
        close_database()

    if supervisor is None:
        settings = get_settings()
        supervisor = FailoverSupervisor(
            config or build_config_provider(settings),
            tuning=settings.pool,
        )
    _supervisor = supervisor
    outcome = supervisor.start()
    _bind_sessions(outcome.pool)
    return outcome


def reinitialize_database() -> ResolutionOutcome:
    """Re-run resolution; the current pool serves until the new one is ready."""
    if _supervisor is None:
        return init_database()
    outcome = _supervisor.reresolve()
    _bind_sessions(outcome.pool)
    return outcome


def _bind_sessions(pool: ConnectionPool) -> None:
    global _session_factory
    if _session_factory is not None:
        _session_factory.remove()
    _session_factory = scoped_session(pool.session_factory())


def get_supervisor() -> Optional[FailoverSupervisor]:
    return _supervisor


def get_active_pool() -> Optional[ConnectionPool]:
    """The pool currently in service, or None before init_database()."""
    return _supervisor.active_pool if _supervisor is not None else None


def get_session() -> Session:
    """
    Get a session bound to the active pool.
    Uses scoped_session for thread-safety.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _session_factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Context manager for DB sessions with auto-commit/rollback.

    Usage:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_database_health(probe: Optional[HealthProbe] = None) -> HealthReport:
    """Probe the active pool; NOT_CONFIGURED before initialisation."""
    return (probe or HealthProbe()).probe(get_active_pool())


def close_database() -> None:
    """Close all sessions and dispose the active pool. Used during shutdown."""
    global _supervisor, _session_factory
    if _session_factory is not None:
        _session_factory.remove()
        _session_factory = None
    if _supervisor is not None:
        _supervisor.shutdown()
        _supervisor = None
