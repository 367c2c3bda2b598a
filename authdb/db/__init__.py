"""authdb db — source resolution, descriptor parsing, pooling and failover."""

from authdb.db.descriptor import ConnectionDescriptor, ConnectionDescriptorParser  # noqa: F401
from authdb.db.pool import ConnectionPool, PoolConfig, PoolConfigurator, build_pool  # noqa: F401
from authdb.db.sources import RawSource, SourceKind, SourceResolver  # noqa: F401
from authdb.db.supervisor import FailoverSupervisor, ResolutionOutcome, SupervisorState  # noqa: F401

__all__ = [
    "ConnectionDescriptor",
    "ConnectionDescriptorParser",
    "ConnectionPool",
    "PoolConfig",
    "PoolConfigurator",
    "build_pool",
    "RawSource",
    "SourceKind",
    "SourceResolver",
    "FailoverSupervisor",
    "ResolutionOutcome",
    "SupervisorState",
]
