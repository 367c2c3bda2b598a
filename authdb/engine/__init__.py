"""authdb engine — errors, configuration, masking, logging and health."""

from authdb.engine.errors import (  # noqa: F401
    AllSourcesExhaustedError,
    AuthDBConfigError,
    AuthDBError,
    ConnectionAcquisitionError,
    MalformedSourceError,
    PoolConfigurationError,
)
from authdb.engine.health import HealthProbe, HealthReport, HealthStatus  # noqa: F401
from authdb.engine.masking import SecretMasker, mask_url  # noqa: F401

__all__ = [
    "AuthDBError",
    "AuthDBConfigError",
    "MalformedSourceError",
    "PoolConfigurationError",
    "ConnectionAcquisitionError",
    "AllSourcesExhaustedError",
    "HealthProbe",
    "HealthReport",
    "HealthStatus",
    "SecretMasker",
    "mask_url",
]
