"""Connection pool.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from ldap_client.health_check import (
    AggregateHealthCheck,
    GetEntryHealthCheck,
    HealthCheck,
    HealthCheckResult,
)

from .pool import (
    LDAPConnectionPool,
    PooledConnection,
    PoolStatistics,
    SlotState,
)

__all__ = [
    "AggregateHealthCheck",
    "GetEntryHealthCheck",
    "HealthCheck",
    "HealthCheckResult",
    "LDAPConnectionPool",
    "PoolStatistics",
    "PooledConnection",
    "SlotState",
]
