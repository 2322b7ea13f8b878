"""Asyncio LDAP client core.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from .attributes import Attribute, Entry, Modification
from .config import Settings
from .connection import LDAPConnection
from .controls import Control
from .health_check import (
    AggregateHealthCheck,
    GetEntryHealthCheck,
    HealthCheck,
    HealthCheckResult,
)
from .ldap_requests import (
    AddRequest,
    GSSAPIBindRequest,
    GSSAPIBindRequestProperties,
    ModifyRequest,
    SearchRequest,
    SimpleBindRequest,
)
from .log import setup_logging
from .objects import Operation, Scope
from .pool import LDAPConnectionPool
from .server_set import DNSSRVServerSet, FailoverServerSet, ServerCandidate

__all__ = [
    "AddRequest",
    "AggregateHealthCheck",
    "Attribute",
    "Control",
    "DNSSRVServerSet",
    "Entry",
    "FailoverServerSet",
    "GSSAPIBindRequest",
    "GSSAPIBindRequestProperties",
    "GetEntryHealthCheck",
    "HealthCheck",
    "HealthCheckResult",
    "LDAPConnection",
    "LDAPConnectionPool",
    "Modification",
    "ModifyRequest",
    "Operation",
    "Scope",
    "SearchRequest",
    "ServerCandidate",
    "Settings",
    "SimpleBindRequest",
    "setup_logging",
]
