"""Server sets.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from .base import AbstractServerSet, ServerCandidate, order_candidates
from .dns_srv import DNSSRVServerSet, SRVResolver
from .failover import FailoverServerSet

__all__ = [
    "AbstractServerSet",
    "DNSSRVServerSet",
    "FailoverServerSet",
    "SRVResolver",
    "ServerCandidate",
    "order_candidates",
]
