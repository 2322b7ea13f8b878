"""Static list of servers.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import random

from ldap_client.config import Settings
from ldap_client.health_check import HealthCheck
from ldap_client.ldap_requests import BindRequest

from .base import AbstractServerSet, ServerCandidate, order_candidates


class FailoverServerSet(AbstractServerSet):
    """Fixed candidates, tried by priority then weight.

    With default priority and weight candidates are tried in the
    order they were given.
    """

    def __init__(
        self,
        candidates: list[ServerCandidate | tuple[str, int]],
        settings: Settings | None = None,
        bind_request: BindRequest | None = None,
        health_check: HealthCheck | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Set candidates, ``(host, port)`` pairs are accepted too."""
        super().__init__(settings, bind_request, health_check)
        if not candidates:
            raise ValueError("At least one candidate is required")

        self.candidates = [
            c if isinstance(c, ServerCandidate) else ServerCandidate(*c)
            for c in candidates
        ]
        self._rng = rng or random.Random()

    async def get_candidates(self) -> list[ServerCandidate]:
        return order_candidates(self.candidates, self._rng)

    def __repr__(self) -> str:
        addresses = ", ".join(c.address for c in self.candidates)
        return f"FailoverServerSet([{addresses}])"
