"""Servers discovered with DNS SRV records.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import random
import time
from typing import Any, Protocol

import dns.asyncresolver
import dns.exception

from ldap_client.config import Settings
from ldap_client.exceptions import ServerSetUnavailableError
from ldap_client.health_check import HealthCheck
from ldap_client.ldap_requests import BindRequest
from ldap_client.log import log_server_set

from .base import AbstractServerSet, ServerCandidate, order_candidates


class SRVResolver(Protocol):
    """Subset of ``dns.asyncresolver.Resolver`` used here."""

    async def resolve(self, qname: str, rdtype: str) -> Any: ...


class DNSSRVServerSet(AbstractServerSet):
    """Candidates from SRV records of ``record_name``.

    Records are cached for the smallest of record TTL and
    ``SRV_TTL_SECONDS``, then resolved again on the next connection.
    """

    def __init__(
        self,
        record_name: str = "_ldap._tcp",
        settings: Settings | None = None,
        bind_request: BindRequest | None = None,
        health_check: HealthCheck | None = None,
        resolver: SRVResolver | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Set record name and resolver.

        :param str record_name: SRV record name, e.g. _ldap._tcp.md.test
        :param SRVResolver | None resolver: dnspython resolver by default
        """
        super().__init__(settings, bind_request, health_check)
        self.record_name = record_name
        self._resolver = resolver
        self._rng = rng or random.Random()
        self._candidates: list[ServerCandidate] = []
        self._expires_at = 0.0

    @property
    def resolver(self) -> SRVResolver:
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
        return self._resolver

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    async def resolve(self) -> list[ServerCandidate]:
        """Resolve SRV records and refresh cache.

        :raises ServerSetUnavailableError: no records
        :return list[ServerCandidate]: candidates as published
        """
        try:
            answer = await self.resolver.resolve(self.record_name, "SRV")
        except (
            dns.asyncresolver.NoAnswer,
            dns.asyncresolver.NXDOMAIN,
        ) as err:
            raise ServerSetUnavailableError(
                f"No SRV records for {self.record_name}",
                [(self.record_name, err)],
            ) from err
        except dns.exception.DNSException as err:
            raise ServerSetUnavailableError(
                f"Cannot resolve {self.record_name}",
                [(self.record_name, err)],
            ) from err

        candidates = [
            ServerCandidate(
                host=record.target.to_text(omit_final_dot=True),
                port=record.port,
                priority=record.priority,
                weight=record.weight,
            )
            for record in answer
            if record.target.to_text() != "."
        ]
        if not candidates:
            raise ServerSetUnavailableError(
                f"Service {self.record_name} is not available",
            )

        ttl = min(answer.rrset.ttl, self.settings.SRV_TTL_SECONDS)
        self._candidates = candidates
        self._expires_at = time.monotonic() + ttl

        log_server_set.debug(
            f"Resolved {self.record_name}: "
            f"{[c.address for c in candidates]}, ttl {ttl}s",
        )
        return candidates

    async def get_candidates(self) -> list[ServerCandidate]:
        if not self._candidates or self.is_expired:
            await self.resolve()
        return order_candidates(self._candidates, self._rng)

    def __repr__(self) -> str:
        return f"DNSSRVServerSet({self.record_name!r})"
