"""Server set base: candidates ordering and connection selection.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass

from ldap_client.config import Settings
from ldap_client.connection import LDAPConnection
from ldap_client.exceptions import LDAPClientError, ServerSetUnavailableError
from ldap_client.health_check import HealthCheck
from ldap_client.ldap_requests import BindRequest
from ldap_client.log import log_server_set


@dataclass(frozen=True)
class ServerCandidate:
    """Server address with SRV style priority and weight."""

    host: str
    port: int = 389
    priority: int = 0
    weight: int = 0

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def order_candidates(
    candidates: list[ServerCandidate],
    rng: random.Random | None = None,
) -> list[ServerCandidate]:
    """Order candidates for connection attempts, RFC 2782 style.

    Lower priority goes first. Inside one priority candidates are
    drawn at random in proportion to weight, zero weight candidates
    follow in their listed order.

    :param list[ServerCandidate] candidates: candidates
    :param random.Random | None rng: random source
    :return list[ServerCandidate]: ordered copy
    """
    rng = rng or random.Random()
    ordered: list[ServerCandidate] = []

    for priority in sorted({candidate.priority for candidate in candidates}):
        group = [c for c in candidates if c.priority == priority]
        weighted = [c for c in group if c.weight > 0]

        while weighted:
            index = rng.choices(
                range(len(weighted)),
                weights=[c.weight for c in weighted],
            )[0]
            ordered.append(weighted.pop(index))

        ordered.extend(c for c in group if c.weight <= 0)

    return ordered


class AbstractServerSet(ABC):
    """Source of established connections to one of several servers.

    Candidates are tried in order, the first one that connects, binds
    and passes health check wins. The whole selection is bounded by
    ``SERVER_SET_DEADLINE_SECONDS``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        bind_request: BindRequest | None = None,
        health_check: HealthCheck | None = None,
    ) -> None:
        """Set connection options.

        :param Settings | None settings: client settings
        :param BindRequest | None bind_request: bind for new connections
        :param HealthCheck | None health_check: default check
        """
        self.settings = settings or Settings()
        self.bind_request = bind_request
        self.health_check = health_check

    @abstractmethod
    async def get_candidates(self) -> list[ServerCandidate]:
        """Get candidates in the order they must be tried."""

    async def _connect(
        self,
        candidate: ServerCandidate,
        health_check: HealthCheck | None,
    ) -> LDAPConnection:
        connection = LDAPConnection(
            candidate.host,
            candidate.port,
            self.settings,
        )
        try:
            await connection.connect()
            if self.bind_request is not None:
                await connection.bind(
                    self.bind_request.get_rebind_request(
                        candidate.host,
                        candidate.port,
                    ),
                )
            if health_check is not None:
                await health_check.ensure_new_connection_valid(connection)
        except BaseException:
            await connection.abort()
            raise

        return connection

    async def get_connection(
        self,
        health_check: HealthCheck | None = None,
    ) -> LDAPConnection:
        """Get connection to the first usable candidate.

        :param HealthCheck | None health_check: overrides default check
        :raises ServerSetUnavailableError: no candidate is usable or
            deadline is reached, carries every candidate failure
        :return LDAPConnection: connected, bound and checked connection
        """
        health_check = health_check or self.health_check
        deadline = self.settings.SERVER_SET_DEADLINE_SECONDS
        causes: list[tuple[str, BaseException]] = []
        candidate: ServerCandidate | None = None

        try:
            async with asyncio.timeout(deadline):
                for candidate in await self.get_candidates():
                    try:
                        connection = await self._connect(
                            candidate,
                            health_check,
                        )
                    except LDAPClientError as err:
                        log_server_set.info(
                            f"Candidate {candidate.address} skipped: {err}",
                        )
                        causes.append((candidate.address, err))
                        continue

                    log_server_set.debug(
                        f"Candidate {candidate.address} selected",
                    )
                    return connection

        except TimeoutError as err:
            address = candidate.address if candidate else "resolve"
            causes.append((address, err))
            log_server_set.warning(
                f"Server selection did not finish in {deadline}s",
            )
            raise ServerSetUnavailableError(
                f"No server selected within {deadline}s",
                causes,
            ) from err

        log_server_set.warning(f"No usable server in {self!r}")
        raise ServerSetUnavailableError("No usable server", causes)
