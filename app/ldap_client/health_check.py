"""Connection health checks.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ldap_client.exceptions import (
    HealthCheckError,
    LDAPClientError,
    LDAPConnectionError,
)
from ldap_client.ldap_codes import LDAPCodes

if TYPE_CHECKING:
    from ldap_client.connection import LDAPConnection


@dataclass(frozen=True)
class HealthCheckResult:
    """Summary of one pool sweep.

    ``num_expired`` and ``num_defunct`` never overlap, both are parts
    of ``num_examined``.
    """

    num_examined: int = 0
    num_expired: int = 0
    num_defunct: int = 0

    @property
    def num_valid(self) -> int:
        return self.num_examined - self.num_expired - self.num_defunct


class HealthCheck:
    """Accepts every connection, hooks raise HealthCheckError to reject.

    Subclasses override the hooks they care about.
    """

    async def ensure_new_connection_valid(
        self,
        connection: "LDAPConnection",
    ) -> None:
        """Check freshly connected and bound connection."""

    async def ensure_connection_valid_for_checkout(
        self,
        connection: "LDAPConnection",
    ) -> None:
        """Check connection before it is handed out by pool."""

    async def ensure_connection_valid_for_release(
        self,
        connection: "LDAPConnection",
    ) -> None:
        """Check connection when it is given back to pool."""

    async def ensure_connection_valid_for_continued_use(
        self,
        connection: "LDAPConnection",
    ) -> None:
        """Check idle connection during background sweep."""

    async def ensure_connection_valid_after_exception(
        self,
        connection: "LDAPConnection",
        exc: LDAPClientError,
    ) -> None:
        """Check connection after operation failed on it.

        :raises HealthCheckError: error means connection is unusable
        """
        if isinstance(exc, LDAPConnectionError) or not connection.is_connected:
            raise HealthCheckError(
                f"Connection {connection.address} failed: {exc}",
            ) from exc

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class GetEntryHealthCheck(HealthCheck):
    """Read one entry with base scope search.

    Connection is valid when the entry exists and arrives within
    ``max_response_time``. Empty DN reads root DSE.
    """

    def __init__(
        self,
        entry_dn: str = "",
        max_response_time: float | None = None,
        invoke_on_create: bool = True,
        invoke_on_checkout: bool = False,
        invoke_on_release: bool = False,
        invoke_for_background_checks: bool = True,
        invoke_on_exception: bool = True,
    ) -> None:
        """Set entry and the hooks that read it."""
        self.entry_dn = entry_dn
        self.max_response_time = max_response_time
        self.invoke_on_create = invoke_on_create
        self.invoke_on_checkout = invoke_on_checkout
        self.invoke_on_release = invoke_on_release
        self.invoke_for_background_checks = invoke_for_background_checks
        self.invoke_on_exception = invoke_on_exception

    async def _get_entry(self, connection: "LDAPConnection") -> None:
        try:
            async with asyncio.timeout(self.max_response_time):
                entry = await connection.get_entry(self.entry_dn, "1.1")
        except TimeoutError as err:
            raise HealthCheckError(
                f"{connection.address} did not return {self.entry_dn!r} "
                f"in {self.max_response_time}s",
                LDAPCodes.TIMEOUT,
            ) from err
        except LDAPClientError as err:
            raise HealthCheckError(
                f"{connection.address} failed to read "
                f"{self.entry_dn!r}: {err}",
                err.result_code,
            ) from err

        if entry is None:
            raise HealthCheckError(
                f"Entry {self.entry_dn!r} not found on {connection.address}",
                LDAPCodes.NO_SUCH_OBJECT,
            )

    async def ensure_new_connection_valid(
        self,
        connection: "LDAPConnection",
    ) -> None:
        if self.invoke_on_create:
            await self._get_entry(connection)

    async def ensure_connection_valid_for_checkout(
        self,
        connection: "LDAPConnection",
    ) -> None:
        if self.invoke_on_checkout:
            await self._get_entry(connection)

    async def ensure_connection_valid_for_release(
        self,
        connection: "LDAPConnection",
    ) -> None:
        if self.invoke_on_release:
            await self._get_entry(connection)

    async def ensure_connection_valid_for_continued_use(
        self,
        connection: "LDAPConnection",
    ) -> None:
        if self.invoke_for_background_checks:
            await self._get_entry(connection)

    async def ensure_connection_valid_after_exception(
        self,
        connection: "LDAPConnection",
        exc: LDAPClientError,
    ) -> None:
        await super().ensure_connection_valid_after_exception(connection, exc)
        if self.invoke_on_exception:
            await self._get_entry(connection)

    def __repr__(self) -> str:
        return f"GetEntryHealthCheck(entry_dn={self.entry_dn!r})"


class AggregateHealthCheck(HealthCheck):
    """Run several checks in order, first failure wins."""

    def __init__(self, *checks: HealthCheck) -> None:
        """Set checks."""
        self.checks = list(checks)

    async def ensure_new_connection_valid(
        self,
        connection: "LDAPConnection",
    ) -> None:
        for check in self.checks:
            await check.ensure_new_connection_valid(connection)

    async def ensure_connection_valid_for_checkout(
        self,
        connection: "LDAPConnection",
    ) -> None:
        for check in self.checks:
            await check.ensure_connection_valid_for_checkout(connection)

    async def ensure_connection_valid_for_release(
        self,
        connection: "LDAPConnection",
    ) -> None:
        for check in self.checks:
            await check.ensure_connection_valid_for_release(connection)

    async def ensure_connection_valid_for_continued_use(
        self,
        connection: "LDAPConnection",
    ) -> None:
        for check in self.checks:
            await check.ensure_connection_valid_for_continued_use(connection)

    async def ensure_connection_valid_after_exception(
        self,
        connection: "LDAPConnection",
        exc: LDAPClientError,
    ) -> None:
        for check in self.checks:
            await check.ensure_connection_valid_after_exception(
                connection,
                exc,
            )

    def __repr__(self) -> str:
        return f"AggregateHealthCheck({', '.join(map(repr, self.checks))})"
