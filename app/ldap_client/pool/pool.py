"""Connection pool with background health checks.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from enum import StrEnum
from types import TracebackType
from typing import Self

import backoff

from ldap_client.config import Settings
from ldap_client.connection import LDAPConnection
from ldap_client.exceptions import (
    CheckoutTimeoutError,
    HealthCheckError,
    LDAPClientError,
    PoolClosedError,
    PoolExhaustedError,
)
from ldap_client.health_check import (
    AggregateHealthCheck,
    HealthCheck,
    HealthCheckResult,
)
from ldap_client.ldap_requests import BaseRequest, SearchResult
from ldap_client.ldap_responses import BaseResponse
from ldap_client.log import log_pool
from ldap_client.server_set import AbstractServerSet


class SlotState(StrEnum):
    """Pooled connection states."""

    AVAILABLE = "AVAILABLE"
    CHECKED_OUT = "CHECKED_OUT"
    DEFUNCT = "DEFUNCT"


class PooledConnection:
    """Pool slot, state changes only while ``lock`` is held."""

    def __init__(
        self,
        connection: LDAPConnection,
        state: SlotState = SlotState.AVAILABLE,
    ) -> None:
        """Wrap connection."""
        self.connection = connection
        self.state = state
        self.lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<PooledConnection {self.connection.address} {self.state}>"


@dataclass
class PoolStatistics:
    """Pool counters since creation."""

    num_successful_connection_attempts: int = 0
    num_failed_connection_attempts: int = 0
    num_successful_checkouts: int = 0
    num_failed_checkouts: int = 0
    num_checkouts_after_wait: int = 0
    num_released_valid: int = 0
    num_closed_defunct: int = 0
    num_closed_expired: int = 0
    num_replacement_failures: int = 0


class LDAPConnectionPool:
    """Pool of connections obtained from a server set.

    Every slot has its own lock, checkout, release and health check
    sweep take it before changing slot state. Slot list and capacity
    accounting change between awaits only, pool condition wakes
    checkouts waiting for them. No I/O happens under the condition.

    ```
    AVAILABLE -> CHECKED_OUT -> AVAILABLE | DEFUNCT
    AVAILABLE -> DEFUNCT (sweep) -> removed and replaced
    ```
    """

    def __init__(
        self,
        server_set: AbstractServerSet,
        settings: Settings | None = None,
        health_check: HealthCheck | None = None,
        initial_connections: int | None = None,
        max_connections: int | None = None,
        max_wait: float | None = None,
        max_connection_age: float | None = None,
    ) -> None:
        """Set pool options, values not given are taken from settings.

        :param AbstractServerSet server_set: source of new connections
        :param Settings | None settings: client settings
        :param HealthCheck | None health_check: checks for pool events,
            new connections pass it after the server set check
        :param int | None initial_connections: connections made on start
        :param int | None max_connections: capacity
        :param float | None max_wait: checkout wait, 0 fails at once
        :param float | None max_connection_age: 0 disables expiration
        """
        self.server_set = server_set
        self.settings = settings or server_set.settings
        self.health_check = health_check or HealthCheck()
        self._pool_check = health_check

        if initial_connections is None:
            initial_connections = self.settings.POOL_INITIAL_CONNECTIONS
        if max_connections is None:
            max_connections = self.settings.POOL_MAX_CONNECTIONS
        if max_wait is None:
            max_wait = self.settings.POOL_MAX_WAIT_SECONDS
        if max_connection_age is None:
            max_connection_age = self.settings.POOL_MAX_CONNECTION_AGE_SECONDS

        self.initial_connections = initial_connections
        self.max_connections = max_connections
        self.max_wait = max_wait
        self.max_connection_age = max_connection_age
        self.check_connection_age_on_release = (
            self.settings.POOL_CHECK_CONNECTION_AGE_ON_RELEASE
        )
        self.health_check_interval = (
            self.settings.HEALTH_CHECK_INTERVAL_SECONDS
        )

        if self.max_connections < 1:
            raise ValueError("Pool capacity must be positive")
        if self.initial_connections > self.max_connections:
            raise ValueError("Initial connections exceed pool capacity")

        self.statistics = PoolStatistics()
        self.last_health_check_result: HealthCheckResult | None = None

        self._slots: list[PooledConnection] = []
        self._pending = 0
        self._condition = asyncio.Condition()
        self._closed = False
        self._health_task: asyncio.Task | None = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def available_count(self) -> int:
        return sum(s.state is SlotState.AVAILABLE for s in self._slots)

    @property
    def checked_out_count(self) -> int:
        return sum(s.state is SlotState.CHECKED_OUT for s in self._slots)

    def __repr__(self) -> str:
        return (
            f"<LDAPConnectionPool {self.server_set!r} "
            f"{self.checked_out_count}/{self.size}/{self.max_connections}>"
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise PoolClosedError("Connection pool is closed")

    def _is_expired(self, connection: LDAPConnection) -> bool:
        return (
            self.max_connection_age > 0
            and connection.age >= self.max_connection_age
        )

    def _new_connection_check(self) -> HealthCheck | None:
        """Get server set check followed by pool check, if any."""
        checks = [
            check
            for check in (self.server_set.health_check, self._pool_check)
            if check is not None
        ]
        if len(checks) > 1:
            return AggregateHealthCheck(*checks)
        return checks[0] if checks else None

    async def _create_connection(self) -> LDAPConnection:
        try:
            connection = await self.server_set.get_connection(
                self._new_connection_check(),
            )
        except LDAPClientError:
            self.statistics.num_failed_connection_attempts += 1
            raise
        self.statistics.num_successful_connection_attempts += 1
        return connection

    async def start(self) -> None:
        """Create initial connections and start health check task.

        :raises ServerSetUnavailableError: initial connection failed
        """
        self._ensure_open()

        while self.size < self.initial_connections:
            try:
                connection = await self._create_connection()
            except LDAPClientError:
                await self.close()
                raise
            async with self._condition:
                self._slots.append(PooledConnection(connection))
                self._condition.notify()

        if self._health_task is None:
            self._health_task = asyncio.create_task(
                self._health_check_loop(),
                name="ldap-pool-health-check",
            )
        log_pool.info(f"Started {self!r}")

    async def _reserve(self, deadline: float) -> PooledConnection | None:
        """Claim available slot or capacity for a new connection.

        :return PooledConnection | None: locked slot, None means
            capacity was reserved
        """
        waited = False

        async with self._condition:
            while True:
                self._ensure_open()

                for slot in self._slots:
                    if (
                        slot.state is SlotState.AVAILABLE
                        and not slot.lock.locked()
                    ):
                        await slot.lock.acquire()
                        slot.state = SlotState.CHECKED_OUT
                        if waited:
                            self.statistics.num_checkouts_after_wait += 1
                        return slot

                if len(self._slots) + self._pending < self.max_connections:
                    self._pending += 1
                    return None

                if self.max_wait <= 0:
                    self.statistics.num_failed_checkouts += 1
                    raise PoolExhaustedError(
                        f"All {self.max_connections} connections are in use",
                    )

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self.statistics.num_failed_checkouts += 1
                    raise CheckoutTimeoutError(
                        f"No connection available in {self.max_wait}s",
                    )

                try:
                    async with asyncio.timeout(remaining):
                        await self._condition.wait()
                except TimeoutError as err:
                    self.statistics.num_failed_checkouts += 1
                    raise CheckoutTimeoutError(
                        f"No connection available in {self.max_wait}s",
                    ) from err
                waited = True

    async def _notify(self) -> None:
        async with self._condition:
            self._condition.notify()

    async def _checkout_new(self) -> LDAPConnection:
        """Create connection on capacity reserved by ``_reserve``.

        Reservation is given back on any failure, cancellation
        included. Bookkeeping has no await, so it can not be
        interrupted half way.
        """
        try:
            connection = await self._create_connection()
        except BaseException as exc:
            self._pending -= 1
            if isinstance(exc, LDAPClientError):
                self.statistics.num_failed_checkouts += 1
            await asyncio.shield(self._notify())
            raise

        self._pending -= 1
        if self._closed:
            await connection.close()
            raise PoolClosedError("Connection pool is closed")

        self._slots.append(
            PooledConnection(connection, SlotState.CHECKED_OUT),
        )
        self.statistics.num_successful_checkouts += 1
        return connection

    async def _verify_checkout(self, slot: PooledConnection) -> None:
        connection = slot.connection
        if not connection.is_connected:
            raise HealthCheckError(f"{connection.address} is not connected")
        if self._is_expired(connection):
            raise HealthCheckError(f"{connection.address} is expired")
        await self.health_check.ensure_connection_valid_for_checkout(
            connection,
        )

    async def checkout(self) -> LDAPConnection:
        """Get connection for exclusive use.

        Available connection is preferred, new one is created while
        below capacity, otherwise waits up to ``max_wait``.

        :raises PoolClosedError: pool is closed
        :raises PoolExhaustedError: no connection and waiting disabled
        :raises CheckoutTimeoutError: no connection within max wait
        :raises ServerSetUnavailableError: new connection failed
        :return LDAPConnection: connection, must be released
        """
        deadline = time.monotonic() + self.max_wait

        while True:
            slot = await self._reserve(deadline)
            if slot is None:
                return await self._checkout_new()

            try:
                await self._verify_checkout(slot)
            except LDAPClientError as err:
                log_pool.info(
                    f"Discarding {slot.connection.address} on checkout: {err}",
                )
                slot.state = SlotState.DEFUNCT
                slot.lock.release()
                await self._discard(slot)
                continue
            except BaseException:
                # interrupted check leaves connection in unknown state
                slot.state = SlotState.DEFUNCT
                slot.lock.release()
                await asyncio.shield(self._discard(slot))
                raise

            slot.lock.release()
            self.statistics.num_successful_checkouts += 1
            return slot.connection

    def _find_slot(self, connection: LDAPConnection) -> PooledConnection:
        for slot in self._slots:
            if slot.connection is connection:
                return slot
        raise ValueError(f"{connection!r} does not belong to the pool")

    async def release(
        self,
        connection: LDAPConnection,
        healthy: bool = True,
    ) -> None:
        """Give connection back.

        Unhealthy connection is closed and replaced, replacement
        failures are logged and counted.

        :param LDAPConnection connection: checked out connection
        :param bool healthy: caller observed no connection failure
        :raises ValueError: connection is not checked out from pool
        """
        slot = self._find_slot(connection)
        if slot.state is not SlotState.CHECKED_OUT:
            raise ValueError(f"{connection!r} is not checked out")

        expired = False

        async with slot.lock:
            # concurrent release of the same connection may have won
            if slot.state is not SlotState.CHECKED_OUT:
                raise ValueError(f"{connection!r} is not checked out")

            if healthy and not self._closed:
                try:
                    if not connection.is_connected:
                        raise HealthCheckError(
                            f"{connection.address} is not connected",
                        )
                    check = (
                        self.health_check.ensure_connection_valid_for_release
                    )
                    await check(connection)
                except LDAPClientError as err:
                    log_pool.info(
                        f"Released {connection.address} is invalid: {err}",
                    )
                    healthy = False
                except BaseException:
                    slot.state = SlotState.DEFUNCT
                    await asyncio.shield(self._discard(slot))
                    raise

                expired = (
                    healthy
                    and self.check_connection_age_on_release
                    and self._is_expired(connection)
                )

            if healthy and not expired and not self._closed:
                slot.state = SlotState.AVAILABLE
                self.statistics.num_released_valid += 1
                async with self._condition:
                    self._condition.notify()
                return

            slot.state = SlotState.DEFUNCT

        await self._discard(slot, expired=expired)
        await self._replace()

    async def _discard(
        self,
        slot: PooledConnection,
        expired: bool = False,
    ) -> None:
        async with self._condition:
            with suppress(ValueError):
                self._slots.remove(slot)
            self._condition.notify()

        if not self._closed:
            if expired:
                self.statistics.num_closed_expired += 1
            else:
                self.statistics.num_closed_defunct += 1

        await slot.connection.close()

    async def _replace(self) -> None:
        """Add new available connection if there is free capacity."""
        async with self._condition:
            if self._closed:
                return
            if len(self._slots) + self._pending >= self.max_connections:
                return
            self._pending += 1

        create = backoff.on_exception(
            backoff.constant,
            LDAPClientError,
            interval=self.settings.POOL_REPLACE_RETRY_INTERVAL_SECONDS,
            jitter=None,
            max_tries=self.settings.POOL_REPLACE_MAX_TRIES,
            raise_on_giveup=False,
            logger=None,
        )(self._create_connection)

        connection = None
        try:
            connection = await create()
        finally:
            async with self._condition:
                self._pending -= 1
                if connection is not None and not self._closed:
                    self._slots.append(PooledConnection(connection))
                self._condition.notify()

        if connection is None:
            self.statistics.num_replacement_failures += 1
            log_pool.warning(
                f"Replacement connection for {self!r} was not created",
            )
        elif self._closed:
            await connection.close()

    async def invoke_health_check(
        self,
        health_check: HealthCheck | None = None,
        check_for_expiration: bool = True,
    ) -> HealthCheckResult:
        """Examine idle connections, replace expired and defunct ones.

        Checked out and locked slots are skipped.

        :param HealthCheck | None health_check: overrides pool check
        :param bool check_for_expiration: count and replace old ones
        :return HealthCheckResult: sweep counters
        """
        health_check = health_check or self.health_check
        num_examined = num_expired = num_defunct = 0

        for slot in list(self._slots):
            if slot.state is not SlotState.AVAILABLE or slot.lock.locked():
                continue

            expired = False
            async with slot.lock:
                if slot.state is not SlotState.AVAILABLE:
                    continue

                num_examined += 1
                connection = slot.connection

                if not connection.is_connected:
                    slot.state = SlotState.DEFUNCT
                elif check_for_expiration and self._is_expired(connection):
                    slot.state = SlotState.DEFUNCT
                    expired = True
                else:
                    check = (
                        health_check.ensure_connection_valid_for_continued_use
                    )
                    try:
                        await check(connection)
                    except LDAPClientError as err:
                        log_pool.info(
                            f"{connection.address} failed health check: "
                            f"{err}",
                        )
                        slot.state = SlotState.DEFUNCT

            if slot.state is SlotState.DEFUNCT:
                if expired:
                    num_expired += 1
                else:
                    num_defunct += 1
                await self._discard(slot, expired=expired)
                await self._replace()
            elif slot.state is SlotState.AVAILABLE:
                # waiting checkout skips slots locked by the sweep
                await self._notify()

        result = HealthCheckResult(num_examined, num_expired, num_defunct)
        self.last_health_check_result = result
        log_pool.debug(f"Health check of {self!r}: {result}")
        return result

    async def _health_check_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.health_check_interval)
            try:
                await self.invoke_health_check()
            except Exception as exc:  # noqa: BLE001
                log_pool.exception(f"Health check sweep failed: {exc}")

    async def _is_valid_after_exception(
        self,
        connection: LDAPConnection,
        exc: LDAPClientError,
    ) -> bool:
        try:
            await self.health_check.ensure_connection_valid_after_exception(
                connection,
                exc,
            )
        except LDAPClientError:
            return False
        return True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[LDAPConnection]:
        """Checkout connection for the block, release it after.

        Connection is released as unhealthy when an error in the block
        shows the connection is unusable.
        """
        connection = await self.checkout()
        healthy = True
        try:
            yield connection
        except LDAPClientError as err:
            healthy = await self._is_valid_after_exception(connection, err)
            raise
        finally:
            await self.release(connection, healthy)

    async def process(
        self,
        request: BaseRequest,
    ) -> BaseResponse | SearchResult:
        """Process request on pooled connection.

        Request is retried once on another connection if the first
        one turns out to be unusable.

        :param BaseRequest request: any request
        :return BaseResponse | SearchResult: request result
        """
        retried = False

        while True:
            connection = await self.checkout()
            try:
                response = await request.process(connection)
            except LDAPClientError as err:
                healthy = await self._is_valid_after_exception(
                    connection,
                    err,
                )
                await self.release(connection, healthy)
                if healthy or retried:
                    raise
                retried = True
                log_pool.info(
                    f"Retrying {type(request).__name__} after "
                    f"{connection.address} failed: {err}",
                )
                continue

            await self.release(connection)
            return response

    async def close(self) -> None:
        """Close idle connections, checked out ones close on release."""
        if self._closed:
            return

        self._closed = True
        if self._health_task is not None:
            self._health_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None

        async with self._condition:
            idle = [
                s for s in self._slots if s.state is SlotState.AVAILABLE
            ]
            for slot in idle:
                self._slots.remove(slot)
            self._condition.notify_all()

        for slot in idle:
            await slot.connection.close()

        log_pool.info(f"Closed {self!r}")

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
