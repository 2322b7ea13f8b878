"""Test connection pool.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import asyncio
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, Mock, patch

import pytest
import pytest_asyncio

from ldap_client.config import Settings
from ldap_client.connection import LDAPConnection
from ldap_client.exceptions import (
    CheckoutTimeoutError,
    LDAPConnectionError,
    LDAPOperationError,
    PoolClosedError,
    PoolExhaustedError,
    ServerSetUnavailableError,
)
from ldap_client.ldap_codes import LDAPCodes
from ldap_client.ldap_requests import SearchRequest
from ldap_client.objects import Scope
from ldap_client.pool import (
    GetEntryHealthCheck,
    HealthCheck,
    HealthCheckResult,
    LDAPConnectionPool,
    SlotState,
)
from ldap_client.server_set import FailoverServerSet
from tests.conftest import FakeLDAPServer


@pytest.fixture
def server_set(
    ldap_server: FakeLDAPServer,
    settings: Settings,
) -> FailoverServerSet:
    """Get server set of fake server."""
    return FailoverServerSet([("127.0.0.1", ldap_server.port)], settings)


@pytest_asyncio.fixture
async def pool(
    server_set: FailoverServerSet,
) -> AsyncIterator[LDAPConnectionPool]:
    """Get started pool with one initial connection and capacity 2."""
    pool = LDAPConnectionPool(server_set)
    await pool.start()
    yield pool
    await pool.close()


@pytest.mark.asyncio
async def test_checkout_and_release(pool: LDAPConnectionPool) -> None:
    """Test checkout takes idle connection, release returns it."""
    assert pool.size == 1
    assert pool.available_count == 1

    connection = await pool.checkout()

    assert connection.is_connected
    assert pool.checked_out_count == 1
    assert pool.available_count == 0

    await pool.release(connection)

    assert pool.available_count == 1
    assert pool.statistics.num_successful_checkouts == 1
    assert pool.statistics.num_released_valid == 1
    assert await pool.checkout() is connection


@pytest.mark.asyncio
async def test_new_connection_below_capacity(
    pool: LDAPConnectionPool,
) -> None:
    """Test pool grows up to capacity, then fails without waiting."""
    first = await pool.checkout()
    second = await pool.checkout()

    assert first is not second
    assert pool.size == 2
    assert pool.statistics.num_successful_connection_attempts == 2

    with pytest.raises(PoolExhaustedError) as exc_info:
        await pool.checkout()

    assert type(exc_info.value) is PoolExhaustedError
    assert pool.statistics.num_failed_checkouts == 1


@pytest.mark.asyncio
async def test_checkout_timeout(server_set: FailoverServerSet) -> None:
    """Test waiting checkout gives up after max wait."""
    pool = LDAPConnectionPool(server_set, max_connections=1, max_wait=0.1)
    await pool.start()
    await pool.checkout()

    with pytest.raises(CheckoutTimeoutError) as exc_info:
        await pool.checkout()

    assert exc_info.value.result_code == LDAPCodes.TIMEOUT
    await pool.close()


@pytest.mark.asyncio
async def test_waiter_gets_released_connection(
    server_set: FailoverServerSet,
) -> None:
    """Test waiting checkout is woken by release."""
    pool = LDAPConnectionPool(server_set, max_connections=1, max_wait=2)
    await pool.start()
    connection = await pool.checkout()

    waiter = asyncio.create_task(pool.checkout())
    await asyncio.sleep(0.05)
    assert not waiter.done()

    await pool.release(connection)

    assert await waiter is connection
    assert pool.statistics.num_checkouts_after_wait == 1
    await pool.close()


@pytest.mark.asyncio
async def test_release_unhealthy_replaces_connection(
    pool: LDAPConnectionPool,
) -> None:
    """Test connection released as unhealthy is closed and replaced."""
    connection = await pool.checkout()

    await pool.release(connection, healthy=False)

    assert not connection.is_connected
    assert pool.size == 1
    assert pool.available_count == 1
    assert pool.statistics.num_closed_defunct == 1

    replacement = await pool.checkout()
    assert replacement is not connection
    assert replacement.is_connected


@pytest.mark.asyncio
async def test_release_unknown_connection(
    pool: LDAPConnectionPool,
    ldap_server: FakeLDAPServer,
    settings: Settings,
) -> None:
    """Test only checked out pool connections can be released."""
    foreign = LDAPConnection(ldap_server.host, ldap_server.port, settings)

    with pytest.raises(ValueError, match="does not belong"):
        await pool.release(foreign)

    connection = await pool.checkout()
    await pool.release(connection)

    with pytest.raises(ValueError, match="not checked out"):
        await pool.release(connection)


@pytest.mark.asyncio
async def test_health_check_replaces_defunct(
    server_set: FailoverServerSet,
    ldap_server: FakeLDAPServer,
) -> None:
    """Test sweep counts and replaces lost connections."""
    pool = LDAPConnectionPool(
        server_set,
        health_check=GetEntryHealthCheck(),
        initial_connections=2,
    )
    await pool.start()
    old = [slot.connection for slot in pool._slots]

    await ldap_server.drop_connections()
    await asyncio.sleep(0.05)

    result = await pool.invoke_health_check()

    assert result == HealthCheckResult(2, 0, 2)
    assert result.num_valid == 0
    assert pool.last_health_check_result == result
    assert pool.size == 2
    assert all(s.state is SlotState.AVAILABLE for s in pool._slots)
    assert not {s.connection for s in pool._slots} & set(old)

    result = await pool.invoke_health_check()

    assert result == HealthCheckResult(2, 0, 0)
    assert result.num_valid == 2
    await pool.close()


@pytest.mark.asyncio
async def test_health_check_skips_checked_out(
    pool: LDAPConnectionPool,
) -> None:
    """Test connections in use are not examined."""
    connection = await pool.checkout()

    result = await pool.invoke_health_check()

    assert result.num_examined == 0
    await pool.release(connection)


@pytest.mark.asyncio
async def test_expired_connections(server_set: FailoverServerSet) -> None:
    """Test old connections are replaced by sweep and checkout."""
    pool = LDAPConnectionPool(server_set, max_connection_age=0.05)
    await pool.start()
    await asyncio.sleep(0.1)

    result = await pool.invoke_health_check(check_for_expiration=False)
    assert result == HealthCheckResult(1, 0, 0)

    old = pool._slots[0].connection
    result = await pool.invoke_health_check()

    assert result == HealthCheckResult(1, 1, 0)
    assert pool.statistics.num_closed_expired == 1
    assert pool._slots[0].connection is not old

    await asyncio.sleep(0.1)
    expired = pool._slots[0].connection
    connection = await pool.checkout()

    assert connection is not expired
    assert not expired.is_connected
    await pool.release(connection)
    await pool.close()


@pytest.mark.asyncio
async def test_checkout_discards_lost_connection(
    pool: LDAPConnectionPool,
    ldap_server: FakeLDAPServer,
) -> None:
    """Test checkout never returns a lost connection."""
    await ldap_server.drop_connections()
    await asyncio.sleep(0.05)

    connection = await pool.checkout()

    assert connection.is_connected
    assert await connection.get_entry("") is not None
    assert pool.statistics.num_closed_defunct == 1
    await pool.release(connection)


@pytest.mark.asyncio
async def test_process_retries_once(pool: LDAPConnectionPool) -> None:
    """Test request is retried on another connection after failure."""
    request = Mock(spec=SearchRequest)
    request.process = AsyncMock(
        side_effect=[LDAPConnectionError("lost"), "result"],
    )

    assert await pool.process(request) == "result"

    first, second = (c.args[0] for c in request.process.call_args_list)
    assert first is not second
    assert pool.statistics.num_closed_defunct == 1

    request.process = AsyncMock(
        side_effect=[LDAPConnectionError("lost"), LDAPConnectionError("")],
    )
    with pytest.raises(LDAPConnectionError):
        await pool.process(request)

    assert request.process.await_count == 2


@pytest.mark.asyncio
async def test_process_operation_error_not_retried(
    pool: LDAPConnectionPool,
) -> None:
    """Test server result errors keep connection and are not retried."""
    request = Mock(spec=SearchRequest)
    request.process = AsyncMock(
        side_effect=LDAPOperationError("no", LDAPCodes.NO_SUCH_OBJECT),
    )

    with pytest.raises(LDAPOperationError):
        await pool.process(request)

    assert request.process.await_count == 1
    assert pool.available_count == 1
    assert pool.statistics.num_closed_defunct == 0


@pytest.mark.asyncio
async def test_process_search(pool: LDAPConnectionPool) -> None:
    """Test search through pool."""
    result = await pool.process(
        SearchRequest(base_object="dc=md,dc=test", scope=Scope.BASE_OBJECT),
    )

    assert [e.object_name for e in result.entries] == ["dc=md,dc=test"]
    assert pool.available_count == 1


@pytest.mark.asyncio
async def test_connection_context(
    pool: LDAPConnectionPool,
    ldap_server: FakeLDAPServer,
) -> None:
    """Test context releases connection, lost one is replaced."""
    async with pool.connection() as connection:
        assert pool.checked_out_count == 1
        assert await connection.get_entry("") is not None

    assert pool.available_count == 1

    with pytest.raises(LDAPConnectionError):
        async with pool.connection() as connection:
            await ldap_server.drop_connections()
            await connection.get_entry("")

    assert pool.statistics.num_closed_defunct == 1
    assert pool.size == 1
    assert pool._slots[0].connection is not connection


@pytest.mark.asyncio
async def test_close(pool: LDAPConnectionPool) -> None:
    """Test closed pool refuses checkout and closes connections."""
    in_use = await pool.checkout()
    idle = await pool.checkout()
    await pool.release(idle)

    await pool.close()

    assert pool.is_closed
    assert not idle.is_connected
    with pytest.raises(PoolClosedError):
        await pool.checkout()

    await pool.release(in_use)
    assert not in_use.is_connected
    assert pool.size == 0


@pytest.mark.asyncio
async def test_start_fails_without_servers(settings: Settings) -> None:
    """Test pool can not start when no server is usable."""
    server = FakeLDAPServer()
    await server.start()
    port = server.port
    await server.stop()

    pool = LDAPConnectionPool(
        FailoverServerSet([("127.0.0.1", port)], settings),
    )

    with pytest.raises(ServerSetUnavailableError):
        await pool.start()

    assert pool.is_closed
    assert pool.statistics.num_failed_connection_attempts == 1


def test_pool_capacity_validation(server_set: FailoverServerSet) -> None:
    """Test invalid capacity options."""
    with pytest.raises(ValueError, match="capacity"):
        LDAPConnectionPool(server_set, max_connections=0)

    with pytest.raises(ValueError, match="exceed"):
        LDAPConnectionPool(server_set, initial_connections=3)


def test_health_check_result() -> None:
    """Test valid connections count."""
    assert HealthCheckResult(5, 1, 2).num_valid == 2
    assert HealthCheckResult().num_valid == 0


class StallingCheck(HealthCheck):
    """Check that never finishes while stalled."""

    def __init__(self) -> None:
        self.stalled = False

    async def _stall(self) -> None:
        if self.stalled:
            await asyncio.Event().wait()

    async def ensure_connection_valid_for_checkout(
        self,
        connection: LDAPConnection,
    ) -> None:
        await self._stall()

    async def ensure_connection_valid_for_release(
        self,
        connection: LDAPConnection,
    ) -> None:
        await self._stall()


class SlowReleaseCheck(HealthCheck):
    """Check that yields to other tasks on release."""

    async def ensure_connection_valid_for_release(
        self,
        connection: LDAPConnection,
    ) -> None:
        await asyncio.sleep(0.02)


async def _hang(*args: object) -> None:
    await asyncio.Event().wait()


async def _use_pool(
    pool: LDAPConnectionPool,
    in_use: set[LDAPConnection],
    rounds: int = 5,
) -> None:
    for _ in range(rounds):
        connection = await pool.checkout()
        assert connection not in in_use
        in_use.add(connection)
        assert await connection.get_entry("") is not None
        in_use.remove(connection)
        await pool.release(connection)


@pytest.mark.asyncio
async def test_concurrent_checkouts(server_set: FailoverServerSet) -> None:
    """Test no connection is handed to two callers at once."""
    pool = LDAPConnectionPool(server_set, max_connections=3, max_wait=5)
    await pool.start()
    in_use: set[LDAPConnection] = set()

    await asyncio.gather(*(_use_pool(pool, in_use) for _ in range(10)))

    assert pool.size <= 3
    assert pool.checked_out_count == 0
    assert pool._pending == 0
    assert not any(slot.lock.locked() for slot in pool._slots)
    assert pool.statistics.num_successful_checkouts == 50
    assert pool.statistics.num_released_valid == 50
    await pool.close()


@pytest.mark.asyncio
async def test_health_check_during_checkouts(
    server_set: FailoverServerSet,
) -> None:
    """Test sweep running beside checkouts skips connections in use."""
    pool = LDAPConnectionPool(
        server_set,
        health_check=GetEntryHealthCheck(),
        initial_connections=3,
        max_connections=3,
        max_wait=5,
    )
    await pool.start()
    in_use: set[LDAPConnection] = set()
    results: list[HealthCheckResult] = []

    async def sweep() -> None:
        for _ in range(10):
            results.append(await pool.invoke_health_check())
            await asyncio.sleep(0)

    await asyncio.gather(
        sweep(),
        *(_use_pool(pool, in_use) for _ in range(6)),
    )

    assert len(results) == 10
    assert all(r.num_defunct == r.num_expired == 0 for r in results)
    assert pool.size == 3
    assert all(s.state is SlotState.AVAILABLE for s in pool._slots)
    assert not any(slot.lock.locked() for slot in pool._slots)
    assert pool.statistics.num_closed_defunct == 0
    await pool.close()


@pytest.mark.asyncio
async def test_cancelled_new_checkout_frees_capacity(
    pool: LDAPConnectionPool,
    server_set: FailoverServerSet,
) -> None:
    """Test checkout cancelled while connecting gives capacity back."""
    first = await pool.checkout()

    with patch.object(server_set, "get_connection", _hang):
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(pool.checkout(), 0.05)

    assert pool._pending == 0

    second = await pool.checkout()

    assert second is not first
    assert pool.size == 2


@pytest.mark.asyncio
async def test_cancelled_new_checkout_wakes_waiter(
    server_set: FailoverServerSet,
) -> None:
    """Test waiter gets capacity left by cancelled checkout."""
    pool = LDAPConnectionPool(
        server_set,
        initial_connections=0,
        max_connections=1,
        max_wait=2,
    )
    await pool.start()

    with patch.object(server_set, "get_connection", _hang):
        stuck = asyncio.create_task(pool.checkout())
        await asyncio.sleep(0.05)

    waiter = asyncio.create_task(pool.checkout())
    await asyncio.sleep(0.05)
    assert not waiter.done()

    stuck.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stuck

    connection = await asyncio.wait_for(waiter, 1)

    assert connection.is_connected
    assert pool._pending == 0
    await pool.release(connection)
    await pool.close()


@pytest.mark.asyncio
async def test_cancelled_checkout_check_discards_slot(
    server_set: FailoverServerSet,
) -> None:
    """Test connection whose checkout check was cancelled is dropped."""
    check = StallingCheck()
    pool = LDAPConnectionPool(server_set, health_check=check)
    await pool.start()
    stalled = pool._slots[0].connection
    check.stalled = True

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(pool.checkout(), 0.05)

    assert pool.size == 0
    assert not stalled.is_connected
    assert pool.statistics.num_closed_defunct == 1

    check.stalled = False
    connection = await pool.checkout()

    assert connection is not stalled
    assert pool.checked_out_count == 1
    await pool.release(connection)
    await pool.close()


@pytest.mark.asyncio
async def test_cancelled_release_check_discards_slot(
    server_set: FailoverServerSet,
) -> None:
    """Test connection whose release check was cancelled is dropped."""
    check = StallingCheck()
    pool = LDAPConnectionPool(server_set, health_check=check)
    await pool.start()
    connection = await pool.checkout()
    check.stalled = True

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(pool.release(connection), 0.05)

    assert pool.size == 0
    assert not connection.is_connected

    check.stalled = False
    replacement = await pool.checkout()

    assert replacement is not connection
    await pool.release(replacement)
    await pool.close()


@pytest.mark.asyncio
async def test_concurrent_release_of_same_connection(
    server_set: FailoverServerSet,
) -> None:
    """Test only one of two simultaneous releases succeeds."""
    pool = LDAPConnectionPool(server_set, health_check=SlowReleaseCheck())
    await pool.start()
    connection = await pool.checkout()

    results = await asyncio.gather(
        pool.release(connection),
        pool.release(connection),
        return_exceptions=True,
    )

    assert results[0] is None
    assert isinstance(results[1], ValueError)
    assert "not checked out" in str(results[1])
    assert pool.statistics.num_released_valid == 1
    assert pool.available_count == 1
    await pool.close()


@pytest.mark.asyncio
async def test_server_set_check_applies_to_pool(
    ldap_server: FakeLDAPServer,
    settings: Settings,
) -> None:
    """Test pool keeps server set check for new connections."""
    server_set = FailoverServerSet(
        [("127.0.0.1", ldap_server.port)],
        settings,
        health_check=GetEntryHealthCheck("cn=missing,dc=md,dc=test"),
    )

    with pytest.raises(ServerSetUnavailableError):
        await LDAPConnectionPool(server_set).start()

    with pytest.raises(ServerSetUnavailableError):
        await LDAPConnectionPool(
            server_set,
            health_check=GetEntryHealthCheck(),
        ).start()

    assert ldap_server.requests


@pytest.mark.asyncio
async def test_pool_and_server_set_checks_combined(
    server_set: FailoverServerSet,
    ldap_server: FakeLDAPServer,
) -> None:
    """Test new connection passes both server set and pool checks."""
    server_set.health_check = GetEntryHealthCheck()
    pool = LDAPConnectionPool(
        server_set,
        health_check=GetEntryHealthCheck("cn=missing,dc=md,dc=test"),
    )

    with pytest.raises(ServerSetUnavailableError):
        await pool.start()

    pool = LDAPConnectionPool(server_set, health_check=GetEntryHealthCheck())
    await pool.start()

    searches = [
        r for r in ldap_server.requests if isinstance(r, SearchRequest)
    ]
    assert len(searches) == 4
    await pool.close()
