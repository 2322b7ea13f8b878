"""Test health checks.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import pytest

from ldap_client.connection import LDAPConnection
from ldap_client.exceptions import (
    HealthCheckError,
    LDAPConnectionError,
    LDAPOperationError,
)
from ldap_client.health_check import (
    AggregateHealthCheck,
    GetEntryHealthCheck,
    HealthCheck,
)
from ldap_client.ldap_codes import LDAPCodes
from tests.conftest import USER_DN, FakeLDAPServer


@pytest.mark.asyncio
async def test_get_entry_check(connection: LDAPConnection) -> None:
    """Test existing entry passes, missing one fails."""
    await GetEntryHealthCheck(USER_DN).ensure_new_connection_valid(connection)

    with pytest.raises(HealthCheckError) as exc_info:
        await GetEntryHealthCheck(
            "cn=missing,dc=md,dc=test",
        ).ensure_new_connection_valid(connection)

    assert exc_info.value.result_code == LDAPCodes.NO_SUCH_OBJECT


@pytest.mark.asyncio
async def test_get_entry_check_timeout(
    connection: LDAPConnection,
    ldap_server: FakeLDAPServer,
) -> None:
    """Test slow entry read fails check."""
    ldap_server.search_delay = 1

    with pytest.raises(HealthCheckError) as exc_info:
        await GetEntryHealthCheck(
            max_response_time=0.1,
        ).ensure_connection_valid_for_continued_use(connection)

    assert exc_info.value.result_code == LDAPCodes.TIMEOUT


@pytest.mark.asyncio
async def test_get_entry_check_hooks(
    connection: LDAPConnection,
    ldap_server: FakeLDAPServer,
) -> None:
    """Test disabled hooks send nothing."""
    check = GetEntryHealthCheck(invoke_on_create=False)

    await check.ensure_new_connection_valid(connection)
    await check.ensure_connection_valid_for_checkout(connection)
    await check.ensure_connection_valid_for_release(connection)
    assert ldap_server.requests == []

    await check.ensure_connection_valid_for_continued_use(connection)
    assert len(ldap_server.requests) == 1


@pytest.mark.asyncio
async def test_check_after_exception(connection: LDAPConnection) -> None:
    """Test only connection errors make connection unusable."""
    check = HealthCheck()

    await check.ensure_connection_valid_after_exception(
        connection,
        LDAPOperationError("no", LDAPCodes.NO_SUCH_OBJECT),
    )

    with pytest.raises(HealthCheckError):
        await check.ensure_connection_valid_after_exception(
            connection,
            LDAPConnectionError("lost"),
        )


@pytest.mark.asyncio
async def test_aggregate_check(connection: LDAPConnection) -> None:
    """Test aggregate fails when any of its checks fails."""
    passing = AggregateHealthCheck(HealthCheck(), GetEntryHealthCheck())
    failing = AggregateHealthCheck(
        GetEntryHealthCheck(),
        GetEntryHealthCheck("cn=missing,dc=md,dc=test"),
    )

    await passing.ensure_new_connection_valid(connection)

    with pytest.raises(HealthCheckError):
        await failing.ensure_new_connection_valid(connection)

    assert repr(passing) == (
        "AggregateHealthCheck(HealthCheck(), GetEntryHealthCheck(entry_dn=''))"
    )
