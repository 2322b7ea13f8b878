"""Test main config.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import suppress

import pytest
import pytest_asyncio

from ldap_client.asn1parser import LDAPOID, compute_message_size
from ldap_client.attributes import Attribute, Entry
from ldap_client.config import Settings
from ldap_client.connection import LDAPConnection
from ldap_client.ldap_codes import LDAPCodes
from ldap_client.ldap_requests import (
    AddRequest,
    BaseRequest,
    ModifyRequest,
    SASLBindRequest,
    SearchRequest,
    SimpleBindRequest,
    UnbindRequest,
)
from ldap_client.ldap_responses import (
    AddResponse,
    BaseResponse,
    BindResponse,
    ExtendedResponse,
    ModifyResponse,
    SearchResultDone,
    SearchResultEntry,
)
from ldap_client.messages import LDAPRequestMessage, LDAPResponseMessage
from ldap_client.objects import Operation

USER_DN = "cn=user0,ou=users,dc=md,dc=test"
USER_PASSWORD = "Password123"  # noqa: S105


def default_entries() -> list[Entry]:
    return [
        Entry(dn="", attributes=[Attribute("objectClass", "top")]),
        Entry(
            dn="dc=md,dc=test",
            attributes=[Attribute("objectClass", "top", "domain")],
        ),
        Entry(
            dn=USER_DN,
            attributes=[
                Attribute("objectClass", "top", "user"),
                Attribute("cn", "user0"),
            ],
        ),
    ]


class FakeLDAPServer:
    """In-process LDAP server answering with the client codec.

    Keeps entries in memory, records every decoded request and can
    drop or notify its clients to emulate server side failures.
    """

    def __init__(
        self,
        entries: list[Entry] | None = None,
        accounts: dict[str, str] | None = None,
    ) -> None:
        """Set entries and simple bind accounts."""
        self.entries = {
            entry.dn.lower(): entry
            for entry in (default_entries() if entries is None else entries)
        }
        self.accounts = (
            {USER_DN: USER_PASSWORD} if accounts is None else accounts
        )
        self.requests: list[BaseRequest] = []
        self.search_delay = 0.0
        self.host = "127.0.0.1"
        self.port = 0

        self._server: asyncio.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def connection_count(self) -> int:
        return len(self._writers)

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle,
            self.host,
            self.port,
        )
        self.port = self._server.sockets[0].getsockname()[1]

    async def drop_connections(self) -> None:
        """Close every client transport without notice."""
        writers, self._writers = self._writers, set()
        for writer in writers:
            writer.close()
            with suppress(ConnectionError):
                await writer.wait_closed()

    async def notify_disconnection(self) -> None:
        """Send unsolicited notice of disconnection to every client."""
        notice = ExtendedResponse(
            result_code=LDAPCodes.UNAVAILABLE,
            error_message="Server is shutting down",
            response_name=LDAPOID.NOTICE_OF_DISCONNECTION,
        )
        for writer in list(self._writers):
            writer.write(self._encode(0, notice))
            with suppress(ConnectionError):
                await writer.drain()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self.drop_connections()
        await self._server.wait_closed()
        self._server = None

    @staticmethod
    def _encode(message_id: int, response: BaseResponse) -> bytes:
        return LDAPResponseMessage(
            messageID=message_id,
            protocolOP=response.PROTOCOL_OP,
            context=response,
        ).encode()

    async def _handle(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._writers.add(writer)
        buffer = bytearray()

        try:
            while True:
                size = compute_message_size(buffer)
                if len(buffer) < size:
                    data = await reader.read(4096)
                    if not data:
                        break
                    buffer.extend(data)
                    continue

                message = LDAPRequestMessage.from_bytes(
                    bytes(buffer[: int(size)]),
                )
                del buffer[: int(size)]
                self.requests.append(message.context)

                if isinstance(message.context, UnbindRequest):
                    break

                for response in await self.respond(message.context):
                    writer.write(self._encode(message.message_id, response))
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    async def respond(self, request: BaseRequest) -> list[BaseResponse]:
        match request:
            case SimpleBindRequest():
                password = request.password.get_secret_value()
                if (
                    request.is_anonymous()
                    or self.accounts.get(request.name) == password
                ):
                    return [BindResponse(result_code=LDAPCodes.SUCCESS)]
                return [
                    BindResponse(
                        result_code=LDAPCodes.INVALID_CREDENTIALS,
                        error_message="Invalid credentials",
                    ),
                ]
            case SASLBindRequest():
                return [
                    BindResponse(
                        result_code=LDAPCodes.AUTH_METHOD_NOT_SUPPORTED,
                    ),
                ]
            case SearchRequest():
                return await self._search(request)
            case AddRequest():
                return [self._add(request)]
            case ModifyRequest():
                return [self._modify(request)]
        return []

    async def _search(self, request: SearchRequest) -> list[BaseResponse]:
        if self.search_delay:
            await asyncio.sleep(self.search_delay)

        entry = self.entries.get(request.base_object.lower())
        if entry is None:
            return [SearchResultDone(result_code=LDAPCodes.NO_SUCH_OBJECT)]

        attributes = [
            attr
            for attr in entry.attributes
            if not request.attributes
            or attr.l_name in {a.lower() for a in request.attributes}
        ]
        return [
            SearchResultEntry(
                object_name=entry.dn,
                partial_attributes=attributes,
            ),
            SearchResultDone(result_code=LDAPCodes.SUCCESS),
        ]

    def _add(self, request: AddRequest) -> AddResponse:
        if request.entry.lower() in self.entries:
            return AddResponse(result_code=LDAPCodes.ENTRY_ALREADY_EXISTS)
        self.entries[request.entry.lower()] = request.to_entry()
        return AddResponse(result_code=LDAPCodes.SUCCESS)

    def _modify(self, request: ModifyRequest) -> ModifyResponse:
        entry = self.entries.get(request.object.lower())
        if entry is None:
            return ModifyResponse(result_code=LDAPCodes.NO_SUCH_OBJECT)

        for change in request.changes:
            current = entry.get_attribute(change.name)
            match change.operation:
                case Operation.ADD if current is not None:
                    current.values.extend(change.values)
                case Operation.ADD | Operation.REPLACE:
                    entry.attributes = [
                        a for a in entry.attributes if a != current
                    ]
                    if change.values:
                        entry.attributes.append(
                            change.attribute.model_copy(deep=True),
                        )
                case Operation.DELETE if current is not None:
                    if change.values:
                        current.values = [
                            v for v in current.values if v not in change.values
                        ]
                    else:
                        entry.attributes.remove(current)
                case _:
                    return ModifyResponse(
                        result_code=LDAPCodes.UNWILLING_TO_PERFORM,
                    )

        return ModifyResponse(result_code=LDAPCodes.SUCCESS)


@pytest.fixture
def settings() -> Settings:
    """Get settings with short timeouts."""
    return Settings(
        CONNECT_TIMEOUT_SECONDS=2,
        RESPONSE_TIMEOUT_SECONDS=2,
        SERVER_SET_DEADLINE_SECONDS=5,
        POOL_INITIAL_CONNECTIONS=1,
        POOL_MAX_CONNECTIONS=2,
        POOL_REPLACE_MAX_TRIES=1,
        POOL_REPLACE_RETRY_INTERVAL_SECONDS=0,
        HEALTH_CHECK_INTERVAL_SECONDS=3600,
    )


@pytest_asyncio.fixture
async def ldap_server() -> AsyncIterator[FakeLDAPServer]:
    """Get running fake server."""
    server = FakeLDAPServer()
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def second_ldap_server() -> AsyncIterator[FakeLDAPServer]:
    """Get another running fake server."""
    server = FakeLDAPServer()
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def connection(
    ldap_server: FakeLDAPServer,
    settings: Settings,
) -> AsyncIterator[LDAPConnection]:
    """Get connection to fake server."""
    conn = LDAPConnection(ldap_server.host, ldap_server.port, settings)
    await conn.connect()
    yield conn
    await conn.close()
