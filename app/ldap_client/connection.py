"""Single asyncio connection to LDAP server.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import asyncio
import time
from contextlib import suppress
from types import TracebackType
from typing import Self

from ldap_client.asn1parser import LDAPOID, compute_message_size
from ldap_client.attributes import Entry, Modification
from ldap_client.config import Settings
from ldap_client.exceptions import (
    DecodeError,
    LDAPConnectionError,
    ProtocolError,
)
from ldap_client.ldap_codes import LDAPCodes
from ldap_client.ldap_requests import (
    AddRequest,
    BaseRequest,
    BindRequest,
    ModifyRequest,
    SearchRequest,
    SearchResult,
    UnbindRequest,
)
from ldap_client.ldap_responses import (
    BaseResponse,
    ExtendedResponse,
    LDAPResult,
    SearchResultEntry,
    SearchResultReference,
)
from ldap_client.log import log_connection
from ldap_client.messages import (
    MAX_MESSAGE_ID,
    LDAPRequestMessage,
    LDAPResponseMessage,
)
from ldap_client.objects import Scope

_INTERMEDIATE = (SearchResultEntry, SearchResultReference)


class LDAPConnection:
    """Client connection, one operation in flight at a time."""

    def __init__(
        self,
        host: str,
        port: int = 389,
        settings: Settings | None = None,
    ) -> None:
        """Set address and settings, does not connect.

        :param str host: server host
        :param int port: server port
        :param Settings | None settings: client settings
        """
        self.host = host
        self.port = port
        self.settings = settings or Settings()
        self.connected_at: float | None = None
        self.last_bind_request: BindRequest | None = None

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._buffer = bytearray()
        self._message_id = 0
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_connected(self) -> bool:
        return (
            self._writer is not None
            and self._reader is not None
            and not self._writer.is_closing()
            and not self._reader.at_eof()
        )

    @property
    def age(self) -> float:
        """Seconds since connection was established."""
        if self.connected_at is None:
            return 0.0
        return time.monotonic() - self.connected_at

    def __repr__(self) -> str:
        state = "connected" if self.is_connected else "closed"
        return f"<LDAPConnection {self.address} {state}>"

    async def connect(self, timeout: float | None = None) -> None:
        """Open TCP connection.

        :raises LDAPConnectionError: refused, unreachable or timed out
        """
        timeout = timeout or self.settings.CONNECT_TIMEOUT_SECONDS
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout,
            )
        except TimeoutError as err:
            raise LDAPConnectionError(
                f"Connect to {self.address} timed out",
                LDAPCodes.TIMEOUT,
            ) from err
        except OSError as err:
            raise LDAPConnectionError(
                f"Connect to {self.address} failed: {err}",
                LDAPCodes.CONNECT_ERROR,
            ) from err

        self._buffer.clear()
        self._message_id = 0
        self.connected_at = time.monotonic()
        log_connection.debug(f"Connected to {self.address}")

    def next_message_id(self) -> int:
        self._message_id = self._message_id % MAX_MESSAGE_ID + 1
        return self._message_id

    async def _read_message(self) -> LDAPResponseMessage:
        """Read chunks until one complete message is buffered."""
        assert self._reader is not None  # noqa: S101

        while True:
            computed_size = compute_message_size(self._buffer)
            if len(self._buffer) >= computed_size:
                break

            data = await self._reader.read(self.settings.TCP_PACKET_SIZE)
            if not data:
                raise LDAPConnectionError(
                    f"Connection to {self.address} closed by server",
                )
            self._buffer.extend(data)

        size = int(computed_size)
        message = bytes(self._buffer[:size])
        del self._buffer[:size]
        return LDAPResponseMessage.from_bytes(message)

    async def _handle_unsolicited(self, message: LDAPResponseMessage) -> None:
        context = message.context
        if (
            isinstance(context, ExtendedResponse)
            and context.response_name == LDAPOID.NOTICE_OF_DISCONNECTION
        ):
            await self.abort()
            raise LDAPConnectionError(
                f"Server {self.address} closed connection: "
                f"{context.error_message}",
                LDAPCodes.SERVER_DOWN,
            )
        log_connection.warning(
            f"Unsolicited {message.name} from {self.address} ignored",
        )

    async def _collect(self, request: BaseRequest) -> list[BaseResponse]:
        responses: list[BaseResponse] = []

        while True:
            message = await self._read_message()

            if message.message_id == 0:
                await self._handle_unsolicited(message)
                continue

            if message.message_id != request.message_id:
                log_connection.warning(
                    f"Response to unknown message {message.message_id} "
                    f"from {self.address} dropped",
                )
                continue

            responses.append(message.context)

            if isinstance(message.context, _INTERMEDIATE):
                continue

            expected = request.RESPONSE_TYPE
            if expected is not None and not isinstance(
                message.context,
                expected,
            ):
                raise ProtocolError(
                    f"{type(request).__name__} answered with {message.name}",
                )
            return responses

    async def exchange(self, request: BaseRequest) -> list[BaseResponse]:
        """Send request and read all responses to it.

        Intermediate search responses come first, final response last.

        :param BaseRequest request: request, message id gets assigned
        :raises LDAPConnectionError: not connected, lost or timed out
        :raises DecodeError: malformed response, connection is closed
        :raises ProtocolError: unexpected response, connection is closed
        :return list[BaseResponse]: responses
        """
        async with self._lock:
            if not self.is_connected:
                raise LDAPConnectionError(f"Not connected to {self.address}")

            assert self._writer is not None  # noqa: S101

            request.message_id = self.next_message_id()
            message = LDAPRequestMessage.from_request(request)

            if self.settings.DEBUG:
                log_connection.debug(
                    f"{self.address} <- #{message.message_id} "
                    f"{request.to_code()}",
                )

            try:
                self._writer.write(message.encode())
                await self._writer.drain()
            except (ConnectionError, OSError) as err:
                await self.abort()
                raise LDAPConnectionError(
                    f"Write to {self.address} failed: {err}",
                ) from err

            if request.RESPONSE_TYPE is None:
                return []

            timeout = (
                request.response_timeout
                or self.settings.RESPONSE_TIMEOUT_SECONDS
            )

            try:
                async with asyncio.timeout(timeout):
                    return await self._collect(request)
            except TimeoutError as err:
                await self.abort()
                raise LDAPConnectionError(
                    f"No response from {self.address} in {timeout}s",
                    LDAPCodes.TIMEOUT,
                ) from err
            except (DecodeError, ProtocolError):
                await self.abort()
                raise
            except (ConnectionError, OSError) as err:
                await self.abort()
                raise LDAPConnectionError(
                    f"Connection to {self.address} lost: {err}",
                ) from err
            except LDAPConnectionError:
                await self.abort()
                raise

    async def bind(self, request: BindRequest) -> LDAPResult:
        """Authenticate connection, remember request for rebind."""
        response = await request.process(self)
        self.last_bind_request = request
        return response  # type: ignore[return-value]

    async def add(self, request: AddRequest) -> LDAPResult:
        return await request.process(self)  # type: ignore[return-value]

    async def modify(
        self,
        dn: str,
        *changes: Modification,
    ) -> LDAPResult:
        request = ModifyRequest(object=dn, changes=list(changes))
        return await request.process(self)  # type: ignore[return-value]

    async def search(self, request: SearchRequest) -> SearchResult:
        return await request.process(self)

    async def get_entry(self, dn: str, *attributes: str) -> Entry | None:
        """Read single entry with base scope search.

        :return Entry | None: entry or None if it does not exist
        """
        request = SearchRequest(
            base_object=dn,
            scope=Scope.BASE_OBJECT,
            size_limit=1,
            attributes=list(attributes),
        )
        responses = await self.exchange(request)
        done = responses[-1]
        assert isinstance(done, LDAPResult)  # noqa: S101

        done.raise_for_result(LDAPCodes.NO_SUCH_OBJECT)
        for response in responses:
            if isinstance(response, SearchResultEntry):
                return response.to_entry()
        return None

    async def abort(self) -> None:
        """Close transport without unbind."""
        writer, self._writer, self._reader = self._writer, None, None
        self._buffer.clear()
        if writer is None:
            return
        writer.close()
        with suppress(ConnectionError, OSError):
            await writer.wait_closed()

    async def close(self) -> None:
        """Send unbind if possible and close transport."""
        if self.is_connected:
            with suppress(LDAPConnectionError):
                await self.exchange(UnbindRequest())
        await self.abort()
        log_connection.debug(f"Closed connection to {self.address}")

    async def __aenter__(self) -> Self:
        if not self.is_connected:
            await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
