"""Client exceptions.

Copyright (c) 2025 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from enum import IntEnum

from ldap_client.errors import BaseDomainException
from ldap_client.ldap_codes import LDAPCodes


class ErrorCodes(IntEnum):
    """Error codes."""

    BASE_ERROR = 0
    DECODE_ERROR = 1
    PROTOCOL_ERROR = 2
    BIND_ERROR = 3
    UNSUPPORTED_CALLBACK_ERROR = 4
    CONNECTION_ERROR = 5
    OPERATION_ERROR = 6
    SERVER_SET_UNAVAILABLE_ERROR = 7
    POOL_EXHAUSTED_ERROR = 8
    CHECKOUT_TIMEOUT_ERROR = 9
    POOL_CLOSED_ERROR = 10
    HEALTH_CHECK_ERROR = 11
    FILTER_ERROR = 12


class LDAPClientError(BaseDomainException):
    """Base client error, carries an LDAP result code."""

    code: ErrorCodes = ErrorCodes.BASE_ERROR
    default_result_code: LDAPCodes = LDAPCodes.LOCAL_ERROR

    def __init__(
        self,
        message: str = "",
        result_code: LDAPCodes | None = None,
    ) -> None:
        """Set message and result code."""
        super().__init__(message)
        self.message = message
        self.result_code = (
            self.default_result_code if result_code is None else result_code
        )


class DecodeError(LDAPClientError):
    """Malformed BER data."""

    code: ErrorCodes = ErrorCodes.DECODE_ERROR
    default_result_code = LDAPCodes.DECODING_ERROR


class ProtocolError(LDAPClientError):
    """Decoded data does not form a valid LDAP element."""

    code: ErrorCodes = ErrorCodes.PROTOCOL_ERROR
    default_result_code = LDAPCodes.PROTOCOL_ERROR


class FilterError(LDAPClientError):
    """Filter can not be built or parsed."""

    code: ErrorCodes = ErrorCodes.FILTER_ERROR
    default_result_code = LDAPCodes.FILTER_ERROR


class BindError(LDAPClientError):
    """Bind can not be processed."""

    code: ErrorCodes = ErrorCodes.BIND_ERROR
    default_result_code = LDAPCodes.LOCAL_ERROR


class UnsupportedCallbackError(BindError):
    """Credential callback of unknown type."""

    code: ErrorCodes = ErrorCodes.UNSUPPORTED_CALLBACK_ERROR
    default_result_code = LDAPCodes.NOT_SUPPORTED


class LDAPConnectionError(LDAPClientError):
    """Connection is not established or was lost."""

    code: ErrorCodes = ErrorCodes.CONNECTION_ERROR
    default_result_code = LDAPCodes.SERVER_DOWN


class LDAPOperationError(LDAPClientError):
    """Server answered with non success result."""

    code: ErrorCodes = ErrorCodes.OPERATION_ERROR
    default_result_code = LDAPCodes.OTHER


class HealthCheckError(LDAPClientError):
    """Connection failed health verification."""

    code: ErrorCodes = ErrorCodes.HEALTH_CHECK_ERROR
    default_result_code = LDAPCodes.SERVER_DOWN


class ServerSetUnavailableError(LDAPClientError):
    """No candidate server produced a usable connection.

    ``causes`` keeps ``(address, error)`` pairs in the order the
    candidates were tried.
    """

    code: ErrorCodes = ErrorCodes.SERVER_SET_UNAVAILABLE_ERROR
    default_result_code = LDAPCodes.CONNECT_ERROR

    def __init__(
        self,
        message: str = "",
        causes: list[tuple[str, BaseException]] | None = None,
    ) -> None:
        """Aggregate candidate errors."""
        self.causes = list(causes or [])
        if self.causes:
            details = "; ".join(
                f"{address}: {err!r}" for address, err in self.causes
            )
            message = f"{message} ({details})" if message else details
        super().__init__(message)


class PoolExhaustedError(LDAPClientError):
    """All pool slots are busy and waiting is disabled."""

    code: ErrorCodes = ErrorCodes.POOL_EXHAUSTED_ERROR
    default_result_code = LDAPCodes.CONNECT_ERROR


class CheckoutTimeoutError(PoolExhaustedError):
    """No slot became available within the wait time."""

    code: ErrorCodes = ErrorCodes.CHECKOUT_TIMEOUT_ERROR
    default_result_code = LDAPCodes.TIMEOUT


class PoolClosedError(LDAPClientError):
    """Pool is closed."""

    code: ErrorCodes = ErrorCodes.POOL_CLOSED_ERROR
    default_result_code = LDAPCodes.CONNECT_ERROR
