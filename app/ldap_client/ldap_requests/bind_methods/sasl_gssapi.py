"""Sasl GSSAPI bind request.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import atexit
import os
import tempfile
from collections.abc import Sequence
from contextlib import suppress
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING, Any, Self

import gssapi
import gssapi.raw
from pydantic import BaseModel, Field, PrivateAttr, SecretStr

from ldap_client.config import Settings
from ldap_client.exceptions import BindError, UnsupportedCallbackError
from ldap_client.ldap_codes import LDAPCodes
from ldap_client.ldap_responses import BindResponse
from ldap_client.log import log_bind

from ..bind import SASLBindRequest
from .callbacks import (
    LanguageCallback,
    NameCallback,
    PasswordCallback,
    RealmCallback,
)

if TYPE_CHECKING:
    from ldap_client.connection import LDAPConnection

GSSAPI_MECHANISM_NAME = "GSSAPI"
CONFIG_FILE_PREFIX = "GSSAPIBindRequest-JAAS-Config-"
DEFAULT_KRB5_CONFIG = "/etc/krb5.conf"

ENV_CONFIG_FILE = "KRB5_CONFIG"
ENV_TICKET_CACHE = "KRB5CCNAME"
ENV_CLIENT_KEYTAB = "KRB5_CLIENT_KTNAME"
ENV_TRACE = "KRB5_TRACE"

# rendered config content -> path of transient file
_config_files: dict[str, str] = {}


class GSSAPISL(IntEnum):
    """GSSAPI security layers, described in in RFC4752 section 3.3."""

    NO_SECURITY = 1
    INTEGRITY_PROTECTION = 2
    CONFIDENTIALITY = 4


class SASLQualityOfProtection(StrEnum):
    """SASL QoP values, weakest first."""

    AUTH = "auth"
    AUTH_INT = "auth-int"
    AUTH_CONF = "auth-conf"

    @property
    def security_layer(self) -> GSSAPISL:
        return _QOP_LAYERS[self]


_QOP_LAYERS = {
    SASLQualityOfProtection.AUTH: GSSAPISL.NO_SECURITY,
    SASLQualityOfProtection.AUTH_INT: GSSAPISL.INTEGRITY_PROTECTION,
    SASLQualityOfProtection.AUTH_CONF: GSSAPISL.CONFIDENTIALITY,
}


class GSSAPIBindRequestProperties(BaseModel):
    """Options of a GSSAPI bind.

    ``config_file_path`` is generated from ``gssapi_login.conf`` template
    when not set, options that end up in the file produce different
    files. ``suppressed_system_properties`` lists environment variable
    names the request must not touch.
    """

    authentication_id: str | None = None
    authorization_id: str | None = None
    password: SecretStr | None = None
    realm: str | None = None
    kdc_address: str | None = None
    service_principal_protocol: str = Field("ldap", min_length=1)
    config_file_path: str | None = None
    refresh_krb5_config: bool = False
    use_key_tab: bool = False
    key_tab_path: str | None = None
    use_ticket_cache: bool = True
    ticket_cache_path: str | None = None
    require_cached_credentials: bool = False
    renew_tgt: bool = False
    allowed_qop: list[SASLQualityOfProtection] = Field(
        default_factory=lambda: [SASLQualityOfProtection.AUTH],
        min_length=1,
    )
    suppressed_system_properties: set[str] = Field(default_factory=set)
    sasl_client_server_name: str | None = None
    is_initiator: bool | None = None
    enable_gssapi_debugging: bool = False
    jaas_client_name: str = Field("GSSAPIBindRequest", min_length=1)
    use_subject_credentials_only: bool = True


class GSSAPIBindRequest(SASLBindRequest):
    """Kerberos bind through SASL GSSAPI, RFC 4752.

    1. Credentials are taken from ticket cache, keytab, or obtained
       with password answered through callbacks.
    2. Security context steps are sent as SASL bind round trips
       until the context is established.
    3. Server wraps 4 octets: offered layers bitmask and max buffer
       size. Client answers with chosen layer, its buffer size and
       authorization id.

    The same request object must not run two binds at once.
    """

    mechanism: str = GSSAPI_MECHANISM_NAME
    properties: GSSAPIBindRequestProperties = Field(
        default_factory=GSSAPIBindRequestProperties,
    )

    _connection: Any = PrivateAttr(None)
    _credentials: Any = PrivateAttr(None)
    _negotiated_qop: SASLQualityOfProtection | None = PrivateAttr(None)

    @property
    def negotiated_qop(self) -> SASLQualityOfProtection | None:
        """QoP chosen by the last successful bind."""
        return self._negotiated_qop

    def handle_callbacks(self, callbacks: Sequence[object]) -> None:
        """Answer credential callbacks in order.

        :raises BindError: password requested but not configured
        :raises UnsupportedCallbackError: unknown callback
        """
        properties = self.properties

        for callback in callbacks:
            match callback:
                case NameCallback():
                    callback.name = properties.authentication_id
                case PasswordCallback():
                    if properties.password is None:
                        raise BindError(
                            "Password is requested but none is configured",
                        )
                    callback.password = properties.password.get_secret_value()
                case RealmCallback():
                    callback.text = properties.realm or callback.default_text
                case LanguageCallback():
                    continue
                case _:
                    raise UnsupportedCallbackError(
                        f"Unsupported callback {type(callback).__name__}",
                    )

    async def render_config(self, settings: Settings) -> str:
        template = settings.TEMPLATES.get_template("gssapi_login.conf")
        return await template.render_async(p=self.properties)

    async def get_config_file_path(self, settings: Settings) -> str:
        """Get configured path or write transient config file.

        Files are reused while rendered content stays the same and
        removed on interpreter exit.

        :raises BindError: file can not be written
        """
        if self.properties.config_file_path:
            return self.properties.config_file_path

        content = await self.render_config(settings)
        if path := _config_files.get(content):
            return path

        try:
            with tempfile.NamedTemporaryFile(
                "w",
                prefix=CONFIG_FILE_PREFIX,
                suffix=".conf",
                delete=False,
            ) as file:
                file.write(content)
        except OSError as err:
            raise BindError(f"Cannot create login config: {err}") from err

        atexit.register(_remove_file, file.name)
        _config_files[content] = file.name
        log_bind.debug(f"Created login config {file.name}")
        return file.name

    def export_environment(self, config_file_path: str) -> None:
        """Point Kerberos library to files of this request."""
        properties = self.properties

        if properties.config_file_path:
            config = config_file_path
        else:
            config = f"{config_file_path}:{DEFAULT_KRB5_CONFIG}"

        values: dict[str, str | None] = {ENV_CONFIG_FILE: config}

        if properties.use_ticket_cache and properties.ticket_cache_path:
            values[ENV_TICKET_CACHE] = properties.ticket_cache_path

        if properties.use_key_tab and properties.key_tab_path:
            values[ENV_CLIENT_KEYTAB] = properties.key_tab_path

        values[ENV_TRACE] = (
            "/dev/stderr" if properties.enable_gssapi_debugging else None
        )

        for name, value in values.items():
            if name in properties.suppressed_system_properties:
                continue
            if value is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = value

    def _client_name(self) -> gssapi.Name | None:
        authentication_id = self.properties.authentication_id
        if not authentication_id:
            return None
        return gssapi.Name(
            authentication_id,
            gssapi.NameType.kerberos_principal,
        )

    @property
    def _usage(self) -> str:
        return "both" if self.properties.is_initiator is False else "initiate"

    def _acquire_with_password(self) -> gssapi.Credentials:
        name_callback = NameCallback()
        realm_callback = RealmCallback()
        password_callback = PasswordCallback()
        self.handle_callbacks(
            [name_callback, realm_callback, password_callback],
        )

        if not name_callback.name:
            raise BindError("Authentication id is required for password login")

        principal = name_callback.name
        if "@" not in principal and realm_callback.text:
            principal = f"{principal}@{realm_callback.text}"

        result = gssapi.raw.acquire_cred_with_password(
            gssapi.Name(principal, gssapi.NameType.kerberos_principal),
            (password_callback.password or "").encode(),
            usage=self._usage,
        )
        return gssapi.Credentials(result.creds)

    def acquire_credentials(self) -> gssapi.Credentials:
        """Get initiator credentials.

        Ticket cache goes first, then keytab, then password.

        :raises BindError: nothing usable
        """
        if self._credentials is not None:
            return self._credentials

        properties = self.properties
        name = self._client_name()

        try:
            if properties.use_ticket_cache:
                store = None
                if properties.ticket_cache_path:
                    store = {"ccache": properties.ticket_cache_path}
                try:
                    self._credentials = gssapi.Credentials(
                        name=name,
                        usage=self._usage,
                        store=store,
                    )
                    return self._credentials
                except gssapi.exceptions.GSSError as err:
                    if properties.require_cached_credentials:
                        raise BindError(
                            f"No cached credentials: {err}",
                        ) from err
                    log_bind.debug(f"Ticket cache not usable: {err}")

            if properties.use_key_tab:
                store = None
                if properties.key_tab_path:
                    store = {"client_keytab": properties.key_tab_path}
                try:
                    self._credentials = gssapi.Credentials(
                        name=name,
                        usage=self._usage,
                        store=store,
                    )
                    return self._credentials
                except gssapi.exceptions.GSSError as err:
                    log_bind.debug(f"Keytab not usable: {err}")

            if properties.require_cached_credentials:
                raise BindError("Cached credentials are required")

            self._credentials = self._acquire_with_password()
            return self._credentials

        except gssapi.exceptions.GSSError as err:
            raise BindError(f"Cannot acquire credentials: {err}") from err

    def _security_context(self, host: str) -> gssapi.SecurityContext:
        properties = self.properties
        server_name = properties.sasl_client_server_name or host
        target = gssapi.Name(
            f"{properties.service_principal_protocol}@{server_name}",
            gssapi.NameType.hostbased_service,
        )
        credentials = self.acquire_credentials()
        return gssapi.SecurityContext(
            name=target,
            creds=(
                credentials
                if properties.use_subject_credentials_only
                else None
            ),
            usage="initiate",
        )

    def _choose_layer(self, offered: int) -> SASLQualityOfProtection:
        allowed = sorted(
            set(self.properties.allowed_qop),
            key=lambda qop: qop.security_layer,
            reverse=True,
        )
        for qop in allowed:
            if offered & qop.security_layer:
                return qop
        raise BindError(
            f"Server security layers {offered:#04x} do not match "
            f"{[qop.value for qop in self.properties.allowed_qop]}",
            LDAPCodes.AUTH_UNKNOWN,
        )

    def negotiate_security_layer(
        self,
        ctx: gssapi.SecurityContext,
        server_token: bytes,
        settings: Settings,
    ) -> bytes:
        """Answer server security layer offer.

        :param gssapi.SecurityContext ctx: established context
        :param bytes server_token: wrapped 4 octets offer
        :param Settings settings: settings with max receive buffer
        :raises BindError: malformed offer or no common layer
        :return bytes: wrapped answer
        """
        offer = ctx.unwrap(server_token).message
        if len(offer) != 4:
            raise BindError(
                f"Security layer offer must be 4 octets, got {len(offer)}",
            )

        qop = self._choose_layer(offer[0])
        server_max = int.from_bytes(offer[1:4])

        max_size = 0
        if qop.security_layer != GSSAPISL.NO_SECURITY:
            max_size = min(settings.GSSAPI_MAX_RECEIVE_BUFFER, server_max)

        answer = qop.security_layer.to_bytes() + max_size.to_bytes(length=3)
        if self.properties.authorization_id:
            answer += self.properties.authorization_id.encode()

        self._negotiated_qop = qop
        return ctx.wrap(answer, encrypt=False).message

    async def _negotiate(self, connection: "LDAPConnection") -> BindResponse:
        ctx = self._security_context(connection.host)
        token = ctx.step() or b""
        layer_sent = False

        while True:
            response = await self._send_bind(connection, self.step(token))

            if response.result_code == LDAPCodes.SUCCESS:
                if not ctx.complete:
                    raise BindError("Server finished bind before context")
                return response

            if response.result_code != LDAPCodes.SASL_BIND_IN_PROGRESS:
                log_bind.warning(
                    f"GSSAPI bind to {connection.address} failed: "
                    f"{response.result_code!r}",
                )
                raise BindError(
                    response.error_message or "GSSAPI bind failed",
                    response.result_code,  # type: ignore[arg-type]
                )

            if layer_sent:
                raise BindError("Server continued bind after layer answer")

            server_token = response.server_sasl_creds or b""

            if not ctx.complete:
                token = ctx.step(server_token) or b""
            elif server_token:
                token = self.negotiate_security_layer(
                    ctx,
                    server_token,
                    connection.settings,
                )
                layer_sent = True
            else:
                token = b""

    async def process(  # type: ignore[override]
        self,
        connection: "LDAPConnection",
    ) -> BindResponse:
        """Authenticate connection.

        :raises BindError: concurrent use, credentials or bind failure
        :return BindResponse: success response
        """
        if self._connection is not None:
            raise BindError(
                "GSSAPI request is already processing another bind",
                LDAPCodes.LOCAL_ERROR,
            )

        self._connection = connection
        try:
            config_file_path = await self.get_config_file_path(
                connection.settings,
            )
            self.export_environment(config_file_path)
            try:
                return await self._negotiate(connection)
            except gssapi.exceptions.GSSError as err:
                raise BindError(
                    f"GSSAPI authentication failed: {err}",
                ) from err
        finally:
            self._connection = None

    def duplicate(self) -> Self:
        """Get independent copy, credentials are not shared."""
        return type(self)(
            name=self.name,
            properties=self.properties.model_copy(deep=True),
            controls=[control.model_copy() for control in self.controls],
            response_timeout=self.response_timeout,
        )

    def get_rebind_request(self, host: str, port: int) -> "GSSAPIBindRequest":
        """Get request with the same options for another server.

        Acquired credentials are reused unless cached credentials are
        required, then they are looked up again.
        """
        request = self.duplicate()
        if not self.properties.require_cached_credentials:
            request._credentials = self._credentials
        return request

    def to_code(self) -> str:
        properties = self.properties.model_dump(
            exclude_defaults=True,
            exclude={"password"},
        )
        if self.properties.password is not None:
            properties["password"] = "---redacted-password---"

        lines = [
            "GSSAPIBindRequest(",
            "    properties=GSSAPIBindRequestProperties(",
            *(
                f"        {key}={value!r},"
                for key, value in properties.items()
            ),
            "    ),",
            *self._controls_code(),
            ")",
        ]
        return "\n".join(lines)


def _remove_file(path: str) -> None:
    with suppress(FileNotFoundError):
        os.remove(path)
