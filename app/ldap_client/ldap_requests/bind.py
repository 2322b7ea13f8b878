"""LDAP requests bind.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from abc import abstractmethod
from typing import TYPE_CHECKING, ClassVar

from asn1 import Classes, Encoder, Numbers, Types
from pydantic import Field, SecretStr

from ldap_client.asn1parser import BERElement, value_to_code
from ldap_client.exceptions import BindError, ProtocolError
from ldap_client.ldap_codes import LDAPCodes
from ldap_client.ldap_responses import BaseResponse, BindResponse
from ldap_client.log import log_bind
from ldap_client.objects import ProtocolRequests

from .base import BaseRequest

if TYPE_CHECKING:
    from ldap_client.connection import LDAPConnection

SIMPLE_METHOD_ID = 0
SASL_METHOD_ID = 3


class BindRequest(BaseRequest):
    """Bind request fields mapping.

    ```
    BindRequest ::= [APPLICATION 0] SEQUENCE {
        version                 INTEGER (1 ..  127),
        name                    LDAPDN,
        authentication          AuthenticationChoice }

    AuthenticationChoice ::= CHOICE {
        simple                  [0] OCTET STRING,
        sasl                    [3] SaslCredentials,
        ...  }
    ```
    """

    PROTOCOL_OP: ClassVar[int] = ProtocolRequests.BIND
    RESPONSE_TYPE: ClassVar[type[BaseResponse] | None] = BindResponse

    version: int = 3
    name: str = ""

    @abstractmethod
    def _write_authentication(self, enc: Encoder) -> None:
        """Write authentication choice to encoder buffer."""

    @abstractmethod
    def _authentication_element(self) -> BERElement:
        """Build authentication choice element."""

    def encode_protocol_op(self) -> BERElement:
        return BERElement.application(
            self.PROTOCOL_OP,
            [
                BERElement.integer(self.version),
                BERElement.octet_string(self.name),
                self._authentication_element(),
            ],
        )

    def to_asn1(self, enc: Encoder) -> None:
        enc.write(self.version, Numbers.Integer)
        enc.write(self.name, Numbers.OctetString)
        self._write_authentication(enc)

    @classmethod
    def from_element(cls, element: BERElement) -> "BindRequest":
        """Decode bind request choosing authentication class."""
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        version, name, auth = element.children(3, 3)

        if auth.tag_class != Classes.Context:
            raise ProtocolError("Invalid authentication choice")

        fields = {
            "version": version.expect(Numbers.Integer).as_int(),
            "name": name.expect(Numbers.OctetString).as_str(),
        }

        if auth.tag_number == SIMPLE_METHOD_ID and not auth.constructed:
            return SimpleBindRequest(password=auth.as_str(), **fields)

        if auth.tag_number == SASL_METHOD_ID:
            mechanism, *credentials = auth.children(1, 2)
            return SASLBindRequest(
                mechanism=mechanism.expect(Numbers.OctetString).as_str(),
                credentials=(
                    credentials[0].expect(Numbers.OctetString).as_bytes()
                    if credentials
                    else None
                ),
                **fields,
            )

        raise ProtocolError(f"Unsupported authentication {auth.tag_number}")

    def get_rebind_request(self, host: str, port: int) -> "BindRequest":
        """Get request to re-authenticate on referral or reconnect."""
        return self.duplicate()

    async def _send_bind(
        self,
        connection: "LDAPConnection",
        request: "BindRequest | None" = None,
    ) -> BindResponse:
        responses = await connection.exchange(request or self)
        response = responses[-1]
        if not isinstance(response, BindResponse):
            raise ProtocolError("Bind answered with unexpected response")
        return response


class SimpleBindRequest(BindRequest):
    """Simple bind with DN and password.

    Empty DN with empty password is anonymous bind. DN with empty
    password is refused before sending unless
    ``BIND_WITH_DN_REQUIRES_PASSWORD`` is disabled.
    """

    password: SecretStr = Field(default=SecretStr(""))

    def is_anonymous(self) -> bool:
        return not self.name and not self.password.get_secret_value()

    def _authentication_element(self) -> BERElement:
        return BERElement.context(
            SIMPLE_METHOD_ID,
            self.password.get_secret_value(),
        )

    def _write_authentication(self, enc: Encoder) -> None:
        enc.write(
            self.password.get_secret_value().encode(),
            SIMPLE_METHOD_ID,
            Types.Primitive,
            Classes.Context,
        )

    def check_password_policy(self, require_password: bool) -> None:
        """Refuse DN without password.

        :param bool require_password: connection option
        :raises BindError: with PARAM_ERROR result code
        """
        if (
            require_password
            and self.name
            and not self.password.get_secret_value()
        ):
            raise BindError(
                "Simple bind with DN requires a password",
                LDAPCodes.PARAM_ERROR,
            )

    async def process(  # type: ignore[override]
        self,
        connection: "LDAPConnection",
    ) -> BindResponse:
        """Bind connection.

        :raises BindError: policy violation or rejected credentials
        :return BindResponse: success response
        """
        self.check_password_policy(
            connection.settings.BIND_WITH_DN_REQUIRES_PASSWORD,
        )
        response = await self._send_bind(connection)

        if not response.is_success:
            log_bind.warning(
                f"Simple bind of {self.name!r} failed: "
                f"{response.result_code!r}",
            )
            raise BindError(
                response.error_message or "Simple bind failed",
                response.result_code,  # type: ignore[arg-type]
            )

        return response

    def to_code(self) -> str:
        lines = [
            "SimpleBindRequest(",
            f"    name={self.name!r},",
            f"    password={'---redacted-password---'!r},",
            *self._controls_code(),
            ")",
        ]
        return "\n".join(lines)


class SASLBindRequest(BindRequest):
    """Single SASL bind round trip.

    ```
    SaslCredentials ::= SEQUENCE {
        mechanism               LDAPString,
        credentials             OCTET STRING OPTIONAL }
    ```
    """

    mechanism: str = ""
    credentials: bytes | None = None

    def _authentication_element(self) -> BERElement:
        children = [BERElement.octet_string(self.mechanism)]
        if self.credentials is not None:
            children.append(BERElement.octet_string(self.credentials))
        return BERElement.sequence(children, SASL_METHOD_ID, Classes.Context)

    def _write_authentication(self, enc: Encoder) -> None:
        enc.enter(SASL_METHOD_ID, Classes.Context)
        enc.write(self.mechanism, Numbers.OctetString)
        if self.credentials is not None:
            enc.write(self.credentials, Numbers.OctetString)
        enc.leave()

    def step(self, credentials: bytes | None) -> "SASLBindRequest":
        """Get next round trip request of the same mechanism."""
        return SASLBindRequest(
            name=self.name,
            mechanism=self.mechanism,
            credentials=credentials,
            controls=[control.model_copy() for control in self.controls],
        )

    def to_code(self) -> str:
        lines = [
            "SASLBindRequest(",
            f"    name={self.name!r},",
            f"    mechanism={self.mechanism!r},",
        ]
        if self.credentials is not None:
            lines.append(
                f"    credentials={value_to_code(self.credentials)},",
            )
        lines.extend([*self._controls_code(), ")"])
        return "\n".join(lines)


class UnbindRequest(BaseRequest):
    """Unbind request, no response is expected.

    ```
    UnbindRequest ::= [APPLICATION 2] NULL
    ```
    """

    PROTOCOL_OP: ClassVar[int] = ProtocolRequests.UNBIND
    RESPONSE_TYPE: ClassVar[type[BaseResponse] | None] = None

    def encode_protocol_op(self) -> BERElement:
        return BERElement(Classes.Application, self.PROTOCOL_OP, b"")

    def to_asn1(self, enc: Encoder) -> None:
        return None

    def write_protocol_op(self, enc: Encoder) -> None:
        enc.write(b"", self.PROTOCOL_OP, Types.Primitive, Classes.Application)

    @classmethod
    def from_element(cls, element: BERElement) -> "UnbindRequest":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=False)
        return cls()

    def to_code(self) -> str:
        return "UnbindRequest()"
