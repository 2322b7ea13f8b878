"""LDAP message abstract structure.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar, Self

from asn1 import Classes, Encoder
from pydantic import BaseModel, ConfigDict, Field

from ldap_client.asn1parser import BERElement, encode
from ldap_client.controls import Control
from ldap_client.ldap_responses import BaseResponse, LDAPResult

if TYPE_CHECKING:
    from ldap_client.connection import LDAPConnection


class BaseRequest(ABC, BaseModel):
    """Base request builder.

    ``message_id`` is assigned by connection right before the request
    is written, it may be changed freely until then.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        populate_by_name=True,
    )

    PROTOCOL_OP: ClassVar[int]
    RESPONSE_TYPE: ClassVar[type[BaseResponse] | None] = LDAPResult

    controls: list[Control] = Field(default_factory=list)
    message_id: int | None = Field(None, exclude=True)
    response_timeout: float | None = Field(None, gt=0, exclude=True)

    @abstractmethod
    def encode_protocol_op(self) -> BERElement:
        """Build protocol op element tree."""

    @abstractmethod
    def to_asn1(self, enc: Encoder) -> None:
        """Write protocol op contents to encoder buffer."""

    def validate_request(self) -> None:  # noqa: B027
        """Check client side constraints before sending.

        :raises ProtocolError: request can not be sent
        """

    def write_protocol_op(self, enc: Encoder) -> None:
        """Write tagged protocol op to encoder buffer."""
        enc.enter(self.PROTOCOL_OP, Classes.Application)
        self.to_asn1(enc)
        enc.leave()

    def encode(self) -> bytes:
        """Encode protocol op streaming into encoder."""
        enc = Encoder()
        enc.start()
        self.write_protocol_op(enc)
        return enc.output()

    def encode_tree(self) -> bytes:
        """Encode protocol op through element tree."""
        return encode(self.encode_protocol_op())

    def duplicate(self) -> Self:
        """Get independent copy with the same properties."""
        copy = self.model_copy(deep=True)
        copy.message_id = None
        return copy

    def _controls_code(self) -> list[str]:
        if not self.controls:
            return []
        return [
            "    controls=[",
            *(f"        {control.to_code()}," for control in self.controls),
            "    ],",
        ]

    @abstractmethod
    def to_code(self) -> str:
        """Get python code which recreates request."""

    async def process(self, connection: "LDAPConnection") -> BaseResponse:
        """Send request and get final response.

        :param LDAPConnection connection: established connection
        :raises LDAPOperationError: non success result
        :return BaseResponse: final response
        """
        self.validate_request()
        responses = await connection.exchange(self)
        result = responses[-1]
        if isinstance(result, LDAPResult):
            result.raise_for_result()
        return result
