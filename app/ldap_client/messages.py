"""Base LDAP message builder.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from abc import ABC, abstractmethod

from asn1 import Classes, Encoder, Numbers
from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

from ldap_client.asn1parser import BERElement, decode
from ldap_client.controls import (
    Control,
    controls_from_element,
    controls_to_asn1,
    controls_to_element,
)
from ldap_client.exceptions import ProtocolError
from ldap_client.ldap_requests import BaseRequest, protocol_id_map
from ldap_client.ldap_responses import (
    BaseResponse,
    protocol_id_map as response_id_map,
)

MAX_MESSAGE_ID = 2**31 - 1


class LDAPMessage(ABC, BaseModel):
    """Base message structure. Pydantic for types validation.

    ```
    LDAPMessage ::= SEQUENCE {
        messageID       MessageID,
        protocolOp      CHOICE { ... },
        controls       [0] Controls OPTIONAL }
    ```
    """

    model_config = ConfigDict(populate_by_name=True)

    message_id: int = Field(..., alias="messageID", ge=0, le=MAX_MESSAGE_ID)
    protocol_op: int = Field(..., alias="protocolOP")
    context: BaseRequest | BaseResponse
    controls: list[Control] = Field(default_factory=list)

    @property
    def name(self) -> str:
        """Message name."""
        return type(self.context).__name__

    @abstractmethod
    def _write_protocol_op(self, enc: Encoder) -> None:
        """Write protocol op of message context."""

    def encode(self) -> bytes:
        """Encode message to asn1, streaming into encoder."""
        enc = Encoder()
        enc.start()
        enc.enter(Numbers.Sequence)
        enc.write(self.message_id, Numbers.Integer)
        self._write_protocol_op(enc)

        if self.controls:
            controls_to_asn1(self.controls, enc)

        enc.leave()
        return enc.output()

    def to_element(self) -> BERElement:
        """Build message element tree."""
        children = [
            BERElement.integer(self.message_id),
            self.context.encode_protocol_op()
            if isinstance(self.context, BaseRequest)
            else self.context.to_element(),
        ]
        if self.controls:
            children.append(controls_to_element(self.controls))
        return BERElement.sequence(children)

    @staticmethod
    def _split(source: bytes) -> tuple[int, BERElement, list[Control]]:
        sequence = decode(source)
        sequence.expect(Numbers.Sequence, constructed=True)
        seq_fields = sequence.children(2, 3)

        message_id = seq_fields[0].expect(Numbers.Integer).as_int()
        protocol = seq_fields[1]
        if protocol.tag_class != Classes.Application:
            raise ProtocolError("Protocol op must have application class")

        controls = []
        if len(seq_fields) == 3:
            controls = controls_from_element(seq_fields[2])

        return message_id, protocol, controls


class LDAPRequestMessage(LDAPMessage):
    """Request message interface."""

    context: SerializeAsAny[BaseRequest]

    @classmethod
    def from_request(cls, request: BaseRequest) -> "LDAPRequestMessage":
        """Wrap request with assigned message id."""
        if request.message_id is None:
            raise ProtocolError("Message id is not assigned")
        return cls(
            messageID=request.message_id,
            protocolOP=request.PROTOCOL_OP,
            context=request,
            controls=request.controls,
        )

    def _write_protocol_op(self, enc: Encoder) -> None:
        self.context.write_protocol_op(enc)  # type: ignore[union-attr]

    @classmethod
    def from_bytes(cls, source: bytes) -> "LDAPRequestMessage":
        """Create message from bytes.

        :raises DecodeError: malformed BER
        :raises ProtocolError: unknown operation or wrong structure
        """
        message_id, protocol, controls = cls._split(source)

        if protocol.tag_number not in protocol_id_map:
            raise ProtocolError(f"Unknown request {protocol.tag_number}")

        context = protocol_id_map[protocol.tag_number].from_element(protocol)
        context.message_id = message_id
        context.controls = controls
        return cls(
            messageID=message_id,
            protocolOP=protocol.tag_number,
            context=context,
            controls=controls,
        )


class LDAPResponseMessage(LDAPMessage):
    """Response message."""

    context: SerializeAsAny[BaseResponse]

    def _write_protocol_op(self, enc: Encoder) -> None:
        enc.enter(nr=self.context.PROTOCOL_OP, cls=Classes.Application)
        self.context.to_asn1(enc)
        enc.leave()

    @classmethod
    def from_bytes(cls, source: bytes) -> "LDAPResponseMessage":
        """Create message from bytes.

        :raises DecodeError: malformed BER
        :raises ProtocolError: unknown operation or wrong structure
        """
        message_id, protocol, controls = cls._split(source)

        if protocol.tag_number not in response_id_map:
            raise ProtocolError(f"Unknown response {protocol.tag_number}")

        context = response_id_map[protocol.tag_number].from_element(protocol)
        return cls(
            messageID=message_id,
            protocolOP=protocol.tag_number,
            context=context,
            controls=controls,
        )
