"""Add protocol.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from typing import ClassVar, Protocol

from asn1 import Classes, Encoder, Numbers
from pydantic import Field

from ldap_client.asn1parser import BERElement
from ldap_client.attributes import Attribute, Entry
from ldap_client.controls import Control
from ldap_client.exceptions import ProtocolError
from ldap_client.ldap_responses import AddResponse, BaseResponse
from ldap_client.objects import ProtocolRequests

from .base import BaseRequest


class LDIFEntryReader(Protocol):
    """Anything able to turn LDIF lines into an entry."""

    def decode_entry(self, *lines: str) -> Entry: ...


class AddRequest(BaseRequest):
    """Add new entry.

    ```
    AddRequest ::= [APPLICATION 8] SEQUENCE {
        entry           LDAPDN,
        attributes      AttributeList
    }

    AttributeList ::= SEQUENCE OF attribute Attribute
    ```
    """

    PROTOCOL_OP: ClassVar[int] = ProtocolRequests.ADD
    RESPONSE_TYPE: ClassVar[type[BaseResponse] | None] = AddResponse

    entry: str = Field(..., description="Any `DistinguishedName`")
    attributes: list[Attribute] = Field(default_factory=list)

    @classmethod
    def from_entry(
        cls,
        entry: Entry,
        controls: list[Control] | None = None,
    ) -> "AddRequest":
        return cls(
            entry=entry.dn,
            attributes=[
                attr.model_copy(deep=True) for attr in entry.attributes
            ],
            controls=controls or [],
        )

    @classmethod
    def from_ldif(
        cls,
        reader: LDIFEntryReader,
        *lines: str,
    ) -> "AddRequest":
        """Create request from LDIF record lines.

        :param LDIFEntryReader reader: LDIF decoder
        :param str lines: lines of a single record
        :return AddRequest: request
        """
        return cls.from_entry(reader.decode_entry(*lines))

    def to_entry(self) -> Entry:
        return Entry(dn=self.entry, attributes=self.attributes)

    @property
    def attr_names(self) -> dict[str, list[bytes]]:
        return {attr.l_name: attr.values for attr in self.attributes}

    def get_attribute(self, name: str) -> Attribute | None:
        l_name = name.lower()
        for attr in self.attributes:
            if attr.l_name == l_name:
                return attr
        return None

    def add_attribute(self, name: str, *values: str | bytes) -> None:
        """Add values, merging into attribute with the same name."""
        if attr := self.get_attribute(name):
            attr.values.extend(Attribute(name, *values).values)
        else:
            self.attributes.append(Attribute(name, *values))

    def remove_attribute(self, name: str) -> bool:
        l_name = name.lower()
        before = len(self.attributes)
        self.attributes = [a for a in self.attributes if a.l_name != l_name]
        return len(self.attributes) != before

    def validate_request(self) -> None:
        if not self.entry:
            raise ProtocolError("Add request requires entry DN")

    def encode_protocol_op(self) -> BERElement:
        return BERElement.application(
            self.PROTOCOL_OP,
            [
                BERElement.octet_string(self.entry),
                BERElement.sequence(
                    [attr.to_element() for attr in self.attributes],
                ),
            ],
        )

    def to_asn1(self, enc: Encoder) -> None:
        enc.write(self.entry, Numbers.OctetString)
        enc.enter(Numbers.Sequence)
        for attr in self.attributes:
            attr.to_asn1(enc)
        enc.leave()

    @classmethod
    def from_element(cls, element: BERElement) -> "AddRequest":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        entry, attributes = element.children(2, 2)
        return cls(
            entry=entry.expect(Numbers.OctetString).as_str(),
            attributes=[
                Attribute.from_element(attr)
                for attr in attributes.expect(Numbers.Sequence).children()
            ],
        )

    def to_code(self) -> str:
        lines = [
            "AddRequest(",
            f"    entry={self.entry!r},",
            "    attributes=[",
            *(f"        {attr.to_code()}," for attr in self.attributes),
            "    ],",
            *self._controls_code(),
            ")",
        ]
        return "\n".join(lines)
