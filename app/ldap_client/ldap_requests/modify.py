"""Modify protocol.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from typing import ClassVar

from asn1 import Classes, Encoder, Numbers
from pydantic import Field

from ldap_client.asn1parser import BERElement
from ldap_client.attributes import Modification
from ldap_client.exceptions import ProtocolError
from ldap_client.ldap_responses import BaseResponse, ModifyResponse
from ldap_client.objects import ProtocolRequests

from .base import BaseRequest


class ModifyRequest(BaseRequest):
    """Modify request.

    ```
    ModifyRequest ::= [APPLICATION 6] SEQUENCE {
        object          LDAPDN,
        changes         SEQUENCE OF change SEQUENCE {
            operation       ENUMERATED {
                add     (0),
                delete  (1),
                replace (2),
                increment (3),
            },
            modification    PartialAttribute
        }
    }
    ```
    """

    PROTOCOL_OP: ClassVar[int] = ProtocolRequests.MODIFY
    RESPONSE_TYPE: ClassVar[type[BaseResponse] | None] = ModifyResponse

    object: str = Field(..., description="Any `DistinguishedName`")
    changes: list[Modification] = Field(default_factory=list)

    def validate_request(self) -> None:
        if not self.object:
            raise ProtocolError("Modify request requires object DN")

    def encode_protocol_op(self) -> BERElement:
        return BERElement.application(
            self.PROTOCOL_OP,
            [
                BERElement.octet_string(self.object),
                BERElement.sequence(
                    [change.to_element() for change in self.changes],
                ),
            ],
        )

    def to_asn1(self, enc: Encoder) -> None:
        enc.write(self.object, Numbers.OctetString)
        enc.enter(Numbers.Sequence)
        for change in self.changes:
            change.to_asn1(enc)
        enc.leave()

    @classmethod
    def from_element(cls, element: BERElement) -> "ModifyRequest":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        entry, changes = element.children(2, 2)
        return cls(
            object=entry.expect(Numbers.OctetString).as_str(),
            changes=[
                Modification.from_element(change)
                for change in changes.expect(Numbers.Sequence).children()
            ],
        )

    def to_code(self) -> str:
        lines = [
            "ModifyRequest(",
            f"    object={self.object!r},",
            "    changes=[",
            *(f"        {change.to_code()}," for change in self.changes),
            "    ],",
            *self._controls_code(),
            ")",
        ]
        return "\n".join(lines)
