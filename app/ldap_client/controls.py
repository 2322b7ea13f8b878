"""Request and response controls.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from asn1 import Classes, Encoder, Numbers
from pydantic import BaseModel, ConfigDict, Field

from ldap_client.asn1parser import BERElement, value_to_code

CONTROLS_TAG = 0


class Control(BaseModel):
    """Control, rfc4511 4.1.11.

    ```
    Control ::= SEQUENCE {
        controlType             LDAPOID,
        criticality             BOOLEAN DEFAULT FALSE,
        controlValue            OCTET STRING OPTIONAL }
    ```
    """

    model_config = ConfigDict(frozen=True)

    oid: str = Field(..., min_length=1)
    criticality: bool = False
    value: bytes | None = None

    def __init__(
        self,
        oid: str | None = None,
        criticality: bool | None = None,
        value: bytes | None = None,
        /,
        **data: object,
    ) -> None:
        """Create control from positional arguments."""
        if oid is not None:
            data["oid"] = oid
        if criticality is not None:
            data["criticality"] = criticality
        if value is not None:
            data["value"] = value
        super().__init__(**data)

    def to_element(self) -> BERElement:
        children = [BERElement.octet_string(self.oid)]
        if self.criticality:
            children.append(BERElement.boolean(True))
        if self.value is not None:
            children.append(BERElement.octet_string(self.value))
        return BERElement.sequence(children)

    def to_asn1(self, enc: Encoder) -> None:
        enc.enter(Numbers.Sequence)
        enc.write(self.oid, Numbers.OctetString)
        if self.criticality:
            enc.write(True, Numbers.Boolean)
        if self.value is not None:
            enc.write(self.value, Numbers.OctetString)
        enc.leave()

    @classmethod
    def from_element(cls, element: BERElement) -> "Control":
        """Decode control.

        :raises ProtocolError: on structure mismatch
        """
        element.expect(Numbers.Sequence, constructed=True)
        oid, *rest = element.children(1, 3)
        criticality = False
        value = None

        for child in rest:
            if child.tag_number == Numbers.Boolean and value is None:
                criticality = child.as_bool()
            else:
                value = child.expect(Numbers.OctetString).as_bytes()

        return cls(
            oid.expect(Numbers.OctetString).as_str(),
            criticality,
            value,
        )

    def to_code(self) -> str:
        args = [repr(self.oid), repr(self.criticality)]
        if self.value is not None:
            args.append(value_to_code(self.value))
        return f"Control({', '.join(args)})"


def controls_to_element(controls: list[Control]) -> BERElement:
    """Wrap controls to message ``[0] Controls`` element."""
    return BERElement.sequence(
        [control.to_element() for control in controls],
        CONTROLS_TAG,
        Classes.Context,
    )


def controls_to_asn1(controls: list[Control], enc: Encoder) -> None:
    enc.enter(CONTROLS_TAG, Classes.Context)
    for control in controls:
        control.to_asn1(enc)
    enc.leave()


def controls_from_element(element: BERElement) -> list[Control]:
    element.expect(CONTROLS_TAG, Classes.Context, constructed=True)
    return [Control.from_element(child) for child in element.children()]
