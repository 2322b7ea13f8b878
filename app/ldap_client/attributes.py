"""Attributes, entries and modifications.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from collections import Counter
from typing import Any

from asn1 import Encoder, Numbers
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ldap_client.asn1parser import BERElement, value_to_code
from ldap_client.matching_rules import DEFAULT_MATCHING_RULE, MatchingRule
from ldap_client.objects import Operation

SENSITIVE_ATTRIBUTES = frozenset(
    {
        "userpassword",
        "2.5.4.35",
        "authpassword",
        "1.3.6.1.4.1.4203.1.3.4",
    },
)


def is_sensitive(name: str) -> bool:
    """Check if values of attribute must never be rendered."""
    return name.lower() in SENSITIVE_ATTRIBUTES


def values_to_code(name: str, values: list[bytes]) -> list[str]:
    """Render values, redacting sensitive attributes.

    A single value is rendered as ``---redacted-value---``,
    multiple values are numbered from 1.
    """
    if not is_sensitive(name):
        return [value_to_code(value) for value in values]

    if len(values) == 1:
        return [repr("---redacted-value---")]

    return [
        repr(f"---redacted-value-{index}---")
        for index in range(1, len(values) + 1)
    ]


class Attribute(BaseModel):
    """Attribute with values. Description in rfc4511 4.1.7.

    Values are kept as bytes in insertion order, text is UTF-8 encoded.
    Names compare case insensitively, values as an unordered collection
    normalized with the attribute matching rule.

    ```
    Attribute ::= PartialAttribute(WITH COMPONENTS {
        ...,
        vals (SIZE(1..MAX))})
    ```
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    values: list[bytes] = Field(default_factory=list)
    matching_rule: MatchingRule = Field(
        default=DEFAULT_MATCHING_RULE,
        exclude=True,
    )

    def __init__(
        self,
        name: str | None = None,
        /,
        *values: str | bytes,
        **data: Any,
    ) -> None:
        """Create attribute from name and raw values."""
        if name is not None:
            data["name"] = name
        if values:
            data["values"] = list(values)
        super().__init__(**data)

    @field_validator("values", mode="before")
    @classmethod
    def validate_values(cls, vals: list[str | bytes | int]) -> list[bytes]:
        return [
            bytes(v) if isinstance(v, (bytes, bytearray)) else str(v).encode()
            for v in vals
        ]

    @property
    def l_name(self) -> str:
        """Get lower case name."""
        return self.name.lower()

    @property
    def str_values(self) -> list[str]:
        return [value.decode(errors="replace") for value in self.values]

    def _value_counts(self, rule: MatchingRule | None = None) -> Counter:
        rule = rule or self.matching_rule
        return Counter(rule.normalize(value) for value in self.values)

    def has_value(
        self,
        value: str | bytes,
        matching_rule: MatchingRule | None = None,
    ) -> bool:
        """Check value presence using matching rule."""
        rule = matching_rule or self.matching_rule
        if isinstance(value, str):
            value = value.encode()
        return any(rule.values_match(value, own) for own in self.values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Attribute):
            return NotImplemented
        return self.l_name == other.l_name and self._value_counts() == (
            other._value_counts(self.matching_rule)
        )

    def __hash__(self) -> int:
        return hash((self.l_name, frozenset(self._value_counts().items())))

    def to_element(self) -> BERElement:
        return BERElement.sequence(
            [
                BERElement.octet_string(self.name),
                BERElement.set_of(
                    [BERElement.octet_string(value) for value in self.values],
                ),
            ],
        )

    def to_asn1(self, enc: Encoder) -> None:
        """Write attribute to encoder buffer."""
        enc.enter(Numbers.Sequence)
        enc.write(self.name, Numbers.OctetString)
        enc.enter(Numbers.Set)
        for value in self.values:
            enc.write(value, Numbers.OctetString)
        enc.leave()
        enc.leave()

    @classmethod
    def from_element(cls, element: BERElement) -> "Attribute":
        """Decode PartialAttribute sequence.

        :param BERElement element: sequence of type and value set
        :raises ProtocolError: on structure mismatch
        :return Attribute: attribute
        """
        element.expect(Numbers.Sequence, constructed=True)
        name, vals = element.children(2, 2)
        vals.expect(Numbers.Set, constructed=True)
        return cls(
            name.expect(Numbers.OctetString).as_str(),
            *[
                val.expect(Numbers.OctetString).as_bytes()
                for val in vals.children()
            ],
        )

    def to_code(self) -> str:
        """Get python code which recreates attribute."""
        args = [repr(self.name), *values_to_code(self.name, self.values)]
        return f"Attribute({', '.join(args)})"

    def __repr__(self) -> str:
        return self.to_code()


class Entry(BaseModel):
    """Entry with DN and attributes unique by name."""

    dn: str
    attributes: list[Attribute] = Field(default_factory=list)

    @field_validator("attributes")
    @classmethod
    def merge_attributes(cls, attributes: list[Attribute]) -> list[Attribute]:
        """Merge values of attributes with the same name."""
        merged: dict[str, Attribute] = {}
        for attr in attributes:
            if attr.l_name in merged:
                merged[attr.l_name].values.extend(attr.values)
            else:
                merged[attr.l_name] = attr.model_copy(deep=True)
        return list(merged.values())

    def get_attribute(self, name: str) -> Attribute | None:
        l_name = name.lower()
        for attr in self.attributes:
            if attr.l_name == l_name:
                return attr
        return None

    def has_attribute(self, attribute: Attribute | str) -> bool:
        """Check attribute presence.

        Name checks presence only, attribute requires exactly
        the same set of values, partial or superset lists do not match.
        """
        if isinstance(attribute, str):
            return self.get_attribute(attribute) is not None

        own = self.get_attribute(attribute.name)
        return own is not None and own == attribute

    def has_attribute_value(
        self,
        name: str,
        value: str | bytes,
        matching_rule: MatchingRule | None = None,
    ) -> bool:
        own = self.get_attribute(name)
        return own is not None and own.has_value(value, matching_rule)


class Modification(BaseModel):
    """Single change of modify request.

    ```
    change SEQUENCE {
        operation       ENUMERATED {
            add       (0),
            delete    (1),
            replace   (2),
            increment (3),
            ...  },
        modification    PartialAttribute }
    ```
    """

    operation: Operation | int
    attribute: Attribute

    def __init__(
        self,
        operation: Operation | int | None = None,
        attribute: Attribute | str | None = None,
        /,
        *values: str | bytes,
        **data: Any,
    ) -> None:
        """Create modification from operation, attribute name and values."""
        if operation is not None:
            data["operation"] = operation
        if isinstance(attribute, str):
            attribute = Attribute(attribute, *values)
        if attribute is not None:
            data["attribute"] = attribute
        super().__init__(**data)

    @field_validator("operation", mode="before")
    @classmethod
    def validate_operation(cls, value: int) -> Operation | int:
        return Operation.from_value(int(value))

    @property
    def name(self) -> str:
        return self.attribute.name

    @property
    def values(self) -> list[bytes]:
        return self.attribute.values

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Modification):
            return NotImplemented
        return (
            int(self.operation) == int(other.operation)
            and self.attribute == other.attribute
        )

    def __hash__(self) -> int:
        return hash((int(self.operation), hash(self.attribute)))

    def to_element(self) -> BERElement:
        return BERElement.sequence(
            [
                BERElement.enumerated(self.operation),
                self.attribute.to_element(),
            ],
        )

    def to_asn1(self, enc: Encoder) -> None:
        enc.enter(Numbers.Sequence)
        enc.write(int(self.operation), Numbers.Enumerated)
        self.attribute.to_asn1(enc)
        enc.leave()

    @classmethod
    def from_element(cls, element: BERElement) -> "Modification":
        element.expect(Numbers.Sequence, constructed=True)
        operation, attribute = element.children(2, 2)
        return cls(
            operation.expect(Numbers.Enumerated).as_int(),
            Attribute.from_element(attribute),
        )

    def to_code(self) -> str:
        if isinstance(self.operation, Operation):
            operation = f"Operation.{self.operation.name}"
        else:
            operation = str(self.operation)

        args = [
            operation,
            repr(self.name),
            *values_to_code(self.name, self.values),
        ]
        return f"Modification({', '.join(args)})"

    def __repr__(self) -> str:
        return self.to_code()
