"""Search filters, rfc4511 4.5.1.7 and rfc4515 string form.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import TypeAlias

from asn1 import Classes, Encoder, Numbers
from ldap_filter import Filter as ParsedFilter

from ldap_client.asn1parser import BERElement, SubstringTag, TagNumbers
from ldap_client.exceptions import FilterError, ProtocolError

_ESCAPED = frozenset(b"*()\\\x00")
_HEX_ESCAPE = re.compile(rb"\\([0-9a-fA-F]{2})")


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


def escape_value(value: bytes) -> str:
    """Escape assertion value for string representation."""
    out = []
    for byte in value:
        if byte in _ESCAPED or not 0x20 <= byte <= 0x7E:
            out.append(f"\\{byte:02x}")
        else:
            out.append(chr(byte))
    return "".join(out)


def unescape_value(value: str) -> bytes:
    """Decode ``\\XX`` escapes of assertion value."""
    return _HEX_ESCAPE.sub(
        lambda m: bytes([int(m.group(1), 16)]),
        value.encode(),
    )


class BaseFilter:
    """Common filter behaviour."""

    def to_element(self) -> BERElement:
        return encode_filter(self)  # type: ignore[arg-type]

    def to_asn1(self, enc: Encoder) -> None:
        """Write filter to encoder buffer."""
        encode_filter(self).write(enc)  # type: ignore[arg-type]

    def __str__(self) -> str:
        return filter_to_string(self)  # type: ignore[arg-type]


@dataclass(frozen=True)
class Presence(BaseFilter):
    """``(attr=*)``."""

    attr: str


@dataclass(frozen=True)
class _AttributeValueAssertion(BaseFilter):
    attr: str
    value: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _to_bytes(self.value))


@dataclass(frozen=True)
class Equality(_AttributeValueAssertion):
    """``(attr=value)``."""


@dataclass(frozen=True)
class GreaterOrEqual(_AttributeValueAssertion):
    """``(attr>=value)``."""


@dataclass(frozen=True)
class LessOrEqual(_AttributeValueAssertion):
    """``(attr<=value)``."""


@dataclass(frozen=True)
class ApproximateMatch(_AttributeValueAssertion):
    """``(attr~=value)``."""


@dataclass(frozen=True)
class Substrings(BaseFilter):
    """``(attr=initial*any*final)``, any components keep their order."""

    attr: str
    initial: bytes | None = None
    any: tuple[bytes, ...] = ()
    final: bytes | None = None

    def __post_init__(self) -> None:
        if self.initial is not None:
            object.__setattr__(self, "initial", _to_bytes(self.initial))
        if self.final is not None:
            object.__setattr__(self, "final", _to_bytes(self.final))
        object.__setattr__(
            self,
            "any",
            tuple(_to_bytes(component) for component in self.any),
        )

        if self.initial is None and self.final is None and not self.any:
            raise FilterError("Substring filter requires a component")


@dataclass(frozen=True)
class ExtensibleMatch(BaseFilter):
    """``(attr:dn:rule:=value)``."""

    value: bytes
    attr: str | None = None
    matching_rule: str | None = None
    dn_attributes: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _to_bytes(self.value))
        if not self.attr and not self.matching_rule:
            raise FilterError(
                "Extensible match requires attribute or matching rule",
            )


@dataclass(frozen=True, eq=False, init=False)
class _Group(BaseFilter):
    """Children keep order for encoding, equality ignores it."""

    filters: tuple["Filter", ...] = field(default=())

    def __init__(self, *filters: "Filter") -> None:
        object.__setattr__(self, "filters", tuple(filters))

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return Counter(self.filters) == Counter(other.filters)  # type: ignore

    def __hash__(self) -> int:
        return hash((type(self).__name__, frozenset(Counter(self.filters))))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(map(repr, self.filters))})"


class And(_Group):
    """``(&...)``, empty conjunction is absolute true."""


class Or(_Group):
    """``(|...)``, empty disjunction is absolute false."""


@dataclass(frozen=True)
class Not(BaseFilter):
    """``(!filter)``."""

    child: "Filter"


Filter: TypeAlias = (
    Presence
    | Equality
    | GreaterOrEqual
    | LessOrEqual
    | ApproximateMatch
    | Substrings
    | ExtensibleMatch
    | And
    | Or
    | Not
)

_ASSERTION_TAGS: dict[type, int] = {
    Equality: TagNumbers.EQUALITY_MATCH,
    GreaterOrEqual: TagNumbers.GE,
    LessOrEqual: TagNumbers.LE,
    ApproximateMatch: TagNumbers.APPROX_MATCH,
}

_ASSERTION_CLASSES = {tag: cls for cls, tag in _ASSERTION_TAGS.items()}

_OPERATORS: dict[type, str] = {
    Equality: "=",
    GreaterOrEqual: ">=",
    LessOrEqual: "<=",
    ApproximateMatch: "~=",
}


def encode_filter(filter_: Filter) -> BERElement:  # noqa: C901
    """Build filter element tree."""
    match filter_:
        case And(filters=children):
            return BERElement.sequence(
                [encode_filter(child) for child in children],
                TagNumbers.AND,
                Classes.Context,
            )
        case Or(filters=children):
            return BERElement.sequence(
                [encode_filter(child) for child in children],
                TagNumbers.OR,
                Classes.Context,
            )
        case Not(child=child):
            return BERElement.sequence(
                [encode_filter(child)],
                TagNumbers.NOT,
                Classes.Context,
            )
        case Presence(attr=attr):
            return BERElement.context(TagNumbers.PRESENT, attr)
        case Substrings():
            components = []
            if filter_.initial is not None:
                components.append(
                    BERElement.context(SubstringTag.INITIAL, filter_.initial),
                )
            for component in filter_.any:
                components.append(
                    BERElement.context(SubstringTag.ANY, component),
                )
            if filter_.final is not None:
                components.append(
                    BERElement.context(SubstringTag.FINAL, filter_.final),
                )
            return BERElement.sequence(
                [
                    BERElement.octet_string(filter_.attr),
                    BERElement.sequence(components),
                ],
                TagNumbers.SUBSTRING,
                Classes.Context,
            )
        case ExtensibleMatch():
            children = []
            if filter_.matching_rule:
                children.append(BERElement.context(1, filter_.matching_rule))
            if filter_.attr:
                children.append(BERElement.context(2, filter_.attr))
            children.append(BERElement.context(3, filter_.value))
            if filter_.dn_attributes:
                children.append(BERElement.context(4, b"\xff"))
            return BERElement.sequence(
                children,
                TagNumbers.EXTENSIBLE_MATCH,
                Classes.Context,
            )
        case (
            Equality() | GreaterOrEqual() | LessOrEqual() | ApproximateMatch()
        ):
            return BERElement.sequence(
                [
                    BERElement.octet_string(filter_.attr),
                    BERElement.octet_string(filter_.value),
                ],
                _ASSERTION_TAGS[type(filter_)],
                Classes.Context,
            )

    raise FilterError(f"Unknown filter {filter_!r}")


def decode_filter(element: BERElement) -> Filter:  # noqa: C901
    """Build filter from element tree.

    :param BERElement element: context tagged filter choice
    :raises ProtocolError: unknown choice or wrong structure
    :return Filter: filter
    """
    if element.tag_class != Classes.Context:
        raise ProtocolError(f"Invalid filter class {element.tag_class}")

    try:
        tag = TagNumbers(element.tag_number)
    except ValueError:
        raise ProtocolError(f"Invalid filter tag {element.tag_number}")

    match tag:
        case TagNumbers.AND:
            return And(*map(decode_filter, element.children()))
        case TagNumbers.OR:
            return Or(*map(decode_filter, element.children()))
        case TagNumbers.NOT:
            (child,) = element.children(1, 1)
            return Not(decode_filter(child))
        case TagNumbers.PRESENT:
            return Presence(element.as_str())
        case TagNumbers.SUBSTRING:
            attr, components = element.children(2, 2)
            initial = final = None
            any_: list[bytes] = []
            for component in components.children(1):
                if component.tag_class != Classes.Context:
                    raise ProtocolError("Invalid substring component")
                match component.tag_number:
                    case SubstringTag.INITIAL:
                        initial = component.as_bytes()
                    case SubstringTag.ANY:
                        any_.append(component.as_bytes())
                    case SubstringTag.FINAL:
                        final = component.as_bytes()
                    case _:
                        raise ProtocolError(
                            f"Invalid substring tag {component.tag_number}",
                        )
            return Substrings(
                attr.expect(Numbers.OctetString).as_str(),
                initial,
                tuple(any_),
                final,
            )
        case TagNumbers.EXTENSIBLE_MATCH:
            values: dict[int, BERElement] = {
                child.tag_number: child for child in element.children(1, 4)
            }
            if 3 not in values:
                raise ProtocolError("Extensible match without value")
            try:
                return ExtensibleMatch(
                    values[3].as_bytes(),
                    values[2].as_str() if 2 in values else None,
                    values[1].as_str() if 1 in values else None,
                    values[4].as_bool() if 4 in values else False,
                )
            except FilterError as err:
                raise ProtocolError(err.message) from err
        case _:
            attr, value = element.children(2, 2)
            return _ASSERTION_CLASSES[tag](
                attr.expect(Numbers.OctetString).as_str(),
                value.expect(Numbers.OctetString).as_bytes(),
            )


def filter_to_string(filter_: Filter) -> str:
    """Render filter in rfc4515 form."""
    match filter_:
        case And(filters=children):
            return f"(&{''.join(map(filter_to_string, children))})"
        case Or(filters=children):
            return f"(|{''.join(map(filter_to_string, children))})"
        case Not(child=child):
            return f"(!{filter_to_string(child)})"
        case Presence(attr=attr):
            return f"({attr}=*)"
        case Substrings():
            parts = [
                escape_value(filter_.initial or b""),
                *map(escape_value, filter_.any),
                escape_value(filter_.final or b""),
            ]
            return f"({filter_.attr}={'*'.join(parts)})"
        case ExtensibleMatch():
            match_ = filter_.attr or ""
            if filter_.dn_attributes:
                match_ += ":dn"
            if filter_.matching_rule:
                match_ += f":{filter_.matching_rule}"
            return f"({match_}:={escape_value(filter_.value)})"

    operator = _OPERATORS[type(filter_)]
    return f"({filter_.attr}{operator}{escape_value(filter_.value)})"


# Escaped octets travel through the string parser as private use
# characters, the parser never sees backslashes.
_OCTET_BASE = 0xF0000
_HIDDEN = re.compile(
    rf"\\([0-9a-fA-F]{{2}})|([{chr(_OCTET_BASE)}-{chr(_OCTET_BASE + 0xFF)}])",
)


def _hide_escapes(text: str) -> str:
    def replace(match: re.Match) -> str:
        if match.group(1):
            return chr(_OCTET_BASE + int(match.group(1), 16))
        return "".join(
            chr(_OCTET_BASE + byte) for byte in match.group(2).encode()
        )

    hidden = _HIDDEN.sub(replace, text)
    if "\\" in hidden:
        raise FilterError(f"Invalid escape in filter {text!r}")
    return hidden


def _value_bytes(value: str) -> bytes:
    out = bytearray()
    for char in value:
        octet = ord(char) - _OCTET_BASE
        if 0 <= octet <= 0xFF:
            out.append(octet)
        else:
            out += char.encode()
    return bytes(out)


def _parse_extensible(attr: str, value: str) -> ExtensibleMatch:
    attr_type, *options = attr.rstrip(":").split(":")
    dn_attributes = False
    matching_rule = None
    for option in options:
        if option.lower() == "dn":
            dn_attributes = True
        elif option:
            matching_rule = option
    return ExtensibleMatch(
        _value_bytes(value),
        attr_type or None,
        matching_rule,
        dn_attributes,
    )


def _from_parsed(node: ParsedFilter) -> Filter:
    if node.type == "group":
        children = [_from_parsed(child) for child in node.filters]
        if node.comp == "&":
            return And(*children)
        if node.comp == "|":
            return Or(*children)
        if len(children) != 1:
            raise FilterError("Not filter requires exactly one element")
        return Not(children[0])

    attr, comp, value = node.attr, node.comp, node.val

    if attr.endswith(":"):
        return _parse_extensible(attr, value)

    if comp == "=":
        if value == "*":
            return Presence(attr)
        if "*" in value:
            initial, *any_, final = value.split("*")
            return Substrings(
                attr,
                _value_bytes(initial) if initial else None,
                tuple(_value_bytes(part) for part in any_ if part),
                _value_bytes(final) if final else None,
            )
        return Equality(attr, _value_bytes(value))

    classes = {">=": GreaterOrEqual, "<=": LessOrEqual, "~=": ApproximateMatch}
    return classes[comp](attr, _value_bytes(value))


def parse_filter(text: str) -> Filter:
    """Parse rfc4515 string.

    :param str text: filter string, e.g. ``(&(objectClass=user)(cn=a*))``
    :raises FilterError: on syntax error
    :return Filter: filter
    """
    hidden = _hide_escapes(text)
    try:
        parsed = ParsedFilter.parse(hidden)
    except Exception as err:  # noqa: BLE001
        raise FilterError(f"Invalid filter {text!r}: {err}") from err
    return _from_parsed(parsed)
