"""BER codec, asn1 encoder and decoder wrapper with dataclasses.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from math import inf
from typing import Any

import asn1
from asn1 import Classes, Decoder, Encoder, Numbers, Types

from ldap_client.exceptions import DecodeError, ProtocolError


class TagNumbers(IntEnum):
    """Enum for filter tags in LDAP search.

    ```
    AND = 0
    OR = 1
    NOT = 2
    EQUALITY_MATCH = 3
    SUBSTRING = 4
    GE = 5
    LE = 6
    PRESENT = 7
    APPROX_MATCH = 8
    EXTENSIBLE_MATCH = 9
    ```
    """

    AND = 0
    OR = 1
    NOT = 2
    EQUALITY_MATCH = 3
    SUBSTRING = 4
    GE = 5
    LE = 6
    PRESENT = 7
    APPROX_MATCH = 8
    EXTENSIBLE_MATCH = 9


class SubstringTag(IntEnum):
    """Enum for substring tags.

    ```
    INITIAL = 0
    ANY = 1
    FINAL = 2
    ```
    """

    INITIAL = 0
    ANY = 1
    FINAL = 2


class LDAPOID(StrEnum):
    """Enum for LDAP OIDs."""

    NOTICE_OF_DISCONNECTION = "1.3.6.1.4.1.1466.20036"
    START_TLS = "1.3.6.1.4.1.1466.20037"
    WHOAMI = "1.3.6.1.4.1.4203.1.11.3"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_


@dataclass
class BERElement:
    """Single tag-length-value node.

    Primitive elements carry the value as the asn1 decoder yields it:
    bytes for octet strings and every non universal tag, int for
    integers and enumerations, bool for booleans, None for null.
    Constructed elements carry the list of child elements. Decoded
    primitives also keep the value and content octets they were read
    from, content is reused while the value is unchanged.
    """

    tag_class: int
    tag_number: int
    value: Any = None
    constructed: bool = False
    decoded_content: tuple[Any, bytes] | None = field(
        default=None,
        init=False,
        repr=False,
        compare=False,
    )

    @classmethod
    def integer(
        cls,
        value: int,
        tag_number: int = Numbers.Integer,
    ) -> "BERElement":
        return cls(Classes.Universal, tag_number, int(value))

    @classmethod
    def enumerated(cls, value: int) -> "BERElement":
        return cls(Classes.Universal, Numbers.Enumerated, int(value))

    @classmethod
    def boolean(cls, value: bool) -> "BERElement":
        return cls(Classes.Universal, Numbers.Boolean, bool(value))

    @classmethod
    def null(cls) -> "BERElement":
        return cls(Classes.Universal, Numbers.Null, None)

    @classmethod
    def octet_string(cls, value: str | bytes) -> "BERElement":
        return cls(Classes.Universal, Numbers.OctetString, _to_bytes(value))

    @classmethod
    def sequence(
        cls,
        children: list["BERElement"] | None = None,
        tag_number: int = Numbers.Sequence,
        tag_class: int = Classes.Universal,
    ) -> "BERElement":
        return cls(tag_class, tag_number, list(children or []), True)

    @classmethod
    def set_of(cls, children: list["BERElement"]) -> "BERElement":
        return cls.sequence(children, Numbers.Set)

    @classmethod
    def context(
        cls,
        tag_number: int,
        value: str | bytes = b"",
    ) -> "BERElement":
        """Implicitly tagged primitive, context specific class."""
        return cls(Classes.Context, tag_number, _to_bytes(value))

    @classmethod
    def application(
        cls,
        tag_number: int,
        children: list["BERElement"],
    ) -> "BERElement":
        """Constructed protocol op element."""
        return cls.sequence(children, tag_number, Classes.Application)

    def write(self, enc: Encoder) -> None:
        """Write element to encoder buffer."""
        if self.constructed:
            enc.enter(self.tag_number, self.tag_class)
            for child in self.value:
                child.write(enc)
            enc.leave()
            return

        value = self.value
        if self.tag_class != Classes.Universal:
            value = _to_bytes(value)

        enc.write(value, self.tag_number, Types.Primitive, self.tag_class)

    @property
    def content(self) -> bytes:
        """Raw content octets of element."""
        if self.constructed:
            return b"".join(encode(child) for child in self.value)

        if self.decoded_content is not None:
            value, content = self.decoded_content
            if type(value) is type(self.value) and value == self.value:
                return content

        return _primitive_content(self)

    def expect(
        self,
        tag_number: int,
        tag_class: int = Classes.Universal,
        constructed: bool | None = None,
    ) -> "BERElement":
        """Ensure element has tag, return self.

        :raises ProtocolError: on tag mismatch
        """
        if self.tag_number != tag_number or self.tag_class != tag_class:
            raise ProtocolError(
                f"Expected tag {tag_number} of class {tag_class}, "
                f"got {self.tag_number} of class {self.tag_class}",
            )
        if constructed is not None and self.constructed != constructed:
            raise ProtocolError(f"Unexpected encoding of tag {tag_number}")
        return self

    def children(
        self,
        min_count: int = 0,
        max_count: int | None = None,
    ) -> list["BERElement"]:
        """Get child elements, validating their count.

        :raises ProtocolError: primitive element or wrong count
        """
        if not self.constructed:
            raise ProtocolError(
                f"Element with tag {self.tag_number} is not constructed",
            )
        count = len(self.value)
        if count < min_count or (max_count is not None and count > max_count):
            raise ProtocolError(
                f"Element with tag {self.tag_number} has {count} elements",
            )
        return self.value

    def as_bytes(self) -> bytes:
        if self.constructed or not isinstance(self.value, (bytes, str)):
            raise ProtocolError(
                f"Element with tag {self.tag_number} is not a string",
            )
        return _to_bytes(self.value)

    def as_str(self) -> str:
        try:
            return self.as_bytes().decode()
        except UnicodeDecodeError as err:
            raise ProtocolError(str(err)) from err

    def as_int(self) -> int:
        if (
            self.constructed
            or isinstance(self.value, bool)
            or not isinstance(self.value, int)
        ):
            raise ProtocolError(
                f"Element with tag {self.tag_number} is not an integer",
            )
        return self.value

    def as_bool(self) -> bool:
        if isinstance(self.value, bool):
            return self.value
        if isinstance(self.value, bytes) and len(self.value) == 1:
            return self.value != b"\x00"
        raise ProtocolError(
            f"Element with tag {self.tag_number} is not a boolean",
        )


def _to_bytes(value: str | bytes | None) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode()
    return bytes(value)


def is_printable(data: bytes) -> bool:
    """Check every byte is a printable ASCII character."""
    return all(0x20 <= byte <= 0x7E for byte in data)


def value_to_code(value: bytes) -> str:
    """Render value as python literal, text when printable."""
    if is_printable(value):
        return repr(value.decode())
    return repr(value)


class _IncompleteHeaderError(DecodeError):
    """Identifier or length octets are cut."""


def _parse_header(data: bytes | bytearray) -> tuple[int, int]:
    """Get length of identifier and length octets and content length.

    :raises DecodeError: reserved or indefinite length form
    :raises _IncompleteHeaderError: header octets are cut
    """
    if not data:
        raise _IncompleteHeaderError("Empty input")

    offset = 1
    if data[0] & 0x1F == 0x1F:
        while True:
            if offset >= len(data):
                raise _IncompleteHeaderError("Truncated tag octets")
            offset += 1
            if not data[offset - 1] & 0x80:
                break

    if offset >= len(data):
        raise _IncompleteHeaderError("Missing length octets")

    first = data[offset]
    offset += 1
    if not first & 0x80:  # short
        return offset, first

    count = first & 0x7F  # long
    if count == 0x7F:
        raise DecodeError("Reserved length prefix 0xFF")
    if count == 0:
        raise DecodeError("Indefinite length is not supported")
    if offset + count > len(data):
        raise _IncompleteHeaderError("Truncated length octets")

    length = 0
    for byte in data[offset : offset + count]:
        length = (length << 8) | byte

    return offset + count, length


def compute_message_size(data: bytes | bytearray) -> float:
    """Compute BER element size according to definite length rules.

    Returns infinity if too few data to compute the length.

    BER definite length - short form.
    Highest bit of length octet is 0, length is in the last 7 bits,
    content can be up to 127 bytes long.

    BER definite length - long form.
    Highest bit of the first length octet is 1, last 7 bits
    count the number of following octets containing the content length.

    :param bytes data: element head, may be incomplete
    :raises DecodeError: reserved or indefinite length form
    :return int | float: total element size or infinity
    """
    try:
        header, length = _parse_header(data)
    except _IncompleteHeaderError:
        return inf
    return header + length


def _identifier(element: BERElement) -> bytes:
    first = element.tag_class | (
        Types.Constructed if element.constructed else Types.Primitive
    )
    if element.tag_number < 0x1F:
        return bytes([first | element.tag_number])

    number = element.tag_number
    octets = [number & 0x7F]
    number >>= 7
    while number:
        octets.append(0x80 | (number & 0x7F))
        number >>= 7
    return bytes([first | 0x1F, *reversed(octets)])


def _length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    octets = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(octets)]) + octets


def _primitive_content(element: BERElement) -> bytes:
    enc = Encoder()
    enc.start()
    element.write(enc)
    data = enc.output()
    return data[_parse_header(data)[0] :]


def encode(element: BERElement) -> bytes:
    """Encode element tree to bytes.

    Decoded primitives keep their content octets, so decoded data is
    reproduced as it was read.
    """
    content = element.content
    return _identifier(element) + _length(len(content)) + content


def _tag_number(data: bytes, offset: int) -> int:
    if data[offset] & 0x1F != 0x1F:
        return data[offset] & 0x1F

    number = 0
    for byte in data[offset + 1 :]:
        number = (number << 7) | (byte & 0x7F)
        if not byte & 0x80:
            break
    return number


def _primitive_value(
    tag_class: int,
    tag_number: int,
    content: bytes,
) -> Any:
    if tag_class != Classes.Universal:
        return content

    decoder = Decoder()
    decoder.start(bytes([tag_number]) + _length(len(content)) + content)
    return decoder.read()[1]


def _read_element(
    data: bytes,
    offset: int,
    end: int,
) -> tuple[BERElement, int]:
    """Read element at offset, elements must not cross end.

    :return tuple[BERElement, int]: element and offset after it
    """
    try:
        header, length = _parse_header(data[offset:end])
    except _IncompleteHeaderError as err:
        raise DecodeError(err.message) from err

    start = offset + header
    stop = start + length
    if stop > end:
        raise DecodeError("Declared length exceeds the remaining data")

    tag_class = Classes(data[offset] & 0xC0)
    tag_number = _tag_number(data, offset)

    if data[offset] & Types.Constructed:
        children = []
        position = start
        while position < stop:
            child, position = _read_element(data, position, stop)
            children.append(child)
        return BERElement(tag_class, tag_number, children, True), stop

    content = data[start:stop]
    if tag_class == Classes.Universal and tag_number >= 0x1F:
        raise DecodeError(f"Unsupported universal tag {tag_number}")

    value = _primitive_value(tag_class, tag_number, content)
    element = BERElement(tag_class, tag_number, value)
    element.decoded_content = (value, content)
    return element, stop


def decode(data: bytes) -> BERElement:
    """Decode exactly one element.

    :param bytes data: encoded element
    :raises DecodeError: truncated or malformed data, trailing bytes
    :return BERElement: element tree
    """
    data = bytes(data)
    try:
        header, length = _parse_header(data)
    except _IncompleteHeaderError as err:
        raise DecodeError(err.message) from err

    size = header + length
    if size > len(data):
        raise DecodeError("Declared length exceeds the remaining data")
    if size < len(data):
        raise DecodeError(f"{len(data) - int(size)} trailing bytes")

    try:
        return _read_element(data, 0, len(data))[0]
    except (asn1.Error, ValueError, IndexError, UnicodeDecodeError) as err:
        raise DecodeError(str(err)) from err


def asn1todict(data: bytes) -> list[BERElement]:
    """Decode concatenated elements to list of elements."""
    data = bytes(data)
    out = []
    position = 0
    try:
        while position < len(data):
            element, position = _read_element(data, position, len(data))
            out.append(element)
    except (asn1.Error, ValueError, IndexError, UnicodeDecodeError) as err:
        raise DecodeError(str(err)) from err
    return out


__all__ = [
    "BERElement",
    "LDAPOID",
    "SubstringTag",
    "TagNumbers",
    "asn1todict",
    "compute_message_size",
    "decode",
    "encode",
    "is_printable",
    "value_to_code",
]
