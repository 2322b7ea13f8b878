"""Test attributes, entries and modifications.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from ldap_client.asn1parser import decode, encode
from ldap_client.attributes import Attribute, Entry, Modification
from ldap_client.matching_rules import CaseIgnoreStringMatchingRule
from ldap_client.objects import Operation


def test_attribute_equality_ignores_order_and_name_case() -> None:
    """Test attributes with same values in other order are equal."""
    first = Attribute("cn", "a", "b")
    second = Attribute("CN", "b", "a")

    assert first == second
    assert hash(first) == hash(second)
    assert first != Attribute("cn", "a")
    assert first != Attribute("cn", "a", "b", "b")


def test_attribute_values_are_bytes() -> None:
    """Test text values are stored UTF-8 encoded."""
    attr = Attribute("description", "ключ", b"\x00\x01")

    assert attr.values == ["ключ".encode(), b"\x00\x01"]
    assert attr.has_value("ключ")
    assert not attr.has_value("КЛЮЧ")
    assert attr.has_value("КЛЮЧ", CaseIgnoreStringMatchingRule())


def test_attribute_with_case_ignore_rule() -> None:
    """Test matching rule normalizes values for equality."""
    rule = CaseIgnoreStringMatchingRule()
    first = Attribute("cn", "John  Doe", matching_rule=rule)
    second = Attribute("cn", "john doe", matching_rule=rule)

    assert first == second
    assert hash(first) == hash(second)
    assert Attribute("cn", "John Doe") != Attribute("cn", "john doe")


def test_attribute_code_redacts_sensitive_values() -> None:
    """Test redaction only affects rendered code."""
    single = Attribute("userPassword", "secret")
    multiple = Attribute("2.5.4.35", "one", "two")

    assert single.to_code() == (
        "Attribute('userPassword', '---redacted-value---')"
    )
    assert multiple.to_code() == (
        "Attribute('2.5.4.35', "
        "'---redacted-value-1---', '---redacted-value-2---')"
    )

    data = encode(single.to_element())
    assert b"secret" in data
    assert b"redacted" not in data
    assert Attribute.from_element(decode(data)) == single


def test_attribute_code_renders_plain_values() -> None:
    """Test printable values render as text."""
    assert Attribute("cn", "user0").to_code() == "Attribute('cn', 'user0')"
    assert Attribute("objectGUID", b"\x00\xff").to_code() == (
        "Attribute('objectGUID', b'\\x00\\xff')"
    )


def test_entry_merges_attributes() -> None:
    """Test attributes with the same name are merged."""
    entry = Entry(
        dn="cn=user0,dc=md,dc=test",
        attributes=[
            Attribute("objectClass", "top"),
            Attribute("OBJECTCLASS", "user"),
            Attribute("cn", "user0"),
        ],
    )

    assert len(entry.attributes) == 2
    assert entry.get_attribute("objectclass") == Attribute(
        "objectClass",
        "user",
        "top",
    )


def test_entry_has_attribute() -> None:
    """Test exact value set is required, partial lists do not match."""
    entry = Entry(
        dn="cn=user0,dc=md,dc=test",
        attributes=[Attribute("objectClass", "top", "user")],
    )

    assert entry.has_attribute("objectClass")
    assert entry.has_attribute(Attribute("objectclass", "user", "top"))
    assert not entry.has_attribute(Attribute("objectClass", "top"))
    assert not entry.has_attribute(
        Attribute("objectClass", "top", "user", "person"),
    )
    assert not entry.has_attribute("cn")

    assert entry.has_attribute_value("objectClass", "user")
    assert not entry.has_attribute_value("objectClass", "USER")
    assert entry.has_attribute_value(
        "objectClass",
        "USER",
        CaseIgnoreStringMatchingRule(),
    )


def test_modification_round_trip() -> None:
    """Test decoded modification is equal and hashes the same."""
    modification = Modification(Operation.REPLACE, "description", "a", "b")

    decoded = Modification.from_element(
        decode(encode(modification.to_element())),
    )

    assert decoded == modification
    assert hash(decoded) == hash(modification)
    assert decoded.operation is Operation.REPLACE
    assert Modification(Operation.REPLACE, "description", "b", "a") == (
        modification
    )
    assert Modification(Operation.ADD, "description", "a", "b") != (
        modification
    )


def test_modification_keeps_unknown_operation() -> None:
    """Test operation outside of known ones is kept as int."""
    modification = Modification(42, "cn", "x")

    decoded = Modification.from_element(
        decode(encode(modification.to_element())),
    )

    assert decoded.operation == 42
    assert decoded.to_code() == "Modification(42, 'cn', 'x')"


def test_modification_code() -> None:
    """Test rendered modification redacts password."""
    assert Modification(Operation.ADD, "cn", "x").to_code() == (
        "Modification(Operation.ADD, 'cn', 'x')"
    )
    assert Modification(Operation.REPLACE, "userPassword", "x").to_code() == (
        "Modification(Operation.REPLACE, 'userPassword', "
        "'---redacted-value---')"
    )
