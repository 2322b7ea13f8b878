"""Subcontainers for requests/responses.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from enum import IntEnum, unique


class Scope(IntEnum):
    """Enum for search request."""

    BASE_OBJECT = 0
    SINGLE_LEVEL = 1
    WHOLE_SUBTREE = 2
    SUBORDINATE_SUBTREE = 3


class DerefAliases(IntEnum):
    """Enum for search request."""

    NEVER_DEREF_ALIASES = 0
    DEREF_IN_SEARCHING = 1
    DEREF_FINDING_BASE_OBJ = 2
    DEREF_ALWAYS = 3


class Operation(IntEnum):
    """Changes enum for modify request, increment is rfc4525."""

    ADD = 0
    DELETE = 1
    REPLACE = 2
    INCREMENT = 3

    @classmethod
    def from_value(cls, value: int) -> "Operation | int":
        """Get known operation, keep unknown values as plain int."""
        try:
            return cls(value)
        except ValueError:
            return int(value)


@unique
class ProtocolRequests(IntEnum):
    """Enum for LDAP requests."""

    BIND = 0
    UNBIND = 2
    SEARCH = 3
    MODIFY = 6
    ADD = 8


@unique
class ProtocolResponse(IntEnum):
    """Enum for LDAP responses."""

    BIND = 1
    SEARCH_RESULT_ENTRY = 4
    SEARCH_RESULT_DONE = 5
    MODIFY = 7
    ADD = 9
    EXTENDED = 24
    SEARCH_RESULT_REFERENCE = 19
