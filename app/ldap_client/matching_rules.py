"""Matching rules used for attribute value comparison.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class MatchingRule(Protocol):
    """Capability to normalize and compare attribute values."""

    def normalize(self, value: bytes) -> bytes: ...

    def values_match(self, first: bytes, second: bytes) -> bool: ...


class OctetStringMatchingRule:
    """Exact byte equality, octetStringMatch."""

    def normalize(self, value: bytes) -> bytes:
        return value

    def values_match(self, first: bytes, second: bytes) -> bool:
        return first == second


class CaseIgnoreStringMatchingRule:
    """Case insensitive string equality, caseIgnoreMatch.

    Insignificant spaces are removed, the rest is casefolded.
    """

    def normalize(self, value: bytes) -> bytes:
        text = value.decode(errors="surrogateescape")
        return " ".join(text.split()).casefold().encode(
            errors="surrogateescape",
        )

    def values_match(self, first: bytes, second: bytes) -> bool:
        return self.normalize(first) == self.normalize(second)


DEFAULT_MATCHING_RULE = OctetStringMatchingRule()
