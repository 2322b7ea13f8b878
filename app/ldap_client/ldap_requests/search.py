"""Search protocol.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import sys
from typing import TYPE_CHECKING, ClassVar

from asn1 import Classes, Encoder, Numbers
from pydantic import BaseModel, Field, field_validator

from ldap_client.asn1parser import BERElement
from ldap_client.filters import (
    BaseFilter,
    Presence,
    decode_filter,
    parse_filter,
)
from ldap_client.ldap_responses import (
    BaseResponse,
    SearchResultDone,
    SearchResultEntry,
    SearchResultReference,
)
from ldap_client.objects import DerefAliases, ProtocolRequests, Scope

from .base import BaseRequest

if TYPE_CHECKING:
    from ldap_client.connection import LDAPConnection


class SearchResult(BaseModel):
    """Collected search responses."""

    entries: list[SearchResultEntry] = Field(default_factory=list)
    references: list[SearchResultReference] = Field(default_factory=list)
    done: SearchResultDone


class SearchRequest(BaseRequest):
    """Search request schema.

    ```
    SearchRequest ::= [APPLICATION 3] SEQUENCE {
        baseObject      LDAPDN,
        scope           ENUMERATED {
            baseObject              (0),
            singleLevel             (1),
            wholeSubtree            (2),
            subordinateSubtree      (3),
        },
        derefAliases    ENUMERATED {
            neverDerefAliases       (0),
            derefInSearching        (1),
            derefFindingBaseObj     (2),
            derefAlways             (3)
        },
        sizeLimit       INTEGER (0 ..  maxInt),
        timeLimit       INTEGER (0 ..  maxInt),
        typesOnly       BOOLEAN,
        filter          Filter,
        attributes      AttributeSelection
    }
    ```
    """

    PROTOCOL_OP: ClassVar[int] = ProtocolRequests.SEARCH
    RESPONSE_TYPE: ClassVar[type[BaseResponse] | None] = SearchResultDone

    base_object: str = Field("", description="Any `DistinguishedName`")
    scope: Scope = Scope.WHOLE_SUBTREE
    deref_aliases: DerefAliases = DerefAliases.NEVER_DEREF_ALIASES
    size_limit: int = Field(0, ge=0, le=sys.maxsize)
    time_limit: int = Field(0, ge=0, le=sys.maxsize)
    types_only: bool = False
    filter: BaseFilter = Field(default_factory=lambda: Presence("objectClass"))
    attributes: list[str] = Field(default_factory=list)

    @field_validator("filter", mode="before")
    @classmethod
    def validate_filter(cls, value: str | BaseFilter) -> BaseFilter:
        if isinstance(value, str):
            return parse_filter(value)
        return value

    def encode_protocol_op(self) -> BERElement:
        return BERElement.application(
            self.PROTOCOL_OP,
            [
                BERElement.octet_string(self.base_object),
                BERElement.enumerated(self.scope),
                BERElement.enumerated(self.deref_aliases),
                BERElement.integer(self.size_limit),
                BERElement.integer(self.time_limit),
                BERElement.boolean(self.types_only),
                self.filter.to_element(),
                BERElement.sequence(
                    [BERElement.octet_string(a) for a in self.attributes],
                ),
            ],
        )

    def to_asn1(self, enc: Encoder) -> None:
        enc.write(self.base_object, Numbers.OctetString)
        enc.write(int(self.scope), Numbers.Enumerated)
        enc.write(int(self.deref_aliases), Numbers.Enumerated)
        enc.write(self.size_limit, Numbers.Integer)
        enc.write(self.time_limit, Numbers.Integer)
        enc.write(self.types_only, Numbers.Boolean)
        self.filter.to_asn1(enc)
        enc.enter(Numbers.Sequence)
        for attr in self.attributes:
            enc.write(attr, Numbers.OctetString)
        enc.leave()

    @classmethod
    def from_element(cls, element: BERElement) -> "SearchRequest":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        (
            base_object,
            scope,
            deref_aliases,
            size_limit,
            time_limit,
            types_only,
            filter_,
            attributes,
        ) = element.children(8, 8)
        return cls(
            base_object=base_object.expect(Numbers.OctetString).as_str(),
            scope=Scope(scope.expect(Numbers.Enumerated).as_int()),
            deref_aliases=DerefAliases(
                deref_aliases.expect(Numbers.Enumerated).as_int(),
            ),
            size_limit=size_limit.expect(Numbers.Integer).as_int(),
            time_limit=time_limit.expect(Numbers.Integer).as_int(),
            types_only=types_only.expect(Numbers.Boolean).as_bool(),
            filter=decode_filter(filter_),
            attributes=[
                attr.as_str()
                for attr in attributes.expect(Numbers.Sequence).children()
            ],
        )

    def to_code(self) -> str:
        lines = [
            "SearchRequest(",
            f"    base_object={self.base_object!r},",
            f"    scope=Scope.{self.scope.name},",
            f"    deref_aliases=DerefAliases.{self.deref_aliases.name},",
            f"    size_limit={self.size_limit},",
            f"    time_limit={self.time_limit},",
            f"    types_only={self.types_only},",
            f"    filter={str(self.filter)!r},",
            f"    attributes={self.attributes!r},",
            *self._controls_code(),
            ")",
        ]
        return "\n".join(lines)

    async def process(  # type: ignore[override]
        self,
        connection: "LDAPConnection",
    ) -> SearchResult:
        """Send search and collect entries and references.

        :raises LDAPOperationError: non success result
        :return SearchResult: collected responses
        """
        self.validate_request()
        responses = await connection.exchange(self)
        result = SearchResult(
            entries=[
                r for r in responses if isinstance(r, SearchResultEntry)
            ],
            references=[
                r for r in responses if isinstance(r, SearchResultReference)
            ],
            done=responses[-1],
        )
        result.done.raise_for_result()
        return result
