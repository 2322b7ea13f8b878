"""LDAP response containers.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from abc import ABC, abstractmethod
from typing import ClassVar

from asn1 import Classes, Encoder, Numbers
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ldap_client.asn1parser import BERElement
from ldap_client.attributes import Attribute, Entry
from ldap_client.exceptions import LDAPOperationError, ProtocolError
from ldap_client.ldap_codes import LDAPCodes
from ldap_client.objects import ProtocolResponse

REFERRAL_TAG = 3
SERVER_SASL_CREDS_TAG = 7
RESPONSE_NAME_TAG = 10
RESPONSE_VALUE_TAG = 11


class BaseResponse(ABC, BaseModel):
    """Base class for Response."""

    model_config = ConfigDict(populate_by_name=True)

    PROTOCOL_OP: ClassVar[int]

    def to_asn1(self, enc: Encoder) -> None:
        """Write protocol op contents to encoder buffer."""
        for child in self.to_element().value:
            child.write(enc)

    @abstractmethod
    def to_element(self) -> BERElement:
        """Get protocol op element."""

    @classmethod
    @abstractmethod
    def from_element(cls, element: BERElement) -> "BaseResponse":
        """Build response from protocol op element."""


class LDAPResult(BaseResponse):
    """Base LDAP result structure.

    ```
    LDAPResult ::= SEQUENCE {
        resultCode         ENUMERATED,
        matchedDN          LDAPDN,
        diagnosticMessage  LDAPString,
        referral           [3] Referral OPTIONAL }
    ```
    """

    result_code: LDAPCodes | int = Field(..., alias="resultCode")
    matched_dn: str = Field("", alias="matchedDN")
    error_message: str = Field("", alias="errorMessage")
    referral: list[str] = Field(default_factory=list)

    @field_validator("result_code", mode="before")
    @classmethod
    def validate_result_code(cls, value: int) -> LDAPCodes | int:
        try:
            return LDAPCodes(value)
        except ValueError:
            return int(value)

    @property
    def is_success(self) -> bool:
        return self.result_code == LDAPCodes.SUCCESS

    def raise_for_result(
        self,
        *allowed: LDAPCodes,
    ) -> None:
        """Raise LDAPOperationError unless result is success or allowed."""
        if self.is_success or self.result_code in allowed:
            return
        raise LDAPOperationError(
            self.error_message or f"Operation failed: {self.result_code!r}",
            self.result_code,  # type: ignore[arg-type]
        )

    def _result_children(self) -> list[BERElement]:
        children = [
            BERElement.enumerated(self.result_code),
            BERElement.octet_string(self.matched_dn),
            BERElement.octet_string(self.error_message),
        ]
        if self.referral:
            children.append(
                BERElement.sequence(
                    [BERElement.octet_string(uri) for uri in self.referral],
                    REFERRAL_TAG,
                    Classes.Context,
                ),
            )
        return children

    def to_element(self) -> BERElement:
        return BERElement.application(
            self.PROTOCOL_OP,
            self._result_children(),
        )

    @classmethod
    def _result_fields(cls, children: list[BERElement]) -> dict:
        if len(children) < 3:
            raise ProtocolError("LDAPResult requires three elements")
        code, matched_dn, message = children[:3]
        fields: dict = {
            "result_code": code.expect(Numbers.Enumerated).as_int(),
            "matched_dn": matched_dn.expect(Numbers.OctetString).as_str(),
            "error_message": message.expect(Numbers.OctetString).as_str(),
        }
        for child in children[3:]:
            if (
                child.tag_class == Classes.Context
                and child.tag_number == REFERRAL_TAG
            ):
                fields["referral"] = [uri.as_str() for uri in child.children()]
        return fields

    @classmethod
    def from_element(cls, element: BERElement) -> "LDAPResult":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        return cls(**cls._result_fields(element.children(3)))


class BindResponse(LDAPResult):
    """Bind response. Description in rfc4511 4.2.2.

    BindResponse ::= [APPLICATION 1] SEQUENCE {
        COMPONENTS OF LDAPResult,
        serverSaslCreds    [7] OCTET STRING OPTIONAL }
    """

    PROTOCOL_OP: ClassVar[int] = ProtocolResponse.BIND
    server_sasl_creds: bytes | None = Field(None, alias="serverSaslCreds")

    def to_element(self) -> BERElement:
        children = self._result_children()
        if self.server_sasl_creds is not None:
            children.append(
                BERElement.context(
                    SERVER_SASL_CREDS_TAG,
                    self.server_sasl_creds,
                ),
            )
        return BERElement.application(self.PROTOCOL_OP, children)

    @classmethod
    def from_element(cls, element: BERElement) -> "BindResponse":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        children = element.children(3)
        fields = cls._result_fields(children)
        for child in children[3:]:
            if (
                child.tag_class == Classes.Context
                and child.tag_number == SERVER_SASL_CREDS_TAG
            ):
                fields["server_sasl_creds"] = child.as_bytes()
        return cls(**fields)


class SearchResultEntry(BaseResponse):
    """Search Response.

    ```
    SearchResultEntry ::= [APPLICATION 4] SEQUENCE {
        objectName      LDAPDN,
        attributes      PartialAttributeList }
    ```
    """

    PROTOCOL_OP: ClassVar[int] = ProtocolResponse.SEARCH_RESULT_ENTRY

    object_name: str
    partial_attributes: list[Attribute] = Field(default_factory=list)

    def to_entry(self) -> Entry:
        return Entry(dn=self.object_name, attributes=self.partial_attributes)

    def to_element(self) -> BERElement:
        return BERElement.application(
            self.PROTOCOL_OP,
            [
                BERElement.octet_string(self.object_name),
                BERElement.sequence(
                    [attr.to_element() for attr in self.partial_attributes],
                ),
            ],
        )

    @classmethod
    def from_element(cls, element: BERElement) -> "SearchResultEntry":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        name, attributes = element.children(2, 2)
        return cls(
            object_name=name.expect(Numbers.OctetString).as_str(),
            partial_attributes=[
                Attribute.from_element(attr)
                for attr in attributes.expect(Numbers.Sequence).children()
            ],
        )


class SearchResultReference(BaseResponse):
    """Continuation references, rfc4511 4.5.3."""

    PROTOCOL_OP: ClassVar[int] = ProtocolResponse.SEARCH_RESULT_REFERENCE

    uris: list[str] = Field(default_factory=list)

    def to_element(self) -> BERElement:
        return BERElement.application(
            self.PROTOCOL_OP,
            [BERElement.octet_string(uri) for uri in self.uris],
        )

    @classmethod
    def from_element(cls, element: BERElement) -> "SearchResultReference":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        return cls(uris=[uri.as_str() for uri in element.children(1)])


class SearchResultDone(LDAPResult):
    """LDAP result."""

    PROTOCOL_OP: ClassVar[int] = ProtocolResponse.SEARCH_RESULT_DONE


class ModifyResponse(LDAPResult):
    """Modify response."""

    PROTOCOL_OP: ClassVar[int] = ProtocolResponse.MODIFY


class AddResponse(LDAPResult):
    """Add response."""

    PROTOCOL_OP: ClassVar[int] = ProtocolResponse.ADD


class ExtendedResponse(LDAPResult):
    """Extended response, unsolicited when message id is 0.

    ```
    ExtendedResponse ::= [APPLICATION 24] SEQUENCE {
        COMPONENTS OF LDAPResult,
        responseName     [10] LDAPOID OPTIONAL,
        responseValue    [11] OCTET STRING OPTIONAL }
    ```
    """

    PROTOCOL_OP: ClassVar[int] = ProtocolResponse.EXTENDED
    response_name: str | None = Field(None, alias="responseName")
    response_value: bytes | None = Field(None, alias="responseValue")

    def to_element(self) -> BERElement:
        children = self._result_children()
        if self.response_name is not None:
            children.append(
                BERElement.context(RESPONSE_NAME_TAG, self.response_name),
            )
        if self.response_value is not None:
            children.append(
                BERElement.context(RESPONSE_VALUE_TAG, self.response_value),
            )
        return BERElement.application(self.PROTOCOL_OP, children)

    @classmethod
    def from_element(cls, element: BERElement) -> "ExtendedResponse":
        element.expect(cls.PROTOCOL_OP, Classes.Application, constructed=True)
        children = element.children(3)
        fields = cls._result_fields(children)
        for child in children[3:]:
            if child.tag_class != Classes.Context:
                continue
            if child.tag_number == RESPONSE_NAME_TAG:
                fields["response_name"] = child.as_str()
            elif child.tag_number == RESPONSE_VALUE_TAG:
                fields["response_value"] = child.as_bytes()
        return cls(**fields)


protocol_id_map: dict[int, type[BaseResponse]] = {
    response.PROTOCOL_OP: response  # type: ignore
    for response in (
        BindResponse,
        SearchResultEntry,
        SearchResultReference,
        SearchResultDone,
        ModifyResponse,
        AddResponse,
        ExtendedResponse,
    )
}
