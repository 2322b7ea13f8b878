"""LDAP protocol map.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from .add import AddRequest, LDIFEntryReader
from .base import BaseRequest
from .bind import (
    BindRequest,
    SASLBindRequest,
    SimpleBindRequest,
    UnbindRequest,
)
from .bind_methods import GSSAPIBindRequest, GSSAPIBindRequestProperties
from .modify import ModifyRequest
from .search import SearchRequest, SearchResult

requests: list[type[BaseRequest]] = [
    AddRequest,
    BindRequest,
    UnbindRequest,
    ModifyRequest,
    SearchRequest,
]

protocol_id_map: dict[int, type[BaseRequest]] = {
    request.PROTOCOL_OP: request  # type: ignore
    for request in requests
}


__all__ = [
    "AddRequest",
    "BaseRequest",
    "BindRequest",
    "GSSAPIBindRequest",
    "GSSAPIBindRequestProperties",
    "LDIFEntryReader",
    "ModifyRequest",
    "SASLBindRequest",
    "SearchRequest",
    "SearchResult",
    "SimpleBindRequest",
    "UnbindRequest",
    "protocol_id_map",
]
