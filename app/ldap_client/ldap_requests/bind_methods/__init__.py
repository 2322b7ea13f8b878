"""Bind methods.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from .callbacks import (
    CallbackHandler,
    LanguageCallback,
    NameCallback,
    PasswordCallback,
    RealmCallback,
)
from .sasl_gssapi import (
    GSSAPISL,
    GSSAPIBindRequest,
    GSSAPIBindRequestProperties,
    SASLQualityOfProtection,
)

__all__ = [
    "GSSAPISL",
    "CallbackHandler",
    "GSSAPIBindRequest",
    "GSSAPIBindRequestProperties",
    "LanguageCallback",
    "NameCallback",
    "PasswordCallback",
    "RealmCallback",
    "SASLQualityOfProtection",
]
