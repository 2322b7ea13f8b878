"""Credential callbacks issued during SASL negotiation.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass
class NameCallback:
    """Asks for authentication identity."""

    prompt: str = "Kerberos username: "
    default_name: str | None = None
    name: str | None = None


@dataclass
class PasswordCallback:
    """Asks for secret, never echoed."""

    prompt: str = "Kerberos password: "
    echo_on: bool = False
    password: str | None = None


@dataclass
class RealmCallback:
    """Asks for realm, ``default_text`` is used if none is configured."""

    prompt: str = "Kerberos realm: "
    default_text: str | None = None
    text: str | None = None


@dataclass
class LanguageCallback:
    locale: str | None = None


class CallbackHandler(Protocol):
    """Anything able to answer an ordered list of callbacks."""

    def handle_callbacks(self, callbacks: Sequence[object]) -> None: ...
