"""Module with settings.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import os
from typing import ClassVar

import jinja2
from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Client settings, every field may come from environment."""

    DEBUG: bool = False
    LOG_DIR: str = "logs"

    CONNECT_TIMEOUT_SECONDS: float = Field(10.0, gt=0)
    RESPONSE_TIMEOUT_SECONDS: float = Field(30.0, gt=0)
    SERVER_SET_DEADLINE_SECONDS: float = Field(60.0, gt=0)
    BIND_WITH_DN_REQUIRES_PASSWORD: bool = True
    TCP_PACKET_SIZE: int = 1024

    POOL_INITIAL_CONNECTIONS: int = Field(1, ge=0)
    POOL_MAX_CONNECTIONS: int = Field(10, ge=1)
    POOL_MAX_WAIT_SECONDS: float = Field(0.0, ge=0)
    POOL_MAX_CONNECTION_AGE_SECONDS: float = Field(0.0, ge=0)
    POOL_CHECK_CONNECTION_AGE_ON_RELEASE: bool = False
    POOL_REPLACE_MAX_TRIES: int = Field(3, ge=1)
    POOL_REPLACE_RETRY_INTERVAL_SECONDS: float = Field(1.0, ge=0)
    HEALTH_CHECK_INTERVAL_SECONDS: float = Field(60.0, gt=0)

    SRV_TTL_SECONDS: float = Field(3600.0, ge=0)

    GSSAPI_MAX_RECEIVE_BUFFER: int = 0xFFFFFF

    TEMPLATES: ClassVar[jinja2.Environment] = jinja2.Environment(
        loader=jinja2.PackageLoader("ldap_client", "templates"),
        enable_async=True,
        keep_trailing_newline=True,
    )

    @classmethod
    def from_os(cls) -> "Settings":
        """Get cls from environ."""
        return Settings(
            **{
                key: value
                for key, value in os.environ.items()
                if key in cls.model_fields
            },
        )
