"""Named loggers and their file sinks.

Copyright (c) 2024 MultiFactor
License: https://github.com/MultiDirectoryLab/MultiDirectory/blob/main/LICENSE
"""

import os

from loguru import logger

from ldap_client.config import Settings

LOGGER_NAMES = ("connection", "bind", "server_set", "pool")

log_connection = logger.bind(name="connection")
log_bind = logger.bind(name="bind")
log_server_set = logger.bind(name="server_set")
log_pool = logger.bind(name="pool")

_sinks: dict[str, int] = {}


def _make_filter(name: str):  # noqa: ANN202
    return lambda rec: rec["extra"].get("name") == name


def setup_logging(settings: Settings) -> list[int]:
    """Add daily rotated file sinks for every client logger.

    Calling it again replaces previously added sinks.

    :param Settings settings: settings with LOG_DIR and DEBUG
    :return list[int]: loguru handler ids
    """
    for handler_id in _sinks.values():
        logger.remove(handler_id)
    _sinks.clear()

    level = "DEBUG" if settings.DEBUG else "INFO"

    for name in LOGGER_NAMES:
        _sinks[name] = logger.add(
            os.path.join(settings.LOG_DIR, name + "_{time:DD-MM-YYYY}.log"),
            filter=_make_filter(name),
            level=level,
            retention="10 days",
            rotation="1d",
            colorize=False,
        )

    return list(_sinks.values())
