"""Process-wide logging configuration for the job service"""

import logging
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def configure_logging(level: Optional[Union[str, int]] = None) -> None:
    """Install the root handler once; later calls only adjust the level"""
    global _configured

    if level is None:
        from config import Config

        level = Config.LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if not _configured:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        # Quieten chatty client libraries
        logging.getLogger("aiohttp").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
        _configured = True
    else:
        logging.getLogger().setLevel(level)
