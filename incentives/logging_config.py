import logging
import sys
from typing import Optional

from .settings import Settings, get_settings

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
JSON_FORMAT = '{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}'


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    fmt = JSON_FORMAT if settings.log_format.lower() == "json" else TEXT_FORMAT
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=fmt,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
