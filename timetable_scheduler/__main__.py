from __future__ import annotations

import logging

import uvicorn

from .app import create_app
from .config import get_settings
from .logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    setup_logging(level=settings.log_level, log_dir=settings.log_dir)
    logger.info("Starting %s on %s:%s", settings.app_name, settings.host, settings.port)

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
