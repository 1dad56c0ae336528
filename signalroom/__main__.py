"""Run the signaling relay with uvicorn."""
from __future__ import annotations

import logging

import uvicorn

from .core.config import settings

logger = logging.getLogger("signalroom")


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting signaling relay (%s) on %s:%s", settings.app_env, settings.host, settings.port)
    uvicorn.run(
        "signalroom.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
