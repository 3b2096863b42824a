#!/usr/bin/env python3
"""
Development server for the Docket Calendar API.

Bind address and auto-reload come from HOST, PORT and RELOAD.

Usage:
    python -m docket_api.run
"""

import logging

import uvicorn

from docket_api.config import get_settings

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=logging.INFO)
    for warning in settings.validate_auth_config():
        logger.warning(f"Auth config: {warning}")

    logger.info(f"Docket Calendar API on http://{settings.host}:{settings.port} ({settings.environment})")
    logger.info(f"API docs: http://{settings.host}:{settings.port}/docs")

    uvicorn.run(
        "docket_api.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
    )


if __name__ == "__main__":
    main()
