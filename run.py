#!/usr/bin/env python3
"""
Microlend Entry Point

Starts the FastAPI server with the lending engine.
"""

import sys

import uvicorn

from microlend.config import get_config
from microlend.logging_config import setup_logging


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "microlend.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    logger.info(
        "Starting Microlend API",
        extra={"extra": {"host": config.api_host, "port": config.api_port,
                         "storage_backend": config.storage_backend}}
    )

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down Microlend API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
