#!/usr/bin/env python3
"""
Attribution Engine API Startup Script

Starts the FastAPI server with uvicorn.
"""

import logging
import sys
from pathlib import Path

import uvicorn

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    """Start the attribution API server."""
    logger.info("Starting Attribution Engine API...")
    logger.info("Swagger UI: http://localhost:8000/docs")

    # Check for environment file
    if not Path(".env").exists():
        logger.warning("No .env file found; set DATABASE_URL and REDIS_URL in the environment")

    try:
        uvicorn.run(
            "attribution_engine.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["attribution_engine"],
            log_level="info",
        )
    except KeyboardInterrupt:
        logger.info("Shutting down Attribution Engine API...")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
