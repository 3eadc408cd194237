#!/usr/bin/env python3
"""
storesync API Startup Script

Starts the webhook/sync API. Poll syncs run in the ARQ worker
(storesync.workers.start_arq_worker), not here.
"""

import logging
import sys
from pathlib import Path

import uvicorn

logger = logging.getLogger(__name__)


def main():
    """Start the storesync API server."""
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting storesync API (docs at http://localhost:8000/docs)")

    if not Path(".env").exists():
        logger.warning(
            "No .env file found. Required: DATABASE_URL, TOKEN_ENCRYPTION_KEY, "
            "WEBHOOK_SHARED_SECRET, ADMIN_SECRET_KEY"
        )

    try:
        uvicorn.run(
            "storesync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["storesync"],
            log_level="info"
        )
    except KeyboardInterrupt:
        logger.info("Shutting down storesync API server...")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
