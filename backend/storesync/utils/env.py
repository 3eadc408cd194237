"""Environment helpers for process entrypoints (API, worker, scheduler, alembic)."""

import logging
import os
from typing import Dict

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def require_env(*names: str) -> Dict[str, str]:
    """Return the named variables, or raise RuntimeError listing every missing one.

    WHY: Fail-fast at worker startup instead of on the first tenant sync.
    """
    values = {name: os.getenv(name) for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    return values


def load_env_file() -> None:
    """Load backend/.env into os.environ without overwriting deployment values.

    Covers DATABASE_URL, TOKEN_ENCRYPTION_KEY, WEBHOOK_SHARED_SECRET and the
    rest of the Settings fields during local development.
    """
    # True when the file exists, even if every key was already set
    if load_dotenv(override=False):
        logger.info("[ENV] Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("[ENV] No local .env file found")
