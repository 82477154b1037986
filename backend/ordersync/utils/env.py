"""Local .env support for developers running the API and worker by hand."""

import logging
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, next to the ordersync package
BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def load_env_file() -> bool:
    """Load backend/.env into os.environ, never overriding exported values.

    Returns True when a file was found and read.
    """
    if not BACKEND_ENV_FILE.is_file():
        logger.debug("[ENV] No %s, using process environment only", BACKEND_ENV_FILE)
        return False

    load_dotenv(BACKEND_ENV_FILE, override=False)
    logger.info("[ENV] Loaded %s (exported variables take precedence)", BACKEND_ENV_FILE)
    return True
