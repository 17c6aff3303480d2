"""Environment loading helpers."""

import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> None:
    """Populate os.environ from a local .env file without clobbering real env vars.

    WHAT:
        Reads backend/.env (or the nearest .env found by python-dotenv).
    WHY:
        Local development keeps DATABASE_URL/REDIS_URL in .env while deployed
        processes get them from the platform; deployed values must win.
    """
    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables kept)")
    else:
        logger.debug("[ENV] No local .env file found in %s", os.getcwd())
