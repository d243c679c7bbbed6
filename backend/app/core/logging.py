"""Logging configuration for the application"""
import logging

from app.core.config import settings


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Silence noisy third-party libraries
    for noisy in ("httpx", "httpcore", "openai", "urllib3", "urllib3.connectionpool"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

