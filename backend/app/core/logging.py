"""Logging configuration

Pipeline code logs to a handful of named channels so operators can filter
signature problems, delivery handling and outbound email separately.
"""
import logging
from typing import Optional

from app.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Client libraries that log every HTTP request at INFO
QUIET_LOGGERS = ("stripe", "urllib3", "httpx", "httpcore", "sqlalchemy.engine", "opentelemetry")


def setup_logging(level: Optional[str] = None):
    """Configure the root logger once at process start"""
    level_name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # Signature failures are always worth seeing, even with LOG_LEVEL=ERROR
    logging.getLogger("security").setLevel(min(logging.WARNING, logging.getLogger().level))


webhook_logger = logging.getLogger("webhook")
email_logger = logging.getLogger("email")
security_logger = logging.getLogger("security")
