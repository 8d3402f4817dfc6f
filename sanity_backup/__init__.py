import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

from sanity_backup.utils.redaction import RedactingFormatter


__version__ = '1.0.0'

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


def configure_logging(level: str = 'info', log_dir: Optional[str] = None, secrets: Iterable[str] = ()):
    """
    Configure application logging.

    Every handler renders through a RedactingFormatter so that credentials
    never reach the console or the log file, whatever the call site logged.

    Args:
        level: One of debug, info, warn, error (unknown values fall back to info)
        log_dir: Optional directory for a rotating log file
        secrets: Literal secret values to mask in every rendered record

    Returns:
        The configured package logger
    """
    log_level = LOG_LEVELS.get((level or 'info').lower(), logging.INFO)
    secrets = [s for s in secrets if s]

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(RedactingFormatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s',
        secrets=secrets
    ))
    handlers = [console_handler]

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'sanity-backup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(RedactingFormatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s',
            secrets=secrets
        ))
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # botocore is chatty at debug level and echoes signed headers
    logging.getLogger('botocore').setLevel(max(log_level, logging.INFO))
    logging.getLogger('urllib3').setLevel(max(log_level, logging.INFO))

    logger = logging.getLogger(__name__)
    logger.setLevel(log_level)
    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
