import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

# Between INFO and WARNING, so it still shows when INFO is suppressed
SUCCESS = 25
logging.addLevelName(SUCCESS, 'SUCCESS')

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'


def configure_logging(level=SUCCESS, log_dir: Optional[str] = None, filename: str = 'backupdb.log',
                      force: bool = True):
    """
    Configure application logging.

    Args:
        level: Minimum level for the console and file handlers
        log_dir: Directory for the rotating log file (console only if None)
        filename: Log file name inside log_dir
        force: Replace handlers already installed on the root logger

    Returns:
        List of installed handlers
    """
    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers = [console_handler]

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, filename),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=level, handlers=handlers, force=force)
    logging.getLogger('backupdb').setLevel(level)

    # Third-party clients are noisy at DEBUG
    for name in ('botocore', 'boto3', 's3transfer', 'urllib3', 'paramiko'):
        logging.getLogger(name).setLevel(max(level, logging.INFO))

    logging.getLogger(__name__).debug(f"Logging configured (level: {logging.getLevelName(level)})")
    return handlers


def level_for_mode(debug: bool = False, test: bool = False) -> int:
    """
    Map run modes to a log level.

    DEBUG in debug mode, INFO in test mode, otherwise only SUCCESS and above.
    """
    if debug:
        return logging.DEBUG
    if test:
        return logging.INFO
    return SUCCESS
