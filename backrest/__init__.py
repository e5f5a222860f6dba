import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.30'

LOG_LEVEL_MAP = {
    'off': logging.CRITICAL + 10,
    'error': logging.ERROR,
    'warn': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
    'trace': logging.DEBUG,
}

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'

logger = logging.getLogger('backrest')


def configure_logging(level_console: str = 'warn'):
    """Configure console logging for the current process"""

    log_level = LOG_LEVEL_MAP[level_console]

    # Drop handlers left over from a previous configuration (detached drain, tests)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    logger.setLevel(logging.DEBUG)
    logger.addHandler(console_handler)
    logger.propagate = False


def set_log_file(log_file: str, level_file: str = 'info'):
    """
    Add a rotating file handler once the log location is known.

    Args:
        log_file: Full path of the log file
        level_file: Level name from the [log] config section
    """
    os.makedirs(os.path.dirname(log_file), exist_ok=True)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(LOG_LEVEL_MAP[level_file])
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    logger.addHandler(file_handler)

    logger.debug(f"Log file set to {log_file} (level: {level_file})")
