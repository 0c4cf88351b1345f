import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'


def configure_logging(debug=False, log_dir=None):
    """Configure application logging"""

    if log_dir is None:
        from snapkeeper.config import get_config
        log_dir = get_config().LOG_DIR

    # Set log level based on debug flag
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'snapkeeper.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
    except OSError as e:
        file_handler = None
        file_error = e
    else:
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Quiet chatty libraries unless debugging
    if not debug:
        for name in ('botocore', 'boto3', 's3transfer', 'urllib3', 'apscheduler.executors'):
            logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger('snapkeeper')
    if file_handler is None:
        logger.warning(f"File logging disabled, cannot write to {log_dir}: {file_error}")
    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
