# autotrader/utils/logger.py
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

LOG_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s:%(lineno)d] - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(name: str, log_file: str = None, level=None, settings=None,
                 force_console_only: bool = False) -> logging.Logger:
    """Configure logger with console and daily-rotating file handlers"""
    if settings is None:
        from autotrader.config.settings import get_settings
        settings = get_settings()

    if level is None:
        level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    if log_file is None:
        log_file = settings.LOG_FILE

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    # Always add console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file and settings.LOG_TO_FILE and not force_console_only:
        try:
            log_path = Path(settings.LOG_DIR)
            log_path.mkdir(parents=True, exist_ok=True)

            file_handler = TimedRotatingFileHandler(
                log_path / log_file,
                when='midnight',
                backupCount=settings.LOG_BACKUP_COUNT,
                encoding='utf-8'
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            logger.info(f"File logging enabled: {log_path / log_file}")
        except (OSError, PermissionError) as e:
            # Fallback to console only if file logging fails
            logger.warning(f"Failed to setup file logging: {e}, using console only")
    elif not settings.LOG_TO_FILE:
        logger.info("File logging disabled by configuration")

    return logger
