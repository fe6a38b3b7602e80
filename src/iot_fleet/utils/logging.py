import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Any, Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - [%(levelname)s] - %(message)s'

# Third party loggers that are too chatty at INFO
NOISY_LOGGERS = ('amqtt', 'aiosqlite', 'hypercorn.access')


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Setup application-wide logging configuration.

    Args:
        config: Dictionary containing logging configuration
            {
                'level': str,  # DEBUG, INFO, WARNING, ERROR, CRITICAL
                'file': str,   # Log file path, omit or null for console only
                'max_size': int,  # Max size in MB before rotation
                'backup_count': int,  # Number of backup files to keep
                'format': str,  # Log message format
                'library_level': str  # Level applied to NOISY_LOGGERS
            }
    """
    log_level = getattr(logging, str(config.get('level', 'INFO')).upper(), logging.INFO)
    log_file: Optional[str] = config.get('file')
    max_size = config.get('max_size', 10) * 1024 * 1024
    backup_count = config.get('backup_count', 5)
    formatter = logging.Formatter(config.get('format', DEFAULT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    library_level = getattr(logging, str(config.get('library_level', 'WARNING')).upper(), logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Usually __name__ of the module
    """
    return logging.getLogger(name)
