import logging
import os
import sys
from typing import Optional


LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _build_formatter(worker_id: Optional[str] = None) -> logging.Formatter:
    if worker_id:
        return logging.Formatter(
            f'%(asctime)s - %(name)s - %(levelname)s - [{worker_id}] - %(message)s',
            datefmt=LOG_DATE_FORMAT
        )
    return logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt=LOG_DATE_FORMAT
    )


def setup_logging(
    component_name: str,
    log_level: Optional[str] = None,
    worker_id: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration for a component.

    The handler is attached to the root logger so module loggers obtained
    through get_logger(__name__) share the same output.

    Args:
        component_name: Name of the component (e.g., 'worker')
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL env var or INFO
        worker_id: Optional worker ID to include in every line

    Returns:
        Configured logger instance for the component
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    existing = [h for h in root.handlers if getattr(h, '_coordinator_handler', False)]
    if existing:
        for handler in existing:
            handler.setLevel(level)
            handler.setFormatter(_build_formatter(worker_id))
        return logging.getLogger(component_name)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(worker_id))
    handler._coordinator_handler = True

    root.addHandler(handler)

    return logging.getLogger(component_name)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_worker_id(worker_id: str) -> None:
    """
    Update the coordinator handlers to include a worker ID in the format.

    Args:
        worker_id: Worker ID to include
    """
    for handler in logging.getLogger().handlers:
        if getattr(handler, '_coordinator_handler', False):
            handler.setFormatter(_build_formatter(worker_id))
