"""
Centralized logging configuration for the application.
"""

import logging
import sys
from typing import Optional

from ..models.core import MemoryOperation
from .config import AppConfig


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    # Configure root logger
    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])

    # Gremlin and OpenSearch drivers are chatty at INFO
    for noisy in ('gremlinpython', 'opensearch', 'botocore', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger with proper configuration.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Configured logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    return logger


def log_operation(logger: logging.Logger, operation: MemoryOperation) -> None:
    """Emit one audit record: DEBUG when it completed, WARNING when it failed."""
    if operation.failed:
        logger.warning(f'{operation.tier} {operation.operation_name} failed after {operation.duration_ms:.1f}ms: '
                       f'{operation.details.get("error")}')
    else:
        logger.debug(f'{operation.tier} {operation.operation_name} ({operation.kind}) took {operation.duration_ms:.1f}ms')
