"""Utils package for the campaign engine."""
from .logging_utils import (
    setup_logging,
    get_logger,
    is_rate_limit_error,
    retry_on_rate_limit,
    JsonFormatter
)

__all__ = [
    'setup_logging',
    'get_logger',
    'is_rate_limit_error',
    'retry_on_rate_limit',
    'JsonFormatter'
]
