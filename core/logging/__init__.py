# Enhanced structured logging with multi-channel support
from typing import Optional, Dict, Any

import structlog

from core.config.settings import Settings
from .channels import LogChannel
from .enhanced_logging import (
    configure_enhanced_logging,
    get_enhanced_logger,
    get_channel_logger,
    get_logging_statistics,
    get_market_data_logger,
    get_api_logger,
    get_monitoring_logger,
    get_error_logger,
    reset_logging,
)


def configure_logging(settings: Settings) -> None:
    """Configure the logging system once per process."""
    configure_enhanced_logging(settings)


def get_logger(name: str, component: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


def get_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    return get_logging_statistics()


def get_market_data_logger_safe(name: str) -> structlog.stdlib.BoundLogger:
    """Get a market data logger with safe fallback."""
    try:
        return get_market_data_logger(name)
    except Exception:
        return get_enhanced_logger(name, "market_feed")


def get_api_logger_safe(name: str) -> structlog.stdlib.BoundLogger:
    """Get an API logger with safe fallback."""
    try:
        return get_api_logger(name)
    except Exception:
        return get_enhanced_logger(name, "auth")


def get_monitoring_logger_safe(name: str) -> structlog.stdlib.BoundLogger:
    """Get a monitoring logger with safe fallback."""
    try:
        return get_monitoring_logger(name)
    except Exception:
        return get_enhanced_logger(name, "metrics")


def get_error_logger_safe(name: str) -> structlog.stdlib.BoundLogger:
    """Get an error logger with safe fallback."""
    try:
        return get_error_logger(name)
    except Exception:
        return get_enhanced_logger(name, "error")


__all__ = [
    "LogChannel",
    "configure_logging",
    "reset_logging",
    "get_logger",
    "get_channel_logger",
    "get_statistics",
    "get_market_data_logger_safe",
    "get_api_logger_safe",
    "get_monitoring_logger_safe",
    "get_error_logger_safe",
]
