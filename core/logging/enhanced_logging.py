# Enhanced structured logging with multi-channel support
import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Optional, Any
import structlog

from core.config.settings import Settings
from .channels import (
    LogChannel,
    get_channel_for_component,
    get_channel_config,
    create_log_directory_structure,
    get_channel_statistics
)

# Global logger manager instance
_logger_manager: Optional['EnhancedLoggerManager'] = None

# Global flag to prevent duplicate configuration
_enhanced_logging_configured = False


class ChannelFilter(logging.Filter):
    """Filter that routes records to a handler only if they match a channel.

    structlog hands the event dict to stdlib as ``record.msg``; the bound
    ``channel`` key decides where the record goes. Plain stdlib records may
    carry ``channel`` via ``extra``.
    """

    def __init__(self, expected_channel: str, allowed_logger_prefixes: Optional[list[str]] = None):
        super().__init__()
        self.expected_channel = expected_channel
        self.allowed_logger_prefixes = allowed_logger_prefixes or []

    def filter(self, record: logging.LogRecord) -> bool:
        ch = getattr(record, "channel", None)
        if ch is None and isinstance(record.msg, dict):
            ch = record.msg.get("channel")
        if ch is not None:
            return str(ch) == self.expected_channel
        name = getattr(record, "name", "")
        for prefix in self.allowed_logger_prefixes:
            if name.startswith(prefix):
                return True
        return False


def _foreign_pre_chain() -> list:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


class EnhancedLoggerManager:
    """Enhanced logging manager with multi-channel support and configurable formats."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self.configured_loggers: Dict[str, structlog.stdlib.BoundLogger] = {}

        self._setup_logging()

    def _setup_logging(self) -> None:
        """Setup enhanced logging with configurable formats."""
        if self.settings.logging.file_enabled:
            create_log_directory_structure(self.settings.logs_dir)

        self._setup_console_logging()

        if self.settings.logging.file_enabled:
            self._setup_file_logging()

        if self.settings.logging.multi_channel_enabled:
            self._setup_multi_channel_logging()

        self._configure_structlog()

    def _level(self, name: Optional[str] = None) -> int:
        return getattr(logging, (name or self.settings.logging.level).upper())

    def _setup_console_logging(self) -> None:
        """Setup console logging with configurable format."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())
        if not self.settings.logging.console_enabled:
            return

        console_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.console_json_format
            else structlog.dev.ConsoleRenderer()
        )
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self._level())
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=console_processor,
                foreign_pre_chain=_foreign_pre_chain(),
            )
        )
        root_logger.addHandler(console_handler)

    def _file_processor(self):
        if self.settings.logging.json_format:
            return structlog.processors.JSONRenderer()
        return structlog.processors.KeyValueRenderer(key_order=["event", "level", "timestamp"])

    def _setup_file_logging(self) -> None:
        """Setup the main rotating application log file."""
        log_file = Path(self.settings.logs_dir) / "smart_feed.log"
        root_logger = logging.getLogger()

        # Check if file handler already exists for this file
        for handler in root_logger.handlers:
            if (isinstance(handler, logging.handlers.RotatingFileHandler) and
                    Path(handler.baseFilename) == log_file.resolve()):
                return

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=self._parse_size(self.settings.logging.file_max_size),
            backupCount=self.settings.logging.file_backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(self._level())
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=self._file_processor(),
                foreign_pre_chain=_foreign_pre_chain(),
            )
        )
        root_logger.addHandler(file_handler)

    def _setup_multi_channel_logging(self) -> None:
        """Setup multi-channel logging with dedicated files."""
        # Channel handlers are file-backed
        if not self.settings.logging.file_enabled:
            return

        for channel in LogChannel:
            config = get_channel_config(channel)
            self.channel_handlers[channel] = self._create_channel_handler(channel, config)

        # ERROR channel captures every ERROR+ record from the root
        error_handler = self.channel_handlers.get(LogChannel.ERROR)
        if error_handler:
            root_logger = logging.getLogger()
            if error_handler not in root_logger.handlers:
                root_logger.addHandler(error_handler)

        # websockets library chatter goes to the market data channel only
        market_handler = self.channel_handlers.get(LogChannel.MARKET_DATA)
        if market_handler:
            lg = logging.getLogger("websockets")
            if market_handler not in lg.handlers:
                lg.addHandler(market_handler)
            if lg.level == logging.NOTSET:
                lg.setLevel(logging.WARNING)
            lg.propagate = False

    def _create_channel_handler(self, channel: LogChannel, config) -> logging.Handler:
        """Create a file handler for a specific channel."""
        handler = logging.handlers.RotatingFileHandler(
            filename=config.get_file_path(self.settings.logs_dir),
            maxBytes=self._parse_size(config.max_bytes),
            backupCount=config.backup_count,
            encoding="utf-8"
        )

        level = config.level
        if channel == LogChannel.MARKET_DATA:
            level = self.settings.logging.market_data_level
        elif channel == LogChannel.API:
            level = self.settings.logging.api_level
        handler.setLevel(self._level(level))

        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=self._file_processor(),
                foreign_pre_chain=_foreign_pre_chain(),
            )
        )
        # Error handler sits on the root and keeps every ERROR+ record
        if channel != LogChannel.ERROR:
            allowed_prefixes = ["websockets"] if channel == LogChannel.MARKET_DATA else []
            handler.addFilter(ChannelFilter(expected_channel=channel.value, allowed_logger_prefixes=allowed_prefixes))

        return handler

    def _parse_size(self, size_str: str) -> int:
        """Parse size string (e.g., '100MB') to bytes."""
        size_str = size_str.upper()

        if size_str.endswith("B"):
            size_str = size_str[:-1]

        multipliers = {
            "K": 1024,
            "M": 1024 * 1024,
            "G": 1024 * 1024 * 1024,
        }

        for suffix, multiplier in multipliers.items():
            if size_str.endswith(suffix):
                return int(float(size_str[:-1]) * multiplier)

        return int(size_str)

    def _configure_structlog(self) -> None:
        """Configure structlog with appropriate processors."""

        def add_standard_context(logger, name, event_dict):
            """Bind standard context fields once from settings."""
            event_dict.setdefault('env', self.settings.environment.value)
            event_dict.setdefault('service', self.settings.app_name)
            event_dict.setdefault('version', self.settings.version)
            return event_dict

        keys_to_redact = {k.lower() for k in self.settings.logging.redact_keys}

        def redact_sensitive(logger, name, event_dict):
            """Redact sensitive fields from event dict recursively."""

            def _redact(obj):
                if isinstance(obj, dict):
                    out = {}
                    for k, v in obj.items():
                        if isinstance(k, str) and k.lower() in keys_to_redact:
                            out[k] = '[REDACTED]'
                        else:
                            out[k] = _redact(v)
                    return out
                if isinstance(obj, list):
                    return [_redact(v) for v in obj]
                return obj

            return _redact(event_dict)

        def normalize_error(logger, name, event_dict):
            """Add normalized error fields if an error is attached."""
            if "error" in event_dict and not event_dict.get("error_message"):
                error = event_dict["error"]
                event_dict["error_message"] = str(error)
                if isinstance(error, BaseException):
                    event_dict.setdefault("error_type", type(error).__name__)
                    event_dict["error"] = str(error)
            return event_dict

        processors = [
            structlog.contextvars.merge_contextvars,
            add_standard_context,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            normalize_error,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive,
            # Defer final rendering to handlers via ProcessorFormatter
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ]

        structlog.configure(
            processors=processors,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.stdlib.BoundLogger:
        """Get a structured logger for a component."""
        if name in self.configured_loggers:
            return self.configured_loggers[name]

        logger = structlog.get_logger(name)

        if component:
            logger = logger.bind(component=component)
            channel = get_channel_for_component(component)
            logger = logger.bind(channel=channel.value)
            self._attach_channel_handler(name, channel)

        self.configured_loggers[name] = logger
        return logger

    def get_channel_logger(self, name: str, channel: LogChannel) -> structlog.stdlib.BoundLogger:
        """Get a logger for a specific channel."""
        logger = structlog.get_logger(name).bind(channel=channel.value)
        self._attach_channel_handler(name, channel)
        return logger

    def _attach_channel_handler(self, name: str, channel: LogChannel) -> None:
        handler = self.channel_handlers.get(channel)
        # ERROR handler already lives on the root logger
        if handler is None or channel == LogChannel.ERROR:
            return
        stdlib_logger = logging.getLogger(name)
        if handler not in stdlib_logger.handlers:
            stdlib_logger.addHandler(handler)

    def get_statistics(self) -> Dict[str, Any]:
        """Get logging statistics."""
        stats = {
            "total_loggers": len(self.configured_loggers),
            "multi_channel_enabled": self.settings.logging.multi_channel_enabled,
            "file_logging_enabled": self.settings.logging.file_enabled,
            "console_logging_enabled": self.settings.logging.console_enabled,
            "json_format": self.settings.logging.json_format,
            "logs_directory": self.settings.logs_dir,
        }

        if self.settings.logging.multi_channel_enabled:
            stats.update(get_channel_statistics())

        stats["channel_handlers"] = {
            ch.value: {"attached": ch in self.channel_handlers} for ch in LogChannel
        }
        return stats


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure enhanced logging system."""
    global _logger_manager, _enhanced_logging_configured

    if _enhanced_logging_configured:
        return

    _logger_manager = EnhancedLoggerManager(settings)
    _enhanced_logging_configured = True


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Before ``configure_enhanced_logging`` runs this returns a plain structlog
    logger bound to ``component``; structlog's defaults render it to stdout.
    """
    if _logger_manager is None:
        logger = structlog.get_logger(name)
        if component:
            logger = logger.bind(component=component)
        return logger

    return _logger_manager.get_logger(name, component)


def get_channel_logger(name: str, channel: LogChannel) -> structlog.stdlib.BoundLogger:
    """Get a logger for a specific channel."""
    if _logger_manager is None:
        return structlog.get_logger(name).bind(channel=channel.value)

    return _logger_manager.get_channel_logger(name, channel)


def get_logging_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    if _logger_manager is None:
        return {"error": "Logger manager not initialized"}

    return _logger_manager.get_statistics()


def reset_logging() -> None:
    """Drop handlers installed by the manager so logging can be reconfigured."""
    global _logger_manager, _enhanced_logging_configured

    if _logger_manager is not None:
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        for handler in _logger_manager.channel_handlers.values():
            handler.close()
        for name in list(_logger_manager.configured_loggers) + ["websockets"]:
            stdlib_logger = logging.getLogger(name)
            for handler in list(stdlib_logger.handlers):
                stdlib_logger.removeHandler(handler)
    structlog.reset_defaults()
    _logger_manager = None
    _enhanced_logging_configured = False


# Convenience functions for specific components
def get_market_data_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a market data logger."""
    return get_channel_logger(name, LogChannel.MARKET_DATA)


def get_api_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get an API logger."""
    return get_channel_logger(name, LogChannel.API)


def get_monitoring_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a monitoring logger."""
    return get_channel_logger(name, LogChannel.MONITORING)


def get_error_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get an error logger."""
    return get_channel_logger(name, LogChannel.ERROR)
