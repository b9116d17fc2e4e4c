"""
Logging Utility for the Backend

Colored, icon-tagged console logs plus a small structured logger that
attaches key/value data to a message.
"""

import logging
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[32m'       # Green
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta

    SECTION = '\033[94m'    # Bright Blue
    KEY = '\033[93m'        # Bright Yellow
    TIMESTAMP = '\033[90m'  # Dark Gray


class ColoredFormatter(logging.Formatter):
    """Formatter with level colors and per-component icons."""

    ICONS = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨',
    }

    # Keyed by the last segment of the logger name
    COMPONENT_ICONS = {
        'query_classifier': '🧭',
        'embedding_service': '🔢',
        'embedding_cache': '🗃️',
        'vector_store': '📚',
        'context_manager': '🧵',
        'tutor_graph': '🎓',
        'state_persistence': '💾',
        'kv_store': '🗄️',
        'main': '🌐',
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.split('.')[-1]
        if record.levelno >= logging.WARNING:
            icon = self.ICONS.get(record.levelname, '•')
        else:
            icon = self.COMPONENT_ICONS.get(component, self.ICONS.get(record.levelname, '•'))

        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        if self.use_colors:
            level_color = getattr(Colors, record.levelname, Colors.RESET)
            reset, bold, timestamp_color = Colors.RESET, Colors.BOLD, Colors.TIMESTAMP
        else:
            level_color = reset = bold = timestamp_color = ''

        formatted = (
            f"{timestamp_color}[{timestamp}]{reset} "
            f"{icon} {level_color}{record.levelname:8s}{reset} "
            f"{bold}{record.name}{reset} | {record.getMessage()}"
        )

        data = getattr(record, 'data', None)
        if data:
            formatted += "\n" + format_data(data, use_colors=self.use_colors)

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


def format_data(data: Any, indent: int = 2, use_colors: bool = False) -> str:
    """Render nested dicts/lists as an indented block (long lists are cut)."""
    key_color = Colors.KEY if use_colors else ''
    reset = Colors.RESET if use_colors else ''
    pad = ' ' * indent

    if isinstance(data, dict):
        lines = [
            f"{pad}{key_color}{key}{reset}: {format_data(value, indent + 2, use_colors).lstrip()}"
            for key, value in data.items()
        ]
        return "\n".join(lines)
    if isinstance(data, list):
        shown: List[Any] = data[:5]
        rendered = ", ".join(str(item) for item in shown)
        if len(data) > 5:
            rendered += f", ... ({len(data)} items total)"
        return f"{pad}[{rendered}]"
    return f"{pad}{data}"


class StructuredLogger:
    """Logger wrapper taking an optional `data` dict on every call."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)

    def _log(self, level: int, message: str, data: Optional[Dict[str, Any]] = None, exc_info=None):
        self.logger.log(level, message, extra={"data": data} if data else None, exc_info=exc_info)

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.DEBUG, message, data)

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, message, data)

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.WARNING, message, data)

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
        """Log an error; the exception's traceback is attached when given."""
        if error is not None:
            message = f"{message} ({type(error).__name__}: {error})"
        self._log(logging.ERROR, message, data, exc_info=error)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, f"✅ {message}", data)

    def section(self, title: str, data: Optional[Dict[str, Any]] = None):
        separator = "=" * 60
        self._log(logging.INFO, f"\n{separator}\n📋 {title.upper()}\n{separator}", data)

    def request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, f"📥 REQUEST: {method} {path}", data)

    def response(self, status: int, path: str, duration: Optional[float] = None, data: Optional[Dict[str, Any]] = None):
        response_data = {"duration_ms": f"{duration * 1000:.2f}" if duration is not None else None}
        if data:
            response_data.update(data)
        self._log(logging.INFO, f"📤 RESPONSE: {status} {path}", response_data)


def setup_logging(level: int = logging.INFO, use_colors: bool = True) -> logging.Logger:
    """Install the colored console handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # Suppress noisy loggers
    for noisy in ('asyncio', 'httpx', 'httpcore', 'urllib3', 'chromadb', 'sentence_transformers', 'openai'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name, logging.getLogger(name))
