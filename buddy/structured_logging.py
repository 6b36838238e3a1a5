"""
Structured Logging for the Buddy Voice Turn Engine
JSON-lines file logging plus a colored console, with per-turn context tracking
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

# Context variables for turn tracking
turn_id_var: ContextVar[str] = ContextVar('turn_id', default='')
session_id_var: ContextVar[str] = ContextVar('session_id', default='')


class TurnContextFilter(logging.Filter):
    """Attach the active turn/session ids to every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.turn_id = turn_id_var.get()
        record.session_id = session_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "turn_id": getattr(record, 'turn_id', ''),
            "session_id": getattr(record, 'session_id', ''),
        }

        # Add structured data if present
        if hasattr(record, 'structured_data'):
            log_data.update(record.structured_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console formatter for better readability"""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset = self.COLORS['RESET']
        timestamp = time.strftime('%H:%M:%S', time.localtime(record.created))

        context_info = ""
        turn_id = getattr(record, 'turn_id', '')
        if turn_id:
            context_info += f" [{turn_id[:8]}]"

        if hasattr(record, 'structured_data'):
            data = record.structured_data
            if 'duration_ms' in data:
                context_info += f" ({data['duration_ms']:.1f}ms)"
            if 'provider' in data:
                context_info += f" [{data['provider']}]"

        message = f"{color}{timestamp}{reset} {record.name}: {record.getMessage()}{context_info}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def new_turn_id() -> str:
    """Generate an id for a conversational turn"""
    return str(uuid.uuid4())


@contextmanager
def turn_context(turn_id: Optional[str] = None) -> Iterator[str]:
    """Bind a turn id to the current context for the duration of a turn"""
    turn_id = turn_id or new_turn_id()
    token = turn_id_var.set(turn_id)
    try:
        yield turn_id
    finally:
        turn_id_var.reset(token)


def log_event(logger: logging.Logger, message: str, level: int = logging.INFO, **data: Any) -> None:
    """Log a message with structured data attached"""
    logger.log(level, message, extra={"structured_data": data})


def setup_logging(debug: bool = False, log_file: Optional[str] = None, json_logs: bool = False) -> None:
    """Configure root logging: colored console plus optional JSON-lines file"""
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    context_filter = TurnContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(ColoredConsoleFormatter())
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    # Third-party clients are chatty at DEBUG
    for noisy in ("httpx", "httpcore", "openai", "websockets", "watchdog"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

