"""
Centralized logging configuration and structured memory events.
"""

import logging
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

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
    logging.basicConfig(level=getattr(logging, config.log_level.upper()),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])


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
    logger.setLevel(getattr(logging, config.log_level.upper()))
    return logger


@dataclass
class MemoryEvent:
    """A structured event emitted by a memory component."""
    name: str
    level: int
    fields: Dict[str, Any] = field(default_factory=dict)


class MemoryEventLog:
    """Structured event sink shared by the memory components.

    Every event is mirrored to the standard logger. The most recent events are
    kept in memory so callers (and tests) can inspect what happened without
    parsing log text.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, capacity: int = 1000):
        self.logger = logger or get_logger('agent_memory.events')
        self.capacity = capacity
        self._events: List[MemoryEvent] = []
        self._lock = threading.Lock()

    def emit(self, name: str, level: int = logging.INFO, message: Optional[str] = None, **fields: Any) -> None:
        event = MemoryEvent(name=name, level=level, fields=fields)
        with self._lock:
            self._events.append(event)
            if len(self._events) > self.capacity:
                del self._events[:len(self._events) - self.capacity]

        if self.logger.isEnabledFor(level):
            details = ', '.join(f'{key}={value!r}' for key, value in fields.items())
            text = message or name
            self.logger.log(level, f'{text} ({details})' if details else text)

    def debug(self, name: str, message: Optional[str] = None, **fields: Any) -> None:
        self.emit(name, logging.DEBUG, message, **fields)

    def info(self, name: str, message: Optional[str] = None, **fields: Any) -> None:
        self.emit(name, logging.INFO, message, **fields)

    def warning(self, name: str, message: Optional[str] = None, **fields: Any) -> None:
        self.emit(name, logging.WARNING, message, **fields)

    def error(self, name: str, message: Optional[str] = None, **fields: Any) -> None:
        self.emit(name, logging.ERROR, message, **fields)

    def events(self, name: Optional[str] = None) -> List[MemoryEvent]:
        with self._lock:
            if name is None:
                return list(self._events)
            return [event for event in self._events if event.name == name]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
