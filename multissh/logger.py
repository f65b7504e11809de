"""
Logging module for multissh.
Provides structured logging with console and file output and per-host
loggers that track each host's progress through a run.
"""

import os
import json
import itertools
import logging
import threading
from typing import Dict, Any, Optional
from datetime import datetime

from .models import HostState, Outcome, Target

# Author: Vamsi

_instance_ids = itertools.count(1)


class StructuredLogger:
    """Structured logger with console and file output."""

    def __init__(self,
                 level: str = "warning",
                 log_file: Optional[str] = None,
                 log_format: str = "text",
                 enable_console: bool = True,
                 name: str = "multissh"):
        """
        Initialize structured logger.

        :param level: Log level (debug, info, warning, error, critical)
        :param log_file: Log file path, None disables file output
        :param log_format: Log format (json, text)
        :param enable_console: Enable console output
        :param name: Name shown in records; each instance logs through its
            own child logger of this name, so instances never share handlers
        """
        self.level = level
        self.log_file = log_file
        self.log_format = log_format
        self.enable_console = enable_console
        self.name = name

        self.logger = logging.getLogger(f"{name}.{next(_instance_ids)}")
        self.logger.propagate = False
        self._handlers = []

        # Setup logging
        self._setup_logging()

    def _parse_level(self, level: str) -> int:
        """
        Parse log level string to logging level.

        :param level: Log level string
        :return: Logging level constant
        """
        level_map = {
            'debug': logging.DEBUG,
            'info': logging.INFO,
            'warning': logging.WARNING,
            'error': logging.ERROR,
            'critical': logging.CRITICAL
        }
        return level_map.get(level.lower(), logging.INFO)

    def _setup_logging(self):
        """Setup logging configuration."""
        self.logger.setLevel(self._parse_level(self.level))
        self.close()

        # Create formatters
        if self.log_format == "json":
            formatter = logging.Formatter('%(message)s')
        else:
            formatter = logging.Formatter(
                f'%(asctime)s - {self.name} - %(levelname)s - %(message)s'
            )

        # Console handler
        if self.enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(self._parse_level(self.level))
            console_handler.setFormatter(formatter)
            self._add_handler(console_handler)

        # File handler
        if self.log_file:
            # Ensure log directory exists
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.FileHandler(self.log_file)
            file_handler.setLevel(self._parse_level(self.level))
            file_handler.setFormatter(formatter)
            self._add_handler(file_handler)

        if not self._handlers:
            self._add_handler(logging.NullHandler())

    def _add_handler(self, handler: logging.Handler):
        self._handlers.append(handler)
        self.logger.addHandler(handler)

    def close(self):
        """Detach and close the handlers this instance added."""
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def _format(self, level: str, message: str, fields: Dict[str, Any]) -> str:
        if self.log_format == "json":
            return json.dumps({'timestamp': datetime.now().isoformat(), 'level': level,
                               'message': message, **fields}, default=str)
        if not fields:
            return message
        extra = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{message} [{extra}]"

    def log(self, level: str, message: str, exc_info: bool = False, **kwargs):
        """
        Log a message with structured fields.

        :param level: Log level name
        :param message: Log message
        :param exc_info: Attach the current exception traceback
        :param **kwargs: Additional log data
        """
        numeric = self._parse_level(level)
        if self.logger.isEnabledFor(numeric):
            self.logger.log(numeric, self._format(level, message, kwargs), exc_info=exc_info)

    def debug(self, message: str, **kwargs):
        self.log('debug', message, **kwargs)

    def info(self, message: str, **kwargs):
        self.log('info', message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.log('warning', message, **kwargs)

    def error(self, message: str, **kwargs):
        self.log('error', message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error message with the active exception's traceback."""
        self.log('error', message, exc_info=True, **kwargs)

    def set_level(self, level: str):
        """
        Set log level.

        :param level: New log level
        """
        self.level = level
        self._setup_logging()


class HostLogger:
    """Host-specific logger tracking state transitions and durations."""

    def __init__(self, target: Target, parent_logger: StructuredLogger):
        """
        Initialize host logger.

        :param target: Target this logger reports on
        :param parent_logger: Parent logger instance
        """
        self.target = target
        self.host = target.label
        self.parent_logger = parent_logger

        # Host-specific metrics
        self.state = HostState.PENDING
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.transitions: Dict[str, datetime] = {}

        # Thread safety
        self.lock = threading.RLock()

    def transition(self, state: HostState, **kwargs):
        """
        Record a state change.

        :param state: New host state
        :param **kwargs: Additional event data
        """
        with self.lock:
            previous = self.state
            self.state = state
            now = datetime.now()
            self.transitions[state.value] = now
            if state is HostState.CONNECTING:
                self.started_at = now
            if state.terminal:
                self.finished_at = now

        self.parent_logger.debug("Host state changed", host=self.host,
                                 previous=previous.value, state=state.value, **kwargs)

    def log_outcome(self, outcome: Outcome):
        """
        Log the terminal outcome of this host.

        :param outcome: Recorded outcome
        """
        self.transition(outcome.state)
        fields = {'host': self.host, 'outcome': outcome.kind.value, 'duration': self.duration}
        reason = getattr(outcome, 'reason', '')
        if reason:
            fields['reason'] = reason
        exit_code = getattr(outcome, 'exit_code', None)
        if exit_code is not None:
            fields['exit_code'] = exit_code

        if outcome.ok:
            self.parent_logger.info("Host finished", **fields)
        else:
            self.parent_logger.warning("Host failed", **fields)

    def log_connection(self, event: str, **kwargs):
        """
        Log connection event.

        :param event: Event type
        :param **kwargs: Additional event data
        """
        self.parent_logger.debug("Connection event", host=self.host, event=event, **kwargs)

    @property
    def duration(self) -> Optional[float]:
        with self.lock:
            if self.started_at is None:
                return None
            end = self.finished_at or datetime.now()
            return round((end - self.started_at).total_seconds(), 3)

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get host metrics.

        :return: Dictionary of host metrics
        """
        with self.lock:
            return {
                'host': self.host,
                'state': self.state.value,
                'duration': self.duration,
                'transitions': {k: v.isoformat() for k, v in self.transitions.items()},
            }
