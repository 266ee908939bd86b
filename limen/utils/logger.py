"""
Limen Logging System
Thread-safe singleton logger with UTF-8 support and dual output (console + file).
"""
import logging
import os
import sys
from typing import Optional


class Logger:
    """Singleton logger with automatic UTF-8 encoding and dual stream handling."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Logger, cls).__new__(cls)
            cls._instance._initialize_logger()
        return cls._instance

    def _initialize_logger(self) -> None:
        """Configure logger with console and file handlers."""
        self.logger = logging.getLogger("limen")
        self.logger.setLevel(os.getenv("LIMEN_LOG_LEVEL", "INFO").upper())
        self.logger.propagate = False

        if self.logger.hasHandlers():
            self.logger.handlers.clear()

        self.formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(self.formatter)
        self.logger.addHandler(console_handler)

        self.file_handler: Optional[logging.FileHandler] = None
        self._attach_file(os.getenv("LIMEN_LOG_FILE", "limen_audit.log"))

    def _attach_file(self, path: str) -> None:
        if self.file_handler is not None:
            self.logger.removeHandler(self.file_handler)
            self.file_handler.close()
            self.file_handler = None
        if not path:
            return
        try:
            handler = logging.FileHandler(path, encoding='utf-8')
        except (PermissionError, FileNotFoundError):
            return
        handler.setFormatter(self.formatter)
        self.logger.addHandler(handler)
        self.file_handler = handler

    def configure(self, log_file: Optional[str] = None, level: Optional[str] = None) -> None:
        """Re-point the audit file and/or change the level at runtime.

        Args:
            log_file: New audit log path. An empty string disables file output.
            level: Logging level name (DEBUG, INFO, WARNING, ...)
        """
        if level:
            self.logger.setLevel(level.upper())
        if log_file is not None:
            self._attach_file(log_file)

    def debug(self, msg: str) -> None:
        self.logger.debug(msg)

    def info(self, msg: str) -> None:
        self.logger.info(msg)

    def warning(self, msg: str) -> None:
        self.logger.warning(msg)

    def error(self, msg: str) -> None:
        self.logger.error(msg)

    def success(self, msg: str) -> None:
        self.logger.info(f"[SUCCESS] {msg}")
