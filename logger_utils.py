#!/usr/bin/env python3
"""Logging utilities for the node drainer."""

import logging
import sys
import time
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type

from config import DrainConfig


class DrainLogger:
    """Centralized logger for drain operations."""

    def __init__(self, config: DrainConfig, name: Optional[str] = None, stream=None):
        self.config = config
        self.logger = logging.getLogger(name or __name__)
        self._setup_logging(stream or sys.stdout)

    def _setup_logging(self, stream) -> None:
        """Setup logging configuration."""
        # Remove existing handlers
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        level = getattr(logging, self.config.log_level, logging.INFO)

        console_handler = logging.StreamHandler(stream)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(self.config.log_format))

        self.logger.addHandler(console_handler)
        self.logger.setLevel(level)

        # Prevent propagation to root logger
        self.logger.propagate = False

    def info(self, message: str, **kwargs) -> None:
        """Log info message with optional context."""
        self._log_with_context(self.logger.info, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message with optional context."""
        self._log_with_context(self.logger.warning, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        """Log error message with optional context."""
        self._log_with_context(self.logger.error, message, **kwargs)

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message with optional context."""
        self._log_with_context(self.logger.debug, message, **kwargs)

    def _log_with_context(self, log_func: Callable, message: str, **kwargs) -> None:
        """Log message with additional context."""
        if kwargs:
            context = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
            message = f"{message} | {context}"
        log_func(message)

    def log_operation_start(self, operation: str, **context) -> None:
        self.debug(f"Starting operation: {operation}", **context)

    def log_operation_success(self, operation: str, duration: Optional[float] = None, **context) -> None:
        if duration is not None:
            context['duration_seconds'] = round(duration, 2)
        self.debug(f"Operation completed successfully: {operation}", **context)

    def log_operation_failure(self, operation: str, error: Exception, **context) -> None:
        context['error'] = str(error)
        context['error_type'] = type(error).__name__
        self.error(f"Operation failed: {operation}", **context)

    def log_node_progress(self, node_num: int, total_nodes: int, node_name: str) -> None:
        """Log fleet drain progress."""
        self.info(
            f"Processing node {node_num}/{total_nodes}",
            node_name=node_name,
            progress_pct=round((node_num / total_nodes) * 100, 1)
        )

    def log_node_action(self, action: str, node_name: str, **context) -> None:
        """Log node-specific actions."""
        self.info(f"Node action: {action}", node_name=node_name, **context)


def log_operation(operation_name: str):
    """Decorator to log operation start, success, and failure."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            logger = getattr(self, 'logger', None)
            if not logger:
                return func(self, *args, **kwargs)

            start_time = time.time()

            try:
                logger.log_operation_start(operation_name)
                result = func(self, *args, **kwargs)
                logger.log_operation_success(operation_name, time.time() - start_time)
                return result
            except Exception as e:
                logger.log_operation_failure(operation_name, e)
                raise

        return wrapper
    return decorator


def retry_with_logging(
    max_retries: int,
    delay_seconds: float = 1,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
):
    """Decorator to retry operations with logging.

    Only exceptions in ``retry_on`` trigger a retry; anything else propagates
    immediately.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            logger = getattr(self, 'logger', None)

            last_exception = None
            for attempt in range(max_retries + 1):
                try:
                    if attempt > 0 and logger:
                        logger.info(f"Retry attempt {attempt}/{max_retries} for {func.__name__}")

                    return func(self, *args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt < max_retries:
                        if logger:
                            logger.warning(
                                f"Attempt {attempt + 1} failed for {func.__name__}: {str(e)}"
                            )
                        time.sleep(delay_seconds)
                    elif logger:
                        logger.error(
                            f"All {max_retries + 1} attempts failed for {func.__name__}"
                        )

            raise last_exception

        return wrapper
    return decorator
