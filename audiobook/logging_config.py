"""
Structured logging configuration for the PDF Audiobook API.

This module provides JSON-formatted logging with job context so that a
single audiobook job can be followed across extraction, synthesis,
checkpointing and assembly.
"""

import logging
import sys
from typing import Optional
from pythonjsonlogger import jsonlogger


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that adds standard fields to all log records.

    Every record carries timestamp, level, logger, module, function and line
    so pipeline logs can be filtered without parsing the message text.
    """

    def add_fields(self, log_record, record, message_dict):
        """
        Add custom fields to the log record.

        Args:
            log_record: The dictionary that will be logged as JSON
            record: The LogRecord instance
            message_dict: Dictionary of message fields
        """
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        if record.stack_info:
            log_record['stack_trace'] = self.formatStack(record.stack_info)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_json: bool = True
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path to write logs to (in addition to stdout)
        use_json: Whether to use JSON formatting (default: True)

    Example:
        >>> setup_logging(log_level="INFO", use_json=True)
        >>> logger = logging.getLogger(__name__)
        >>> logger.info("Worker started", extra={"max_jobs": 2})
    """
    level = getattr(logging, log_level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    if use_json:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(logger)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # httpx logs every request at INFO; one line per TTS chunk is too chatty
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    root_logger.info(
        "Logging configured",
        extra={
            "log_level": log_level,
            "use_json": use_json,
            "log_file": log_file
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    job_id: Optional[str] = None,
    chunk_index: Optional[int] = None,
    document_ref: Optional[str] = None,
    error: Optional[BaseException] = None,
    **kwargs
) -> None:
    """
    Log a message with structured audiobook job context.

    Args:
        logger: Logger instance to use
        level: Log level (debug, info, warning, error, critical)
        message: Log message
        job_id: Optional job identifier
        chunk_index: Optional index of the text chunk being processed
        document_ref: Optional reference to the source document
        error: Optional exception instance
        **kwargs: Additional context fields

    Example:
        >>> logger = get_logger(__name__)
        >>> log_with_context(
        ...     logger,
        ...     "info",
        ...     "Chunk synthesized",
        ...     job_id="550e8400-e29b-41d4-a716-446655440000",
        ...     chunk_index=3,
        ...     audio_bytes=48213
        ... )
    """
    context = {}

    if job_id:
        context['job_id'] = job_id

    if chunk_index is not None:
        context['chunk_index'] = chunk_index

    if document_ref:
        context['document_ref'] = document_ref

    if error:
        context['error_type'] = type(error).__name__
        context['error_message'] = str(error)

    context.update(kwargs)

    log_method = getattr(logger, level.lower())

    if error:
        log_method(message, extra=context, exc_info=error)
    else:
        log_method(message, extra=context)
