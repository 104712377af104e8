"""
Logging Configuration for the knowledge index.

Provides centralized logger setup for the indexing trace and query debug logs.
All loggers write to files in the auto-detected index directory.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

# Index directory priority (same as ConfigLoader's index_path):
# 1. KNOWLEDGE_INDEX_DIR (explicit)
# 2. KNOWLEDGE_PROJECT_ROOT/.knowledge_index (if set)
# 3. CWD/.knowledge_index (fallback)
def _get_log_directory() -> Path:
    """Get the log directory path (same as the index directory)."""
    log_dir = os.getenv("KNOWLEDGE_INDEX_DIR")
    if not log_dir:
        project_root = os.getenv("KNOWLEDGE_PROJECT_ROOT")
        if project_root:
            log_dir = str(Path(project_root) / ".knowledge_index")
        else:
            log_dir = str(Path.cwd() / ".knowledge_index")
    return Path(log_dir)


def _ensure_log_directory() -> Path:
    """Ensure log directory exists and return its path."""
    log_dir = _get_log_directory()
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


# Set KNOWLEDGE_DEBUG_LOG="" to disable file logging
_debug_log_env = os.getenv("KNOWLEDGE_DEBUG_LOG")
DEBUG_LOG_ENABLED = _debug_log_env is None or _debug_log_env != ""

_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _create_file_handler(log_filename: str) -> Optional[logging.FileHandler]:
    """
    Create a file handler for the specified log file.

    Args:
        log_filename: Name of the log file (e.g., 'index_trace.log')

    Returns:
        Configured FileHandler, or None if logging is disabled
    """
    if not DEBUG_LOG_ENABLED:
        return None

    try:
        log_dir = _ensure_log_directory()
        handler = logging.FileHandler(log_dir / log_filename, mode='a', encoding='utf-8')
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        return handler
    except OSError:
        return None


class FlushingStreamHandler(logging.StreamHandler):
    """StreamHandler that flushes after every emit.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a handler.
    ::: This is stateless.
    """
    def emit(self, record):
        super().emit(record)
        self.flush()


def _create_stderr_handler() -> logging.StreamHandler:
    """Create a stderr handler (INFO and above) with auto-flush."""
    handler = FlushingStreamHandler(sys.stderr)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    return handler


def _build_logger(name: str, log_filename: str) -> logging.Logger:
    logger = logging.getLogger(name)

    # Only configure once
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)
        logger.propagate = False

        file_handler = _create_file_handler(log_filename)
        if file_handler:
            logger.addHandler(file_handler)
        logger.addHandler(_create_stderr_handler())

    return logger


def get_index_trace_logger() -> logging.Logger:
    """
    Get the trace logger for indexing passes.

    Phase transitions, change sets and batch progress go here.
    Output goes to .knowledge_index/index_trace.log and stderr.
    """
    return _build_logger("knowledge.index_trace", "index_trace.log")


def get_query_debug_logger() -> logging.Logger:
    """
    Get the debug logger for query routing and rank fusion.

    Output goes to .knowledge_index/query_debug.log and stderr.
    """
    return _build_logger("knowledge.query_debug", "query_debug.log")


# Pre-create loggers for import convenience
index_trace_logger = get_index_trace_logger()
query_debug_logger = get_query_debug_logger()

_stderr_suppressed = False


def configure_logger_for_debug_trace(logger_name: str) -> logging.Logger:
    """
    Configure a logger to also write to index_trace.log.

    Args:
        logger_name: Name of the logger to configure (e.g., __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)
    for handler in index_trace_logger.handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    return logger


def is_stderr_suppressed() -> bool:
    """True while a rich progress display owns the console."""
    return _stderr_suppressed


def suppress_stderr_logging():
    """
    Suppress stderr logging for all debug loggers.

    Call this when using Rich progress UI to avoid log spam in the console.
    File logging continues to work normally.
    """
    global _stderr_suppressed
    _stderr_suppressed = True
    for logger in [index_trace_logger, query_debug_logger]:
        for handler in logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setLevel(logging.CRITICAL + 1)


def restore_stderr_logging():
    """
    Restore stderr logging for all debug loggers.

    Call this after Rich progress UI is done.
    """
    global _stderr_suppressed
    _stderr_suppressed = False
    for logger in [index_trace_logger, query_debug_logger]:
        for handler in logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setLevel(logging.INFO)
