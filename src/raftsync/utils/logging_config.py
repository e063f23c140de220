"""Logging configuration for raftsync.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Performance timing decorators for connect / workspace / check-in calls

Environment Variables:
    RAFTSYNC_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    RAFTSYNC_LOG_FILE: Path to log file (default: ~/.raftsync/raftsync.log)
    RAFTSYNC_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    RAFTSYNC_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from raftsync.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup, never from library code

    @timed("connect")
    def connect(self):
        ...

    with timed_section_sync("get_latest", raft="demo"):
        ...
"""
import functools
import logging
import os
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("raftsync.perf")


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("RAFTSYNC_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".raftsync" / "raftsync.log"
    path_str = os.environ.get("RAFTSYNC_LOG_FILE", str(default_path))
    return Path(path_str)


def setup_logging(console: bool = True) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (respects RAFTSYNC_LOG_LEVEL), optional
    - File handler with rotation (DEBUG level - captures everything)
    - Performance log file for timing metrics
    """
    log_level = get_log_level()
    log_file = get_log_file()
    max_size_mb = int(os.environ.get("RAFTSYNC_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("RAFTSYNC_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-28s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "raftsync-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    root_logger = logging.getLogger("raftsync")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.addHandler(file_handler)

    if console:
        # stderr, so stdout stays usable for command output and MCP stdio
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(main_format)
        root_logger.addHandler(console_handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    root_logger.info(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")


def _format_timing(operation: str, raft: Optional[str], elapsed: float, outcome: str) -> str:
    return f"{operation:20s} | {raft or 'N/A':15s} | {elapsed:8.2f}ms | {outcome}"


def timed(operation: str, raft: Optional[str] = None):
    """Decorator to log execution time of a function.

    Args:
        operation: Name of the operation (e.g., "connect", "commit")
        raft: Optional raft name (can also be inferred from self.raft_name)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            raft_name = raft
            if raft_name is None and args and hasattr(args[0], "raft_name"):
                raft_name = args[0].raft_name

            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_format_timing(operation, raft_name, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_timing(operation, raft_name, elapsed, f"FAIL: {e}"))
                raise

        return wrapper

    return decorator


@contextmanager
def timed_section_sync(operation: str, raft: Optional[str] = None, **extra):
    """Context manager for timing code sections.

    Usage:
        with timed_section_sync("tool:commit", raft="demo", author="alice"):
            store.commit(user)
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
        elapsed = (time.perf_counter() - start) * 1000
        msg = _format_timing(operation, raft, elapsed, "OK")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.info(msg)
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = _format_timing(operation, raft, elapsed, f"FAIL: {e}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
