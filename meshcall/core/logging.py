"""
Centralized logging setup for meshcall.
"""
import json
import logging
import datetime
import os
import sys
import tempfile
from typing import Any, Optional


LOGGER_NAME = "meshcall"


def _resolve_log_dir() -> str:
    """Determine a writable log directory."""
    candidates = []

    env_dir = os.environ.get("MESHCALL_LOG_DIR")
    if env_dir:
        candidates.append(env_dir)

    candidates.append(os.path.join(tempfile.gettempdir(), "meshcall-logs"))
    candidates.append(os.getcwd())

    for directory in candidates:
        try:
            os.makedirs(directory, exist_ok=True)
            if os.access(directory, os.W_OK):
                return directory
        except OSError:
            continue

    return candidates[0]


# aiortc's transport stack logs every STUN check and RTP packet at DEBUG
NOISY_LOGGERS = ("aioice", "aiortc.rtcrtpreceiver", "aiortc.rtcrtpsender", "websockets.client")


def setup_logging(level: str = "INFO", log_file: str = "meshcall.log") -> logging.Logger:
    """Send meshcall logs to the console and to ``log_file`` in the log directory."""
    log_path = os.path.join(_resolve_log_dir(), log_file)
    handlers = [logging.StreamHandler()]
    try:
        handlers.append(logging.FileHandler(log_path, mode='a', encoding='utf-8'))
    except OSError as e:
        print(f"WARNING: log file {log_path} unavailable ({e}), console only", file=sys.stderr)
        log_path = None

    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s %(levelname)-7s %(name)s | %(message)s',
        datefmt='%H:%M:%S',
        handlers=handlers
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.INFO))

    logger = logging.getLogger(LOGGER_NAME)
    logger.info(f"Logging to {log_path or 'console'} at {level.upper()}")
    return logger


def debug_log(message: str, data: Optional[Any] = None, level: str = "INFO",
              logger: Optional[logging.Logger] = None) -> None:
    """
    Structured logging helper.
    
    Args:
        message: The log message
        data: Optional data to log; dicts are rendered as JSON
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        logger: Logger to use, defaults to the package logger
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    log_level = getattr(logging, level.upper())
    if not logger.isEnabledFor(log_level):
        return

    timestamp = datetime.datetime.now().strftime("%H:%M:%S.%f")[:-3]

    if data:
        if isinstance(data, dict):
            data_str = json.dumps(data, indent=2, default=str)
            logger.log(log_level, f"[{timestamp}] {message}\nData: {data_str}")
        else:
            logger.log(log_level, f"[{timestamp}] {message} - {data}")
    else:
        logger.log(log_level, f"[{timestamp}] {message}")


class LoggerMixin:
    """Mixin class to add logging capabilities to other classes."""
    
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")
    
    def log_debug(self, message: str, data: Optional[Any] = None):
        """Log debug message."""
        debug_log(message, data, "DEBUG", self.logger)
    
    def log_info(self, message: str, data: Optional[Any] = None):
        """Log info message."""
        debug_log(message, data, "INFO", self.logger)
    
    def log_warning(self, message: str, data: Optional[Any] = None):
        """Log warning message."""
        debug_log(message, data, "WARNING", self.logger)
    
    def log_error(self, message: str, data: Optional[Any] = None):
        """Log error message."""
        debug_log(message, data, "ERROR", self.logger)
