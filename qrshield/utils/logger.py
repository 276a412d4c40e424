"""
qrshield/utils/logger.py

QRShield - Logging Utility (Console, Rotating File, Verbosity)
--------------------------------------------------------------
• One configured logger per name, created once and reused across threads
• Console output always available; rotating file output enabled through config
• Timestamp, level, module:line format shared by every QRShield module

Author: QRShield Team
License: Apache 2.0
"""

import sys
import logging
import traceback
from logging.handlers import RotatingFileHandler
from threading import Lock
from pathlib import Path
from typing import Dict, Optional

DEFAULT_LOG_FILE = "logs/qrshield.log"
DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_MAX_BYTES = 2 * 1024 * 1024  # 2 MB before rotating
DEFAULT_BACKUP_COUNT = 5

LOG_FORMAT = '[%(asctime)s | %(levelname)-8s | %(module)s:%(lineno)d] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_LOGGERS: Dict[str, logging.Logger] = {}
_LOG_INIT_LOCK = Lock()


class LoggerConfig:
    """Logger settings read from the ``logger`` section of a config dict."""

    def __init__(self, config_dict: Optional[dict] = None):
        cfg = config_dict.get('logger', {}) if config_dict else {}
        # Library default: console only, file logging is opt-in
        self.log_to_file = cfg.get('log_to_file', False)
        self.log_to_console = cfg.get('log_to_console', True)
        self.log_file = cfg.get('log_file', DEFAULT_LOG_FILE)
        self.log_level = getattr(logging, str(cfg.get('level', 'INFO')).upper(), DEFAULT_LOG_LEVEL)
        self.max_bytes = cfg.get('max_bytes', DEFAULT_MAX_BYTES)
        self.backup_count = cfg.get('backup_count', DEFAULT_BACKUP_COUNT)


def get_logger(name: str = "qrshield", config_dict: Optional[dict] = None) -> logging.Logger:
    """Get a logger, configuring its handlers only the first time ``name`` is seen."""
    if name in _LOGGERS:
        return _LOGGERS[name]

    with _LOG_INIT_LOCK:
        if name in _LOGGERS:
            return _LOGGERS[name]

        cfg = LoggerConfig(config_dict)
        logger = logging.getLogger(name)
        logger.setLevel(cfg.log_level)
        logger.propagate = False

        fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

        if cfg.log_to_file:
            log_file = Path(cfg.log_file)
            try:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                file_handler = RotatingFileHandler(
                    log_file, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding='utf-8')
                file_handler.setFormatter(fmt)
                file_handler.setLevel(cfg.log_level)
                logger.addHandler(file_handler)
            except OSError as e:
                print(f"Logger: file handler setup failed: {e}", file=sys.stderr)

        if cfg.log_to_console or not logger.handlers:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(fmt)
            console_handler.setLevel(cfg.log_level)
            logger.addHandler(console_handler)

        _LOGGERS[name] = logger
        return logger


def configure_logging(config_dict: Optional[dict] = None):
    """Re-apply level and file settings from config to every managed logger."""
    cfg = LoggerConfig(config_dict)
    with _LOG_INIT_LOCK:
        for logger in _LOGGERS.values():
            logger.setLevel(cfg.log_level)
            for handler in logger.handlers:
                handler.setLevel(cfg.log_level)
            has_file = any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
            if cfg.log_to_file and not has_file:
                log_file = Path(cfg.log_file)
                try:
                    log_file.parent.mkdir(parents=True, exist_ok=True)
                    handler = RotatingFileHandler(
                        log_file, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding='utf-8')
                except OSError as e:
                    print(f"Logger: file handler setup failed: {e}", file=sys.stderr)
                    continue
                handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
                handler.setLevel(cfg.log_level)
                logger.addHandler(handler)


def set_verbosity(level: str = "INFO"):
    """Change verbosity for all loggers."""
    lvl = getattr(logging, level.upper(), DEFAULT_LOG_LEVEL)
    for logger in _LOGGERS.values():
        logger.setLevel(lvl)
        for handler in logger.handlers:
            handler.setLevel(lvl)


def log_traceback(logger: Optional[logging.Logger] = None, exc: Optional[BaseException] = None,
                  msg: str = "Unhandled Exception"):
    """Log traceback with optional message."""
    logger = logger or get_logger()
    exc_info = sys.exc_info() if exc is None else (type(exc), exc, exc.__traceback__)
    logger.error(f"{msg}\n{''.join(traceback.format_exception(*exc_info))}")
