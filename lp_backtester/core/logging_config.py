import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from .config_loader import get_base_dir

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
PACKAGE_LOGGER = "lp_backtester"


def _level(value: Any, fallback: int = logging.INFO) -> int:
    return getattr(logging, str(value).upper(), fallback)


def _resolve_log_file(logging_cfg: Dict[str, Any]) -> Optional[Path]:
    rel = logging_cfg.get("file")
    if not rel:
        return None
    path = Path(rel)
    return path if path.is_absolute() else get_base_dir() / path


def setup_logging(config: Dict[str, Any]) -> logging.Logger:
    """
    Configure the ``lp_backtester`` logger from the ``logging`` block.

    - rotating file handler (skipped when ``file`` is empty)
    - optional console handler
    - ``levels`` maps other logger names to levels; httpx logs every request
      at INFO, so the shipped config turns it down to WARNING

    Calling it again does not stack handlers.
    """
    logging_cfg = config.get("logging", {}) or {}
    level = _level(logging_cfg.get("level", "INFO"))

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    logger.propagate = False

    for name, name_level in (logging_cfg.get("levels") or {}).items():
        logging.getLogger(name).setLevel(_level(name_level, logging.WARNING))

    if logger.handlers:
        return logger

    fmt = logging.Formatter(LOG_FORMAT)

    log_file = _resolve_log_file(logging_cfg)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=int(logging_cfg.get("max_bytes", 10 * 1024 * 1024)),
            backupCount=int(logging_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)

    if logging_cfg.get("console", True):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(fmt)
        logger.addHandler(stream_handler)

    return logger
