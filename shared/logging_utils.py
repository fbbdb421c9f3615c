"""voyeurs logging utilities."""
from __future__ import annotations
import logging
import logging.handlers
from pathlib import Path

from shared.config import LoggingSettings


def setup_rotating_logger(name: str, log_dir: Path, level: int = logging.DEBUG,
                          console_level: int = logging.INFO) -> logging.Logger:
    """Set up a rotating file logger + console output."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{name}.log"

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        # Rotating file handler: 5MB x 5 files
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        fh.setLevel(level)
        fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        fh.setFormatter(fmt)
        logger.addHandler(fh)

        ch = logging.StreamHandler()
        ch.setLevel(console_level)
        ch.setFormatter(fmt)
        logger.addHandler(ch)

    return logger


def setup_from_settings(role: str, settings: LoggingSettings) -> logging.Logger:
    """File log for ``voyeurs`` at DEBUG, console at the configured level."""
    console_level = logging.getLevelName(settings.level.upper())
    logger = setup_rotating_logger("voyeurs", Path(settings.log_dir).expanduser(),
                                   console_level=console_level)
    return logger.getChild(role)
