import logging
import sys
from datetime import datetime
from pathlib import Path

from tourney.config import Config

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

def _resolve_level() -> int:
    if Config.DEBUG:
        return logging.DEBUG
    level = logging.getLevelName(Config.LOG_LEVEL.upper())
    return level if isinstance(level, int) else logging.INFO

def setup_logger(name: str) -> logging.Logger:
    """Setup an engine logger: console always, daily file when LOG_TO_FILE is on"""

    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    log_level = _resolve_level()
    logger.setLevel(log_level)
    formatter = logging.Formatter(FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if Config.LOG_TO_FILE:
        log_dir = Path(Config.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)

        # Formation decisions are kept at DEBUG in the file for post-mortems
        file_handler = logging.FileHandler(
            log_dir / f'tourney_{datetime.now().strftime("%Y%m%d")}.log',
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
