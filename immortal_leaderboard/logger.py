import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import Config

PACKAGE_LOGGER = "immortal_leaderboard"


def setup_logging(log_dir: str = "logs") -> logging.Logger:
    """Attach console and daily file handlers to the package logger"""

    logger = logging.getLogger(PACKAGE_LOGGER)

    if logger.handlers:
        return logger

    log_level = logging.DEBUG if Config.DEBUG else logging.INFO
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    path = Path(log_dir)
    path.mkdir(exist_ok=True)

    file_handler = logging.FileHandler(
        path / f'immortal_leaderboard_{datetime.now().strftime("%Y%m%d")}.log',
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return logger
