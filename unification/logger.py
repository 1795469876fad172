import sys
from datetime import datetime
from pathlib import Path

from loguru import logger as _logger

from unification.config import config

PROJECT_ROOT = Path(__file__).resolve().parents[1]

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def define_log_level(print_level: str = "INFO", logfile_level: str = "DEBUG", name: str | None = None):
    """Route unification logs to stderr at ``print_level`` and, when
    ``logging.log_to_file`` is set, to ``logs/<name>_<timestamp>.log``."""
    _logger.remove()
    _logger.add(sys.stderr, level=print_level, format=LOG_FORMAT)

    if config.logging.log_to_file:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        log_dir = PROJECT_ROOT / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        _logger.add(log_dir / f"{name or 'unification'}_{stamp}.log", level=logfile_level, format=LOG_FORMAT)

    return _logger


logger = define_log_level(config.logging.print_level, config.logging.logfile_level)
