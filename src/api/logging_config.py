"""Centralized logging configuration module"""

import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 3

# Whether already initialized
_initialized = False


def _write_session_separator(log_file: Path) -> None:
    """Mark the start of a server session in the log file"""
    with open(log_file, 'a', encoding='utf-8') as f:
        f.write("\n" + "=" * 100 + "\n")
        f.write(f"Server started at: {datetime.now().strftime(LOG_DATEFMT)}\n")
        f.write("=" * 100 + "\n\n")


def setup_logging(level: Optional[str] = None, logs_dir: Optional[Path] = None) -> None:
    """Configure console + rotating file logging for the API process"""
    global _initialized

    if _initialized:
        return

    from .config import settings

    level_name = str(level or settings.log_level or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logs_dir = Path(logs_dir or settings.logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / "server.log"
    _write_session_separator(log_file)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding='utf-8',
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    # Configure root logger
    logging.basicConfig(
        level=log_level,
        handlers=[console_handler, file_handler],
        force=True
    )

    logging.getLogger('src').setLevel(log_level)

    # Reduce log level for third-party libraries
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)

    _initialized = True

    logging.getLogger(__name__).info(
        "Logging initialized: level=%s file=%s (max 10MB per file, keep %s backups)",
        level_name,
        log_file.absolute(),
        LOG_BACKUP_COUNT,
    )
