# fts_catalog/app/logging_setup.py
"""Root logger configuration shared by the command-line tools and host applications.

Library modules only ever call ``logging.getLogger(__name__)``; whoever owns the
process calls :func:`start_log` once.  Files go to ``LOG_DIR`` (env) or
``<repo>/var/logs`` and roll over into a fresh timestamped file once they grow
past ``max_bytes``.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Union

REPO_ROOT = Path(__file__).resolve().parents[2]

LOG_FORMAT = "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# SQLAlchemy's own loggers; kept at WARNING unless SQL_LOG_LEVEL says otherwise
SQL_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool")

LevelLike = Union[str, int, None]


class TimestampedRotatingFileHandler(RotatingFileHandler):
    """Size-based rotation that starts ``<prefix>-<timestamp>.log`` instead of renaming to ``.1``."""

    def __init__(self, directory: Path, prefix: str = "fts_catalog", max_bytes: int = 1_000_000):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.prefix = prefix
        super().__init__(
            self._stamped_path(),
            maxBytes=max_bytes,
            backupCount=0,
            encoding="utf-8",
            errors="replace",
        )

    def _stamped_path(self) -> str:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")[:-3]
        return os.fspath(self.directory / f"{self.prefix}-{stamp}.log")

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None
        self.baseFilename = self._stamped_path()
        self.stream = self._open()


def resolve_level(level: LevelLike, env_var: str = "LOG_LEVEL", default: int = logging.INFO) -> int:
    """Turn ``"debug"``/``10``/``None`` into a logging level; ``None`` consults ``env_var``."""
    if isinstance(level, int):
        return level
    if level is None:
        level = os.getenv(env_var)
    if not level:
        return default
    value = getattr(logging, str(level).strip().upper(), None)
    return value if isinstance(value, int) else default


def _log_directory(log_dir: Optional[Union[str, Path]]) -> Path:
    if log_dir is not None:
        return Path(log_dir)
    env_dir = os.getenv("LOG_DIR")
    return Path(env_dir) if env_dir else REPO_ROOT / "var" / "logs"


def configure_sql_logging(level: LevelLike = None) -> int:
    """Set the SQLAlchemy engine and pool loggers; ``SQL_LOG_LEVEL=INFO`` echoes statements."""
    resolved = resolve_level(level, env_var="SQL_LOG_LEVEL", default=logging.WARNING)
    for name in SQL_LOGGERS:
        logging.getLogger(name).setLevel(resolved)
    return resolved


def start_log(
    *,
    app_name: str = "fts_catalog",
    log_dir: Optional[Union[str, Path]] = None,
    level: LevelLike = None,
    to_console: bool = True,
    to_file: bool = True,
    max_bytes: int = 1_000_000,
) -> logging.Logger:
    """Configure the root logger and return it.

    Safe to call more than once: handlers from an earlier call are replaced,
    not duplicated.
    """
    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: List[logging.Handler] = []
    directory: Optional[Path] = None
    if to_file:
        directory = _log_directory(log_dir)
        handlers.append(TimestampedRotatingFileHandler(directory, prefix=app_name, max_bytes=max_bytes))
    if to_console:
        console = logging.StreamHandler()
        console.setLevel(root.level)
        handlers.append(console)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    configure_sql_logging()
    root.info("Logging started app=%s dir=%s level=%s", app_name, directory, logging.getLevelName(root.level))
    return root
