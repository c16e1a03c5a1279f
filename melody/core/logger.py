# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Logging setup for Melody.

Library modules log through logging.getLogger("melody.<module>"); the CLI and
the elevated worker attach handlers once, to the "melody" logger, through
MelodyLogger. Console output goes to stderr so --json output stays parseable.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from melody.core.config import env_flag

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


class MelodyLogger:
    """
    Handlers for one logger tree, normally "melody".

    The stderr handler follows the requested level; the rotating file
    (melody.log, 10MB x 5) always records DEBUG, with pid and source line,
    so an elevated child's run can be read back afterwards.
    """

    def __init__(
        self,
        name: str = "melody",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        console_output: bool = True,
        file_output: bool = True,
    ):
        self.name = name
        self.logger = logging.getLogger(name)

        # Replaces handlers from an earlier setup
        self.logger.handlers.clear()
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        console_formatter = logging.Formatter(
            fmt="[%(asctime)s] [%(name)s:%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        file_formatter = logging.Formatter(
            fmt="%(asctime)s | %(process)d | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        if console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(console_formatter)
            console_handler.setLevel(self._parse_level(level))
            self.logger.addHandler(console_handler)

        self.log_file: Optional[Path] = None
        if file_output:
            if log_dir is None:
                log_dir = Path.home() / ".melody" / "logs"

            log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = log_dir / f"{name}.log"

            file_handler = RotatingFileHandler(
                self.log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
            )
            file_handler.setFormatter(file_formatter)
            file_handler.setLevel(logging.DEBUG)
            self.logger.addHandler(file_handler)

    @staticmethod
    def _parse_level(level: str) -> int:
        """Level name to logging constant; unknown names mean INFO."""
        value = logging.getLevelName(level.upper())
        return value if isinstance(value, int) else logging.INFO

    def set_level(self, level: str):
        """Change the console level. The log file keeps DEBUG."""
        for handler in self.logger.handlers:
            if not isinstance(handler, RotatingFileHandler):
                handler.setLevel(self._parse_level(level))


_loggers: Dict[str, MelodyLogger] = {}


def get_logger(
    name: str = "melody",
    level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    file_output: Optional[bool] = None,
) -> MelodyLogger:
    """
    Get or create a logger instance.

    Args:
        name: Logger name
        level: Console level; defaults to MELODY_LOG_LEVEL or INFO
        log_dir: Directory for rotating log files
        file_output: Write log files; MELODY_NO_FILE_LOGS=1|true|yes disables them
    """
    if name not in _loggers:
        log_level = level or os.getenv("MELODY_LOG_LEVEL", "INFO")

        if file_output is None:
            file_output = not env_flag(os.getenv("MELODY_NO_FILE_LOGS"))

        _loggers[name] = MelodyLogger(
            name=name,
            level=log_level,
            log_dir=log_dir,
            file_output=file_output,
        )

    return _loggers[name]


def setup_logging(config=None, verbose: bool = False) -> MelodyLogger:
    """Configure the "melody" logger from a MelodyConfig."""
    if config is None:
        return get_logger("melody", level="DEBUG" if verbose else None)

    observability = config.observability
    melody_logger = get_logger(
        "melody",
        level="DEBUG" if verbose else observability.log_level,
        log_dir=config.paths.log_dir,
        file_output=observability.file_logging,
    )
    if verbose:
        melody_logger.set_level("DEBUG")
    return melody_logger
