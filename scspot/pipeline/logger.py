"""Structured logging for pipeline execution."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for console output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        original = record.levelname
        color = self.colors.get(original, self.colors["RESET"])
        record.levelname = f"{color}{original}{self.colors['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class PipelineLogger:
    """Stage-level event logging for the analysis pipeline.

    Console output is colored; when ``log_dir`` is given a detailed log
    file is written as well. Handlers are attached to the ``scspot``
    logger so records from every engine module are captured.

    Parameters
    ----------
    log_dir : str, optional
        Directory for the run log file. Console only if None.
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str
        Logger name. Default: "scspot"
    console : bool
        Attach a console handler

    Example
    -------
    >>> logger = PipelineLogger("out/logs", log_level="INFO")
    >>> logger.setup()
    >>> logger.log_stage_start("qc", "Quality control")
    >>> logger.log_filtering("qc", "observations", 1200, 1104)
    >>> logger.log_stage_complete("qc", 1.3)
    """

    COLORS = {
        "DEBUG": "\033[0;36m",  # Cyan
        "INFO": "\033[0;34m",  # Blue
        "WARNING": "\033[1;33m",  # Yellow
        "ERROR": "\033[0;31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
        "RESET": "\033[0m",  # Reset
    }

    def __init__(
        self,
        log_dir: Optional[str] = None,
        log_level: str = "INFO",
        log_name: str = "scspot",
        console: bool = True,
    ):
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.log_file: Optional[Path] = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_file = self.log_dir / f"pipeline_{timestamp}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.console = console
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        self._handlers = []

    def setup(self) -> None:
        """Attach file and console handlers."""
        self.close()
        if self.log_file is not None:
            file_handler = logging.FileHandler(self.log_file, mode="w")
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(self._get_file_formatter())
            self._handlers.append(file_handler)

        if self.console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(self._get_console_formatter())
            self._handlers.append(console_handler)

        for handler in self._handlers:
            self.logger.addHandler(handler)

    def close(self) -> None:
        """Detach and close the handlers added by :meth:`setup`."""
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def _get_file_formatter(self) -> logging.Formatter:
        return logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def _get_console_formatter(self) -> logging.Formatter:
        return ColoredFormatter(
            fmt="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
            colors=self.COLORS,
        )

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        separator = "=" * 60
        self.logger.info(separator)
        self.logger.info("Starting stage %s: %s", stage_id, stage_name)
        self.logger.info(separator)

    def log_stage_complete(self, stage_id: str, duration: float) -> None:
        self.logger.info(
            "Stage %s completed in %s", stage_id, self.format_duration(duration)
        )

    def log_stage_skipped(self, stage_id: str, reason: str) -> None:
        self.logger.info("Stage %s skipped: %s", stage_id, reason)

    def log_stage_error(self, stage_id: str, error: str) -> None:
        self.logger.error("Stage %s failed: %s", stage_id, error)

    def log_filtering(self, stage_id: str, unit: str, before: int, after: int) -> None:
        """Report counts before and after a filtering step."""
        self.logger.info(
            "Stage %s: %s %d -> %d (%d removed)",
            stage_id,
            unit,
            before,
            after,
            before - after,
        )

    def log_summary(self, summary: Dict[str, Any]) -> None:
        for key, value in summary.items():
            self.logger.info("  %s: %s", key, value)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format duration in seconds to human-readable string.

        Returns
        -------
        str
            Formatted string (e.g., "45.2s", "1m 23s", "2h 15m")
        """
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{mins}m {secs}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            return f"{hours}h {mins}m"
