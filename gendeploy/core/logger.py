"""Console and file logging for gendeploy."""
import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

console = Console()

LOG_DIR = Path("/var/log/gendeploy")
LOG_FILE = LOG_DIR / "gendeploy.log"

_file_logging_configured = False


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False):
    """Set up file logging for deployment sessions.

    Args:
        log_file: Path to log file (defaults to /var/log/gendeploy/gendeploy.log)
        verbose: Enable debug-level logging

    Note:
        Falls back to /tmp/gendeploy.log if /var/log/gendeploy is not writable.
    """
    global _file_logging_configured

    if _file_logging_configured:
        return

    target_log_file = Path(log_file) if log_file else LOG_FILE

    try:
        target_log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(target_log_file)
    except PermissionError:
        target_log_file = Path("/tmp/gendeploy.log")
        file_handler = logging.FileHandler(target_log_file)

    root_logger = logging.getLogger("gendeploy")
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root_logger.addHandler(file_handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    _file_logging_configured = True
    root_logger.info(f"gendeploy logging initialized: {target_log_file}")


def set_verbose(verbose: bool) -> None:
    """Raise console verbosity for every gendeploy logger created so far."""
    level = logging.DEBUG if verbose else logging.INFO
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith("gendeploy") and isinstance(logger, logging.Logger):
            logger.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with Rich console output.

    Args:
        name: Logger name (typically __name__)

    Note:
        File logging must be enabled separately via setup_file_logging()
    """
    logger = logging.getLogger(name)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return logger
