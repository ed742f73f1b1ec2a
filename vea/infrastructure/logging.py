import logging
from pathlib import Path
from typing import Optional
from rich.logging import RichHandler


def setup_logging(log_dir: Path, debug: bool = False, log_path: Optional[Path] = None, console: bool = True) -> logging.Logger:
    """
    Setup logging configuration for the agent.

    Creates the log directory and vea.log file, and mirrors records to the
    console through rich.

    Args:
        log_dir: Directory for the default log file
        debug: If True, enable DEBUG level logging
        log_path: Optional path to log file (overrides log_dir)
        console: If False, only the file handler is installed
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (log_dir / "vea.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    handlers = [file_handler]
    if console:
        handlers.append(RichHandler(show_path=False, rich_tracebacks=True))

    logging.basicConfig(
        level=level,
        format='%(message)s',
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
