import logging
import os
from pathlib import Path
from typing import Iterable
from .lock_file import LockCoordinator


class HousekeepingService:
    """Startup cleanup of leftovers from a previous run of this agent."""

    def __init__(self, lock_coordinator: LockCoordinator):
        self.lock_coordinator = lock_coordinator
        self.logger = logging.getLogger(__name__)

    def cleanup_stale_locks(self, roots: Iterable[Path]) -> int:
        """Removes lock files under ``roots`` that this machine wrote."""
        suffix = self.lock_coordinator.suffix
        removed = 0
        for directory in roots:
            for root, dirs, files in os.walk(directory):
                for file in files:
                    if not file.endswith(suffix):
                        continue
                    lock = Path(root) / file
                    if not self.lock_coordinator.is_own_record(lock):
                        continue
                    try:
                        lock.unlink()
                        removed += 1
                        self.logger.info(f"HOUSEKEEPING: removed stale lock {lock}")
                    except OSError as exc:
                        self.logger.warning(f"HOUSEKEEPING: cannot remove {lock}: {exc}")
        return removed

    def cleanup_partial_outputs(self, directory: Path) -> int:
        """Removes every file left in the local encode output directory."""
        removed = 0
        if not directory.is_dir():
            return removed
        for root, dirs, files in os.walk(directory):
            for file in files:
                try:
                    (Path(root) / file).unlink()
                    removed += 1
                except OSError as exc:
                    self.logger.warning(f"HOUSEKEEPING: cannot remove {file}: {exc}")
        if removed:
            self.logger.info(f"HOUSEKEEPING: removed {removed} partial output(s) from {directory}")
        return removed
