import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Optional
from pydantic import ValidationError
from vea.domain.models import ClaimResult, LockRecord


class LockCoordinator:
    """File-based mutual exclusion between agents sharing a storage tree.

    A claim writes ``<source>.lock`` with exclusive-create semantics, waits a
    grace period so any racing writer can surface, then re-reads the record.
    The claim holds only if the record is still ours. Exclusion is best
    effort: a writer slower than the grace period can still collide.
    """

    def __init__(self, machine_name: str, suffix: str = ".lock", grace_period_s: float = 5.0):
        self.machine_name = machine_name
        self.suffix = suffix
        self.grace_period_s = grace_period_s
        self._written: Dict[Path, LockRecord] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def lock_path(self, source: Path) -> Path:
        return source.with_name(source.name + self.suffix)

    def read_record(self, source: Path) -> Optional[LockRecord]:
        """The current valid record for ``source``; unreadable or incomplete counts as absent."""
        return self._read(self.lock_path(source))

    def try_claim(self, source: Path, cancel_event: Optional[threading.Event] = None) -> ClaimResult:
        lock = self.lock_path(source)
        record = LockRecord.for_machine(self.machine_name)
        name = source.name

        try:
            created = self._create_exclusive(lock, record)
            if not created:
                existing = self._read(lock)
                if existing is not None:
                    self.logger.info(f"CLAIM_BUSY: {name} held by {existing.machine_name} since {existing.timestamp}")
                    return ClaimResult.ALREADY_LOCKED
                self.logger.debug(f"CLAIM_TAKEOVER: {name} has an unreadable lock record")
                self._replace(lock, record)
        except OSError as exc:
            self.logger.warning(f"CLAIM_FAILED: {name}: {exc}")
            return ClaimResult.FAILED

        with self._lock:
            self._written[lock] = record

        if cancel_event is not None:
            cancelled = cancel_event.wait(self.grace_period_s)
        else:
            time.sleep(self.grace_period_s)
            cancelled = False
        if cancelled:
            self.logger.info(f"CLAIM_CANCELLED: {name}")
            self.release(source)
            return ClaimResult.FAILED

        confirmed = self._read(lock)
        if confirmed != record:
            holder = confirmed.machine_name if confirmed else "unknown"
            self.logger.info(f"CLAIM_LOST: {name} overwritten by {holder}")
            with self._lock:
                self._written.pop(lock, None)
            return ClaimResult.ALREADY_LOCKED

        self.logger.info(f"CLAIM_OK: {name} by {self.machine_name}")
        return ClaimResult.CLAIMED

    def release(self, source: Path) -> None:
        """Deletes the lock file if this coordinator wrote it and still owns it."""
        lock = self.lock_path(source)
        with self._lock:
            ours = self._written.pop(lock, None)
        if ours is None:
            return
        current = self._read(lock)
        if current is not None and current != ours:
            return
        try:
            lock.unlink()
            self.logger.debug(f"CLAIM_RELEASED: {source.name}")
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning(f"Failed to delete lock file {lock}: {exc}")

    def is_own_record(self, lock: Path) -> bool:
        record = self._read(lock)
        return record is not None and record.machine_name == self.machine_name

    @staticmethod
    def _serialize(record: LockRecord) -> bytes:
        return record.model_dump_json(indent=2).encode("utf-8")

    def _create_exclusive(self, lock: Path, record: LockRecord) -> bool:
        try:
            fd = os.open(lock, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "wb") as f:
            f.write(self._serialize(record))
        return True

    def _replace(self, lock: Path, record: LockRecord) -> None:
        tmp = lock.with_name(f"{lock.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_bytes(self._serialize(record))
        os.replace(tmp, lock)

    @staticmethod
    def _read(lock: Path) -> Optional[LockRecord]:
        try:
            record = LockRecord.model_validate_json(lock.read_bytes())
        except (OSError, ValidationError, ValueError):
            return None
        return record if record.is_valid() else None
