import os
from pathlib import Path
from typing import List, Generator
from vea.domain.models import VideoFile


class FileScanner:
    """Recursively scans a watched root for source videos."""

    def __init__(self, extensions: List[str]):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]

    def scan(self, root_dir: Path) -> Generator[VideoFile, None, None]:
        """Yields VideoFile objects in deterministic path order."""
        if not root_dir.is_dir():
            return
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                if file_path.suffix.lower() not in self.extensions:
                    continue
                try:
                    stat = file_path.stat()
                except OSError:
                    # Vanished or inaccessible between listing and stat
                    continue
                yield VideoFile(path=file_path, size_bytes=stat.st_size, mtime=stat.st_mtime)

    def scan_oldest_first(self, root_dir: Path) -> List[VideoFile]:
        return sorted(self.scan(root_dir), key=lambda f: f.mtime)
