import os
from vea.infrastructure.file_scanner import FileScanner


def test_scan_filters_extensions_case_insensitively(tmp_path):
    (tmp_path / "Movies").mkdir()
    (tmp_path / "Movies" / "a.TS").write_bytes(b"x")
    (tmp_path / "Movies" / "b.mkv").write_bytes(b"xx")
    (tmp_path / "Movies" / "b.mkv.lock").write_text("{}")
    (tmp_path / "Movies" / "encoder.yaml").write_text("Quality: 20")

    scanner = FileScanner(["ts", ".mkv"])
    found = [f.path.name for f in scanner.scan(tmp_path)]

    assert found == ["a.TS", "b.mkv"]


def test_scan_reports_size(tmp_path):
    (tmp_path / "a.ts").write_bytes(b"12345")
    files = list(FileScanner([".ts"]).scan(tmp_path))
    assert files[0].size_bytes == 5


def test_scan_skips_hidden_directories(tmp_path):
    (tmp_path / ".trash").mkdir()
    (tmp_path / ".trash" / "a.ts").write_bytes(b"x")
    assert list(FileScanner([".ts"]).scan(tmp_path)) == []


def test_scan_missing_root_yields_nothing(tmp_path):
    assert list(FileScanner([".ts"]).scan(tmp_path / "missing")) == []


def test_scan_oldest_first(tmp_path):
    for name, mtime in (("new.ts", 3000), ("old.ts", 1000), ("mid.ts", 2000)):
        path = tmp_path / name
        path.write_bytes(b"x")
        os.utime(path, (mtime, mtime))

    names = [f.path.name for f in FileScanner([".ts"]).scan_oldest_first(tmp_path)]
    assert names == ["old.ts", "mid.ts", "new.ts"]
