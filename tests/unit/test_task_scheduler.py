import os
import threading
import time
from unittest.mock import MagicMock
from vea.domain.events import TaskQueued
from vea.pipeline.scheduler import TaskScheduler


def _video(path, mtime=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"video")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_task_paths(app_config):
    scheduler = TaskScheduler(app_config)
    root = app_config.general.input_dir
    task = scheduler.build_task(root, root / "Movies" / "film.ts")

    assert task.relative_path == "Movies/film.ts"
    assert task.batch_name == "Movies"
    assert task.staging_path == app_config.general.staging_dir / "in" / "Movies" / "film.ts"
    assert task.output_path == app_config.general.storage_dir / "out" / "Movies" / "film.mkv"
    assert task.failure_path == app_config.general.storage_dir / "fail" / "Movies" / "film.ts"
    assert not task.is_staged


def test_file_at_root_has_no_batch(app_config):
    scheduler = TaskScheduler(app_config)
    root = app_config.general.input_dir
    assert scheduler.build_task(root, root / "film.ts").batch_name is None


def test_scan_enqueues_oldest_first(app_config, event_bus):
    batch = app_config.general.input_dir / "Movies"
    _video(batch / "a.ts", mtime=2000)
    _video(batch / "b.ts", mtime=1000)
    queued = []
    event_bus.subscribe(TaskQueued, lambda e: queued.append(e.task.relative_path))
    scheduler = TaskScheduler(app_config, event_bus=event_bus)

    assert scheduler.scan_once() == 2
    assert scheduler.next_task().relative_path == "Movies/b.ts"
    assert scheduler.next_task().relative_path == "Movies/a.ts"
    assert scheduler.next_task() is None
    assert queued == ["Movies/b.ts", "Movies/a.ts"]


def test_known_files_are_not_enqueued_twice(app_config):
    _video(app_config.general.input_dir / "Movies" / "a.ts")
    scheduler = TaskScheduler(app_config)

    scheduler.scan_once()
    scheduler.scan_once()
    assert len(scheduler.snapshot()) == 1

    task = scheduler.next_task()
    scheduler.scan_once()
    assert scheduler.snapshot() == []
    assert scheduler.is_known(task.relative_path)

    scheduler.release(task)
    scheduler.scan_once()
    assert [t.relative_path for t in scheduler.snapshot()] == ["Movies/a.ts"]


def test_staged_copy_wins_over_shared_input(app_config):
    staged = _video(app_config.general.staging_input_dir / "Movies" / "a.ts")
    _video(app_config.general.input_dir / "Movies" / "a.ts")
    scheduler = TaskScheduler(app_config)

    scheduler.scan_once()
    tasks = scheduler.snapshot()

    assert len(tasks) == 1
    assert tasks[0].source_path == staged
    assert tasks[0].is_staged


def test_explicit_watch_dirs_replace_input_dir(app_config, tmp_path):
    app_config.general.watch_dirs = [tmp_path / "share"]
    _video(tmp_path / "share" / "Shows" / "x.mkv")
    _video(app_config.general.input_dir / "Movies" / "a.ts")
    scheduler = TaskScheduler(app_config)

    scheduler.scan_once()
    assert [t.relative_path for t in scheduler.snapshot()] == ["Shows/x.mkv"]


def test_requeue_appends_and_counts(app_config):
    batch = app_config.general.input_dir / "Movies"
    _video(batch / "a.ts", mtime=1000)
    _video(batch / "b.ts", mtime=2000)
    scheduler = TaskScheduler(app_config)
    scheduler.scan_once()

    first = scheduler.next_task()
    scheduler.requeue(first)

    assert scheduler.next_task().relative_path == "Movies/b.ts"
    again = scheduler.next_task()
    assert again.relative_path == "Movies/a.ts"
    assert again.requeue_count == 1
    assert scheduler.is_known("Movies/a.ts")


def test_next_scan_delay_is_clamped(app_config):
    app_config.scheduler.per_file_delay_s = 15
    app_config.scheduler.min_delay_s = 15
    app_config.scheduler.max_delay_s = 120
    scheduler = TaskScheduler(app_config)

    assert scheduler.next_scan_delay(0) == 15
    assert scheduler.next_scan_delay(3) == 45
    assert scheduler.next_scan_delay(100) == 120


def test_run_loop_survives_scan_errors(app_config):
    scanner = MagicMock()
    scanner.scan_oldest_first.side_effect = OSError("share offline")
    scheduler = TaskScheduler(app_config, file_scanner=scanner)
    stop = threading.Event()

    thread = threading.Thread(target=scheduler.run, args=(stop,))
    thread.start()
    time.sleep(0.2)
    stop.set()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert scanner.scan_oldest_first.call_count >= 2


def test_run_loop_picks_up_new_files(app_config):
    scheduler = TaskScheduler(app_config)
    stop = threading.Event()
    thread = threading.Thread(target=scheduler.run, args=(stop,))
    thread.start()
    try:
        _video(app_config.general.input_dir / "Movies" / "late.ts")
        deadline = time.monotonic() + 2
        while not scheduler.snapshot() and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        stop.set()
        thread.join(timeout=2)

    assert [t.relative_path for t in scheduler.snapshot()] == ["Movies/late.ts"]
