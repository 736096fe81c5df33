"""End-to-end tests for the pipeline driver, using a real watchdog observer."""

import os
import queue
import threading
import time
import uuid

import pytest

from cidtracker.config import Config, source_for_path
from cidtracker.errors import ConfigError, WatcherError
from cidtracker.models import LogLine, utc_now
from cidtracker.pipeline import Pipeline
from cidtracker.watcher import ErrorRateMonitor

U5 = "550e8400-e29b-51d4-a716-446655440000"
U4 = "550e8400-e29b-41d4-a716-446655440000"


def _cid(i: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"request-{i}"))


def _append(path, *lines):
    with open(path, "a") as fh:
        for line in lines:
            fh.write(line + "\n")
        fh.flush()


def _wait_for(predicate, timeout=3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _collect(q, n, timeout=5.0) -> list:
    records = []
    deadline = time.monotonic() + timeout
    while len(records) < n and time.monotonic() < deadline:
        try:
            item = q.get(timeout=0.1)
        except queue.Empty:
            continue
        if item is None:
            break
        records.append(item)
    return records


def _config(path, **overrides) -> Config:
    values = dict(log_sources=[source_for_path(str(path))], poll_interval=0.05, buffer_size=100)
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def log_dir(tmp_path):
    d = tmp_path / "logs"
    d.mkdir()
    return d


@pytest.fixture
def pipeline_factory():
    created = []

    def make(config, **kwargs):
        p = Pipeline(config, **kwargs)
        created.append(p)
        return p

    yield make
    for p in created:
        p.stop(timeout=0.5)


class TestTailing:
    def test_existing_content_skipped(self, log_dir, pipeline_factory):
        f = log_dir / "app.log"
        f.write_text("".join(f"INFO CID[{_cid(i)}] old\n" for i in range(10)))
        p = pipeline_factory(_config(log_dir))
        p.start()
        assert p.is_tracked(str(f))

        _append(f, *[f"INFO CID[{_cid(100 + i)}] new" for i in range(3)])
        records = _collect(p.output, 3)
        assert [r.cid for r in records] == [_cid(100 + i) for i in range(3)]
        assert all(r.is_valid for r in records)
        assert _collect(p.output, 1, timeout=0.3) == []

    def test_file_created_after_start(self, log_dir, pipeline_factory):
        p = pipeline_factory(_config(log_dir))
        p.start()
        f = log_dir / "late.log"
        f.touch()
        assert _wait_for(lambda: p.is_tracked(str(f)))

        _append(f, f"INFO CID[{U5}] hello")
        records = _collect(p.output, 1)
        assert [r.uuid for r in records] == [U5]
        assert records[0].source_path == os.path.abspath(str(f))

    def test_delete_and_recreate(self, log_dir, pipeline_factory):
        f = log_dir / "app.log"
        f.write_text("start\n")
        p = pipeline_factory(_config(log_dir))
        p.start()
        assert p.is_tracked(str(f))

        f.unlink()
        assert _wait_for(lambda: not p.is_tracked(str(f)))
        f.touch()
        assert _wait_for(lambda: p.is_tracked(str(f)))

        _append(f, f"INFO CID[{U5}] after rotation")
        records = _collect(p.output, 1)
        assert [r.cid for r in records] == [U5]

    def test_recreated_file_read_from_start(self, log_dir, pipeline_factory):
        f = log_dir / "app.log"
        f.write_text("".join(f"INFO CID[{_cid(i)}] old\n" for i in range(3)))
        p = pipeline_factory(_config(log_dir))
        p.start()

        f.unlink()
        f.write_text(f"INFO CID[{U5}] first line\n")
        records = _collect(p.output, 1)
        assert [r.cid for r in records] == [U5]
        assert _collect(p.output, 1, timeout=0.3) == []

    def test_rename_rotation(self, log_dir, pipeline_factory):
        f = log_dir / "app.log"
        f.write_text("INFO before rotation\n")
        p = pipeline_factory(_config(log_dir))
        p.start()

        os.rename(f, log_dir / "app.log.1")
        f.write_text(f"INFO CID[{_cid(1)}] a\nINFO CID[{_cid(2)}] b\n")
        records = _collect(p.output, 2)
        assert [r.cid for r in records] == [_cid(1), _cid(2)]
        assert _wait_for(lambda: p.active_paths == [os.path.abspath(str(f))])

    def test_file_created_with_content(self, log_dir, pipeline_factory):
        p = pipeline_factory(_config(log_dir))
        p.start()
        (log_dir / "burst.log").write_text(f"CID[{_cid(7)}]\nCID[{_cid(8)}]\n")
        records = _collect(p.output, 2)
        assert [r.cid for r in records] == [_cid(7), _cid(8)]

    def test_truncation(self, log_dir, pipeline_factory):
        f = log_dir / "app.log"
        f.write_text("".join(f"filler line number {i}\n" for i in range(10)))
        p = pipeline_factory(_config(log_dir))
        p.start()

        with open(f, "w"):
            pass
        time.sleep(0.3)
        _append(f, f"CID[{_cid(1)}]", f"CID[{_cid(2)}]")
        records = _collect(p.output, 2)
        assert [r.cid for r in records] == [_cid(1), _cid(2)]

    def test_non_matching_suffix_ignored(self, log_dir, pipeline_factory):
        txt = log_dir / "notes.txt"
        txt.write_text("")
        p = pipeline_factory(_config(log_dir))
        p.start()
        assert p.active_paths == []

        _append(txt, f"INFO CID[{U5}] not watched")
        time.sleep(0.3)
        assert not p.is_tracked(str(txt))
        assert p.output.empty()

    def test_nested_directories(self, log_dir, pipeline_factory):
        nested = log_dir / "svc"
        nested.mkdir()
        f = nested / "svc.log"
        f.write_text("")
        p = pipeline_factory(_config(log_dir))
        p.start()
        assert p.is_tracked(str(f))


class TestShutdown:
    def test_stop_closes_output_and_clears_registry(self, log_dir, pipeline_factory):
        (log_dir / "app.log").write_text("")
        p = pipeline_factory(_config(log_dir))
        p.start()
        assert len(p.active_paths) == 1

        p.stop()
        assert p.active_paths == []
        assert p.cancel_event.is_set()
        assert p.output.get(timeout=1) is None

    def test_stop_is_idempotent(self, log_dir, pipeline_factory):
        p = pipeline_factory(_config(log_dir))
        p.start()
        p.stop()
        p.stop()

    def test_stop_without_start(self, log_dir):
        p = Pipeline(_config(log_dir))
        p.stop()
        assert p.output.get(timeout=1) is None

    def test_backpressure_loses_nothing(self, log_dir, pipeline_factory):
        f = log_dir / "app.log"
        f.write_text("")
        p = pipeline_factory(_config(log_dir, buffer_size=5))
        p.start()

        _append(f, *[f"INFO CID[{_cid(i)}] burst" for i in range(50)])
        time.sleep(0.5)
        assert p.output.full()

        records = _collect(p.output, 50)
        assert [r.cid for r in records] == [_cid(i) for i in range(50)]

    def test_cancel_with_stalled_consumer_is_bounded(self, log_dir, pipeline_factory):
        f = log_dir / "app.log"
        f.write_text("")
        buffer_size = 10
        p = pipeline_factory(_config(log_dir, buffer_size=buffer_size))
        p.start()

        _append(f, *[f"INFO CID[{_cid(i)}] flood" for i in range(1000)])
        consumed = _collect(p.output, 100)
        assert len(consumed) == 100

        started = time.monotonic()
        p.stop()
        assert time.monotonic() - started < 3.5

        leftover = []
        while True:
            try:
                leftover.append(p.output.get_nowait())
            except queue.Empty:
                break
        emitted = len(consumed) + len([r for r in leftover if r is not None])
        assert emitted <= 100 + buffer_size


class TestProcessLine:
    def _line(self, text):
        return LogLine(source_path="/logs/app.log", read_at=utc_now(), text=text)

    def test_mixed_line_metrics(self, log_dir):
        p = Pipeline(_config(log_dir))
        records = p.process_line(self._line(f"CID[{U5}] retry of CID[{U4}]"))
        assert [(r.cid, r.is_valid) for r in records] == [(U5, True), (U4, False)]

        snap = p.metrics.snapshot()
        assert snap["processed_lines"] == 1
        assert snap["extracted_cids"] == 1
        assert snap["valid_cids"] == 1
        assert snap["invalid_cids"] == 1
        assert snap["errors"] == 0

    def test_line_without_cid(self, log_dir):
        p = Pipeline(_config(log_dir))
        assert p.process_line(self._line("INFO nothing to see")) == []
        assert p.process_line(self._line("")) == []
        snap = p.metrics.snapshot()
        assert snap["processed_lines"] == 2
        assert snap["extracted_cids"] == 0

    def test_malformed_uuid_counts_error(self, log_dir):
        p = Pipeline(_config(log_dir))
        records = p.process_line(self._line("CID[550e8400e29b-51d4-a716-446655440000-]"))
        assert len(records) == 1
        assert records[0].is_valid is False
        assert p.metrics.snapshot()["errors"] == 1


class TestStartupErrors:
    def test_missing_directory(self, tmp_path):
        p = Pipeline(_config(tmp_path / "does-not-exist"))
        with pytest.raises(ConfigError):
            p.start()

    def test_no_active_sources(self, tmp_path):
        p = Pipeline(Config(log_sources=[]))
        with pytest.raises(ConfigError):
            p.start()


class FakeObserver:
    instances: list["FakeObserver"] = []

    def __init__(self):
        self.alive = False
        self.scheduled = []
        FakeObserver.instances.append(self)

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((path, recursive))

    def start(self):
        self.alive = True

    def stop(self):
        self.alive = False

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return self.alive


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestWatcherHealth:
    def setup_method(self):
        FakeObserver.instances = []

    def test_dead_observer_restarted(self, log_dir, pipeline_factory):
        p = pipeline_factory(_config(log_dir), observer_factory=FakeObserver)
        p.start()
        assert FakeObserver.instances[0].scheduled == [(str(log_dir), True)]

        FakeObserver.instances[0].alive = False
        p.check_health()
        assert len(FakeObserver.instances) == 2
        assert FakeObserver.instances[1].alive
        assert p.metrics.snapshot()["errors"] == 1

    def test_sustained_errors_are_fatal(self, log_dir, pipeline_factory):
        clock = FakeClock()
        p = pipeline_factory(
            _config(log_dir),
            observer_factory=FakeObserver,
            error_monitor=ErrorRateMonitor(clock=clock),
        )
        p.start()
        for second in range(5):
            clock.now = float(second)
            for _ in range(11):
                p.report_watcher_error(OSError("inotify failure"))

        with pytest.raises(WatcherError):
            p.check_health()

    def test_isolated_errors_not_fatal(self, log_dir, pipeline_factory):
        p = pipeline_factory(_config(log_dir), observer_factory=FakeObserver)
        p.start()
        for _ in range(3):
            p.report_watcher_error(OSError("transient"))
        p.check_health()
        assert p.metrics.snapshot()["errors"] == 3


def test_concurrent_writers(log_dir, pipeline_factory):
    files = [log_dir / f"svc{i}.log" for i in range(3)]
    for f in files:
        f.write_text("")
    p = pipeline_factory(_config(log_dir))
    p.start()

    def write(f, base):
        for i in range(20):
            _append(f, f"CID[{_cid(base + i)}]")

    threads = [threading.Thread(target=write, args=(f, n * 100)) for n, f in enumerate(files)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    records = _collect(p.output, 60)
    assert len(records) == 60
    for n, f in enumerate(files):
        per_file = [r.cid for r in records if r.source_path == os.path.abspath(str(f))]
        assert per_file == [_cid(n * 100 + i) for i in range(20)]
