from datetime import datetime, timedelta

import pytest

from engine.audit import AuditRecorder


class SteppingClock:
    """Returns the queued times in order, then repeats the last one."""

    def __init__(self, *times):
        self.times = list(times)

    def __call__(self):
        if len(self.times) > 1:
            return self.times.pop(0)
        return self.times[0]


def test_timestamps_never_go_backwards(store):
    t0 = datetime(2026, 1, 1, 12, 0, 0)
    clock = SteppingClock(t0, t0 + timedelta(seconds=5), t0 - timedelta(seconds=30), t0 + timedelta(seconds=6))
    recorder = AuditRecorder(store, clock)
    for i in range(4):
        recorder.record("scan-1", "info", f"line {i}")

    page = recorder.get_scan_logs("scan-1")
    stamps = [entry["timestamp"] for entry in page["entries"]]
    assert stamps == sorted(stamps)
    assert [entry["sequence"] for entry in page["entries"]] == [1, 2, 3, 4]
    assert [entry["message"] for entry in page["entries"]] == ["line 0", "line 1", "line 2", "line 3"]


def test_sequence_resumes_from_store(store):
    AuditRecorder(store).record("scan-1", "info", "first")
    entry = AuditRecorder(store).record("scan-1", "info", "second")
    assert entry.sequence == 2


def test_level_filter_and_paging(store):
    recorder = AuditRecorder(store)
    for i in range(5):
        recorder.record("scan-1", "info", f"out {i}", raw_output=f"out {i}\n")
    recorder.record("scan-1", "error", "boom")
    recorder.record("scan-2", "info", "other scan")

    errors = recorder.get_scan_logs("scan-1", level="error")
    assert errors["total"] == 1
    assert errors["entries"][0]["message"] == "boom"

    page = recorder.get_scan_logs("scan-1", limit=2, offset=0)
    assert page["total"] == 6
    assert len(page["entries"]) == 2
    assert page["has_more"] is True
    assert page["entries"][0]["raw_output"] == "out 0\n"

    last = recorder.get_scan_logs("scan-1", limit=2, offset=4)
    assert last["has_more"] is False
    assert [e["message"] for e in last["entries"]] == ["out 4", "boom"]


def test_rejects_unknown_level(store):
    with pytest.raises(ValueError):
        AuditRecorder(store).record("scan-1", "critical", "nope")


def test_delete_scan_logs(store):
    recorder = AuditRecorder(store)
    recorder.record("scan-1", "info", "a")
    recorder.record("scan-1", "info", "b")
    assert recorder.delete_scan_logs("scan-1") == 2
    assert recorder.get_scan_logs("scan-1")["total"] == 0
    assert recorder.record("scan-1", "info", "c").sequence == 1
