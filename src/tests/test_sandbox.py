import sys
import threading
import time

import pytest

from conftest import FakeRuntime, wait_for
from engine.errors import EnvironmentUnavailableError, ExecutionError, SandboxBusyError
from engine.sandbox import SandboxExecutor, ScanCommand
from tools.process_runtime import LocalProcessRuntime

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")


def _pid_alive(pid):
    try:
        with open(f"/proc/{pid}/status") as f:
            status = f.read()
    except FileNotFoundError:
        return False
    return "\nState:\tZ" not in status


@pytest.fixture
def local_executor():
    executor = SandboxExecutor(LocalProcessRuntime(), max_concurrent=2, acquire_timeout=0.2, grace_seconds=2)
    yield executor
    executor.shutdown(timeout=5)


@posix_only
def test_streams_stdout_and_stderr(local_executor):
    run = local_executor.launch(ScanCommand("s1", ("sh", "-c", "echo hello; echo oops 1>&2"), "local"), 10)
    chunks = list(run.chunks())
    result = run.wait(10)

    assert result.exit_code == 0
    assert result.succeeded
    assert not result.truncated
    by_stream = {}
    for c in chunks:
        by_stream[c.stream] = by_stream.get(c.stream, "") + c.text
    assert "hello" in by_stream["stdout"]
    assert "oops" in by_stream["stderr"]
    assert [c.sequence for c in chunks] == list(range(1, len(chunks) + 1))
    assert local_executor.active_count == 0


@posix_only
def test_nonzero_exit(local_executor):
    run = local_executor.launch(ScanCommand("s1", ("sh", "-c", "exit 3"), "local"), 10)
    result = run.wait(10)
    assert result.exit_code == 3
    assert not result.succeeded


@posix_only
def test_timeout_kills_whole_process_group(local_executor):
    script = "sleep 30 & echo $!; wait"
    run = local_executor.launch(ScanCommand("s1", ("sh", "-c", script), "local"), timeout_seconds=0.5)
    started = time.monotonic()
    chunks = list(run.chunks())
    result = run.wait(10)

    assert result.timed_out
    assert not result.succeeded
    assert time.monotonic() - started < 10
    child = int(chunks[0].text.split()[0])
    assert wait_for(lambda: not _pid_alive(child), timeout=3)
    assert local_executor.active_count == 0
    assert local_executor.runtime.list_sandboxes() == []


@posix_only
def test_output_cap_marks_truncated():
    executor = SandboxExecutor(LocalProcessRuntime(), max_output_bytes=10, grace_seconds=2)
    run = executor.launch(ScanCommand("s1", ("sh", "-c", "printf 'aaaaaaaaaaaaaaaaaaaa'"), "local"), 10)
    text = "".join(c.text for c in run.chunks())
    result = run.wait(10)

    assert result.truncated
    assert result.output_bytes == 10
    assert text == "a" * 10
    assert result.exit_code == 0


def test_preflight_failure_allocates_nothing():
    runtime = FakeRuntime(docker_available=False)
    executor = SandboxExecutor(runtime)
    with pytest.raises(EnvironmentUnavailableError):
        executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    assert runtime.started == []

    runtime = FakeRuntime(image_available=False)
    executor = SandboxExecutor(runtime)
    assert executor.health_check() == {"docker_available": True, "image_available": False, "active_containers": 0}
    with pytest.raises(EnvironmentUnavailableError):
        executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)


def test_one_sandbox_per_scan(executor, runtime):
    runtime.gate = threading.Event()
    run = executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    with pytest.raises(SandboxBusyError) as exc:
        executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    assert isinstance(exc.value, ExecutionError)
    assert len(runtime.started) == 1

    runtime.gate.set()
    assert run.wait(5).succeeded
    # the slot is free again once the first run finished
    executor.launch(ScanCommand("s1", ("nmap",), "img"), 10).wait(5)


def test_global_ceiling(runtime):
    runtime.gate = threading.Event()
    executor = SandboxExecutor(runtime, max_concurrent=1, acquire_timeout=0.1)
    executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    with pytest.raises(EnvironmentUnavailableError):
        executor.launch(ScanCommand("s2", ("nmap",), "img"), 10)
    runtime.gate.set()
    executor.shutdown(timeout=5)


def test_cancel_stops_sandbox(executor, runtime):
    runtime.gate = threading.Event()
    run = executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    assert executor.get_handle("s1").container_id == "fake-s1"
    assert executor.cancel("s1")

    result = run.wait(5)
    assert result.cancelled
    assert not result.succeeded
    assert run.process.removed
    assert executor.get_run("s1") is None
    assert not executor.cancel("s1")


def test_start_failure_releases_slot(executor, runtime):
    runtime.fail_start = True
    with pytest.raises(ExecutionError):
        executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    assert executor.active_count == 0
    runtime.fail_start = False
    assert executor.launch(ScanCommand("s1", ("nmap",), "img"), 10).wait(5).succeeded


def test_teardown_on_runtime_error(executor, runtime):
    runtime.fail_output = OSError("attach failed")
    run = executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    result = run.wait(5)
    assert result.error == "attach failed"
    assert run.process.removed
    assert executor.active_count == 0


def test_reconcile_removes_orphans_only(executor, runtime):
    runtime.gate = threading.Event()
    executor.launch(ScanCommand("live", ("nmap",), "img"), 10)
    orphan = runtime.start("ghost", ["nmap"], "img", executor.limits)

    removed = executor.reconcile_orphans()
    assert removed == [orphan.container_id]
    assert [sid for sid, _ in runtime.list_sandboxes()] == ["live"]
    runtime.gate.set()


def test_shutdown_cancels_active_runs(runtime):
    runtime.gate = threading.Event()
    executor = SandboxExecutor(runtime, grace_seconds=1)
    run = executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    executor.shutdown(timeout=5)
    assert run.done
    assert run.result.cancelled
    assert executor.active_count == 0


def test_chunk_timestamps_non_decreasing(executor, runtime):
    runtime.chunks = [("stdout", b"a"), ("stderr", b"b"), ("stdout", b"c")]
    run = executor.launch(ScanCommand("s1", ("nmap",), "img"), 10)
    chunks = list(run.chunks())
    assert [c.text for c in chunks] == ["a", "b", "c"]
    stamps = [c.timestamp for c in chunks]
    assert stamps == sorted(stamps)
