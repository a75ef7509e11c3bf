import os

# keep the module-level app in main.py off the working directory and docker
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SANDBOX_RUNTIME", "process")

import threading
import time

import pytest

from engine.db import create_session_factory
from engine.quota import QuotaGate
from engine.sandbox import SandboxExecutor
from engine.scan_manager import ScanManager, UserContext
from engine.store import ScanStore
from engine.streaming import ConnectionHub
from tools.base import SandboxProcess, SandboxRuntime


class FakeProcess(SandboxProcess):
    def __init__(self, runtime, scan_id, chunks, exit_code, gate=None, fail_with=None, hold=None):
        self.runtime = runtime
        self.scan_id = scan_id
        self.container_id = f"fake-{scan_id}"
        self.chunks = list(chunks)
        self.exit_code = exit_code
        self.gate = gate
        self.fail_with = fail_with
        self.hold = hold
        self.killed = threading.Event()
        self.removed = False

    def output(self):
        if self.gate is not None:
            while not (self.gate.is_set() or self.killed.is_set()):
                time.sleep(0.01)
        if self.fail_with is not None:
            raise self.fail_with
        for chunk in self.chunks:
            if self.killed.is_set():
                return
            yield chunk
        if self.hold is not None:
            while not (self.hold.is_set() or self.killed.is_set()):
                time.sleep(0.01)

    def wait(self, timeout=None):
        return -9 if self.killed.is_set() else self.exit_code

    def kill(self):
        self.killed.set()

    def remove(self):
        self.removed = True
        self.runtime.processes.pop(self.container_id, None)


class FakeRuntime(SandboxRuntime):
    """
    In-memory sandbox runtime. Every started process replays `chunks` and
    exits with `exit_code`; set `gate` to an Event to hold output until it is
    set or the process is killed, or `hold` to keep the process alive after
    its output.
    """
    name = "fake"

    def __init__(self, docker_available=True, image_available=True):
        self.docker_available = docker_available
        self.image_available = image_available
        self.chunks = [("stdout", b"Starting scan\n"), ("stdout", b"443/tcp open https\n")]
        self.exit_code = 0
        self.gate = None
        self.hold = None
        self.fail_start = False
        self.fail_output = None
        self.started = []
        self.processes = {}

    def health(self, image):
        return {"docker_available": self.docker_available, "image_available": self.image_available}

    def start(self, scan_id, argv, image, limits):
        if self.fail_start:
            raise RuntimeError("container create failed")
        process = FakeProcess(self, scan_id, self.chunks, self.exit_code, self.gate, self.fail_output, self.hold)
        self.started.append((scan_id, list(argv)))
        self.processes[process.container_id] = (scan_id, process)
        return process

    def list_sandboxes(self):
        return [(scan_id, cid) for cid, (scan_id, _) in list(self.processes.items())]

    def remove_sandbox(self, container_id):
        entry = self.processes.pop(container_id, None)
        if entry:
            entry[1].removed = True


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def store():
    return ScanStore(create_session_factory("sqlite://"))


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def hub():
    hub = ConnectionHub(queue_size=100)
    yield hub
    hub.close()


@pytest.fixture
def executor(runtime):
    executor = SandboxExecutor(runtime, max_concurrent=4, acquire_timeout=0.5, grace_seconds=1)
    yield executor
    executor.shutdown(timeout=2)


@pytest.fixture
def gate():
    return QuotaGate()


@pytest.fixture
def manager(store, executor, hub, gate):
    manager = ScanManager(store, executor, hub, gate=gate)
    yield manager
    for event in (manager.executor.runtime.gate, manager.executor.runtime.hold):
        if event is not None:
            event.set()
    manager.shutdown(timeout=2)


@pytest.fixture
def free_user():
    return UserContext(id="user-free", role="free")


@pytest.fixture
def pro_user():
    return UserContext(id="user-pro", role="pro")


@pytest.fixture
def admin_user():
    return UserContext(id="user-admin", role="admin")
