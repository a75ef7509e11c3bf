# src/tools/process_runtime.py
"""
LocalProcessRuntime: runs the argv directly on the host in its own session
(process group). For development and tests; offers no filesystem or network
isolation.
"""
import logging
import os
import queue
import signal
import subprocess
import threading

from .base import ResourceLimits, SandboxProcess, SandboxRuntime

_EOF = object()


class LocalProcess(SandboxProcess):
    def __init__(self, proc: subprocess.Popen, on_remove=None):
        self.proc = proc
        self.container_id = f"pid-{proc.pid}"
        self._on_remove = on_remove

    def _reader(self, name, pipe, sink):
        try:
            for data in iter(lambda: pipe.read1(4096), b""):
                sink.put((name, data))
        except (OSError, ValueError):
            pass
        finally:
            sink.put(_EOF)

    def output(self):
        sink = queue.Queue()
        readers = [
            threading.Thread(target=self._reader, args=("stdout", self.proc.stdout, sink), daemon=True),
            threading.Thread(target=self._reader, args=("stderr", self.proc.stderr, sink), daemon=True),
        ]
        for t in readers:
            t.start()
        open_streams = len(readers)
        while open_streams:
            item = sink.get()
            if item is _EOF:
                open_streams -= 1
                continue
            yield item

    def wait(self, timeout=None):
        try:
            return self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def kill(self):
        try:
            os.killpg(self.proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    def remove(self):
        if self.proc.poll() is None:
            self.kill()
            self.proc.wait()
        for pipe in (self.proc.stdout, self.proc.stderr):
            if pipe:
                pipe.close()
        if self._on_remove:
            self._on_remove(self.container_id)


class LocalProcessRuntime(SandboxRuntime):
    name = "process"

    def __init__(self):
        self._processes = {}
        self._lock = threading.Lock()

    def health(self, image):
        return {"docker_available": True, "image_available": True}

    def start(self, scan_id, argv, image, limits: ResourceLimits):
        proc = subprocess.Popen(
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        process = LocalProcess(proc, on_remove=self._forget)
        with self._lock:
            self._processes[process.container_id] = (scan_id, process)
        logging.info(f"[scan_id={scan_id}] Started local process {proc.pid}")
        return process

    def list_sandboxes(self):
        with self._lock:
            return [
                (scan_id, cid) for cid, (scan_id, p) in self._processes.items()
                if p.proc.poll() is None
            ]

    def remove_sandbox(self, container_id):
        with self._lock:
            entry = self._processes.pop(container_id, None)
        if entry:
            entry[1].remove()

    def _forget(self, container_id):
        with self._lock:
            self._processes.pop(container_id, None)
