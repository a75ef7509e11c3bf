# src/tools/docker_runtime.py
"""
DockerRuntime: runs each scan in its own labelled container through the
Docker SDK. Killing the container takes down the whole process tree inside it.
"""
import logging
import time

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from engine.config import SANDBOX_LABEL
from .base import ResourceLimits, SandboxProcess, SandboxRuntime


class DockerSandbox(SandboxProcess):
    def __init__(self, container):
        self.container = container
        self.container_id = container.id

    def output(self):
        stream = self.container.attach(stdout=True, stderr=True, stream=True, logs=True, demux=True)
        for stdout, stderr in stream:
            if stdout:
                yield "stdout", stdout
            if stderr:
                yield "stderr", stderr

    def wait(self, timeout=None):
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                self.container.reload()
            except NotFound:
                return None
            if self.container.status in ("exited", "dead"):
                return self.container.attrs.get("State", {}).get("ExitCode")
            if deadline is not None and time.monotonic() >= deadline:
                return None
            time.sleep(0.2)

    def kill(self):
        try:
            self.container.kill()
        except NotFound:
            pass
        except APIError as e:
            # 409 when the container already stopped
            logging.debug(f"[container_id={self.container_id}] kill ignored: {e}")

    def remove(self):
        try:
            self.container.remove(force=True)
        except NotFound:
            pass
        except APIError as e:
            logging.warning(f"[container_id={self.container_id}] remove failed: {e}")


class DockerRuntime(SandboxRuntime):
    name = "docker"

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def health(self, image):
        try:
            self.client.ping()
        except DockerException as e:
            logging.warning(f"Docker runtime unreachable: {e}")
            return {"docker_available": False, "image_available": False}
        try:
            self.client.images.get(image)
            image_ok = True
        except ImageNotFound:
            image_ok = False
        except DockerException as e:
            logging.warning(f"Image lookup failed for {image}: {e}")
            image_ok = False
        return {"docker_available": True, "image_available": image_ok}

    def start(self, scan_id, argv, image, limits: ResourceLimits):
        container = self.client.containers.create(
            image,
            command=list(argv),
            name=f"scan-{scan_id}",
            labels={SANDBOX_LABEL: scan_id},
            detach=True,
            init=True,
            nano_cpus=int(limits.cpus * 1_000_000_000),
            mem_limit=f"{limits.memory_mb}m",
            pids_limit=limits.pids_limit,
            network_mode=limits.network_mode,
            read_only=limits.read_only_rootfs,
            tmpfs={"/tmp": "rw,size=64m"},
            cap_drop=["ALL"],
            security_opt=["no-new-privileges"],
        )
        try:
            container.start()
        except DockerException:
            container.remove(force=True)
            raise
        logging.info(f"[scan_id={scan_id}] Started container {container.short_id} ({image})")
        return DockerSandbox(container)

    def list_sandboxes(self):
        containers = self.client.containers.list(all=True, filters={"label": SANDBOX_LABEL})
        return [(c.labels.get(SANDBOX_LABEL), c.id) for c in containers]

    def remove_sandbox(self, container_id):
        try:
            self.client.containers.get(container_id).remove(force=True)
        except NotFound:
            pass
