# src/tools/base.py
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Iterator, List, Optional, Tuple


@dataclass(frozen=True)
class ResourceLimits:
    cpus: float = 0.5
    memory_mb: int = 512
    pids_limit: int = 256
    network_mode: str = "bridge"
    read_only_rootfs: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


class SandboxProcess(ABC):
    """One isolated execution. Owned by the sandbox executor."""

    container_id: str

    @abstractmethod
    def output(self) -> Iterator[Tuple[str, bytes]]:
        """Yield (stream, data) pairs, stream being "stdout" or "stderr", until both close."""

    @abstractmethod
    def wait(self, timeout: float = None) -> Optional[int]:
        """Return the exit code, or None if still running after `timeout` seconds."""

    @abstractmethod
    def kill(self) -> None:
        """Kill every process in the sandbox, not just the entrypoint."""

    @abstractmethod
    def remove(self) -> None:
        """Release the sandbox and its resources. Safe to call twice."""


class SandboxRuntime(ABC):
    name = "abstract"

    @abstractmethod
    def health(self, image: str) -> dict:
        """Return {"docker_available": bool, "image_available": bool}."""

    @abstractmethod
    def start(self, scan_id: str, argv: List[str], image: str, limits: ResourceLimits) -> SandboxProcess:
        pass

    @abstractmethod
    def list_sandboxes(self) -> List[Tuple[str, str]]:
        """Return (scan_id, container_id) for every sandbox tagged by this engine."""

    @abstractmethod
    def remove_sandbox(self, container_id: str) -> None:
        pass
