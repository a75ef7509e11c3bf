# src/engine/config.py
"""
Engine settings. Every value can be overridden from the environment or a
.env file; role quotas and permissions live in a YAML file so new tiers need
no code.
"""
import os
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

SANDBOX_LABEL = "scan-engine.scan-id"


class Settings(BaseSettings):
    # Database configuration
    DATABASE_URL: str = "sqlite:///./scan_engine.db"
    LOG_LEVEL: str = "INFO"

    # Sandbox runtime: "docker" (default) or "process" for local development
    SANDBOX_RUNTIME: str = "docker"
    SCANNER_IMAGE: str = "pentriarch/kali-scanner:latest"

    MAX_GLOBAL_SANDBOXES: int = 8
    SANDBOX_ACQUIRE_TIMEOUT: float = 5.0
    MAX_OUTPUT_BYTES: int = 1024 * 1024
    DEFAULT_TIMEOUT_SECONDS: int = 600
    MAX_TIMEOUT_SECONDS: float = 1800
    TIMEOUT_GRACE_SECONDS: float = 5.0
    RECONCILE_INTERVAL_SECONDS: float = 60.0

    # Per-sandbox resource limits
    SANDBOX_CPUS: float = 0.5
    SANDBOX_MEMORY_MB: int = 512
    SANDBOX_PIDS_LIMIT: int = 256
    SANDBOX_NETWORK: str = "bridge"

    ALLOW_PRIVATE_TARGETS: bool = False

    # Progress streaming
    HUB_QUEUE_SIZE: int = 1000
    HEARTBEAT_SECONDS: float = 30.0

    ROLE_QUOTAS_FILE: str = os.path.join(os.path.dirname(os.path.abspath(__file__)), "roles.yaml")

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def load_roles_config(path: str = None) -> dict:
    """
    Load role definitions (limits, permissions, display names) from YAML.
    """
    path = path or settings.ROLE_QUOTAS_FILE
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    roles = data.get("roles")
    if not isinstance(roles, dict) or not roles:
        raise ValueError(f"No roles defined in {path}")
    return roles
