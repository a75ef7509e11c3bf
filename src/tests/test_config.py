import os

from engine.config import Settings, load_roles_config, settings


def test_defaults():
    defaults = Settings(_env_file=None)
    assert defaults.SANDBOX_RUNTIME in ("docker", "process")
    assert defaults.MAX_TIMEOUT_SECONDS == 1800
    assert defaults.ALLOW_PRIVATE_TARGETS is False
    assert os.path.basename(defaults.ROLE_QUOTAS_FILE) == "roles.yaml"


def test_environment_overrides_are_typed(monkeypatch):
    monkeypatch.setenv("ALLOW_PRIVATE_TARGETS", "yes")
    monkeypatch.setenv("MAX_GLOBAL_SANDBOXES", "3")
    monkeypatch.setenv("SANDBOX_CPUS", "1.5")
    monkeypatch.setenv("HEARTBEAT_SECONDS", "10")
    overridden = Settings(_env_file=None)
    assert overridden.ALLOW_PRIVATE_TARGETS is True
    assert overridden.MAX_GLOBAL_SANDBOXES == 3
    assert overridden.SANDBOX_CPUS == 1.5
    assert overridden.HEARTBEAT_SECONDS == 10.0


def test_roles_file_from_settings(tmp_path, monkeypatch):
    roles_file = tmp_path / "roles.yaml"
    roles_file.write_text("roles:\n  trial:\n    name: Trial\n    limits:\n      scans_per_month: 1\n")
    monkeypatch.setattr(settings, "ROLE_QUOTAS_FILE", str(roles_file))
    assert list(load_roles_config()) == ["trial"]
