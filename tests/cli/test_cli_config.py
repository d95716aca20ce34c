"""Tests for CLI configuration loading and validation."""

import os

import pytest
import yaml

from a2p_registry.cli.config import (
    A2PConfig,
    GatewayConfig,
    OrchestratorConfig,
    load_config,
    resolve_env_vars,
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """No stray A2P_* variables or config files from the developer's machine."""
    for key in list(os.environ):
        if key.startswith("A2P_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


class TestDefaults:

    def test_defaults(self):
        cfg = load_config()
        assert cfg.database.url == "sqlite:///./a2p_registry.db"
        assert cfg.gateway.transport_retries == 2
        assert cfg.orchestrator.reconciliation_timeout_seconds == 900
        assert cfg.api.port == 8000

    def test_base_url_trailing_slash(self):
        assert GatewayConfig(base_url="https://api.example.test/").base_url == (
            "https://api.example.test"
        )

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            OrchestratorConfig(reconciliation_timeout_seconds=0)


class TestLoadConfig:

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.dump({
            "gateway": {"base_url": "https://compliance.example.test", "api_key": "k"},
            "orchestrator": {"reconciliation_timeout_seconds": 60},
        }))

        cfg = load_config(str(path))

        assert cfg.gateway.base_url == "https://compliance.example.test"
        assert cfg.orchestrator.reconciliation_timeout_seconds == 60

    def test_working_directory_file_is_found(self, tmp_path):
        (tmp_path / "a2p.yaml").write_text(yaml.dump({"api": {"port": 9100}}))
        assert load_config().api.port == 9100

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_env_var_references(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COMPLIANCE_KEY", "from-env")
        path = tmp_path / "a2p.yaml"
        path.write_text(yaml.dump({"gateway": {"api_key": "${COMPLIANCE_KEY}"}}))

        assert load_config(str(path)).gateway.api_key == "from-env"

    def test_env_overrides_win(self, tmp_path, monkeypatch):
        path = tmp_path / "a2p.yaml"
        path.write_text(yaml.dump({"gateway": {"base_url": "https://yaml.example.test"}}))
        monkeypatch.setenv("A2P_GATEWAY_BASE_URL", "https://env.example.test")
        monkeypatch.setenv("A2P_ORCHESTRATOR_MAX_CAS_RETRIES", "9")
        monkeypatch.setenv("A2P_DATABASE_ECHO", "true")

        cfg = load_config(str(path))

        assert cfg.gateway.base_url == "https://env.example.test"
        assert cfg.orchestrator.max_cas_retries == 9
        assert cfg.database.echo is True

    def test_unparseable_override_is_ignored(self, monkeypatch):
        monkeypatch.setenv("A2P_API_PORT", "not-a-port")
        assert load_config().api.port == 8000


class TestHelpers:

    def test_resolve_env_vars(self, monkeypatch):
        monkeypatch.setenv("ZONE", "us")
        monkeypatch.delenv("MISSING_VAR", raising=False)
        assert resolve_env_vars("${ZONE}-east-${MISSING_VAR}") == "us-east-"

    def test_masked(self):
        cfg = A2PConfig(gateway=GatewayConfig(api_key="real-key"))
        masked = cfg.masked()
        assert masked["gateway"]["api_key"] == "****"
        assert masked["api"]["webhook_secret"] == ""
