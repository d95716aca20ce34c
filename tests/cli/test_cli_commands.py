"""Smoke tests for the a2p command line."""

import pytest
import yaml
from sqlalchemy.orm import sessionmaker
from typer.testing import CliRunner

from a2p_registry.cli.main import app
from a2p_registry.db.connection import build_engine
from a2p_registry.services.state_store import RegistrationStore

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Config pointing at a fresh SQLite file, with the schema created."""
    monkeypatch.delenv("A2P_DATABASE_URL", raising=False)
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    path = tmp_path / "a2p.yaml"
    path.write_text(yaml.dump({
        "database": {"url": url},
        "gateway": {"api_key": "gateway-secret"},
    }))
    result = runner.invoke(app, ["--config", str(path), "db", "init"])
    assert result.exit_code == 0, result.stdout
    return path, url


def test_help():
    result = runner.invoke(app, ["ops", "--help"])
    assert result.exit_code == 0
    assert "reconcile" in result.stdout


def test_config_show_masks_secrets(config_file):
    path, _ = config_file
    result = runner.invoke(app, ["--config", str(path), "config", "show"])

    assert result.exit_code == 0
    assert "gateway-secret" not in result.stdout
    assert "****" in result.stdout


def test_missing_config_file(tmp_path):
    result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "config", "show"])
    assert result.exit_code == 1


def test_status_of_unknown_registration(config_file):
    path, _ = config_file
    result = runner.invoke(app, ["--config", str(path), "registration", "status", "missing-id"])

    assert result.exit_code == 1
    assert "E-2006" in result.stdout


def test_status_and_attempts(config_file):
    path, url = config_file
    engine = build_engine(url)
    db = sessionmaker(bind=engine)()
    try:
        registration_id = RegistrationStore(db).create("tenant-1", "user-1").id
    finally:
        db.close()
        engine.dispose()

    status = runner.invoke(
        app, ["--config", str(path), "registration", "status", registration_id, "--json"]
    )
    attempts = runner.invoke(app, ["--config", str(path), "ops", "attempts", registration_id])

    assert status.exit_code == 0
    assert '"status": "draft"' in status.stdout
    assert attempts.exit_code == 0
    assert "No attempts recorded." in attempts.stdout
