"""Tests for configuration loading."""

import apiflow.persistence as persistence
from apiflow.config import load_config
from apiflow.persistence import InMemoryExecutionStore, SQLiteExecutionStore, get_store


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
retry:
  max_attempts: 5
  base_delay_ms: 100
engine:
  condition_failure: fail
  default_timeout_ms: 60000
connections:
  crm:
    base_url: https://crm.test
    auth:
      type: bearer
      secret_env: CRM_TOKEN
"""
    )
    monkeypatch.setenv("APIFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("APIFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.retry.max_attempts == 5
    assert config.retry.base_delay_ms == 100
    assert config.engine.condition_failure == "fail"
    assert config.engine.default_timeout_ms == 60000
    assert config.connections["crm"].auth.secret_env == "CRM_TOKEN"
    assert config.store.database_url is None


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("APIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("APIFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.retry.max_attempts == 3
    assert config.retry.base_delay_ms == 500
    assert config.retry.max_delay_ms == 30_000
    assert config.engine.condition_failure == "complete"
    assert config.connections == {}


def test_database_url_from_env_selects_store(tmp_path, monkeypatch):
    monkeypatch.setenv("APIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("APIFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'exec.db'}")
    monkeypatch.setattr(persistence, "_store_instance", None)

    config = load_config()
    assert config.store.database_url.startswith("sqlite://")
    store = get_store(config=config)
    assert isinstance(store, SQLiteExecutionStore)


def test_get_store_defaults_to_memory(tmp_path, monkeypatch):
    monkeypatch.setenv("APIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("APIFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_store_instance", None)

    store = get_store()
    assert isinstance(store, InMemoryExecutionStore)
    assert get_store() is store
