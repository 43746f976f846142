"""Tests for config models and loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from cli.config import apply_env_overrides, find_config, load_config_model
from cli.config_models import CatalogConfig, FactsConfig, RetrieverOverride, SchedulerConfig


class TestConfigModels:
    def test_defaults(self):
        config = FactsConfig()
        assert config.scheduler.max_workers == 10
        assert config.scheduler.retention_sweep_cadence == "17 * * * *"
        assert config.coordination.mode == "static"
        assert config.retrievers.builtin is True
        assert config.paths.db_path == Path("~/.facts/facts.db").expanduser()

    def test_invalid_cadence_rejected(self):
        with pytest.raises(ValidationError, match="5 fields"):
            RetrieverOverride(cadence="* * *")

    def test_invalid_retention_rejected(self):
        with pytest.raises(ValidationError):
            RetrieverOverride(retention="forever")

    def test_sweep_cadence_validated(self):
        with pytest.raises(ValidationError):
            SchedulerConfig(retention_sweep_cadence="whenever")
        assert SchedulerConfig(retention_sweep_cadence=None).retention_sweep_cadence is None

    def test_token_env_expansion(self, monkeypatch):
        monkeypatch.setenv("CATALOG_TOKEN", "abc123")
        assert CatalogConfig(token="${CATALOG_TOKEN}").token == "abc123"
        assert CatalogConfig(token="literal").token == "literal"

    def test_log_level_normalized(self):
        config = FactsConfig.from_dict({"logging": {"level": "debug"}})
        assert config.logging.level == "DEBUG"
        with pytest.raises(ValidationError):
            FactsConfig.from_dict({"logging": {"level": "LOUD"}})

    def test_unknown_coordination_mode(self):
        with pytest.raises(ValidationError):
            FactsConfig.from_dict({"coordination": {"mode": "raft"}})

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError, match="Unknown time zone"):
            SchedulerConfig(timezone="Mars/Olympus_Mons")
        assert SchedulerConfig(timezone="Europe/Berlin").timezone == "Europe/Berlin"


class TestConfigLoading:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "facts.yaml"
        path.write_text(
            "paths:\n"
            f"  db_path: {tmp_path / 'x.db'}\n"
            "scheduler:\n"
            "  max_workers: 4\n"
            "retrievers:\n"
            "  overrides:\n"
            "    entityMetadataFactRetriever:\n"
            "      cadence: '*/10 * * * *'\n"
        )
        config = load_config_model(path)
        assert config.scheduler.max_workers == 4
        assert config.paths.db_path == tmp_path / "x.db"
        assert config.retrievers.overrides["entityMetadataFactRetriever"].cadence == "*/10 * * * *"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("scheduler: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_model(path)

    def test_validation_failure(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("scheduler:\n  max_workers: 0\n")
        with pytest.raises(ValueError, match="Config validation failed"):
            load_config_model(path)

    def test_find_config_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("{}\n")
        monkeypatch.setenv("FACTS_CONFIG", str(path))
        assert find_config() == path

    def test_find_config_cwd(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FACTS_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        (tmp_path / "facts.yaml").write_text("{}\n")
        assert find_config() == tmp_path / "facts.yaml"

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(ValueError, match="not found"):
            load_config_model(tmp_path / "missing.yaml")

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config_model(path)


class TestEnvOverrides:
    def test_env_wins_over_file(self, tmp_path, monkeypatch):
        path = tmp_path / "facts.yaml"
        path.write_text(f"paths:\n  db_path: {tmp_path / 'file.db'}\n")
        monkeypatch.setenv("FACTS_DB_PATH", str(tmp_path / "env.db"))
        monkeypatch.setenv("FACTS_CATALOG_URL", "https://catalog.local")
        config = load_config_model(path)
        assert config.paths.db_path == tmp_path / "env.db"
        assert config.catalog.base_url == "https://catalog.local"

    def test_empty_section_filled(self, monkeypatch):
        monkeypatch.setenv("FACTS_INSTANCE_ID", "node-2")
        data = apply_env_overrides({"coordination": None})
        assert data == {"coordination": {"instance_id": "node-2"}}

    def test_unset_vars_ignored(self, monkeypatch):
        for var in ("FACTS_DB_PATH", "FACTS_CATALOG_URL", "FACTS_INSTANCE_ID"):
            monkeypatch.delenv(var, raising=False)
        assert apply_env_overrides({"a": 1}) == {"a": 1}
