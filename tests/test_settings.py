"""
Tests for engine settings resolution.
"""

import json

import pytest
import yaml
from pydantic import ValidationError

from cloudsql_migrator.models.settings import EngineSettings, SSLMode, load_settings


class TestLoadSettings:
    """Test defaults, files and environment overrides."""

    def test_defaults(self):
        settings = load_settings(env={})
        assert settings.database.user == "postgres"
        assert settings.database.port == 5432
        assert settings.database.ssl_mode == SSLMode.SIMPLE
        assert settings.batch.max_parallel == 3
        assert settings.batch.stop_on_error is True
        assert settings.backup.compression_level == 9
        assert settings.backup.temp_dir.endswith("cloudsql-migrator")

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({
            "database": {"port": 6432, "ssl_mode": "strict"},
            "batch": {"max_parallel": 5},
        }))
        settings = load_settings(path, env={})
        assert settings.database.port == 6432
        assert settings.database.ssl_mode == SSLMode.STRICT
        assert settings.database.user == "postgres"
        assert settings.batch.max_parallel == 5

    def test_json_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"progress": {"update_interval": 0.5}}))
        assert load_settings(path, env={}).progress.update_interval == 0.5

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "settings.yml"
        path.write_text(yaml.safe_dump({"database": {"user": "file-user", "port": 6432}}))
        settings = load_settings(path, env={
            "PGUSER": "env-user",
            "USE_CLOUD_SQL_PROXY": "true",
            "CLOUDSQL_MIGRATOR_LOG_LEVEL": "debug",
            "CLOUDSQL_MIGRATOR_MAX_PARALLEL": "8",
        })
        assert settings.database.user == "env-user"
        assert settings.database.port == 6432
        assert settings.database.use_proxy is True
        assert settings.logging.level == "DEBUG"
        assert settings.batch.max_parallel == 8

    def test_empty_environment_values_ignored(self):
        settings = load_settings(env={"PGPORT": ""})
        assert settings.database.port == 5432

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "missing.yaml", env={})

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings.model_validate({"batch": {"max_parallel": 0}})
        with pytest.raises(ValidationError):
            load_settings(env={"CLOUDSQL_SSL_MODE": "sometimes"})
