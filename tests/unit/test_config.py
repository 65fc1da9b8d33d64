"""
Unit tests for runtime settings.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from policygate.config import CONFIG_ENV_VAR, Settings, load_settings


class TestSettings:
    """Tests for the Settings model."""

    def test_defaults(self) -> None:
        """Defaults size the trail and leave persistence off."""
        settings = Settings()
        assert settings.audit_capacity == 10_000
        assert settings.notification_queue_size == 1024
        assert settings.audit_db_path is None
        assert settings.max_condition_depth == 32
        assert settings.max_condition_length == 4096

    @pytest.mark.parametrize(
        "field",
        ["audit_capacity", "notification_queue_size", "max_condition_depth", "max_condition_length"],
    )
    def test_positive_bounds(self, field: str) -> None:
        """Sizes must be positive."""
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_depth_ceiling(self) -> None:
        """Condition depth is capped."""
        with pytest.raises(ValidationError):
            Settings(max_condition_depth=10_000)

    def test_length_ceiling(self) -> None:
        """Condition length is capped."""
        with pytest.raises(ValidationError):
            Settings(max_condition_length=1_000_000)

    def test_unknown_key_rejected(self) -> None:
        """Typos in settings files are errors."""
        with pytest.raises(ValidationError):
            Settings(audit_capactiy=5)


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_from_yaml(self, temp_dir: Path) -> None:
        """Values are read from a YAML file."""
        path = temp_dir / "settings.yaml"
        path.write_text("audit_capacity: 50\naudit_db_path: audit.db\nlog_json: true\n")

        settings = load_settings(path)

        assert settings.audit_capacity == 50
        assert settings.audit_db_path == Path("audit.db")
        assert settings.log_json is True

    def test_empty_file(self, temp_dir: Path) -> None:
        """An empty file yields defaults."""
        path = temp_dir / "settings.yaml"
        path.write_text("")
        assert load_settings(path) == Settings()

    def test_no_path_no_env(self, monkeypatch) -> None:
        """Without a path or environment variable, defaults are used."""
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert load_settings() == Settings()

    def test_env_var(self, temp_dir: Path, monkeypatch) -> None:
        """The environment variable names the default settings file."""
        path = temp_dir / "env.yaml"
        path.write_text("audit_capacity: 7\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert load_settings().audit_capacity == 7

    def test_missing_file(self, temp_dir: Path) -> None:
        """A named file that does not exist raises."""
        with pytest.raises(FileNotFoundError):
            load_settings(temp_dir / "nope.yaml")
