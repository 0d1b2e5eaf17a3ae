"""Unit tests for settings."""

import pytest
from pydantic import ValidationError

from sprintflow.core.config import Settings, get_settings

pytestmark = pytest.mark.unit


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self) -> None:
        """Test scheduling defaults."""
        settings = Settings(_env_file=None)

        assert settings.max_sprint_duration == 10
        assert settings.max_sprints_per_project == 50
        assert settings.max_retries == 3
        assert settings.acceptance_threshold == 0.8
        assert settings.priority_mode == "critical-path"

    def test_sprint_timeout(self) -> None:
        """Test timeout is duration times unit times multiplier."""
        settings = Settings(time_unit_seconds=60, timeout_multiplier=2.0)

        assert settings.sprint_timeout(10) == 1200

    def test_env_override(self, mock_settings: None, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test environment variables use the SPRINTFLOW_ prefix."""
        monkeypatch.setenv("SPRINTFLOW_MAX_RETRIES", "5")
        monkeypatch.setenv("SPRINTFLOW_PRIORITY_MODE", "priority")

        settings = get_settings()

        assert settings.max_retries == 5
        assert settings.priority_mode == "priority"

    def test_cached(self, mock_settings: None) -> None:
        """Test get_settings returns one instance."""
        assert get_settings() is get_settings()

    def test_validation(self) -> None:
        """Test out of range values are rejected."""
        with pytest.raises(ValidationError):
            Settings(acceptance_threshold=1.5)
        with pytest.raises(ValidationError):
            Settings(max_retries=0)
        with pytest.raises(ValidationError):
            Settings(priority_mode="random")
