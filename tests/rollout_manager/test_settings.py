"""
Tests for configuration loading.
"""

import pytest
import yaml
from pydantic import ValidationError

from rollout_manager.config import (
    AutoscaleSettings,
    HealthSettings,
    OrchestratorSettings,
    RolloutManagerConfig,
)
from rollout_manager.deployment.autoscale import validate_autoscale_settings
from rollout_manager.errors import ConfigurationError


class TestDefaults:
    def test_default_values(self):
        config = RolloutManagerConfig()
        assert config.orchestrator.max_attempts == 3
        assert config.health.crash_loop_restart_threshold == 3
        assert config.autoscale.scale_up_threshold_percent == 80
        assert config.cluster.transient_retries == 3

    def test_backoff_is_exponential_and_capped(self):
        settings = OrchestratorSettings(backoff_base_seconds=5, backoff_max_seconds=12)
        assert settings.backoff_for(1) == 5
        assert settings.backoff_for(2) == 10
        assert settings.backoff_for(3) == 12

    def test_poll_interval_must_fit_batch_timeout(self):
        with pytest.raises(ValidationError, match="poll_interval_seconds"):
            RolloutManagerConfig(
                health=HealthSettings(poll_interval_seconds=30, batch_timeout_seconds=10)
            )

    def test_unknown_log_level_rejected(self):
        with pytest.raises(ValidationError):
            RolloutManagerConfig.model_validate({"logging": {"console_level": "LOUD"}})


class TestFileLoading:
    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ROLLOUT_MANAGER_LOG_DIR", raising=False)
        monkeypatch.delenv("ROLLOUT_MANAGER_REGISTRY_TOKEN", raising=False)
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        config = RolloutManagerConfig.from_file(tmp_path / "absent.yml")
        assert config == RolloutManagerConfig()

    def test_save_and_load(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ROLLOUT_MANAGER_REGISTRY_TOKEN", raising=False)
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        path = tmp_path / "config" / "config.yml"
        original = RolloutManagerConfig(orchestrator=OrchestratorSettings(max_attempts=5))
        original.save(path)

        loaded = RolloutManagerConfig.from_file(path)
        assert loaded.orchestrator.max_attempts == 5

    def test_partial_file_keeps_other_defaults(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text(yaml.safe_dump({"health": {"deadline_seconds": 60}}))
        config = RolloutManagerConfig.from_file(path)
        assert config.health.deadline_seconds == 60
        assert config.health.poll_interval_seconds == 3

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="mapping"):
            RolloutManagerConfig.from_file(path)

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ROLLOUT_MANAGER_REGISTRY_TOKEN", raising=False)
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_test")
        monkeypatch.setenv("ROLLOUT_MANAGER_LOG_DIR", str(tmp_path / "logs"))
        config = RolloutManagerConfig.from_file(tmp_path / "absent.yml")
        assert config.registry.auth_token == "ghp_test"
        assert config.logging.log_dir == str(tmp_path / "logs")

    def test_file_token_wins_over_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_env")
        path = tmp_path / "config.yml"
        path.write_text(yaml.safe_dump({"registry": {"auth_token": "ghp_file"}}))
        config = RolloutManagerConfig.from_file(path)
        assert config.registry.auth_token == "ghp_file"


class TestAutoscaleValidation:
    @pytest.mark.parametrize("threshold", [1, 50, 80.0, 100])
    def test_valid_thresholds(self, threshold):
        validate_autoscale_settings(AutoscaleSettings(scale_up_threshold_percent=threshold))

    @pytest.mark.parametrize("threshold", [0, -5, 101, 79.5])
    def test_invalid_thresholds(self, threshold):
        with pytest.raises(ConfigurationError, match="whole percentage"):
            validate_autoscale_settings(AutoscaleSettings(scale_up_threshold_percent=threshold))

    def test_sample_interval_longer_than_window(self):
        settings = AutoscaleSettings(sample_interval_seconds=60, confirmation_window_seconds=30)
        with pytest.raises(ConfigurationError, match="sample_interval_seconds"):
            validate_autoscale_settings(settings)
