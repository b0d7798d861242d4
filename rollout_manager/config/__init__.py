from rollout_manager.config.settings import (
    DEFAULT_CONFIG_PATH,
    AutoscaleSettings,
    ClusterSettings,
    HealthSettings,
    LoggingSettings,
    OrchestratorSettings,
    RegistrySettings,
    RolloutManagerConfig,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "AutoscaleSettings",
    "ClusterSettings",
    "HealthSettings",
    "LoggingSettings",
    "OrchestratorSettings",
    "RegistrySettings",
    "RolloutManagerConfig",
]
