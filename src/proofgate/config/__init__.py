"""
Proofgate - Configuration Management

This module provides configuration management including:
- YAML configuration loading and validation
- Environment variable handling (.env and PROOFGATE_* overrides)
- Verification thresholds, tier ladder models and scheduling limits
"""

from proofgate.config.environment import (
    EnvironmentConfig,
    ensure_dotenv_loaded,
    get_backend_token,
    load_environment,
    reset_environment,
)
from proofgate.config.loader import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_PATHS,
    ENV_VAR_OVERRIDES,
    ConfigLoader,
    ConfigurationError,
    load_config,
    load_config_from_env,
)
from proofgate.config.models import (
    DEFAULT_TIER_MODELS,
    BackendConfig,
    DetectionConfig,
    LearningConfig,
    LoggingConfig,
    LogLevel,
    ModelsConfig,
    OrchestratorSettings,
    ProofgateConfig,
    RetryConfig,
    StorageBackend,
    StorageConfig,
    TierModelConfig,
    VerificationConfig,
)

__all__ = [
    # Environment
    "EnvironmentConfig",
    "ensure_dotenv_loaded",
    "get_backend_token",
    "load_environment",
    "reset_environment",
    # Loader
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_PATHS",
    "ENV_VAR_OVERRIDES",
    "ConfigLoader",
    "ConfigurationError",
    "load_config",
    "load_config_from_env",
    # Models
    "DEFAULT_TIER_MODELS",
    "BackendConfig",
    "DetectionConfig",
    "LearningConfig",
    "LoggingConfig",
    "LogLevel",
    "ModelsConfig",
    "OrchestratorSettings",
    "ProofgateConfig",
    "RetryConfig",
    "StorageBackend",
    "StorageConfig",
    "TierModelConfig",
    "VerificationConfig",
]
