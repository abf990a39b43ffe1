"""
Configuration Loader.

Loads and validates configuration from YAML files with environment
variable substitution.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from proofgate.config.environment import load_environment
from proofgate.config.models import ProofgateConfig

logger = logging.getLogger(__name__)

# Default configuration file locations
DEFAULT_CONFIG_PATHS = [
    "proofgate.yaml",
    "proofgate.yml",
    ".proofgate.yaml",
    ".proofgate.yml",
    "config.yaml",
    "config.yml",
]

# Environment variable for config path
CONFIG_ENV_VAR = "PROOFGATE_CONFIG"

# Environment variable overrides for configuration settings
# Maps env var name to config path (dot-separated)
ENV_VAR_OVERRIDES = {
    # Scheduling
    "PROOFGATE_MAX_CONCURRENT_RUNS": "orchestrator.max_concurrent_runs",
    "PROOFGATE_STAGE_TIMEOUT": "orchestrator.default_stage_timeout",
    # Verification thresholds
    "PROOFGATE_ACCEPT_THRESHOLD": "verification.accept_threshold",
    "PROOFGATE_REVIEW_THRESHOLD": "verification.review_threshold",
    "PROOFGATE_VERIFIER_TIER": "verification.verifier_tier",
    # Learning
    "PROOFGATE_RELIABILITY_THRESHOLD": "learning.reliability_threshold",
    # Retry
    "PROOFGATE_MAX_ATTEMPTS": "retry.max_attempts",
    "PROOFGATE_MAX_COST_USD": "retry.max_total_cost_usd",
    # Storage
    "PROOFGATE_STORAGE_BACKEND": "storage.backend",
    "PROOFGATE_STORAGE_DIR": "storage.base_dir",
    # Execution backend
    "PROOFGATE_BACKEND_URL": "backend.base_url",
    # Logging settings
    "PROOFGATE_LOG_LEVEL": "logging.level",
    "PROOFGATE_LOG_FILE": "logging.file",
    # Runtime flags
    "PROOFGATE_DEBUG": "debug",
}


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        errors: list[dict] | None = None,
        path: Path | None = None,
    ) -> None:
        """Initialize configuration error.

        Args:
            message: Error message
            errors: List of validation errors (from Pydantic)
            path: Path to the config file that caused the error
        """
        super().__init__(message)
        self.errors = errors or []
        self.path = path

    def __str__(self) -> str:
        """Format error message with details."""
        msg = super().__str__()
        if self.path:
            msg = f"{msg} (file: {self.path})"
        if self.errors:
            error_details = []
            for err in self.errors[:5]:
                loc = ".".join(str(x) for x in err.get("loc", []))
                error_msg = err.get("msg", "Unknown error")
                error_details.append(f"  - {loc}: {error_msg}")
            if len(self.errors) > 5:
                error_details.append(f"  ... and {len(self.errors) - 5} more errors")
            msg = f"{msg}\n" + "\n".join(error_details)
        return msg


class ConfigLoader:
    """Loads configuration from YAML files.

    Supports:
    - YAML configuration files
    - Environment variable substitution (${VAR} and ${VAR:-default} syntax)
    - PROOFGATE_* environment overrides
    - Validation via Pydantic

    Usage:
        loader = ConfigLoader("proofgate.yaml")
        config = loader.load()

        # Discover from PROOFGATE_CONFIG or default locations
        config = ConfigLoader().load_from_env()
    """

    # Matches: ${VAR_NAME}, ${VAR_NAME:-default} or ${VAR_NAME:default}
    ENV_PATTERN = re.compile(r"\$\{(\w+)(?::-?([^}]*))?\}")

    def __init__(
        self,
        config_path: str | Path | None = None,
        env_file: str = ".env",
    ) -> None:
        """Initialize the config loader.

        Args:
            config_path: Path to YAML config file (optional)
            env_file: Path to .env file for environment loading
        """
        self._config_path = Path(config_path) if config_path else None
        self._env_file = env_file
        self._loaded_from_path: Path | None = None

    @property
    def loaded_from_path(self) -> Path | None:
        """Path the config was actually loaded from, None for pure defaults."""
        return self._loaded_from_path

    def load(self) -> ProofgateConfig:
        """Load and validate configuration from the configured path.

        Without any path the defaults are used, still subject to
        PROOFGATE_* overrides.

        Returns:
            Validated ProofgateConfig

        Raises:
            ConfigurationError: If config is invalid
            FileNotFoundError: If config file not found
        """
        load_environment(self._env_file)

        if self._config_path:
            raw = self._load_yaml()
            self._loaded_from_path = self._config_path
        else:
            raw = {}
            self._loaded_from_path = None

        processed = self._substitute_env_vars(raw)
        processed = self._apply_env_overrides(processed)
        # YAML parses empty sections as None; drop them so defaults apply
        processed = self._clean_none_values(processed)

        try:
            config = ProofgateConfig(**processed)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.error_count()} errors",
                errors=e.errors(),
                path=self._loaded_from_path,
            ) from e

        logger.debug(f"Configuration loaded from {self._loaded_from_path or 'defaults'}")
        return config

    def load_from_env(self) -> ProofgateConfig:
        """Load configuration from PROOFGATE_CONFIG or default locations.

        Search order:
        1. PROOFGATE_CONFIG environment variable (if set)
        2. Default config file locations in the current directory
        3. Built-in defaults

        Raises:
            ConfigurationError: If config is invalid
            FileNotFoundError: If PROOFGATE_CONFIG points to a missing file
        """
        load_environment(self._env_file)

        env_config_path = os.environ.get(CONFIG_ENV_VAR)
        if env_config_path:
            config_path = Path(env_config_path)
            if not config_path.exists():
                raise FileNotFoundError(
                    f"Config file specified by {CONFIG_ENV_VAR} not found: {env_config_path}"
                )
            self._config_path = config_path
            return self.load()

        for default_path in DEFAULT_CONFIG_PATHS:
            path = Path(default_path)
            if path.exists():
                self._config_path = path
                return self.load()

        self._config_path = None
        return self.load()

    def _load_yaml(self) -> dict[str, Any]:
        """Load the YAML configuration file.

        Raises:
            FileNotFoundError: If file doesn't exist
            ConfigurationError: If YAML is invalid
        """
        if not self._config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self._config_path}")

        try:
            with open(self._config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}", path=self._config_path) from e

        if not isinstance(data, dict):
            raise ConfigurationError("Top-level YAML value must be a mapping", path=self._config_path)
        return data

    def _substitute_env_vars(self, data: Any) -> Any:
        """Recursively substitute environment variables in config."""
        if isinstance(data, dict):
            return {k: self._substitute_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._substitute_env_vars(item) for item in data]
        elif isinstance(data, str):
            return self._substitute_string(data)
        return data

    def _clean_none_values(self, data: Any) -> Any:
        """Recursively remove None values from nested dicts."""
        if isinstance(data, dict):
            return {k: self._clean_none_values(v) for k, v in data.items() if v is not None}
        elif isinstance(data, list):
            return [self._clean_none_values(item) for item in data]
        return data

    def _substitute_string(self, value: str) -> Any:
        """Substitute environment variables in a string.

        A string that is exactly one ${VAR} reference is type-coerced;
        embedded references are substituted as text.
        """
        full_match = self.ENV_PATTERN.fullmatch(value)
        if full_match:
            var_name = full_match.group(1)
            default = full_match.group(2)

            env_value = os.environ.get(var_name)
            resolved = env_value if env_value is not None else default

            if resolved is not None:
                return self._coerce_type(resolved)
            return value

        def replace(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return self.ENV_PATTERN.sub(replace, value)

    def _coerce_type(self, value: str) -> Any:
        """Coerce string value to bool, int, float, None, or str."""
        if value == "":
            return None

        lower_value = value.lower()
        if lower_value in ("true", "yes", "on"):
            return True
        if lower_value in ("false", "no", "off"):
            return False

        try:
            if "." not in value and "e" not in lower_value:
                return int(value)
            return float(value)
        except ValueError:
            pass

        return value

    def _apply_env_overrides(self, config_dict: dict[str, Any]) -> dict[str, Any]:
        """Apply PROOFGATE_* overrides, which take precedence over the file."""
        for env_var, config_path in ENV_VAR_OVERRIDES.items():
            env_value = os.environ.get(env_var)
            if env_value is not None:
                self._set_nested_value(config_dict, config_path, self._coerce_type(env_value))
        return config_dict

    def _set_nested_value(
        self,
        config_dict: dict[str, Any],
        path: str,
        value: Any,
    ) -> None:
        """Set a nested value in a dictionary using dot notation."""
        parts = path.split(".")
        current = config_dict

        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = value


def load_config(
    config_path: str | Path | None = None,
    env_file: str = ".env",
) -> ProofgateConfig:
    """Load configuration from a file (or defaults when None).

    Raises:
        ConfigurationError: If config validation fails
        FileNotFoundError: If config file not found
    """
    return ConfigLoader(config_path, env_file).load()


def load_config_from_env(env_file: str = ".env") -> ProofgateConfig:
    """Load configuration from PROOFGATE_CONFIG or default locations."""
    return ConfigLoader(env_file=env_file).load_from_env()
