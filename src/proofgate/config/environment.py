"""
Environment Variable Handling.

Manages environment variables and secrets using python-dotenv.

Call ensure_dotenv_loaded() early in application startup so .env
variables are visible to the configuration loader.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr

# Track whether dotenv has been loaded
_dotenv_loaded: bool = False


def ensure_dotenv_loaded(env_file: str = ".env") -> bool:
    """Ensure .env file is loaded into os.environ.

    Args:
        env_file: Path to .env file (relative or absolute)

    Returns:
        True if a .env file was found and loaded, False otherwise
    """
    global _dotenv_loaded

    if _dotenv_loaded:
        return True

    env_paths = [
        Path(env_file),
        Path.cwd() / env_file,
    ]

    for env_path in env_paths:
        if env_path.exists():
            load_dotenv(env_path, override=False)
            _dotenv_loaded = True
            return True

    # No .env file found; environment is used as-is
    _dotenv_loaded = True
    return False


class EnvironmentConfig(BaseModel):
    """Secrets and environment-only settings.

    Attributes:
        backend_token: Bearer token for the remote execution service
        backend_url: Execution service URL from the environment
        env_file: Path to .env file
    """

    backend_token: SecretStr | None = Field(
        default=None,
        description="Execution service bearer token",
    )
    backend_url: str | None = Field(
        default=None,
        description="Execution service URL",
    )
    env_file: str = Field(
        default=".env",
        description="Path to .env file",
    )

    @property
    def has_backend_token(self) -> bool:
        return self.backend_token is not None


# Environment variable names
ENV_VARS = {
    "backend_token": "PROOFGATE_BACKEND_TOKEN",
    "backend_url": "PROOFGATE_BACKEND_URL",
}


@dataclass
class EnvironmentLoader:
    """Loads environment variables from .env files.

    Attributes:
        env_file: Path to .env file
        loaded: Whether .env has been loaded
        errors: Problems encountered during loading
    """

    env_file: str = ".env"
    loaded: bool = False
    errors: list[str] = field(default_factory=list)

    def load(self) -> bool:
        """Load environment variables from the .env file.

        Returns:
            True if a .env file was loaded
        """
        self.loaded = ensure_dotenv_loaded(self.env_file)
        if not self.loaded and not Path(self.env_file).exists():
            self.errors.append(f".env file not found: {self.env_file}")
        return self.loaded

    def get_config(self) -> EnvironmentConfig:
        """Build EnvironmentConfig from the loaded environment."""
        values: dict[str, object] = {}
        for config_key, env_var in ENV_VARS.items():
            value = os.environ.get(env_var)
            if value:
                values[config_key] = SecretStr(value) if "token" in config_key else value

        values["env_file"] = self.env_file
        return EnvironmentConfig(**values)


# Global loader instance
_loader: EnvironmentLoader | None = None
_config: EnvironmentConfig | None = None


def load_environment(env_file: str = ".env") -> EnvironmentConfig:
    """Load environment configuration and cache the result.

    Args:
        env_file: Path to .env file

    Returns:
        EnvironmentConfig with loaded values
    """
    global _loader, _config

    ensure_dotenv_loaded(env_file)

    if _loader is None or _loader.env_file != env_file or _config is None:
        _loader = EnvironmentLoader(env_file=env_file)
        _loader.load()
        _config = _loader.get_config()

    return _config


def get_backend_token() -> str | None:
    """Get the execution service token, if configured."""
    config = load_environment()
    return config.backend_token.get_secret_value() if config.backend_token else None


def reset_environment() -> None:
    """Reset cached environment configuration.

    Useful for testing or reloading after .env changes.
    """
    global _loader, _config, _dotenv_loaded
    _loader = None
    _config = None
    _dotenv_loaded = False
