"""Configuration management module.

This module handles persistent configuration storage using TOML format.
Stores the target subscription, default region, worker count and the
location of the apply state directory.

Security:
- Config file permissions: 0600 (owner read/write only)
- Path validation
- No credentials stored (authentication is delegated to azure-identity)
"""

import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Fallback for newer Python versions
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

try:
    import tomlkit
except ImportError as e:
    raise ImportError("tomlkit library not available. Install with: pip install tomlkit") from e

logger = logging.getLogger(__name__)

SUBSCRIPTION_ENV_VAR = "AZURE_SUBSCRIPTION_ID"


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


@dataclass
class AzdeployConfig:
    """azdeploy configuration data."""

    subscription_id: str | None = None
    default_region: str = "westus2"
    max_workers: int = 1
    state_dir: str | None = None

    def resolved_state_dir(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return ConfigManager.DEFAULT_CONFIG_DIR / "state"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # TOML has no null
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AzdeployConfig":
        """Create from dictionary."""
        max_workers = data.get("max_workers", 1)
        if not isinstance(max_workers, int) or max_workers <= 0:
            raise ConfigError(f"max_workers must be a positive integer, got {max_workers!r}")
        return cls(
            subscription_id=data.get("subscription_id"),
            default_region=data.get("default_region", "westus2"),
            max_workers=max_workers,
            state_dir=data.get("state_dir"),
        )


class ConfigManager:
    """Manage the azdeploy configuration file.

    Configuration is stored at ~/.azdeploy/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".azdeploy"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def _validate_config_path(cls, path: Path) -> Path:
        """Validate configuration file path.

        The path must be within ~/.azdeploy/, the current working directory
        or the system temporary directory.

        Raises:
            ConfigError: If path is outside allowed directories
        """
        resolved_path = path.resolve()

        allowed_dirs = [
            cls.DEFAULT_CONFIG_DIR.resolve(),
            Path.cwd().resolve(),
            Path(tempfile.gettempdir()).resolve(),
        ]

        for allowed_dir in allowed_dirs:
            try:
                resolved_path.relative_to(allowed_dir)
                return resolved_path
            except ValueError:
                continue

        raise ConfigError(
            f"Config path outside allowed directories: {resolved_path}\n"
            f"Allowed directories:\n"
            f"  - {cls.DEFAULT_CONFIG_DIR}\n"
            f"  - {Path.cwd()}"
        )

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Args:
            custom_path: Custom config file path (optional)

        Raises:
            ConfigError: If path is invalid or outside allowed directories
        """
        if custom_path:
            path = cls._validate_config_path(Path(custom_path).expanduser())
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            return path

        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def ensure_config_dir(cls) -> Path:
        """Ensure config directory exists with secure permissions."""
        try:
            cls.DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
            os.chmod(cls.DEFAULT_CONFIG_DIR, 0o700)
            return cls.DEFAULT_CONFIG_DIR
        except OSError as e:
            raise ConfigError(f"Failed to create config directory: {e}") from e

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> AzdeployConfig:
        """Load configuration from file.

        Returns defaults when no config file exists.

        Raises:
            ConfigError: If loading fails
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return AzdeployConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)

            logger.debug(f"Loaded config from: {config_path}")
            return AzdeployConfig.from_dict(data)

        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: AzdeployConfig, custom_path: str | None = None) -> Path:
        """Save configuration to file.

        Existing comments and formatting are preserved with tomlkit.

        Raises:
            ConfigError: If saving fails or path is outside allowed directories
        """
        temp_path: Path | None = None
        try:
            if custom_path:
                config_path = cls._validate_config_path(Path(custom_path).expanduser())
                config_path.parent.mkdir(parents=True, exist_ok=True)
            else:
                cls.ensure_config_dir()
                config_path = cls.DEFAULT_CONFIG_FILE

            temp_path = config_path.with_suffix(".tmp")

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()
            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except ConfigError:
            raise
        except Exception as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def update_config(cls, custom_path: str | None = None, **updates: Any) -> AzdeployConfig:
        """Update configuration values.

        Raises:
            ConfigError: If an unknown key is given or the update fails
        """
        config = cls.load_config(custom_path)

        for key, value in updates.items():
            if not hasattr(config, key):
                raise ConfigError(f"Unknown config key: {key}")
            setattr(config, key, value)

        cls.save_config(config, custom_path)
        return config

    @classmethod
    def get_subscription_id(
        cls, cli_value: str | None = None, custom_path: str | None = None
    ) -> str:
        """Get subscription id: CLI value, then environment, then config file.

        Raises:
            ConfigError: If no subscription id is configured anywhere
        """
        if cli_value:
            return cli_value

        env_value = os.environ.get(SUBSCRIPTION_ENV_VAR)
        if env_value:
            return env_value

        config = cls.load_config(custom_path)
        if config.subscription_id:
            return config.subscription_id

        raise ConfigError(
            f"No subscription configured. Set {SUBSCRIPTION_ENV_VAR}, pass --subscription, "
            "or run: azdeploy config set subscription_id <id>"
        )
