"""Pytest configuration and fixtures for azdeploy tests.

CRITICAL: Protects production configuration and state from test modifications.
"""

import shutil
from pathlib import Path

import pytest


@pytest.fixture(scope="session", autouse=True)
def protect_production_config():
    """Protect ~/.azdeploy/config.toml from being modified by tests.

    Backs up the real config.toml before any tests run and restores it
    after all tests complete.
    """
    config_path = Path.home() / ".azdeploy" / "config.toml"
    backup_path = Path.home() / ".azdeploy" / ".config.toml.pytest-backup"

    config_existed = config_path.exists()
    if config_existed:
        shutil.copy2(config_path, backup_path)
        print(f"\n[PYTEST] Protected config.toml - backup at {backup_path}")

    yield

    if config_existed and backup_path.exists():
        shutil.copy2(backup_path, config_path)
        backup_path.unlink()
        print("\n[PYTEST] Restored config.toml from backup")
    elif backup_path.exists():
        backup_path.unlink()


@pytest.fixture
def isolated_config(tmp_path):
    """Provide an isolated config directory for tests.

    Use this fixture instead of modifying ~/.azdeploy/config.toml.
    """
    config_dir = tmp_path / ".azdeploy"
    config_dir.mkdir(parents=True)
    return config_dir


@pytest.fixture
def mock_config_path(isolated_config, monkeypatch):
    """Point ConfigManager at the isolated config directory.

    Example:
        def test_something(mock_config_path):
            ConfigManager.save_config(config)  # Safe!
    """
    from azdeploy.config_manager import ConfigManager

    config_file = isolated_config / "config.toml"
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_DIR", isolated_config)
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_file)
    monkeypatch.delenv("AZURE_SUBSCRIPTION_ID", raising=False)

    return config_file
