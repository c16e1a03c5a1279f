# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Shared fixtures: isolated home, memory registry, privilege contexts."""

import logging

import pytest

from melody.core import config as config_module
from melody.core import logger as logger_module
from melody.core.config import ENV_VARS, MelodyConfig, PathsConfig, SecurityConfig, ElevationConfig, ObservabilityConfig
from melody.core.elevation import DirectLauncher, ElevationCoordinator
from melody.core.engine import StateEngine
from melody.core.privilege import PrivilegeContext
from melody.core.registry_backend import MemoryRegistryBackend

# Fast KDF for tests; production default is much higher
TEST_KDF_ITERATIONS = 1000


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path_factory, monkeypatch):
    """Keep tests away from the real home directory, env config and log handlers."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.setenv("MELODY_NO_FILE_LOGS", "true")
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_module, "_config", None)

    yield

    logger_module._loggers.clear()
    melody_logger = logging.getLogger("melody")
    melody_logger.handlers.clear()
    melody_logger.propagate = True


@pytest.fixture
def registry():
    """In-memory registry with one user key and one machine key"""
    return MemoryRegistryBackend(
        {
            "HKCU:\\Software\\Test": {
                "Enabled": ("REG_DWORD", 1),
                "Name": ("REG_SZ", "melody"),
            },
            "HKCU:\\Software\\Test\\Child": {
                "Paths": ("REG_MULTI_SZ", ["a", "b"]),
            },
            "HKLM:\\SOFTWARE\\Test": {
                "Version": ("REG_SZ", "1.0"),
            },
        }
    )


@pytest.fixture
def unprivileged():
    return PrivilegeContext.unprivileged()


@pytest.fixture
def admin():
    return PrivilegeContext.administrator()


@pytest.fixture
def config(tmp_path):
    return MelodyConfig(
        paths=PathsConfig(home=tmp_path / "melody"),
        security=SecurityConfig(kdf_iterations=TEST_KDF_ITERATIONS),
        elevation=ElevationConfig(launcher="direct"),
        observability=ObservabilityConfig(file_logging=False),
    )


@pytest.fixture
def coordinator(config):
    return ElevationCoordinator(launcher=DirectLauncher(), config=config)


@pytest.fixture
def engine(config, registry, coordinator):
    return StateEngine(config=config, registry=registry, coordinator=coordinator)


@pytest.fixture
def sample_dir(tmp_path):
    """Directory tree with a nested file and a transient lock file"""
    root = tmp_path / "app"
    (root / "sub").mkdir(parents=True)
    (root / "settings.json").write_text('{"theme": "dark"}')
    (root / "sub" / "profile.ini").write_text("[user]\nname=test\n")
    (root / "app.lock").write_text("pid=1")
    return root
