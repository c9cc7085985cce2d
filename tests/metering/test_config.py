import pytest

from tokenmeter.config import Settings
from tokenmeter.metering import config as config_module
from tokenmeter.metering.config import MeteringConfig, load_metering_config, reload_config


@pytest.fixture
def config():
    return MeteringConfig()


def test_defaults_are_valid(config):
    config.validate()

    assert config.enabled is True
    assert config.quota_enforcement_enabled is False
    assert config.redis_url is None
    assert config.ttl_grace_seconds == 5


@pytest.mark.parametrize("overrides, message", [
    ({"directory_source": "ldap"}, "Invalid directory_source"),
    ({"directory_source": "yaml"}, "directory_seed_file is required"),
    ({"ttl_grace_seconds": -1}, "ttl_grace_seconds"),
    ({"recorder_workers": 0}, "recorder_workers"),
    ({"directory_refresh_seconds": -5}, "directory_refresh_seconds"),
    ({"redis_socket_timeout": 0}, "Redis timeouts"),
])
def test_validate_rejects(overrides, message):
    with pytest.raises(ValueError, match=message):
        MeteringConfig(**overrides).validate()


def test_from_settings():
    settings = Settings(
        REDIS_URL="redis://cache:6379/1",
        QUOTA_ENFORCEMENT_ENABLED=True,
        DIRECTORY_SOURCE="YAML",
        DIRECTORY_SEED_FILE="seed.yaml",
        DIRECTORY_REFRESH_SECONDS=60,
        USAGE_RECORDER_WORKERS=2,
    )

    config = MeteringConfig.from_settings(settings)

    assert config.redis_url == "redis://cache:6379/1"
    assert config.quota_enforcement_enabled is True
    assert config.directory_source == "yaml"
    assert config.directory_seed_file == "seed.yaml"
    assert config.directory_refresh_seconds == 60
    assert config.recorder_workers == 2


def test_reload_reads_environment(monkeypatch):
    monkeypatch.setenv("QUOTA_ENFORCEMENT_ENABLED", "true")
    monkeypatch.setenv("USAGE_TTL_GRACE_SECONDS", "9")
    monkeypatch.setattr(config_module, "_config", None)

    config = load_metering_config()

    assert config.quota_enforcement_enabled is True
    assert config.ttl_grace_seconds == 9
    assert load_metering_config() is config

    monkeypatch.setenv("USAGE_TTL_GRACE_SECONDS", "-1")
    with pytest.raises(ValueError):
        reload_config()
