import json
from datetime import datetime, timezone

import pytest

from billsync.core.config import SyncSettings, mask_url
from billsync.exceptions import ConfigurationError
from billsync.models.config import SyncConfig

from fakes import make_config

ENV = {
    "BILLSYNC_SOURCE_URL": "postgresql://billing:hunter2@db/practice",
    "BILLSYNC_TARGET_URL": "https://tt.example.com",
    "BILLSYNC_TARGET_API_KEY": "secret",
    "BILLSYNC_CONFIG_FILE": "sync.json",
}


@pytest.fixture
def env(monkeypatch):
    for key in list(ENV) + ["BILLSYNC_WATERMARK_BACKEND", "BILLSYNC_TARGET_TIMEOUT_SECONDS"]:
        monkeypatch.delenv(key, raising=False)
    for key, value in ENV.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


class TestSyncConfig:
    def test_defaults(self):
        config = make_config()
        assert config.options.batch_size == 500
        assert config.options.failure_policy.value == "skip"
        assert not config.refresh.enabled
        assert config.default_position() == 0

    def test_derived_field_needs_exactly_one_source(self):
        with pytest.raises(ConfigurationError):
            make_config(derived_fields=[{"name": "x", "formula": "1", "template": "y"}])
        with pytest.raises(ConfigurationError):
            make_config(derived_fields=[{"name": "x"}])

    def test_duplicate_source_fields(self):
        data = make_config().model_dump(mode="json")
        data["source"]["fields"].append({"name": "amount"})
        with pytest.raises(ConfigurationError, match="Duplicate"):
            SyncConfig.from_dict(data)

    def test_timestamp_default_position(self):
        config = make_config(position_type="timestamp", options={"default_position": "2024-01-01T00:00:00Z"})
        assert config.default_position() == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_timestamp_positions_start_at_the_epoch(self):
        config = make_config(position_type="timestamp")
        assert config.options.default_position == 0
        assert config.default_position() == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_timestamp_config_without_default_position(self):
        data = make_config(position_type="timestamp").model_dump(mode="json")
        del data["options"]["default_position"]
        config = SyncConfig.from_dict(data)
        assert config.default_position() == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_bad_default_position(self):
        config = make_config(options={"default_position": "yesterday"})
        with pytest.raises(ConfigurationError):
            config.default_position()

    def test_from_file(self, tmp_path):
        path = tmp_path / "sync.json"
        path.write_text(json.dumps(make_config().model_dump(mode="json")))
        assert SyncConfig.from_file(path).id == "time-entries"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            SyncConfig.from_file(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "sync.json"
        path.write_text("{")
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            SyncConfig.from_file(path)


class TestSyncSettings:
    def test_from_env(self, env):
        settings = SyncSettings.from_env()
        assert settings.source_url == ENV["BILLSYNC_SOURCE_URL"]
        assert settings.watermark_backend == "file"
        assert settings.target_timeout_seconds == 30.0
        assert "secret" not in repr(settings)

    def test_missing_variable(self, env):
        env.delenv("BILLSYNC_TARGET_API_KEY")
        with pytest.raises(ConfigurationError, match="BILLSYNC_TARGET_API_KEY"):
            SyncSettings.from_env()

    def test_unknown_backend(self, env):
        env.setenv("BILLSYNC_WATERMARK_BACKEND", "redis")
        with pytest.raises(ConfigurationError, match="WATERMARK_BACKEND"):
            SyncSettings.from_env()

    def test_bad_timeout(self, env):
        env.setenv("BILLSYNC_TARGET_TIMEOUT_SECONDS", "soon")
        with pytest.raises(ConfigurationError):
            SyncSettings.from_env()

    def test_refresh_watermark_path(self):
        settings = SyncSettings(
            source_url="sqlite://", target_url="http://tt", target_api_key="k",
            config_file="sync.json", watermark_path="/var/lib/billsync/wm.json",
        )
        assert settings.refresh_watermark_path == "/var/lib/billsync/wm.refresh.json"


def test_mask_url():
    assert mask_url("postgresql://billing:hunter2@db:5432/practice") == "postgresql://billing:***@db:5432/practice"
    assert mask_url("sqlite:///state.db") == "sqlite:///state.db"
