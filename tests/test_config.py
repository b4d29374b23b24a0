"""Tests for environment-driven configuration."""

from pathlib import Path

from sensorcentral.config import AlertConfig, AppConfig, NotifyConfig, QueueRetryConfig, env_flag


class TestEnvFlag:
    def test_truthy_values(self, monkeypatch):
        for raw in ("1", "true", "YES", "on"):
            monkeypatch.setenv("SOME_FLAG", raw)
            assert env_flag("SOME_FLAG")

    def test_unset_uses_default(self, monkeypatch):
        monkeypatch.delenv("SOME_FLAG", raising=False)
        assert env_flag("SOME_FLAG") is False
        assert env_flag("SOME_FLAG", default=True) is True


class TestDefaults:
    def test_app_config_defaults(self):
        config = AppConfig()
        assert config.cache.sensor_expiration_secs == 1200
        assert config.cache.device_expiration_secs == 1200
        assert config.alerts.default_timeout_ms == 600_000
        assert config.notify.app_url == "https://localhost"

    def test_backoff_is_capped(self):
        retry = QueueRetryConfig(base_delay=1.0, max_delay=5.0)
        assert [retry.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


class TestFromEnv:
    def test_alert_timeouts(self, monkeypatch):
        """ALERT_TIMEOUT_BINARY_SENSOR falls back to WATCHDOG_INTERVAL."""
        monkeypatch.setenv("WATCHDOG_INTERVAL", "120000")
        monkeypatch.delenv("ALERT_TIMEOUT_BINARY_SENSOR", raising=False)
        monkeypatch.setenv("ALERTS_BINARY_SENSOR_DISABLE", "true")

        alerts = AlertConfig.from_env()

        assert alerts.default_timeout_ms == 120_000
        assert alerts.binary_sensor_timeout_ms == 120_000
        assert alerts.binary_sensor_alerts_disabled

    def test_template_overrides(self, monkeypatch):
        monkeypatch.setenv("DEVICE_RESTART_TITLE", "Restarted {device_name}")
        monkeypatch.setenv("NOTIFICATIONS_DISABLED", "1")
        monkeypatch.setenv("APP_DOMAIN", "sensors.example.com")

        notify = NotifyConfig.from_env()

        assert notify.templates == {"device_restart": ("Restarted {device_name}", "")}
        assert notify.disabled
        assert notify.app_url == "https://sensors.example.com"

    def test_full_config(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SENSORCENTRAL_DB", str(tmp_path / "sc.db"))
        monkeypatch.setenv("REDIS_SENSOR_EXPIRATION_SECS", "60")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")

        config = AppConfig.from_env()

        assert config.storage.db_path == Path(tmp_path / "sc.db")
        assert config.cache.sensor_expiration_secs == 60
        assert config.redis.url == "redis://cache:6379/2"
