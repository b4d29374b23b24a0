"""Configuration dataclasses for SensorCentral.

Every section reads its values from the environment via ``from_env()`` and
falls back to the dataclass defaults, so tests can build configs directly.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

TRUTHY = {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool = False) -> bool:
    """Read a boolean flag from the environment."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


@dataclass
class RedisConfig:
    """Redis connection and consumer group settings."""
    url: str = "redis://localhost:6379/0"
    consumer_group: str = "sensorcentral"
    consumer_name: str = "sensorcentral-1"
    block_ms: int = 1000

    @classmethod
    def from_env(cls):
        return cls(
            url=os.environ.get("REDIS_URL", cls.url),
            consumer_group=os.environ.get("QUEUE_CONSUMER_GROUP", cls.consumer_group),
            consumer_name=os.environ.get("QUEUE_CONSUMER_NAME", cls.consumer_name),
            block_ms=_env_int("QUEUE_BLOCK_MS", cls.block_ms),
        )


@dataclass
class QueueRetryConfig:
    """Listener retry policy for the durable queue (exponential backoff)."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    @classmethod
    def from_env(cls):
        return cls(
            max_attempts=_env_int("QUEUE_MAX_ATTEMPTS", cls.max_attempts),
            base_delay=_env_float("QUEUE_BACKOFF_BASE", cls.base_delay),
            max_delay=_env_float("QUEUE_BACKOFF_MAX", cls.max_delay),
        )


@dataclass
class CacheConfig:
    """Snapshot expirations in seconds."""
    sensor_expiration_secs: int = 20 * 60
    device_expiration_secs: int = 20 * 60

    @classmethod
    def from_env(cls):
        return cls(
            sensor_expiration_secs=_env_int("REDIS_SENSOR_EXPIRATION_SECS", cls.sensor_expiration_secs),
            device_expiration_secs=_env_int("REDIS_DEVICE_EXPIRATION_SECS", cls.device_expiration_secs),
        )


@dataclass
class StorageConfig:
    db_path: Path = field(default_factory=lambda: Path.home() / ".sensorcentral" / "sensorcentral.db")

    @classmethod
    def from_env(cls):
        raw = os.environ.get("SENSORCENTRAL_DB")
        return cls(db_path=Path(raw)) if raw else cls()


@dataclass
class AlertConfig:
    """Watchdog defaults. Timeouts are in milliseconds."""
    default_timeout_ms: int = 10 * 60 * 1000
    binary_sensor_timeout_ms: int = 10 * 60 * 1000
    binary_sensor_alerts_disabled: bool = False

    @classmethod
    def from_env(cls):
        default_timeout = _env_int("WATCHDOG_INTERVAL", cls.default_timeout_ms)
        return cls(
            default_timeout_ms=default_timeout,
            binary_sensor_timeout_ms=_env_int("ALERT_TIMEOUT_BINARY_SENSOR", default_timeout),
            binary_sensor_alerts_disabled=env_flag("ALERTS_BINARY_SENSOR_DISABLE"),
        )


@dataclass
class SmtpConfig:
    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    sender: str = "sensorcentral@localhost"
    use_tls: bool = True

    @classmethod
    def from_env(cls):
        return cls(
            host=os.environ.get("SMTP_HOST", cls.host),
            port=_env_int("SMTP_PORT", cls.port),
            username=os.environ.get("SMTP_USERNAME", ""),
            password=os.environ.get("SMTP_PASSWORD", ""),
            sender=os.environ.get("SMTP_SENDER", cls.sender),
            use_tls=env_flag("SMTP_TLS", cls.use_tls),
        )


@dataclass
class NotifyConfig:
    """Notification dispatch settings."""
    disabled: bool = False
    email_override: str | None = None
    app_name: str = "SensorCentral"
    app_protocol: str = "https"
    app_domain: str = "localhost"
    pushover_api_url: str = "https://api.pushover.net/1/messages.json"
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    # template name -> (title, message) overrides
    templates: dict[str, tuple[str, str]] = field(default_factory=dict)

    @property
    def app_url(self) -> str:
        return f"{self.app_protocol}://{self.app_domain}"

    @classmethod
    def from_env(cls):
        from sensorcentral.modules.notify_templates import TEMPLATE_NAMES

        templates = {}
        for name in TEMPLATE_NAMES:
            key = name.upper()
            title = os.environ.get(f"{key}_TITLE")
            message = os.environ.get(f"{key}_MESSAGE")
            if title or message:
                templates[name] = (title or "", message or "")
        return cls(
            disabled=env_flag("NOTIFICATIONS_DISABLED"),
            email_override=os.environ.get("NOTIFICATIONS_EMAIL_OVERRIDE") or None,
            app_name=os.environ.get("APP_NAME", cls.app_name),
            app_protocol=os.environ.get("APP_PROTOCOL", cls.app_protocol),
            app_domain=os.environ.get("APP_DOMAIN", cls.app_domain),
            pushover_api_url=os.environ.get("PUSHOVER_API_URL", cls.pushover_api_url),
            smtp=SmtpConfig.from_env(),
            templates=templates,
        )


@dataclass
class AppConfig:
    """Top-level config aggregating all sections."""
    redis: RedisConfig = field(default_factory=RedisConfig)
    retry: QueueRetryConfig = field(default_factory=QueueRetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)

    @classmethod
    def from_env(cls):
        return cls(
            redis=RedisConfig.from_env(),
            retry=QueueRetryConfig.from_env(),
            cache=CacheConfig.from_env(),
            storage=StorageConfig.from_env(),
            alerts=AlertConfig.from_env(),
            notify=NotifyConfig.from_env(),
        )
