"""Notification templates.

Templates are ``str.format_map`` strings over a flat context; unknown
fields render as empty strings. Each can be overridden through
``<NAME>_TITLE`` / ``<NAME>_MESSAGE`` environment variables (see
``NotifyConfig.from_env``).
"""

from dataclasses import dataclass
from typing import Any

DEFAULT_TEMPLATES: dict[str, tuple[str, str]] = {
    "device_restart": (
        "{appname} - Device restart",
        "{appname} - Device restart ({device_id} / {device_name}) - maybe it didn't pat the watchdog? {target_url}",
    ),
    "device_reset": (
        "{appname} - Device watchdog",
        "{appname} - Watchdog for device ({device_id} / {device_name}) reset meaning we received no "
        "communication from it in {timeout_ms} ms ({timeout_minutes} minutes) {target_url}",
    ),
    "device_nosensors": (
        "{appname} - Device pinged without any sensors",
        "{appname} - Device ({device_id} / {device_name}) pinged without any sensors in the data "
        "- maybe the sensor is not plugged in? {target_url}",
    ),
    "device_timeout": (
        "{appname} - Device timeout",
        "{appname} - No data from device ({device_id} / {device_name}) in {timeout_ms} ms "
        "({timeout_minutes} minutes) {target_url}",
    ),
    "sensor_timeout": (
        "{appname} - Sensor timeout",
        "{appname} - No data from sensor ({sensor_id} / {sensor_name}) on device ({device_id} / {device_name}) "
        "in {timeout_ms} ms ({timeout_minutes} minutes) {target_url}",
    ),
    "sensor_value": (
        "{appname} - Sensor value",
        "{appname} - Sensor ({sensor_id} / {sensor_name}) reported {value} ({test} {threshold}) {target_url}",
    ),
    "sensor_sample": (
        "{appname} - Sensor sample",
        "{appname} - Sensor ({sensor_id} / {sensor_name}) reported {value} {target_url}",
    ),
}

TEMPLATE_NAMES = tuple(DEFAULT_TEMPLATES)

# AlertEventType value -> template name
EVENT_TEMPLATES = {
    "onDeviceRestart": "device_restart",
    "onDeviceWatchdogReset": "device_reset",
    "onDeviceMessageNoSensor": "device_nosensors",
    "onDeviceTimeout": "device_timeout",
    "onSensorTimeout": "sensor_timeout",
    "onSensorValue": "sensor_value",
    "onSensorSample": "sensor_sample",
}


class _Context(dict):
    def __missing__(self, key):
        return ""


@dataclass
class RenderedNotification:
    title: str
    message: str


class TemplateRenderer:
    """Renders named title/message pairs."""

    def __init__(self, overrides: dict[str, tuple[str, str]] | None = None):
        self.templates = dict(DEFAULT_TEMPLATES)
        for name, (title, message) in (overrides or {}).items():
            default_title, default_message = self.templates.get(name, ("", ""))
            self.templates[name] = (title or default_title, message or default_message)

    def template_for(self, event_type: str) -> str | None:
        return EVENT_TEMPLATES.get(str(event_type))

    def render(self, name: str, context: dict[str, Any]) -> RenderedNotification:
        """Render template ``name``. Raises KeyError for an unknown template."""
        title, message = self.templates[name]
        values = _Context(context)
        return RenderedNotification(title=title.format_map(values), message=message.format_map(values))
