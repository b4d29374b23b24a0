"""Notification Dispatch - renders templates and fans out to notifiers.

Two inputs: the ``notify`` queue fed by the alert engine, and a handful of
device control events (restart, watchdog reset, no sensor data) that notify
every notifier of the device's house directly.
"""

import logging
from typing import Any, Protocol

from sensorcentral.hub.constants import (
    CONTROL_NO_SENSOR_DATA,
    CONTROL_RESTART,
    CONTROL_WATCHDOG_RESET,
    QUEUE_NOTIFY,
    control_channel,
)
from sensorcentral.hub.core import Module
from sensorcentral.hub.models import AlertEventType, Device, Notifier, NotifyUsing, Sensor, utcnow
from sensorcentral.hub.queue import QueueMessage
from sensorcentral.modules.alerts import timeout_data
from sensorcentral.modules.channels import EmailChannel, PushoverChannel
from sensorcentral.modules.ingestion import lookup
from sensorcentral.modules.notify_templates import TemplateRenderer

logger = logging.getLogger(__name__)

DEVICE_CONTROL_EVENTS = {
    CONTROL_RESTART: AlertEventType.DEVICE_RESTART,
    CONTROL_WATCHDOG_RESET: AlertEventType.DEVICE_WATCHDOG_RESET,
    CONTROL_NO_SENSOR_DATA: AlertEventType.DEVICE_NO_SENSOR_DATA,
}

SENSOR_EVENTS = {AlertEventType.SENSOR_TIMEOUT, AlertEventType.SENSOR_VALUE, AlertEventType.SENSOR_SAMPLE}


class Channel(Protocol):
    async def send(self, notifier: Notifier, title: str, message: str): ...


def _fmt(value: Any) -> Any:
    """Render numbers without a trailing .0; None becomes empty."""
    if value is None:
        return ""
    if isinstance(value, float):
        return int(value) if value.is_integer() else round(value, 2)
    return value


class NotificationDispatch(Module):
    """Consumes notification requests and delivers them per notifier."""

    def __init__(self, hub, channels: dict[NotifyUsing, Channel] | None = None, module_id: str = "notify"):
        super().__init__(module_id, hub)
        self.settings = hub.config.notify
        self.default_timeout_ms = hub.config.alerts.default_timeout_ms
        self.renderer = TemplateRenderer(self.settings.templates)
        if channels is None:
            channels = {
                NotifyUsing.EMAIL: EmailChannel(
                    self.settings.smtp, self.settings.app_name, self.settings.email_override
                ),
                NotifyUsing.PUSHOVER: PushoverChannel(self.settings.pushover_api_url),
            }
        self.channels = channels

    async def initialize(self):
        await self.hub.queue.subscribe(QUEUE_NOTIFY, self.on_notify_message)
        for control_type in DEVICE_CONTROL_EVENTS:
            await self.hub.bus.subscribe(control_channel(control_type, True), self.on_device_control)
        if self.settings.disabled:
            self.logger.warning("NOTIFICATIONS_DISABLED is set, notifications will not be sent")

    async def on_notify_message(self, message: QueueMessage):
        data = message.data
        try:
            event_type = AlertEventType(data.get("eventType"))
        except ValueError:
            self.logger.error("Unknown notification event type in %s", data)
            return
        target_id = data.get("targetId")
        storage = self.hub.storage

        sensor: Sensor | None = None
        if event_type in SENSOR_EVENTS:
            sensor = await lookup(storage.get_sensor, target_id)
            device = await lookup(storage.get_device, sensor.device_id if sensor else None)
        else:
            device = await lookup(storage.get_device, target_id)
        if device is None:
            self.logger.warning(
                "Target %s of alert %s no longer exists, dropping notification", target_id, data.get("alertId")
            )
            return

        recipients = [
            notifier
            for notifier in await storage.get_notifiers(device.house_id)
            if notifier.user_id == data.get("userId") and str(notifier.notify_type) == data.get("notifyType")
        ]
        if not recipients:
            self.logger.warning(
                "No %s notifier for user %s in house %s", data.get("notifyType"), data.get("userId"), device.house_id
            )
            return
        await self.dispatch(event_type, device, sensor, data.get("data") or {}, recipients)

    async def on_device_control(self, channel: str, payload: dict[str, Any]):
        event_type = DEVICE_CONTROL_EVENTS.get(payload.get("type"))
        device_data = payload.get("device")
        if event_type is None or not device_data:
            return
        device = Device.from_dict(device_data)
        data = timeout_data(self.default_timeout_ms) if event_type == AlertEventType.DEVICE_WATCHDOG_RESET else {}
        recipients = await self.hub.storage.get_notifiers(device.house_id)
        await self.dispatch(event_type, device, None, data, recipients)

    async def dispatch(
        self,
        event_type: AlertEventType,
        device: Device,
        sensor: Sensor | None,
        data: dict[str, Any],
        recipients: list[Notifier],
    ) -> int:
        """Render once and send to every unmuted recipient. Returns the number delivered."""
        if self.settings.disabled:
            self.logger.info("NOTIFICATIONS_DISABLED set, not sending %s for device %s", event_type, device.id)
            return 0
        template = self.renderer.template_for(event_type)
        if template is None:
            self.logger.error("No template for %s, aborting", event_type)
            return 0
        rendered = self.renderer.render(template, self.build_context(device, sensor, data))

        sent = 0
        now = utcnow()
        for notifier in recipients:
            if notifier.is_muted(now):
                self.logger.info("Notifier %s muted until %s, skipping", notifier.id, notifier.muted_until)
                continue
            channel = self.channels.get(notifier.notify_type)
            if channel is None:
                self.logger.debug("Notifier %s has no delivery channel (%s)", notifier.id, notifier.notify_type)
                continue
            try:
                await channel.send(notifier, rendered.title, rendered.message)
                sent += 1
            except Exception as e:
                self.logger.error(f"Failed to send {event_type} to notifier {notifier.id}: {e}")
        self.logger.info("Sent %s notification for device %s to %d notifier(s)", event_type, device.id, sent)
        return sent

    def build_context(self, device: Device, sensor: Sensor | None, data: dict[str, Any]) -> dict[str, Any]:
        app_url = self.settings.app_url
        target_url = f"{app_url}/#configuration/house/{device.house_id}/device/{device.id}"
        if sensor is not None:
            target_url += f"/sensor/{sensor.id}"
        timeout = data.get("timeout") or {}
        return {
            "appname": self.settings.app_name,
            "appurl": app_url,
            "house_id": device.house_id,
            "device_id": device.id,
            "device_name": device.name,
            "sensor_id": sensor.id if sensor else "",
            "sensor_name": sensor.name if sensor else "",
            "sensor_label": sensor.label if sensor else "",
            "timeout_ms": _fmt(timeout.get("ms")),
            "timeout_seconds": _fmt(timeout.get("seconds")),
            "timeout_minutes": _fmt(timeout.get("minutes")),
            "value": _fmt(data.get("value")),
            "test": data.get("test", ""),
            "threshold": _fmt(data.get("threshold")),
            "target_url": target_url,
        }
