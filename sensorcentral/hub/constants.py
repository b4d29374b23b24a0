"""Queue names, bus channels and cache key prefixes shared across modules."""

# Durable queues
QUEUE_SENSOR = "sensor-ingest"
QUEUE_DEVICE = "device-ingest"
QUEUE_CONTROL = "control-ingest"
QUEUE_NOTIFY = "notify"

# Bus topic roots
TOPIC_SENSOR = "sensor"
TOPIC_DEVICE = "device"
TOPIC_CONTROL = "control"

KNOWN = "known"
UNKNOWN = "unknown"

# Control message types
CONTROL_RESTART = "restart"
CONTROL_WATCHDOG_RESET = "watchdogReset"
CONTROL_NO_SENSOR_DATA = "noSensorData"
CONTROL_TIMEOUT = "timeout"
CONTROL_TYPES = (CONTROL_RESTART, CONTROL_WATCHDOG_RESET, CONTROL_NO_SENSOR_DATA)

# CRUD mirror verbs
CRUD_CREATE = "create"
CRUD_UPDATE = "update"
CRUD_DELETE = "delete"

# Cache key prefixes
SENSOR_KEY_PREFIX = "sensor:"
DEVICE_KEY_PREFIX = "device:"


def resolution(known: bool) -> str:
    return KNOWN if known else UNKNOWN


def sensor_channel(sensor_id: str, known: bool) -> str:
    return f"{TOPIC_SENSOR}.{resolution(known)}.{sensor_id}"


def device_channel(known: bool) -> str:
    return f"{TOPIC_DEVICE}.{resolution(known)}"


def control_channel(control_type: str, known: bool) -> str:
    return f"{TOPIC_CONTROL}.{resolution(known)}.{control_type}"


def crud_channel(entity: str, verb: str) -> str:
    """Channel carrying ``{new, old}`` mirrors of entity changes, e.g. ``control.alert.delete``."""
    return f"{TOPIC_CONTROL}.{entity}.{verb}"
