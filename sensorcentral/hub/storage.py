"""SQLite persistence for houses, devices, sensors, samples, alerts and notifiers."""

import json
import logging
import os
from datetime import datetime
from typing import Any

import aiosqlite

from sensorcentral.hub.models import (
    Alert,
    AlertKind,
    Device,
    Notifier,
    NotifyUsing,
    Sensor,
    SensorType,
    ValueTest,
    parse_dt,
    utcnow,
)

logger = logging.getLogger(__name__)

TARGET_SENSOR = "sensor"
TARGET_DEVICE = "device"


class NotFoundError(LookupError):
    """Raised when an entity id does not resolve."""


class Storage:
    """aiosqlite-backed store; the source of truth for entities and alerts."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the connection and create tables."""
        if self.db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA busy_timeout=5000")

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS house (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL
            )
        """)
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS device (
                id TEXT PRIMARY KEY,
                house_id TEXT NOT NULL REFERENCES house(id),
                name TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                last_ping TEXT,
                last_restart TEXT,
                last_watchdog_reset TEXT,
                device_data TEXT
            )
        """)
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sensor (
                id TEXT PRIMARY KEY,
                device_id TEXT NOT NULL REFERENCES device(id),
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                label TEXT
            )
        """)
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sensor_data (
                id TEXT NOT NULL,
                value REAL NOT NULL,
                dt TEXT NOT NULL,
                from_dt TEXT
            )
        """)
        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sensor_data_id_dt
            ON sensor_data(id, dt DESC)
        """)
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS alert (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                owner_user_id TEXT,
                notify_type TEXT NOT NULL DEFAULT 'none',
                notify_data TEXT,
                description TEXT,
                timeout_ms INTEGER,
                test TEXT,
                value REAL
            )
        """)
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS notifier (
                id TEXT PRIMARY KEY,
                house_id TEXT NOT NULL REFERENCES house(id),
                user_id TEXT NOT NULL,
                notify_type TEXT NOT NULL,
                email TEXT,
                pushover_user_key TEXT,
                pushover_app_token TEXT,
                muted_until TEXT
            )
        """)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._conn

    # ── Entity lookups ──────────────────────────────────────────────────

    async def get_device(self, device_id: str) -> Device:
        conn = self._require()
        cursor = await conn.execute("SELECT * FROM device WHERE id = ?", (device_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Unable to find device with id <{device_id}>")
        return self._device_from_row(row)

    async def get_sensor(self, sensor_id: str) -> Sensor:
        conn = self._require()
        cursor = await conn.execute("SELECT * FROM sensor WHERE id = ?", (sensor_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Unable to find sensor with id <{sensor_id}>")
        return self._sensor_from_row(row)

    async def get_devices(self, active_only: bool = False) -> list[Device]:
        conn = self._require()
        if active_only:
            cursor = await conn.execute("SELECT * FROM device WHERE active = 1 ORDER BY id")
        else:
            cursor = await conn.execute("SELECT * FROM device ORDER BY id")
        return [self._device_from_row(row) for row in await cursor.fetchall()]

    async def get_sensors(self, sensor_type: SensorType | str | None = None) -> list[Sensor]:
        conn = self._require()
        if sensor_type is None:
            cursor = await conn.execute("SELECT * FROM sensor ORDER BY id")
        else:
            cursor = await conn.execute("SELECT * FROM sensor WHERE type = ? ORDER BY id", (str(sensor_type),))
        return [self._sensor_from_row(row) for row in await cursor.fetchall()]

    async def get_device_data(self, device_id: str) -> dict[str, Any] | None:
        """Last persisted deviceData. Inspection helper for provisioning tools and tests."""
        conn = self._require()
        cursor = await conn.execute("SELECT device_data FROM device WHERE id = ?", (device_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Unable to find device with id <{device_id}>")
        return json.loads(row["device_data"]) if row["device_data"] else None

    # ── Writes ──────────────────────────────────────────────────────────

    async def persist_sensor_sample(
        self, sensor: Sensor, value: float, dt: datetime, from_dt: datetime | None = None
    ) -> None:
        conn = self._require()
        await conn.execute(
            "INSERT INTO sensor_data (id, value, dt, from_dt) VALUES (?, ?, ?, ?)",
            (sensor.id, value, dt.isoformat(), from_dt.isoformat() if from_dt else None),
        )
        await conn.commit()

    async def update_last_ping(self, device_id: str) -> None:
        await self._touch(device_id, "last_ping")

    async def update_last_restart(self, device_id: str) -> None:
        await self._touch(device_id, "last_restart")

    async def update_last_watchdog_reset(self, device_id: str) -> None:
        await self._touch(device_id, "last_watchdog_reset")

    async def _touch(self, device_id: str, column: str) -> None:
        conn = self._require()
        await conn.execute(f"UPDATE device SET {column} = ? WHERE id = ?", (utcnow().isoformat(), device_id))
        await conn.commit()

    async def set_device_data(self, device_id: str, data: dict[str, Any]) -> None:
        conn = self._require()
        await conn.execute("UPDATE device SET device_data = ? WHERE id = ?", (json.dumps(data), device_id))
        await conn.commit()

    async def upsert_house(self, house_id: str, name: str) -> None:
        conn = self._require()
        await conn.execute(
            "INSERT INTO house (id, name) VALUES (?, ?) ON CONFLICT(id) DO UPDATE SET name = excluded.name",
            (house_id, name),
        )
        await conn.commit()

    async def upsert_device(self, device: Device) -> None:
        conn = self._require()
        await conn.execute(
            """INSERT INTO device (id, house_id, name, active) VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 house_id = excluded.house_id, name = excluded.name, active = excluded.active""",
            (device.id, device.house_id, device.name, int(device.active)),
        )
        await conn.commit()

    async def upsert_sensor(self, sensor: Sensor) -> None:
        conn = self._require()
        await conn.execute(
            """INSERT INTO sensor (id, device_id, name, type, label) VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 device_id = excluded.device_id, name = excluded.name,
                 type = excluded.type, label = excluded.label""",
            (sensor.id, sensor.device_id, sensor.name, str(sensor.type), sensor.label),
        )
        await conn.commit()

    async def upsert_alert(self, alert: Alert) -> None:
        conn = self._require()
        await conn.execute(
            """INSERT OR REPLACE INTO alert
               (id, kind, target_type, target_id, active, owner_user_id, notify_type,
                notify_data, description, timeout_ms, test, value)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                alert.id,
                str(alert.kind),
                TARGET_SENSOR if alert.targets_sensor else TARGET_DEVICE,
                alert.target_id,
                int(alert.active),
                alert.owner_user_id,
                str(alert.notify_type),
                json.dumps(alert.notify_data) if alert.notify_data is not None else None,
                alert.description,
                alert.timeout_ms,
                str(alert.test) if alert.test else None,
                alert.value,
            ),
        )
        await conn.commit()

    async def delete_alert(self, alert_id: str) -> None:
        """Provisioning helper; the live directory follows the control.alert.delete event."""
        conn = self._require()
        await conn.execute("DELETE FROM alert WHERE id = ?", (alert_id,))
        await conn.commit()

    async def upsert_notifier(self, notifier: Notifier) -> None:
        conn = self._require()
        await conn.execute(
            """INSERT OR REPLACE INTO notifier
               (id, house_id, user_id, notify_type, email, pushover_user_key, pushover_app_token, muted_until)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                notifier.id,
                notifier.house_id,
                notifier.user_id,
                str(notifier.notify_type),
                notifier.email,
                notifier.pushover_user_key,
                notifier.pushover_app_token,
                notifier.muted_until.isoformat() if notifier.muted_until else None,
            ),
        )
        await conn.commit()

    # ── Alerts and notifiers ────────────────────────────────────────────

    async def get_alerts(self, active_only: bool = True) -> list[Alert]:
        """Load alerts with their targets resolved. Alerts whose target is gone are skipped."""
        conn = self._require()
        query = "SELECT * FROM alert"
        if active_only:
            query += " WHERE active = 1"
        cursor = await conn.execute(query + " ORDER BY id")
        alerts = []
        for row in await cursor.fetchall():
            try:
                alerts.append(await self._alert_from_row(row))
            except NotFoundError as e:
                logger.warning("Skipping alert %s: %s", row["id"], e)
        return alerts

    async def get_alert(self, alert_id: str) -> Alert:
        conn = self._require()
        cursor = await conn.execute("SELECT * FROM alert WHERE id = ?", (alert_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Unable to find alert with id <{alert_id}>")
        return await self._alert_from_row(row)

    async def get_notifiers(self, house_id: str) -> list[Notifier]:
        conn = self._require()
        cursor = await conn.execute("SELECT * FROM notifier WHERE house_id = ? ORDER BY id", (house_id,))
        return [
            Notifier(
                id=row["id"],
                house_id=row["house_id"],
                user_id=row["user_id"],
                notify_type=NotifyUsing(row["notify_type"]),
                email=row["email"],
                pushover_user_key=row["pushover_user_key"],
                pushover_app_token=row["pushover_app_token"],
                muted_until=parse_dt(row["muted_until"]),
            )
            for row in await cursor.fetchall()
        ]

    async def count_samples(self, sensor_id: str) -> int:
        """Inspection helper for provisioning tools and tests."""
        conn = self._require()
        cursor = await conn.execute("SELECT COUNT(*) FROM sensor_data WHERE id = ?", (sensor_id,))
        row = await cursor.fetchone()
        return row[0]

    async def get_samples(self, sensor_id: str, limit: int = 100) -> list[dict]:
        """Most recent samples first. Inspection helper for provisioning tools and tests."""
        conn = self._require()
        cursor = await conn.execute(
            "SELECT * FROM sensor_data WHERE id = ? ORDER BY dt DESC LIMIT ?",
            (sensor_id, limit),
        )
        return [dict(row) for row in await cursor.fetchall()]

    # ── Row mapping ─────────────────────────────────────────────────────

    async def _alert_from_row(self, row: aiosqlite.Row) -> Alert:
        if row["target_type"] == TARGET_SENSOR:
            target = await self.get_sensor(row["target_id"])
        else:
            target = await self.get_device(row["target_id"])
        return Alert(
            id=row["id"],
            kind=AlertKind(row["kind"]),
            target=target,
            active=bool(row["active"]),
            owner_user_id=row["owner_user_id"],
            notify_type=NotifyUsing(row["notify_type"] or NotifyUsing.NONE),
            notify_data=json.loads(row["notify_data"]) if row["notify_data"] else None,
            description=row["description"] or "",
            timeout_ms=row["timeout_ms"],
            test=ValueTest(row["test"]) if row["test"] else None,
            value=row["value"],
        )

    @staticmethod
    def _device_from_row(row: aiosqlite.Row) -> Device:
        return Device(
            id=row["id"],
            name=row["name"],
            house_id=row["house_id"],
            active=bool(row["active"]),
            last_ping=row["last_ping"],
        )

    @staticmethod
    def _sensor_from_row(row: aiosqlite.Row) -> Sensor:
        return Sensor(
            id=row["id"],
            name=row["name"],
            type=SensorType(row["type"]),
            device_id=row["device_id"],
            label=row["label"] or "",
        )
