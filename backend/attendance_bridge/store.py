from __future__ import annotations

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Iterator, Sequence

from .models import AttendanceRecord
from .timestamps import to_iso_utc

logger = logging.getLogger(__name__)

DEVICE_STATUSES = ("Connected", "Failed", "Processing", "Idle")
_UPDATABLE_DEVICE_FIELDS = ("sn", "password", "start_date", "end_date", "status", "last_records", "last_sync")

StoreListener = Callable[[str], None]

_DEVICE_COLUMNS = (
    "id, sn, password, start_date, end_date, status, last_records, last_sync, created_at, updated_at"
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _dict_from_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


class DeviceStore:
    """SQLite-backed registry of devices and the punches pulled from them.

    Built once when the application starts and handed to whoever needs it.
    Every mutation is announced to subscribers with a short event name such
    as ``"devices"`` or ``"records"``.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._listeners: list[StoreListener] = []
        self._listeners_lock = Lock()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        try:
            yield connection
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()

    def init(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    id TEXT PRIMARY KEY,
                    sn TEXT NOT NULL,
                    password TEXT NOT NULL DEFAULT '',
                    start_date TEXT NULL,
                    end_date TEXT NULL,
                    status TEXT NOT NULL DEFAULT 'Idle'
                        CHECK(status IN ('Connected', 'Failed', 'Processing', 'Idle')),
                    last_records INTEGER NOT NULL DEFAULT 0,
                    last_sync TEXT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS attendance_records (
                    id TEXT PRIMARY KEY,
                    sn TEXT NOT NULL,
                    emp_code TEXT NOT NULL,
                    punch_time TEXT NOT NULL,
                    verify_type INTEGER NOT NULL DEFAULT 1,
                    status INTEGER NOT NULL DEFAULT 0,
                    work_code INTEGER NOT NULL DEFAULT 1,
                    fetched_at TEXT NOT NULL,
                    UNIQUE(sn, emp_code, punch_time)
                );

                CREATE INDEX IF NOT EXISTS idx_devices_sn ON devices(sn);
                CREATE INDEX IF NOT EXISTS idx_records_sn ON attendance_records(sn);
                CREATE INDEX IF NOT EXISTS idx_records_punch_time ON attendance_records(punch_time);
                """
            )

    # -- subscriptions -------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # A broken subscriber must not undo a committed write.
                logger.exception("Store listener failed for event '%s'", event)

    # -- devices -------------------------------------------------------

    def list_devices(self) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_DEVICE_COLUMNS}
                FROM devices
                ORDER BY created_at ASC, rowid ASC
                """
            ).fetchall()
        return [{key: row[key] for key in row.keys()} for row in rows]

    def get_device(self, device_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_DEVICE_COLUMNS}
                FROM devices
                WHERE id = ?
                LIMIT 1
                """,
                (device_id,),
            ).fetchone()
        return _dict_from_row(row)

    def add_device(
        self,
        sn: str,
        password: str,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> dict[str, Any]:
        normalized_sn = sn.strip()
        if not normalized_sn:
            raise ValueError("sn is required")

        device_id = uuid.uuid4().hex
        now = utc_now_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO devices (id, sn, password, start_date, end_date, status, last_records,
                                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'Idle', 0, ?, ?)
                """,
                (device_id, normalized_sn, password, start_date or None, end_date or None, now, now),
            )
            row = conn.execute(
                f"""
                SELECT {_DEVICE_COLUMNS}
                FROM devices
                WHERE id = ?
                """,
                (device_id,),
            ).fetchone()

        logger.info("Registered device '%s'", normalized_sn)
        self._notify("devices")
        return {key: row[key] for key in row.keys()}

    def update_device(self, device_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        changes = {key: value for key, value in updates.items() if key in _UPDATABLE_DEVICE_FIELDS}
        unknown = set(updates) - set(_UPDATABLE_DEVICE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown device fields: {', '.join(sorted(unknown))}")
        if "status" in changes and changes["status"] not in DEVICE_STATUSES:
            raise ValueError(f"Invalid device status: {changes['status']}")
        if "sn" in changes:
            changes["sn"] = str(changes["sn"] or "").strip()
            if not changes["sn"]:
                raise ValueError("sn is required")

        if not changes:
            return self.get_device(device_id)

        assignments = ", ".join(f"{column} = ?" for column in changes)
        values = list(changes.values()) + [utc_now_iso(), device_id]
        with self.connect() as conn:
            cursor = conn.execute(
                f"UPDATE devices SET {assignments}, updated_at = ? WHERE id = ?",
                values,
            )
            updated = cursor.rowcount

        if not updated:
            return None

        self._notify("devices")
        return self.get_device(device_id)

    def delete_device(self, device_id: str) -> bool:
        with self.connect() as conn:
            row = conn.execute("SELECT sn FROM devices WHERE id = ?", (device_id,)).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
            # Records belong to the SN; keep them while another device entry still uses it.
            remaining = conn.execute(
                "SELECT COUNT(1) AS total FROM devices WHERE sn = ?",
                (row["sn"],),
            ).fetchone()
            if int(remaining["total"]) == 0:
                conn.execute("DELETE FROM attendance_records WHERE sn = ?", (row["sn"],))

        logger.info("Removed device '%s'", row["sn"])
        self._notify("devices")
        self._notify("records")
        return True

    # -- records -------------------------------------------------------

    def add_records(self, records: Sequence[AttendanceRecord]) -> int:
        if not records:
            return 0

        now = utc_now_iso()
        inserted = 0
        with self.connect() as conn:
            for record in records:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO attendance_records
                        (id, sn, emp_code, punch_time, verify_type, status, work_code, fetched_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.serial_number,
                        record.employee_code,
                        to_iso_utc(record.punch_time),
                        record.verify_type,
                        record.status,
                        record.work_code,
                        now,
                    ),
                )
                inserted += cursor.rowcount

        if inserted:
            self._notify("records")
        return inserted

    def list_records(
        self,
        search: str = "",
        sn: str | None = None,
        limit: int | None = None,
        date: str | None = None,
    ) -> list[dict[str, Any]]:
        """Newest punches first. ``date`` (YYYY-MM-DD) keeps a single UTC day."""
        clauses: list[str] = []
        params: list[Any] = []

        term = search.strip().lower()
        if term:
            clauses.append("(lower(sn) LIKE ? OR lower(emp_code) LIKE ?)")
            params.extend([f"%{term}%", f"%{term}%"])
        if sn:
            clauses.append("sn = ?")
            params.append(sn)
        if date:
            clauses.append("substr(punch_time, 1, 10) = ?")
            params.append(date)

        query = """
            SELECT id, sn, emp_code, punch_time, verify_type, status, work_code, fetched_at
            FROM attendance_records
        """
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY punch_time DESC, emp_code ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [{key: row[key] for key in row.keys()} for row in rows]

    def count_records(self) -> int:
        with self.connect() as conn:
            row = conn.execute("SELECT COUNT(1) AS total FROM attendance_records").fetchone()
        return int(row["total"] or 0)

    def clear_records(self) -> int:
        with self.connect() as conn:
            cursor = conn.execute("DELETE FROM attendance_records")
            removed = cursor.rowcount
        self._notify("records")
        return removed

    def get_stats(self) -> dict[str, Any]:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(1) AS total_devices,
                       SUM(CASE WHEN status = 'Connected' THEN 1 ELSE 0 END) AS connected_devices,
                       MAX(last_sync) AS last_sync
                FROM devices
                """
            ).fetchone()

        return {
            "total_devices": int(row["total_devices"] or 0),
            "connected_devices": int(row["connected_devices"] or 0),
            "total_records": self.count_records(),
            "last_sync": row["last_sync"],
        }
