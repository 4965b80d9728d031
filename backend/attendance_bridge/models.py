from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .timestamps import to_iso_utc

VERIFY_TYPE_LABELS = {
    0: "Password",
    1: "Fingerprint",
    2: "Card",
    15: "Face",
}

STATUS_LABELS = {
    0: "Check-In",
    1: "Check-Out",
    2: "Break-Out",
    3: "Break-In",
    4: "Overtime-In",
    5: "Overtime-Out",
}


@dataclass(frozen=True)
class AttendanceRecord:
    id: str
    serial_number: str
    employee_code: str
    punch_time: datetime
    verify_type: int = 1
    status: int = 0
    work_code: int = 1

    def content_key(self) -> tuple[str, datetime]:
        return self.employee_code, self.punch_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sn": self.serial_number,
            "empCode": self.employee_code,
            "punchTime": to_iso_utc(self.punch_time),
            "verifyType": self.verify_type,
            "status": self.status,
            "workCode": self.work_code,
        }


@dataclass(frozen=True)
class ResultEnvelope:
    success: bool
    records: list[AttendanceRecord] = field(default_factory=list)
    error: str | None = None

    @property
    def count(self) -> int:
        return len(self.records)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "records": [record.to_dict() for record in self.records],
            "count": self.count,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload
