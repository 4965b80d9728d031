from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

DeviceStatus = Literal["Connected", "Failed", "Processing", "Idle"]


class FetchAttendanceRequest(BaseModel):
    sn: str = Field(max_length=128)
    password: str = Field(default="", max_length=256)
    startDate: Optional[str] = Field(default=None, max_length=64)
    endDate: Optional[str] = Field(default=None, max_length=64)


class AttendanceRecordItem(BaseModel):
    id: str
    sn: str
    empCode: str
    punchTime: str
    verifyType: int
    status: int
    workCode: int


class FetchAttendanceResponse(BaseModel):
    success: bool
    records: List[AttendanceRecordItem]
    count: int
    error: Optional[str] = None


class DeviceCreateRequest(BaseModel):
    sn: str = Field(min_length=1, max_length=128)
    password: str = Field(default="", max_length=256)
    startDate: Optional[str] = Field(default=None, max_length=64)
    endDate: Optional[str] = Field(default=None, max_length=64)


class DeviceUpdateRequest(BaseModel):
    sn: Optional[str] = Field(default=None, min_length=1, max_length=128)
    password: Optional[str] = Field(default=None, max_length=256)
    startDate: Optional[str] = Field(default=None, max_length=64)
    endDate: Optional[str] = Field(default=None, max_length=64)


class DeviceItem(BaseModel):
    id: str
    sn: str
    startDate: Optional[str]
    endDate: Optional[str]
    status: DeviceStatus
    lastRecords: int
    lastSync: Optional[str]


class DevicesResponse(BaseModel):
    devices: List[DeviceItem]


class ConnectionTestResponse(BaseModel):
    device: DeviceItem
    connected: bool
    error: Optional[str] = None


class DeviceSyncResponse(BaseModel):
    device: DeviceItem
    result: FetchAttendanceResponse
    stored: int


class RecordsResponse(BaseModel):
    records: List[AttendanceRecordItem]
    total: int


class StatsResponse(BaseModel):
    totalDevices: int
    connectedDevices: int
    totalRecords: int
    lastSync: Optional[str]
