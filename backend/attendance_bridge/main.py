from __future__ import annotations

import csv
import io
import logging
import re
from datetime import datetime, timezone
from typing import Any

import requests
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import _BACKEND_ENV_PATH, CORS_ALLOW_HEADERS, settings
from .devices import check_device_connection, sync_device
from .extraction import DateWindow
from .models import STATUS_LABELS, VERIFY_TYPE_LABELS
from .pipeline import (
    build_payload_fetcher,
    build_session_client,
    failure,
    fetch_attendance,
    upstream_timezone,
)
from .rate_limit import build_rate_limit_middleware
from .schemas import (
    AttendanceRecordItem,
    ConnectionTestResponse,
    DeviceCreateRequest,
    DeviceItem,
    DeviceSyncResponse,
    DevicesResponse,
    DeviceUpdateRequest,
    FetchAttendanceRequest,
    FetchAttendanceResponse,
    RecordsResponse,
    StatsResponse,
)
from .store import DeviceStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Attendance Bridge API", version="1.0.0")

app.middleware("http")(
    build_rate_limit_middleware(
        window_seconds=settings.rate_limit_window_sec,
        max_requests=settings.rate_limit_max_requests,
    )
)

# Added last so it wraps the limiter and 429s still carry CORS headers.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=CORS_ALLOW_HEADERS,
)

_DAY_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

_DEVICE_FIELD_MAP = {
    "sn": "sn",
    "password": "password",
    "startDate": "start_date",
    "endDate": "end_date",
}


def _log_store_event(event: str) -> None:
    logger.debug("Store changed: %s", event)


@app.on_event("startup")
def startup_event() -> None:
    load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    store = DeviceStore(settings.app_db_path)
    store.init()
    store.subscribe(_log_store_event)
    app.state.store = store
    logger.info(
        "Upstream portal: %s (timeout %ss)",
        settings.upstream_base_url,
        settings.upstream_timeout_seconds,
    )


def get_store(request: Request) -> DeviceStore:
    return request.app.state.store


def get_http() -> Any:
    return requests


def _envelope_response(payload: dict[str, Any], status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=payload)


def _sanitize_filename_part(value: str | None) -> str:
    if value is None:
        return "all"

    text = value.strip().replace(" ", "-")
    text = re.sub(r"[^A-Za-z0-9\-_]", "", text)
    text = re.sub(r"-{2,}", "-", text).strip("-_")
    return text[:40] or "all"


def _serialize_device(row: dict[str, Any]) -> DeviceItem:
    return DeviceItem(
        id=str(row["id"]),
        sn=str(row.get("sn") or ""),
        startDate=row.get("start_date") or None,
        endDate=row.get("end_date") or None,
        status=str(row.get("status") or "Idle"),
        lastRecords=int(row.get("last_records") or 0),
        lastSync=(str(row.get("last_sync")) if row.get("last_sync") else None),
    )


def _serialize_record(row: dict[str, Any]) -> AttendanceRecordItem:
    return AttendanceRecordItem(
        id=str(row["id"]),
        sn=str(row.get("sn") or ""),
        empCode=str(row.get("emp_code") or ""),
        punchTime=str(row.get("punch_time") or ""),
        verifyType=int(row.get("verify_type") if row.get("verify_type") is not None else 1),
        status=int(row.get("status") or 0),
        workCode=int(row.get("work_code") if row.get("work_code") is not None else 1),
    )


def _require_device(store: DeviceStore, device_id: str) -> dict[str, Any]:
    device = store.get_device(device_id)
    if not device:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
    return device


def _validate_window(start: str | None, end: str | None) -> None:
    try:
        DateWindow.from_strings(start, end, upstream_timezone(settings))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@app.get("/healthz")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post(
    "/api/fetch-attendance",
    response_model=FetchAttendanceResponse,
    response_model_exclude_none=True,
)
def fetch_attendance_endpoint(
    payload: FetchAttendanceRequest,
    http: Any = Depends(get_http),
) -> Any:
    try:
        window = DateWindow.from_strings(payload.startDate, payload.endDate, upstream_timezone(settings))
    except ValueError as exc:
        return _envelope_response(failure(str(exc)).to_dict(), status.HTTP_400_BAD_REQUEST)

    result = fetch_attendance(
        payload.sn,
        payload.password,
        window,
        config=settings,
        session_client=build_session_client(settings, http),
        payload_fetcher=build_payload_fetcher(settings, http),
    )
    if not result.success:
        return _envelope_response(result.to_dict(), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return FetchAttendanceResponse(**result.to_dict())


@app.get("/api/devices", response_model=DevicesResponse)
def list_devices(store: DeviceStore = Depends(get_store)) -> DevicesResponse:
    return DevicesResponse(devices=[_serialize_device(row) for row in store.list_devices()])


@app.post("/api/devices", response_model=DeviceItem)
def add_device(payload: DeviceCreateRequest, store: DeviceStore = Depends(get_store)) -> DeviceItem:
    _validate_window(payload.startDate, payload.endDate)
    try:
        device = store.add_device(
            sn=payload.sn,
            password=payload.password,
            start_date=payload.startDate,
            end_date=payload.endDate,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _serialize_device(device)


@app.patch("/api/devices/{device_id}", response_model=DeviceItem)
def update_device(
    device_id: str,
    payload: DeviceUpdateRequest,
    store: DeviceStore = Depends(get_store),
) -> DeviceItem:
    current = _require_device(store, device_id)
    provided = payload.model_dump(exclude_unset=True)
    updates = {
        _DEVICE_FIELD_MAP[key]: value
        for key, value in provided.items()
        # a null date clears the bound; a null sn/password is ignored
        if value is not None or key in {"startDate", "endDate"}
    }

    _validate_window(
        updates.get("start_date", current.get("start_date")),
        updates.get("end_date", current.get("end_date")),
    )
    try:
        updated = store.update_device(device_id, updates)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
    return _serialize_device(updated)


@app.delete("/api/devices/{device_id}")
def delete_device(device_id: str, store: DeviceStore = Depends(get_store)) -> dict[str, str]:
    if not store.delete_device(device_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
    return {"message": "Device deleted"}


@app.post("/api/devices/{device_id}/test-connection", response_model=ConnectionTestResponse)
def check_connection(
    device_id: str,
    store: DeviceStore = Depends(get_store),
    http: Any = Depends(get_http),
) -> ConnectionTestResponse:
    device = _require_device(store, device_id)
    updated, error = check_device_connection(
        store,
        device,
        config=settings,
        session_client=build_session_client(settings, http),
    )
    return ConnectionTestResponse(
        device=_serialize_device(updated),
        connected=error is None,
        error=error,
    )


@app.post("/api/devices/{device_id}/sync", response_model=DeviceSyncResponse)
def sync_device_records(
    device_id: str,
    store: DeviceStore = Depends(get_store),
    http: Any = Depends(get_http),
) -> Any:
    device = _require_device(store, device_id)
    updated, result, stored = sync_device(
        store,
        device,
        config=settings,
        session_client=build_session_client(settings, http),
        payload_fetcher=build_payload_fetcher(settings, http),
    )
    response = DeviceSyncResponse(
        device=_serialize_device(updated),
        result=FetchAttendanceResponse(**result.to_dict()),
        stored=stored,
    )
    if not result.success:
        return _envelope_response(response.model_dump(), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return response


@app.get("/api/records", response_model=RecordsResponse)
def list_records(
    search: str = Query(default="", max_length=64),
    sn: str | None = Query(default=None, max_length=128),
    date: str | None = Query(default=None, pattern=_DAY_PATTERN),
    limit: int = Query(default=500, ge=1, le=10000),
    store: DeviceStore = Depends(get_store),
) -> RecordsResponse:
    rows = store.list_records(
        search=search,
        sn=(sn.strip() if sn else None),
        limit=limit,
        date=date,
    )
    return RecordsResponse(
        records=[_serialize_record(row) for row in rows],
        total=store.count_records(),
    )


@app.delete("/api/records")
def clear_records(store: DeviceStore = Depends(get_store)) -> dict[str, Any]:
    removed = store.clear_records()
    return {"message": "Records cleared", "removed": removed}


@app.get("/api/records/export.csv")
def export_records_csv(
    search: str = Query(default="", max_length=64),
    sn: str | None = Query(default=None, max_length=128),
    date: str | None = Query(default=None, pattern=_DAY_PATTERN),
    store: DeviceStore = Depends(get_store),
) -> Response:
    rows = store.list_records(search=search, sn=(sn.strip() if sn else None), date=date)

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(
        ["SN", "Emp Code", "Punch Time", "Verify Type", "Verify", "Status", "Punch", "Work Code"]
    )
    for row in rows:
        verify_type = int(row.get("verify_type") if row.get("verify_type") is not None else 1)
        punch_status = int(row.get("status") or 0)
        writer.writerow(
            [
                row.get("sn"),
                row.get("emp_code"),
                row.get("punch_time"),
                verify_type,
                VERIFY_TYPE_LABELS.get(verify_type, "Other"),
                punch_status,
                STATUS_LABELS.get(punch_status, "Unknown"),
                row.get("work_code"),
            ]
        )

    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    filename = f"attendance_{_sanitize_filename_part(sn)}_{stamp}.csv"
    response = Response(content=buffer.getvalue(), media_type="text/csv")
    response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response


@app.get("/api/stats", response_model=StatsResponse)
def get_stats(store: DeviceStore = Depends(get_store)) -> StatsResponse:
    stats = store.get_stats()
    return StatsResponse(
        totalDevices=stats["total_devices"],
        connectedDevices=stats["connected_devices"],
        totalRecords=stats["total_records"],
        lastSync=stats["last_sync"],
    )
