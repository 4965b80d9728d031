from __future__ import annotations

import logging
from typing import Any

from .config import Settings, settings
from .errors import AuthError
from .extraction import DateWindow
from .models import ResultEnvelope
from .pipeline import build_session_client, failure, fetch_attendance, upstream_timezone
from .session import SessionClient
from .store import DeviceStore, utc_now_iso

logger = logging.getLogger(__name__)


def device_window(device: dict[str, Any], config: Settings = settings) -> DateWindow:
    return DateWindow.from_strings(
        device.get("start_date"),
        device.get("end_date"),
        upstream_timezone(config),
    )


def check_device_connection(
    store: DeviceStore,
    device: dict[str, Any],
    *,
    config: Settings = settings,
    session_client: SessionClient | None = None,
) -> tuple[dict[str, Any], str | None]:
    """Run only the login handshake and record the outcome on the device."""
    store.update_device(device["id"], {"status": "Processing"})
    client = session_client or build_session_client(config)

    error: str | None = None
    try:
        client.authenticate(str(device["sn"]), str(device.get("password") or ""))
    except AuthError as exc:
        error = str(exc)
    except Exception as exc:
        logger.exception("Unexpected error testing device %s", device["sn"])
        error = str(exc) or exc.__class__.__name__

    if error is None:
        updates = {"status": "Connected", "last_sync": utc_now_iso()}
    else:
        logger.warning("Connection test for device %s failed: %s", device["sn"], error)
        updates = {"status": "Failed"}

    updated = store.update_device(device["id"], updates) or device
    return updated, error


def sync_device(
    store: DeviceStore,
    device: dict[str, Any],
    *,
    config: Settings = settings,
    **pipeline_overrides: Any,
) -> tuple[dict[str, Any], ResultEnvelope, int]:
    """Fetch a device's punches with its stored credentials and persist them."""
    store.update_device(device["id"], {"status": "Processing"})

    try:
        window = device_window(device, config)
    except ValueError as exc:
        result = failure(str(exc))
    else:
        result = fetch_attendance(
            str(device["sn"]),
            str(device.get("password") or ""),
            window,
            config=config,
            **pipeline_overrides,
        )

    stored = 0
    updates: dict[str, Any] = {"status": "Failed"}
    try:
        if result.success:
            stored = store.add_records(result.records)
            updates = {
                "status": "Connected",
                "last_records": result.count,
                "last_sync": utc_now_iso(),
            }
            logger.info(
                "Device %s synced: %s records fetched, %s new",
                device["sn"],
                result.count,
                stored,
            )
    except Exception as exc:
        logger.exception("Storing records for device %s failed", device["sn"])
        result = failure(f"Storing records failed: {exc}")
    finally:
        # never leave the device in Processing
        updated = store.update_device(device["id"], updates) or device
    return updated, result, stored
