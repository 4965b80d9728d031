from __future__ import annotations

import logging
from datetime import tzinfo
from typing import Any, Sequence

import requests

from .config import Settings, settings
from .errors import AttendanceError
from .extraction import DEFAULT_STRATEGIES, CandidateStrategy, DateWindow, extract_records
from .fetcher import PayloadFetcher
from .models import AttendanceRecord, ResultEnvelope
from .session import SessionClient
from .timestamps import resolve_timezone

logger = logging.getLogger(__name__)


def assemble(records: Sequence[AttendanceRecord]) -> ResultEnvelope:
    return ResultEnvelope(success=True, records=list(records))


def failure(message: str) -> ResultEnvelope:
    return ResultEnvelope(success=False, records=[], error=message or "Unknown error")


def build_session_client(config: Settings, http: Any = requests) -> SessionClient:
    return SessionClient(
        base_url=config.upstream_base_url,
        login_path=config.upstream_login_path,
        timeout=config.upstream_timeout_seconds,
        http=http,
    )


def build_payload_fetcher(config: Settings, http: Any = requests) -> PayloadFetcher:
    return PayloadFetcher(
        base_url=config.upstream_base_url,
        listing_path=config.upstream_listing_path,
        timeout=config.upstream_timeout_seconds,
        http=http,
    )


def upstream_timezone(config: Settings) -> tzinfo:
    return resolve_timezone(config.upstream_timezone)


def fetch_attendance(
    serial_number: str,
    password: str,
    window: DateWindow | None = None,
    *,
    config: Settings = settings,
    session_client: SessionClient | None = None,
    payload_fetcher: PayloadFetcher | None = None,
    strategies: Sequence[CandidateStrategy] = DEFAULT_STRATEGIES,
) -> ResultEnvelope:
    """Log in to the device portal, pull the listing page and extract its punches.

    Never raises: transport failures and anything unexpected come back as a
    failure envelope with an empty record list.
    """
    window = window or DateWindow()
    logger.info(
        "Fetching data for SN: %s, Start: %s, End: %s",
        serial_number,
        window.start.isoformat() if window.start else "-",
        window.end.isoformat() if window.end else "-",
    )

    client = session_client or build_session_client(config)
    fetcher = payload_fetcher or build_payload_fetcher(config)

    try:
        cookie = client.authenticate(serial_number, password)
        payload = fetcher.fetch_payload(cookie)
        records = extract_records(
            payload,
            serial_number,
            window,
            strategies=strategies,
            dedupe=config.deduplicate_records,
            default_tz=upstream_timezone(config),
        )
    except AttendanceError as exc:
        logger.warning("Attendance fetch for SN %s failed: %s", serial_number, exc)
        return failure(str(exc))
    except Exception as exc:
        logger.exception("Unexpected error fetching attendance for SN %s", serial_number)
        return failure(str(exc) or exc.__class__.__name__)

    logger.info("Parsed %s attendance records for SN %s", len(records), serial_number)
    return assemble(records)
