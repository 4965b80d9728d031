import os
from dataclasses import dataclass
from pathlib import Path
from typing import List

from dotenv import load_dotenv

_BACKEND_ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


def _to_int(value: str | None, default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _to_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_csv(value: str | None, default: List[str]) -> List[str]:
    if not value:
        return default
    parts = [item.strip() for item in value.split(",") if item.strip()]
    return parts or default


def _default_app_db_path() -> str:
    backend_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    return os.path.join(backend_root, "data", "app.db")


def _normalize_path(value: str | None, default: str) -> str:
    text = (value or "").strip() or default
    return text if text.startswith("/") else f"/{text}"


@dataclass(frozen=True)
class Settings:
    upstream_base_url: str
    upstream_login_path: str
    upstream_listing_path: str
    upstream_timeout_seconds: int
    upstream_timezone: str
    deduplicate_records: bool

    app_db_path: str

    allow_origins: List[str]
    rate_limit_window_sec: int
    rate_limit_max_requests: int
    log_level: str


def get_settings() -> Settings:
    return Settings(
        upstream_base_url=(
            os.getenv("UPSTREAM_BASE_URL", "http://www.solutioncloud.co.id").strip().rstrip("/")
        ),
        upstream_login_path=_normalize_path(os.getenv("UPSTREAM_LOGIN_PATH"), "/sc_pro.asp"),
        upstream_listing_path=_normalize_path(os.getenv("UPSTREAM_LISTING_PATH"), "/view.asp"),
        upstream_timeout_seconds=max(1, _to_int(os.getenv("UPSTREAM_TIMEOUT_SECONDS"), 20)),
        upstream_timezone=(os.getenv("UPSTREAM_TIMEZONE") or "UTC").strip() or "UTC",
        deduplicate_records=_to_bool(os.getenv("DEDUPLICATE_RECORDS"), True),
        app_db_path=os.getenv("APP_DB_PATH", _default_app_db_path()),
        allow_origins=_split_csv(os.getenv("ALLOW_ORIGIN"), ["*"]),
        rate_limit_window_sec=_to_int(os.getenv("RATE_LIMIT_WINDOW_SEC"), 60),
        rate_limit_max_requests=_to_int(os.getenv("RATE_LIMIT_MAX_REQUESTS"), 120),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
    )


settings = get_settings()
