"""Environment-variable-driven configuration for the rank tracker.

All config comes from env vars; nothing is read from files at import time.
Credentials are resolved lazily by `dataforseo_auth_header()` so that a
missing token surfaces as a ConfigurationError before the first request,
not as an import failure.
"""

from __future__ import annotations

import base64
import os

from rank_service.errors import ConfigurationError


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# -- Provider -----------------------------------------------------------------
DATAFORSEO_BASE_URL: str = os.getenv("DATAFORSEO_BASE_URL", "https://api.dataforseo.com/v3")
DFS_TASK_POST_PATH: str = "serp/google/organic/task_post"
DFS_TASK_GET_PATH: str = "serp/google/organic/task_get/regular"
DFS_USER_DATA_PATH: str = "appendix/user_data"
RANK_HTTP_TIMEOUT_SECONDS: float = float(os.getenv("RANK_HTTP_TIMEOUT_SECONDS", "30"))

# -- Task parameters ----------------------------------------------------------
RANK_DEVICE: str = os.getenv("RANK_DEVICE", "desktop")
RANK_OS: str = os.getenv("RANK_OS", "windows")
RANK_LANGUAGE_CODE: str = os.getenv("RANK_LANGUAGE_CODE", "en")
RANK_DEPTH: int = int(os.getenv("RANK_DEPTH", "30"))
RANK_MAX_TASKS_PER_POST: int = int(os.getenv("RANK_MAX_TASKS_PER_POST", "100"))

# -- Sink ---------------------------------------------------------------------
RANK_SINK: str = os.getenv("RANK_SINK", "json")
RANK_SINK_PATH: str = os.getenv("RANK_SINK_PATH", "rank-outcomes.json")
RANK_JOBS_PATH: str | None = os.getenv("RANK_JOBS_PATH")

# -- HTTP service auth --------------------------------------------------------
RANK_API_TOKEN: str | None = os.getenv("RANK_API_TOKEN")
RANK_OIDC_AUDIENCE: str | None = os.getenv("RANK_OIDC_AUDIENCE")
RANK_ALLOWED_ISSUERS: set[str] = set(
    _env_csv("RANK_ALLOWED_ISSUERS", "https://accounts.google.com,accounts.google.com")
)
RANK_ALLOWED_PRINCIPALS: set[str] = set(_env_csv("RANK_ALLOWED_PRINCIPALS", ""))

# -- HTTP service -------------------------------------------------------------
RANK_TRIGGER_RATE_LIMIT: str = os.getenv("RANK_TRIGGER_RATE_LIMIT", "10/minute")
RANK_CORS_ALLOW_ORIGINS: list[str] = _env_csv(
    "RANK_CORS_ALLOW_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
)
RANK_CORS_ALLOW_CREDENTIALS: bool = _env_bool("RANK_CORS_ALLOW_CREDENTIALS", False)

# -- Server -------------------------------------------------------------------
IS_CLOUD_RUN: bool = bool(os.getenv("K_SERVICE"))


def dataforseo_auth_header() -> str:
    """Return the Authorization header value for the provider.

    Accepts either a pre-encoded Basic token (DATAFORSEO_AUTH, with or without
    the "Basic " prefix) or DATAFORSEO_LOGIN + DATAFORSEO_PASSWORD.

    Raises ConfigurationError if neither is set.
    """
    token = (os.getenv("DATAFORSEO_AUTH") or "").strip()
    if token:
        return token if token.lower().startswith("basic ") else f"Basic {token}"

    login = os.getenv("DATAFORSEO_LOGIN", "")
    password = os.getenv("DATAFORSEO_PASSWORD", "")
    if not login or not password:
        raise ConfigurationError(
            "DataForSEO credentials not found. Set DATAFORSEO_AUTH, or "
            "DATAFORSEO_LOGIN and DATAFORSEO_PASSWORD."
        )
    encoded = base64.b64encode(f"{login}:{password}".encode()).decode()
    return f"Basic {encoded}"
