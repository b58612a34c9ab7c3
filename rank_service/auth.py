"""Authentication for the rank tracker HTTP service.

Two auth modes:
1. Cloud Run OIDC: Cloud Scheduler (or any Google service account) calls the
   trigger endpoints with a Google identity token minted for
   RANK_OIDC_AUDIENCE. Optionally restricted to RANK_ALLOWED_PRINCIPALS.
2. Shared bearer token (RANK_API_TOKEN): local dev only, ignored when
   K_SERVICE is set.

Without RANK_OIDC_AUDIENCE no identity token is accepted, so with neither
mode configured every protected request is rejected.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from rank_service.config import (
    IS_CLOUD_RUN,
    RANK_ALLOWED_ISSUERS,
    RANK_ALLOWED_PRINCIPALS,
    RANK_API_TOKEN,
    RANK_OIDC_AUDIENCE,
)

logger = logging.getLogger(__name__)

# Cache the Google transport session for token verification
_transport = google_requests.Request()

# Paths that skip auth
_PUBLIC_PATHS = {"/liveness", "/readiness", "/docs", "/openapi.json"}


@dataclass
class Identity:
    """Authenticated caller."""

    principal: str  # email or sub claim, "dev-user" for the shared token
    method: str  # "oidc" or "token"


async def get_identity(request: Request) -> Identity:
    """Verify the caller's bearer token.

    Raises HTTPException 401 if no valid credentials are provided and 403 if
    the principal is not on the allow list.
    """
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    if not IS_CLOUD_RUN and RANK_API_TOKEN and hmac.compare_digest(token, RANK_API_TOKEN):
        return Identity(principal="dev-user", method="token")

    if not RANK_OIDC_AUDIENCE:
        # verify_token skips the aud check when audience is None
        logger.warning("Rejecting identity token: RANK_OIDC_AUDIENCE is not set")
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        claims = id_token.verify_token(token, _transport, audience=RANK_OIDC_AUDIENCE)
    except Exception as e:
        logger.warning("Token verification failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token") from e

    issuer = str(claims.get("iss", "")).strip()
    if issuer not in RANK_ALLOWED_ISSUERS:
        raise HTTPException(status_code=401, detail="Invalid token issuer")

    principal = claims.get("email") or claims.get("sub") or ""
    if not principal:
        raise HTTPException(status_code=401, detail="Token missing email and sub claims")
    if RANK_ALLOWED_PRINCIPALS and principal not in RANK_ALLOWED_PRINCIPALS:
        logger.warning("Principal %s not allowed", principal)
        raise HTTPException(status_code=403, detail="Principal not allowed")

    return Identity(principal=principal, method="oidc")


def _extract_token(request: Request) -> str | None:
    """Extract bearer token from the Authorization header."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


def is_public_path(path: str) -> bool:
    """Check if the request path skips authentication."""
    return path in _PUBLIC_PATHS or path.startswith("/docs")


def require_auth_on_cloud_run() -> None:
    """Safety check: shared token must not be usable on Cloud Run."""
    if IS_CLOUD_RUN and RANK_API_TOKEN:
        logger.warning(
            "RANK_API_TOKEN is set on Cloud Run; it will be ignored. "
            "Use OIDC tokens for authentication in production."
        )
    if IS_CLOUD_RUN and not RANK_OIDC_AUDIENCE:
        raise RuntimeError("RANK_OIDC_AUDIENCE must be set on Cloud Run")
