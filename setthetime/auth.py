"""Bearer-token guard for the admin endpoints.

Meeting-type management, booking cancellation, the OAuth start redirect
and the email outbox tools all require ``Authorization: Bearer
<ADMIN_API_KEY>``.

  key set,   token matches       → allow
  key set,   token wrong/missing → 401
  key empty, DEBUG=true          → allow (local development)
  key empty, DEBUG=false         → 403
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from setthetime.config import settings

log = logging.getLogger("setthetime.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """Reject callers that don't present the admin key."""
    key = settings.admin_api_key

    if not key:
        if settings.debug:
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Owner administration is disabled until ADMIN_API_KEY is set.",
        )

    if credentials is None:
        log.warning("Admin request without a bearer token")
    elif not secrets.compare_digest(credentials.credentials, key):
        log.warning("Admin request with a bearer token that does not match ADMIN_API_KEY")
    else:
        return
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Owner administration requires the admin bearer token.",
        headers={"WWW-Authenticate": "Bearer"},
    )
