from __future__ import annotations

import hmac

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from market_scan.utils.logging import get_logger

logger = get_logger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_service_key(
    request: Request,
    api_key: str | None = Security(api_key_header),
) -> dict:
    """Validate the analysis worker's API key for callback endpoints.

    In development mode (DEBUG=true), a missing key is allowed.
    """
    settings = request.app.state.settings

    if settings.DEBUG and not api_key:
        return {"caller": "debug"}

    if not api_key:
        raise HTTPException(status_code=401, detail="Missing API key")

    expected = settings.SERVICE_API_KEY
    if not expected or not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("Rejected analysis callback", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid API key")

    return {"caller": "analysis-service"}


def owner_from_headers(headers, header_name: str) -> str | None:
    owner_id = (headers.get(header_name) or "").strip()
    return owner_id or None


async def require_owner(request: Request) -> str:
    """Identity of the signed-in dealer user, set by the upstream auth gateway."""
    settings = request.app.state.settings
    owner_id = owner_from_headers(request.headers, settings.OWNER_HEADER)
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return owner_id
