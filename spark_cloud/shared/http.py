"""
HTTP request helpers shared by the request/response clients.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from .errors import TransportError, ServiceError, error_for_status


def bearer_headers(access_token: Optional[str]) -> Dict[str, str]:
    """Authorization header for an access token, empty when there is none."""
    if not access_token:
        return {}
    return {"Authorization": f"Bearer {access_token}"}


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    context: str,
    logger: structlog.stdlib.BoundLogger,
    **kwargs: Any
) -> Any:
    """Send a request and return its decoded JSON body.

    Non-2xx statuses are mapped through ``error_for_status``; timeouts and
    connection failures become ``TransportError``.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.error("Cloud request timeout", context=context)
        raise TransportError(f"{context}: request timed out", {"url": url}) from e
    except httpx.RequestError as e:
        logger.error("Cloud request error", context=context, error=str(e))
        raise TransportError(f"{context}: cloud unavailable", {"url": url, "error": str(e)}) from e

    if response.status_code >= 400:
        logger.warning(
            "Cloud request failed",
            context=context,
            status_code=response.status_code
        )
        raise error_for_status(response.status_code, response.text, context)

    if not response.content:
        return {}

    try:
        return response.json()
    except ValueError as e:
        raise ServiceError(f"{context}: invalid JSON response", response.status_code) from e
