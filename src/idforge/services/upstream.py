"""HTTP status classification shared by the outbound httpx clients."""

import httpx

from idforge.services.exceptions import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamNetworkError,
    UpstreamRateLimitError,
    UpstreamRequestError,
)


def raise_for_upstream_status(response: httpx.Response, service: str) -> None:
    """Raise a classified UpstreamError for a non-2xx response.

    Args:
        response: Completed httpx response
        service: Upstream name used in the error message (e.g. "wavespeed")

    Raises:
        UpstreamRateLimitError: 429
        UpstreamNetworkError: 5xx
        UpstreamAuthError: 401, 403
        UpstreamRequestError: any other 4xx
    """
    code = response.status_code
    if code < 400:
        return

    body = response.text[:500]
    if code == 429:
        raise UpstreamRateLimitError(f"{service}: rate limit exceeded: {body}")
    elif code >= 500:
        raise UpstreamNetworkError(f"{service}: service unavailable ({code}): {body}")
    elif code in (401, 403):
        raise UpstreamAuthError(
            f"{service}: unauthorized ({code}). Check the API key configuration"
        )
    else:
        raise UpstreamRequestError(f"{service}: request rejected ({code}): {body}")


def wrap_transport_error(e: httpx.HTTPError, service: str) -> UpstreamError:
    """Convert an httpx transport failure into an UpstreamNetworkError."""
    if isinstance(e, httpx.TimeoutException):
        return UpstreamNetworkError(f"{service}: request timeout: {e}")
    return UpstreamNetworkError(f"{service}: network error: {e}")
