"""
HTTP transport primitive used by the governor.

A transport sends exactly one request and reports the status; it never
retries. Status codes are returned, not raised. Timeouts and connection
failures are raised as transient errors.
"""
import logging
import time
from typing import Optional, Protocol

import requests

from ..errors import FatalAPIError, RequestTimeoutError, TransientAPIError
from .models import HttpRequest, HttpResponse

logger = logging.getLogger("governor.transport")


class Transport(Protocol):
    def send(self, request: HttpRequest, timeout: Optional[float] = None) -> HttpResponse:
        ...


class RequestsTransport:
    """Transport backed by a shared requests.Session."""

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()

    def send(self, request: HttpRequest, timeout: Optional[float] = None) -> HttpResponse:
        started = time.monotonic()
        try:
            response = self._session.request(
                request.method,
                request.url,
                headers=request.headers or None,
                data=request.body.encode("utf-8") if request.body is not None else None,
                timeout=timeout,
            )
        except requests.exceptions.Timeout as e:
            raise RequestTimeoutError(f"Request to {request.url} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientAPIError(
                f"Connection to {request.url} failed: {e}", kind="network_error"
            ) from e
        except requests.exceptions.RequestException as e:
            # Malformed URL, invalid headers and the like
            raise FatalAPIError(f"Request to {request.url} is invalid: {e}", kind="bad_request") from e

        logger.debug(f"{request.method} {request.url} -> {response.status_code}")
        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.text,
            elapsed=time.monotonic() - started,
        )

    def close(self) -> None:
        self._session.close()
