"""HTTP transport for delivering queued submissions to the authoritative store.

A thin wrapper around ``urllib`` that posts JSON bodies and decodes JSON
responses. Blocking I/O runs in a worker thread so the sync queue's event
loop keeps serving other callbacks. The transport never retries; retry
policy belongs to the queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from http.client import HTTPException
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from herbtrace import __version__
from herbtrace.core.protocols import TransportError

DEFAULT_TIMEOUT = 10.0

logger = logging.getLogger(__name__)


class UrllibTransport:
    """POST JSON payloads to ``base_url`` + endpoint.

    Implements the Transport protocol.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float | None = DEFAULT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ):
        """Initialize transport.

        Args:
            base_url: Root URL of the authoritative store
            timeout: Socket timeout in seconds for one request
            headers: Extra headers merged over the defaults
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {
            "Content-Type": "application/json",
            "User-Agent": f"herbtrace-sync/{__version__}",
            "X-Mobile-Client": "true",
        }
        if headers:
            self.headers.update(headers)

    async def post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        body = json.dumps(payload).encode("utf-8")
        return await asyncio.to_thread(self._post_blocking, url, body)

    def _post_blocking(self, url: str, body: bytes) -> Dict[str, Any]:
        """Perform one request, mapping every failure to TransportError."""
        request = Request(url, data=body, headers=self.headers, method="POST")
        logger.debug(f"POST {url}")
        try:
            with urlopen(request, timeout=self.timeout) as resp:
                status = getattr(resp, "status", 200)
                if not 200 <= status < 300:
                    raise TransportError(f"HTTP {status} from {url}")
                data = json.load(resp)
        except HTTPError as e:
            raise TransportError(f"HTTP {e.code}: {e.reason}") from e
        except (URLError, socket.timeout, ConnectionError, HTTPException) as e:
            raise TransportError(f"Network error for {url}: {e}") from e
        except ValueError as e:
            # Undecodable bytes or malformed JSON
            raise TransportError(f"Invalid response body from {url}: {e}") from e

        if not isinstance(data, dict):
            raise TransportError(f"Unexpected response body from {url}")
        return data
