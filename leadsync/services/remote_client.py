"""HTTP client for the partner system's sync endpoints"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from leadsync.config import settings

logger = logging.getLogger(__name__)

# Status codes that are worth retrying even though they are 4xx.
_RETRYABLE_4XX = (408, 429)


class RemoteSyncError(Exception):
    """Base class for partner call failures"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteSyncError):
    """Network error, timeout, 5xx, 408 or 429: the same request may succeed later."""


class PermanentRemoteError(RemoteSyncError):
    """Any other 4xx: the partner rejected the request and retrying cannot help."""


class RemoteClient:
    """Wrapper for the partner's /sync-ingest and /sync-records endpoints"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        source_tag: str,
        timeout: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client. `transport` is only overridden in tests."""
        if not base_url:
            raise ValueError("Remote base URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.source_tag = source_tag
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.http = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @staticmethod
    def _classify(response: httpx.Response) -> None:
        """Raise the matching RemoteSyncError for a non-2xx response."""
        if response.is_success:
            return
        rc = response.status_code
        body = (response.text or "")[:500]
        message = f"HTTP {rc} from {response.request.url}: {body}"
        if rc >= 500 or rc in _RETRYABLE_4XX:
            raise TransientRemoteError(message, status_code=rc)
        raise PermanentRemoteError(message, status_code=rc)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"Timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Network error calling {path}: {e}") from e
        self._classify(response)
        return response

    @staticmethod
    def _with_retries(fn, *, max_attempts: int = 3, base_delay_s: float = 0.5):
        """Run a read-only callable with small exponential backoff on transient errors.

        Pushes are never retried here; their retry budget belongs to the queue.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except TransientRemoteError:
                if attempt >= max_attempts:
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    def push(self, record: Dict[str, Any], operation: str) -> Dict[str, Any]:
        """POST one change to the partner's ingestion endpoint."""
        body = {"record": record, "source": self.source_tag, "operation": operation}
        response = self._request("POST", "/sync-ingest", json=body)
        try:
            return response.json()
        except ValueError:
            return {}

    def list_records(
        self,
        *,
        updated_after: Optional[datetime] = None,
        page_size: int = 500,
    ) -> List[Dict[str, Any]]:
        """Fetch every partner record (optionally only those updated after a point in time)."""
        params: Dict[str, Any] = {"limit": page_size}
        if updated_after is not None:
            # Our DB uses UTC tz-naive; assume UTC if tzinfo is missing.
            if updated_after.tzinfo is None:
                updated_after = updated_after.replace(tzinfo=timezone.utc)
            params["updated_after"] = updated_after.isoformat()

        records: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page_params = dict(params, offset=offset)
            response = self._with_retries(
                lambda: self._request("GET", "/sync-records", params=page_params)
            )
            page = response.json().get("records") or []
            records.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        return records

    def get_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one partner record, returning None on 404."""
        try:
            response = self._with_retries(
                lambda: self._request("GET", f"/sync-records/{record_id}")
            )
        except PermanentRemoteError as e:
            if e.status_code == 404:
                return None
            raise
        return response.json().get("record")

    def ping(self) -> float:
        """Round-trip a minimal export request; returns latency in milliseconds."""
        started = time.monotonic()
        self._request("GET", "/sync-records", params={"limit": 1})
        return (time.monotonic() - started) * 1000.0


def build_remote_client(config=None, transport: Optional[httpx.BaseTransport] = None) -> RemoteClient:
    """Create a RemoteClient from application settings."""
    config = config or settings
    return RemoteClient(
        config.remote_base_url,
        config.remote_api_key,
        source_tag=config.system_tag,
        timeout=config.http_timeout_seconds,
        transport=transport,
    )
