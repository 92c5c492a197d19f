"""Remote backend client.

The backend exposes a PostgREST-style REST endpoint per table. Upserts are
keyed by ``id`` so re-sending the same record is idempotent.
"""

import logging
import re
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from companion.config import validate_backend_url
from companion.errors import RemoteError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
_TABLE_RE = re.compile(r"^[a-z][a-z0-9_]*$")


@runtime_checkable
class RemoteBackend(Protocol):
    """What the sync engine needs from a backend."""

    async def upsert(self, table: str, record: Dict[str, Any]) -> None: ...

    async def delete(self, table: str, remote_id: str, user_id: str) -> None: ...


def _table_path(table: str) -> str:
    if not _TABLE_RE.match(table):
        raise RemoteError(f"Invalid remote table name: {table}")
    return f"/rest/v1/{table}"


class HttpRemoteBackend:
    """httpx-based client for the REST backend.

    Args:
        base_url: Backend URL (https, or http for localhost only)
        api_key: Project API key, sent as ``apikey``
        auth_token: User access token; defaults to the API key
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        auth_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        validated = validate_backend_url(base_url)
        if not validated:
            raise ValueError(f"Invalid backend URL: {base_url}")
        if not api_key:
            raise ValueError("api_key is required")

        self.base_url = validated.rstrip("/")
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {auth_token or api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_credentials(
        cls, credentials: Dict[str, str], timeout: float = DEFAULT_TIMEOUT
    ) -> "HttpRemoteBackend":
        return cls(
            credentials["backend_url"],
            credentials["api_key"],
            auth_token=credentials.get("auth_token"),
            timeout=timeout,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise RemoteError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            detail = response.text[:200] if response.text else response.reason_phrase
            raise RemoteError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response

    async def upsert(self, table: str, record: Dict[str, Any]) -> None:
        await self._request(
            "POST",
            _table_path(table),
            params={"on_conflict": "id"},
            json=record,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )
        logger.debug(f"Upserted {table}/{record.get('id')}")

    async def delete(self, table: str, remote_id: str, user_id: str) -> None:
        await self._request(
            "DELETE",
            _table_path(table),
            params={"id": f"eq.{remote_id}", "user_id": f"eq.{user_id}"},
        )
        logger.debug(f"Deleted remote {table}/{remote_id}")

    async def check_reachability(self) -> bool:
        """True if the backend health endpoint answers without error."""
        try:
            await self._request("GET", "/health")
            return True
        except RemoteError as e:
            logger.debug(f"Backend unreachable: {e}")
            return False

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "HttpRemoteBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
