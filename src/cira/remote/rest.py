"""HTTP clients for a hosted PostgREST record store and object storage.

Both clients share one ``requests.Session`` with a retrying adapter.
Every ``requests`` failure is re-raised as ``TransportFailure``.
"""

import logging
from typing import Any, NoReturn, Optional, Sequence
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import BackendConfig
from ..errors import NotAuthenticated, TransportFailure
from .base import Filter, ObjectStore, RecordStore

logger = logging.getLogger(__name__)


def create_session(config: BackendConfig) -> requests.Session:
    """Session with retry on throttling and gateway errors plus auth headers."""
    session = requests.Session()

    retry_strategy = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=None,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    if config.api_key:
        session.headers["apikey"] = config.api_key
    token = config.access_token or config.api_key
    if token:
        session.headers["Authorization"] = f"Bearer {token}"
    return session


def _raise_transport(action: str, error: requests.RequestException) -> NoReturn:
    status = error.response.status_code if error.response is not None else None
    raise TransportFailure(f"{action} failed: {error}", status_code=status) from error


class RestRecordStore(RecordStore):
    """Record store backed by PostgREST (``/rest/v1``) and GoTrue (``/auth/v1``)."""

    def __init__(self, config: BackendConfig, session: Optional[requests.Session] = None):
        if not config.api_url:
            raise NotAuthenticated("Backend API URL not configured. Set CIRA_API_URL or api_url in config.")
        self.config = config
        self.base_url = config.api_url.rstrip("/")
        self.session = session or create_session(config)
        self.timeout = config.http_timeout_seconds
        self._identity: Optional[str] = None

    def _table_url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def upsert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.session.post(
                self._table_url(table),
                params={"on_conflict": "id"},
                json=record,
                headers={"Prefer": "resolution=merge-duplicates,return=representation"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            _raise_transport(f"Upsert into {table}", e)

        data = response.json() if response.content else None
        if isinstance(data, list) and data:
            return data[0]
        if isinstance(data, dict):
            return data
        return record

    def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[str] = None,
        limit: Optional[int] = None,
        select: str = "*",
        offset: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, Any]] = [("select", select)]
        params.extend(f.to_param() for f in filters)
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", limit))
        if offset:
            params.append(("offset", offset))

        try:
            response = self.session.get(self._table_url(table), params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            _raise_transport(f"Query on {table}", e)

        data = response.json()
        if not isinstance(data, list):
            raise TransportFailure(f"Query on {table} returned {type(data).__name__}, expected a list")
        return data

    def delete(self, table: str, filters: Sequence[Filter]) -> None:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        try:
            response = self.session.delete(
                self._table_url(table),
                params=[f.to_param() for f in filters],
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            _raise_transport(f"Delete from {table}", e)

    def rpc(self, function: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            response = self.session.post(
                f"{self.base_url}/rest/v1/rpc/{function}",
                json=params,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            _raise_transport(f"RPC {function}", e)
        data = response.json()
        return data if isinstance(data, list) else [data]

    def current_identity(self) -> Optional[str]:
        """Resolve the user behind the access token (cached after first success)."""
        if self._identity is not None:
            return self._identity
        if not self.config.access_token:
            return None

        try:
            response = self.session.get(f"{self.base_url}/auth/v1/user", timeout=self.timeout)
        except requests.RequestException as e:
            _raise_transport("Identity lookup", e)

        if response.status_code in (401, 403):
            logger.warning("Access token rejected by auth endpoint")
            return None
        try:
            response.raise_for_status()
        except requests.RequestException as e:
            _raise_transport("Identity lookup", e)

        user_id = response.json().get("id")
        self._identity = str(user_id).lower() if user_id else None
        return self._identity


class RestObjectStore(ObjectStore):
    """Object storage under ``/storage/v1``."""

    def __init__(self, config: BackendConfig, session: Optional[requests.Session] = None):
        if not config.api_url:
            raise NotAuthenticated("Backend API URL not configured. Set CIRA_API_URL or api_url in config.")
        self.base_url = config.api_url.rstrip("/")
        self.session = session or create_session(config)
        self.timeout = config.http_timeout_seconds

    def _object_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{bucket}/{quote(path)}"

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        try:
            response = self.session.post(
                self._object_url(bucket, path),
                data=data,
                headers={"Content-Type": content_type, "x-upsert": "true"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            _raise_transport(f"Upload {bucket}/{path}", e)
        logger.debug(f"Uploaded {len(data)} bytes to {bucket}/{path}")
        return path

    def download(self, bucket: str, path: str) -> bytes:
        try:
            response = self.session.get(self._object_url(bucket, path), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            _raise_transport(f"Download {bucket}/{path}", e)
        return response.content

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{quote(path)}"

    def delete(self, bucket: str, paths: Sequence[str]) -> None:
        if not paths:
            return
        try:
            response = self.session.delete(
                f"{self.base_url}/storage/v1/object/{bucket}",
                json={"prefixes": list(paths)},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            _raise_transport(f"Delete from {bucket}", e)
