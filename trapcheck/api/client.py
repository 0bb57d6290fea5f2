"""Synchronous HTTP client for the Circonus monitoring API.

Only the calls needed to resolve brokers and check bundles are implemented.
:class:`API` describes that surface so sessions can be handed any object
that provides it (tests pass mocks).
"""

from __future__ import annotations

import logging
import ssl
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

import httpx

from trapcheck.constants import APP_NAME, APP_VERSION, DEFAULT_API_TIMEOUT, DEFAULT_API_URL
from trapcheck.errors import APIError
from trapcheck.models import Broker, CheckBundle

logger = logging.getLogger(__name__)

SearchFilter = Mapping[str, Union[str, List[str]]]


class API(Protocol):
    """The monitoring API calls trapcheck depends on."""

    def get(self, path: str) -> bytes: ...

    def fetch_broker(self, cid: str) -> Broker: ...

    def fetch_brokers(self) -> List[Broker]: ...

    def search_brokers(
        self, query: Optional[str] = None, filters: Optional[SearchFilter] = None
    ) -> List[Broker]: ...

    def fetch_check_bundle(self, cid: str) -> CheckBundle: ...

    def create_check_bundle(self, bundle: CheckBundle) -> CheckBundle: ...

    def search_check_bundles(
        self, query: Optional[str] = None, filters: Optional[SearchFilter] = None
    ) -> List[CheckBundle]: ...

    def update_check_bundle(self, bundle: CheckBundle) -> CheckBundle: ...


class APIClient:
    """httpx-based implementation of :class:`API`.

    Parameters
    ----------
    token:
        API token, sent as ``X-Circonus-Auth-Token``.
    app_name:
        Application name registered with the token.
    base_url:
        Root URL of the API (default ``https://api.circonus.com/v2``).
    ca_file:
        Optional CA bundle for the API endpoint itself (private deployments).
    timeout:
        Request timeout in seconds.
    transport:
        Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        token: str,
        *,
        app_name: str = APP_NAME,
        base_url: str = DEFAULT_API_URL,
        ca_file: Optional[str] = None,
        timeout: float = DEFAULT_API_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not token:
            raise ValueError("API token is required")
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "X-Circonus-Auth-Token": token,
            "X-Circonus-App-Name": app_name,
            "Accept": "application/json",
            "User-Agent": f"{APP_NAME}/{APP_VERSION}",
        }
        self._verify: Any = ssl.create_default_context(cafile=ca_file) if ca_file else True
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    # ── lifecycle ───────────────────────────────────────────────────

    def _ensure_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
                verify=self._verify,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "APIClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ── transport ───────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        logger.debug("API %s %s", method, path)
        try:
            resp = client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise APIError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code < 200 or resp.status_code >= 300:
            raise APIError(f"{method} {path}", resp.status_code, resp.text.strip())
        return resp

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self._request(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise APIError(f"{method} {path} returned invalid JSON", resp.status_code) from exc

    @staticmethod
    def _search_params(
        query: Optional[str], filters: Optional[SearchFilter]
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if query:
            params["search"] = query
        if filters:
            params.update(filters)
        return params

    # ── public API ──────────────────────────────────────────────────

    def get(self, path: str) -> bytes:
        """Generic ``GET`` returning the raw response body."""
        return self._request("GET", path).content

    def fetch_broker(self, cid: str) -> Broker:
        return Broker.model_validate(self._json("GET", _cid_path("/broker", cid)))

    def fetch_brokers(self) -> List[Broker]:
        return [Broker.model_validate(b) for b in self._json("GET", "/broker")]

    def search_brokers(
        self, query: Optional[str] = None, filters: Optional[SearchFilter] = None
    ) -> List[Broker]:
        data = self._json("GET", "/broker", params=self._search_params(query, filters))
        return [Broker.model_validate(b) for b in data]

    def fetch_check_bundle(self, cid: str) -> CheckBundle:
        return CheckBundle.model_validate(self._json("GET", _cid_path("/check_bundle", cid)))

    def create_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        data = self._json("POST", "/check_bundle", json=bundle.to_api())
        return CheckBundle.model_validate(data)

    def search_check_bundles(
        self, query: Optional[str] = None, filters: Optional[SearchFilter] = None
    ) -> List[CheckBundle]:
        data = self._json("GET", "/check_bundle", params=self._search_params(query, filters))
        return [CheckBundle.model_validate(b) for b in data]

    def update_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        if not bundle.cid:
            raise ValueError("check bundle has no CID, cannot update")
        data = self._json("PUT", _cid_path("/check_bundle", bundle.cid), json=bundle.to_api())
        return CheckBundle.model_validate(data)


def _cid_path(prefix: str, cid: str) -> str:
    """Accept either a full CID (``/broker/123``) or the bare id (``123``)."""
    if not cid:
        raise ValueError("invalid cid (empty)")
    if cid.startswith(prefix + "/"):
        return cid
    return f"{prefix}/{cid.lstrip('/')}"
