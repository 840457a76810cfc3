"""
OpenShift Cluster Manager client - External cluster-management service.

Implements the ClusterService interface consumed by the reconciler on top
of the OCM clusters_mgmt/v1 REST API. Requests are authenticated with a
token taken from the OCM_TOKEN environment variable; offline (refresh)
tokens are exchanged for short-lived access tokens at the SSO endpoint.
"""

import asyncio
import base64
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from clusterspec import ClusterRecord

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openshift.com"
DEFAULT_TOKEN_URL = (
    "https://sso.redhat.com/auth/realms/redhat-external/protocol/openid-connect/token"
)
DEFAULT_CLIENT_ID = "cloud-services"
CLUSTERS_PATH = "/api/clusters_mgmt/v1/clusters"

# Seconds before expiry at which a cached access token is refreshed.
TOKEN_REFRESH_MARGIN = 60


class OCMError(Exception):
    """Raised when a request to OpenShift Cluster Manager fails."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: str = "",
        operation_id: str = "",
    ):
        self.message = message
        self.status = status
        self.code = code
        self.operation_id = operation_id
        super().__init__(message)


class ClusterState:
    """Cluster states reported by OCM."""

    WAITING = "waiting"
    PENDING = "pending"
    VALIDATING = "validating"
    INSTALLING = "installing"
    READY = "ready"
    ERROR = "error"
    UNINSTALLING = "uninstalling"
    UNKNOWN = "unknown"


@dataclass
class ExternalCluster:
    """A cluster as returned by OCM."""

    id: str
    name: str
    state: str = ClusterState.UNKNOWN
    console_url: str = ""
    api_url: str = ""
    oidc_endpoint_url: str = ""
    status_description: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_ready(self) -> bool:
        return self.state == ClusterState.READY

    @property
    def is_error(self) -> bool:
        return self.state == ClusterState.ERROR

    @property
    def is_uninstalling(self) -> bool:
        return self.state == ClusterState.UNINSTALLING

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> "ExternalCluster":
        sts = (body.get("aws") or {}).get("sts") or {}
        return cls(
            id=body.get("id", ""),
            name=body.get("name", ""),
            state=body.get("state", ClusterState.UNKNOWN),
            console_url=(body.get("console") or {}).get("url", ""),
            api_url=(body.get("api") or {}).get("url", ""),
            oidc_endpoint_url=sts.get("oidc_endpoint_url", ""),
            status_description=(body.get("status") or {}).get("description", ""),
            raw=body,
        )


class ClusterService(ABC):
    """
    Abstract interface to the external cluster-management service.

    Every method is a single remote round trip; implementations must not
    retry internally and must honour task cancellation.
    """

    @abstractmethod
    async def create_cluster(self, record: ClusterRecord) -> ExternalCluster:
        """
        Submit a cluster for creation.

        Args:
            record: The cluster description

        Returns:
            The created cluster with its service-assigned identifier

        Raises:
            OCMError: If the service rejects the request
        """
        pass

    @abstractmethod
    async def get_cluster(self, cluster_id: str) -> Optional[ExternalCluster]:
        """Get a cluster by identifier, or None if it does not exist."""
        pass

    @abstractmethod
    async def find_cluster(self, name: str) -> Optional[ExternalCluster]:
        """Find a cluster by name, or None if there is none."""
        pass

    @abstractmethod
    async def delete_cluster(self, cluster_id: str) -> None:
        """
        Request deprovisioning of a cluster.

        Deleting a cluster that no longer exists is not an error.
        """
        pass

    async def close(self) -> None:
        """Release any connections held by the service."""
        pass


def _parse_body(text: str) -> Any:
    """Parse a JSON response body, or return None when it is not JSON."""
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _search_literal(value: str) -> str:
    """Quote a value for an OCM search expression."""
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _jwt_claims(token: str) -> Dict[str, Any]:
    """Decode the claims of a JWT without verifying it."""
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, json.JSONDecodeError):
        return {}


class OCMClusterService(ClusterService):
    """ClusterService backed by the OCM clusters_mgmt/v1 API."""

    def __init__(
        self,
        token: str,
        api_url: str = DEFAULT_API_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        client_id: str = DEFAULT_CLIENT_ID,
        timeout: float = 60.0,
    ):
        if not token:
            logger.warning("OCM token not configured. Set OCM_TOKEN environment variable.")
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._access_token: Optional[str] = None
        self._access_token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _is_refresh_token(self) -> bool:
        return _jwt_claims(self.token).get("typ") in ("Refresh", "Offline")

    async def _get_access_token(self) -> str:
        """Return a usable access token, exchanging the offline token if needed."""
        if not self._is_refresh_token():
            return self.token

        async with self._token_lock:
            if self._access_token and time.monotonic() < self._access_token_expiry:
                return self._access_token

            data = {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "refresh_token": self.token,
            }
            try:
                async with self._get_session().post(self.token_url, data=data) as response:
                    text = await response.text()
                    status = response.status
            except aiohttp.ClientError as e:
                raise OCMError(f"Failed to obtain access token: {e}") from e
            except asyncio.TimeoutError as e:
                raise OCMError(
                    f"Failed to obtain access token: timed out after {self.timeout}s"
                ) from e

            body = _parse_body(text)
            if status != 200:
                detail = body.get("error_description", "") if isinstance(body, dict) else text
                raise OCMError(
                    f"Failed to obtain access token: {status} - {str(detail).strip()}",
                    status=status,
                )
            if not isinstance(body, dict) or not body.get("access_token"):
                raise OCMError("Token endpoint response carries no access_token", status=status)

            self._access_token = body["access_token"]
            expires_in = int(body.get("expires_in", 300))
            self._access_token_expiry = (
                time.monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN, 0)
            )
            logger.debug("Obtained OCM access token")
            return self._access_token

    async def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = await self._get_access_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        url = f"{self.api_url}{path}"
        headers = await self._get_headers()
        try:
            async with self._get_session().request(
                method, url, params=params, json=body, headers=headers
            ) as response:
                if response.status == 404 and allow_not_found:
                    return None
                if response.status == 204:
                    return {}
                text = await response.text()
                status = response.status
        except aiohttp.ClientError as e:
            raise OCMError(f"{method} {path} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise OCMError(f"{method} {path} timed out after {self.timeout}s") from e

        payload = _parse_body(text)
        if status >= 400:
            if not isinstance(payload, dict):
                raise OCMError(
                    f"{method} {path} failed with status {status}: {text.strip()[:200]}",
                    status=status,
                )
            raise OCMError(
                payload.get("reason") or f"{method} {path} failed with status {status}",
                status=status,
                code=payload.get("code", ""),
                operation_id=payload.get("operation_id", ""),
            )
        if payload is None and not text.strip():
            return {}
        if not isinstance(payload, dict):
            raise OCMError(
                f"{method} {path} returned an unexpected body: {text.strip()[:200]}",
                status=status,
            )
        return payload

    async def create_cluster(self, record: ClusterRecord) -> ExternalCluster:
        body = await self._request("POST", CLUSTERS_PATH, body=record.to_dict())
        cluster = ExternalCluster.from_dict(body or {})
        logger.info(f"Created OCM cluster {cluster.name} ({cluster.id})")
        return cluster

    async def get_cluster(self, cluster_id: str) -> Optional[ExternalCluster]:
        body = await self._request(
            "GET", f"{CLUSTERS_PATH}/{cluster_id}", allow_not_found=True
        )
        if body is None:
            return None
        return ExternalCluster.from_dict(body)

    async def find_cluster(self, name: str) -> Optional[ExternalCluster]:
        body = await self._request(
            "GET",
            CLUSTERS_PATH,
            params={"search": f"name = {_search_literal(name)}", "size": "1"},
        )
        items = (body or {}).get("items") or []
        if not items:
            return None
        return ExternalCluster.from_dict(items[0])

    async def delete_cluster(self, cluster_id: str) -> None:
        await self._request(
            "DELETE", f"{CLUSTERS_PATH}/{cluster_id}", allow_not_found=True
        )
        logger.info(f"Requested deletion of OCM cluster {cluster_id}")
