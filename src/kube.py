"""
Kubernetes API client - Async object store access over kubernetes_asyncio.

Provides the read, list, watch and conditional-write operations the
operator needs, addressed by kind through the scheme. Writes are JSON
merge patches; when a patch carries metadata.resourceVersion the API
server rejects it with 409 if the object changed since it was read, which
surfaces here as ConflictError.
"""

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp
from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client import ApiException

from scheme import ResourceKind, Scheme, get_scheme

logger = logging.getLogger(__name__)

DEFAULT_FIELD_MANAGER = "rosa-controlplane-operator"
DEFAULT_REQUEST_TIMEOUT = 30.0

# Reader methods of CoreV1Api for the core kinds in the scheme.
CORE_READERS = {
    "Secret": "read_namespaced_secret",
}


class ApiError(Exception):
    """Raised when a request to the API server fails."""

    def __init__(self, message: str, status: Optional[int] = None, reason: str = ""):
        self.message = message
        self.status = status
        self.reason = reason
        super().__init__(message)


class NotFoundError(ApiError):
    """Raised when the requested object does not exist."""


class ConflictError(ApiError):
    """Raised when a conditional write loses against a concurrent update."""


def _error_for_status(status: int, body: Any) -> ApiError:
    message = ""
    reason = ""
    if isinstance(body, dict):
        message = body.get("message", "")
        reason = body.get("reason", "")
    elif body:
        message = str(body)
    message = message or f"API request failed with status {status}"

    if status == 404:
        return NotFoundError(message, status, reason)
    if status == 409:
        return ConflictError(message, status, reason)
    return ApiError(message, status, reason)


def _translate(e: ApiException) -> ApiError:
    """Map a kubernetes_asyncio ApiException onto the operator's error types."""
    body: Any = e.body
    if isinstance(body, (bytes, bytearray)):
        body = body.decode(errors="replace")
    if isinstance(body, str) and body:
        try:
            body = json.loads(body)
        except json.JSONDecodeError:
            pass
    if not body:
        body = e.reason or ""
    return _error_for_status(e.status or 500, body)


class KubeClient:
    """
    Async client for the Kubernetes API.

    Objects are addressed by kind, resolved to API coordinates through the
    scheme. All payloads are plain dicts.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        scheme: Optional[Scheme] = None,
        field_manager: str = DEFAULT_FIELD_MANAGER,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.api_client = api_client
        self.scheme = scheme or get_scheme()
        self.field_manager = field_manager
        self.request_timeout = request_timeout
        self.custom_objects = client.CustomObjectsApi(api_client)
        self.core_v1 = client.CoreV1Api(api_client)

    @classmethod
    def in_cluster(cls, **kwargs) -> "KubeClient":
        """
        Connect with the pod's service account.

        Raises:
            kubernetes_asyncio.config.ConfigException: If not running in a pod
        """
        configuration = client.Configuration()
        config.load_incluster_config(client_configuration=configuration)
        return cls(client.ApiClient(configuration=configuration), **kwargs)

    @classmethod
    async def from_kubeconfig(
        cls, path: Optional[str] = None, context: Optional[str] = None, **kwargs
    ) -> "KubeClient":
        """Connect using a kubeconfig file, or ~/.kube/config when no path is given."""
        api_client = await config.new_client_from_config(
            config_file=path, context=context, persist_config=False
        )
        return cls(api_client, **kwargs)

    @classmethod
    async def from_kubeconfig_dict(
        cls, kubeconfig: Dict[str, Any], context: Optional[str] = None, **kwargs
    ) -> "KubeClient":
        """Connect using an already parsed kubeconfig document."""
        api_client = await config.new_client_from_config_dict(
            config_dict=kubeconfig, context=context
        )
        return cls(api_client, **kwargs)

    @classmethod
    async def from_env(cls, context: Optional[str] = None, **kwargs) -> "KubeClient":
        """
        Use in-cluster settings when available, otherwise the kubeconfig.

        An explicit context always selects the kubeconfig.
        """
        if os.getenv("KUBERNETES_SERVICE_HOST") and not context:
            return cls.in_cluster(**kwargs)
        return await cls.from_kubeconfig(os.getenv("KUBECONFIG"), context, **kwargs)

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.api_client.close()

    async def _call(self, description: str, method, *args, **kwargs) -> Any:
        try:
            return await method(*args, _request_timeout=self.request_timeout, **kwargs)
        except ApiException as e:
            raise _translate(e) from e
        except aiohttp.ClientError as e:
            raise ApiError(f"{description} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ApiError(f"{description} timed out") from e

    def _custom(self, kind: str) -> ResourceKind:
        resource_kind = self.scheme.lookup(kind)
        if not resource_kind.group:
            raise ValueError(f"Kind '{kind}' is not a custom resource")
        return resource_kind

    async def get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        """
        Read an object.

        Raises:
            NotFoundError: If the object does not exist
            ApiError: On any other failure
        """
        resource_kind = self.scheme.lookup(kind)
        description = f"get {kind} {namespace}/{name}"

        if not resource_kind.group:
            reader = getattr(self.core_v1, CORE_READERS[kind])
            obj = await self._call(description, reader, name, namespace)
            return self.api_client.sanitize_for_serialization(obj)

        return await self._call(
            description,
            self.custom_objects.get_namespaced_custom_object,
            resource_kind.group,
            resource_kind.version,
            namespace,
            resource_kind.plural,
            name,
        )

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        List objects of a kind.

        Returns:
            The list object, with 'items' and 'metadata.resourceVersion'
        """
        resource_kind = self._custom(kind)
        kwargs = {}
        if label_selector:
            kwargs["label_selector"] = label_selector

        if namespace:
            return await self._call(
                f"list {kind} in {namespace}",
                self.custom_objects.list_namespaced_custom_object,
                resource_kind.group,
                resource_kind.version,
                namespace,
                resource_kind.plural,
                **kwargs,
            )
        return await self._call(
            f"list {kind}",
            self.custom_objects.list_cluster_custom_object,
            resource_kind.group,
            resource_kind.version,
            resource_kind.plural,
            **kwargs,
        )

    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Apply a JSON merge patch to an object (excluding status).

        Include metadata.resourceVersion in the patch to make the write
        conditional on the object being unchanged.

        Raises:
            ConflictError: If the resourceVersion precondition fails
        """
        resource_kind = self._custom(kind)
        return await self._call(
            f"patch {kind} {namespace}/{name}",
            self.custom_objects.patch_namespaced_custom_object,
            resource_kind.group,
            resource_kind.version,
            namespace,
            resource_kind.plural,
            name,
            patch,
            field_manager=self.field_manager,
        )

    async def patch_status(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply a JSON merge patch to the status subresource of an object."""
        resource_kind = self._custom(kind)
        return await self._call(
            f"patch {kind} {namespace}/{name} status",
            self.custom_objects.patch_namespaced_custom_object_status,
            resource_kind.group,
            resource_kind.version,
            namespace,
            resource_kind.plural,
            name,
            patch,
            field_manager=self.field_manager,
        )

    async def watch(
        self,
        kind: str,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream watch events for a kind.

        Yields raw watch events ({'type': ..., 'object': ...}) until the
        server closes the stream.

        Raises:
            ApiError: If the watch fails (410 when the resource version is
                too old)
        """
        resource_kind = self._custom(kind)
        kwargs: Dict[str, Any] = {
            "allow_watch_bookmarks": True,
            "timeout_seconds": timeout_seconds,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version

        if namespace:
            func = self.custom_objects.list_namespaced_custom_object
            args = (resource_kind.group, resource_kind.version, namespace, resource_kind.plural)
        else:
            func = self.custom_objects.list_cluster_custom_object
            args = (resource_kind.group, resource_kind.version, resource_kind.plural)

        description = f"watch {kind}"
        try:
            async with watch.Watch() as stream:
                async for event in stream.stream(func, *args, **kwargs):
                    obj = event.get("raw_object", event.get("object")) or {}
                    if event.get("type") == "ERROR":
                        raise _error_for_status(obj.get("code", 500), obj)
                    yield {"type": event.get("type"), "object": obj}
        except ApiException as e:
            raise _translate(e) from e
        except aiohttp.ClientError as e:
            raise ApiError(f"{description} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ApiError(f"{description} timed out") from e
