# ABOUTME: Kubernetes API client wrapper with retry logic and error mapping
# ABOUTME: Provides an async list/get/create/update/delete interface shared across applications

"""
Kubernetes API client with structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module provides the HTTP client the controller uses to read and write
objects on a destination cluster. It handles:

1. HTTP COMMUNICATION: list/get/create/update/delete against the REST API
2. AUTHENTICATION: Bearer token on every request
3. ERROR MAPPING: HTTP failures become the controller's error taxonomy
4. READ RETRIES: GETs are retried on timeouts with exponential backoff
5. CONNECTION SHARING: one pool per cluster, used by every Application

=============================================================================
KUBERNETES REST API OVERVIEW
=============================================================================

Core kinds live under /api/v1, everything else under /apis/<group>/<version>:

    GET    /api/v1/namespaces/web/configmaps?labelSelector=app=x   - list
    GET    /apis/apps/v1/namespaces/web/deployments/api             - get
    POST   /apis/apps/v1/namespaces/web/deployments                 - create
    PUT    /apis/apps/v1/namespaces/web/deployments/api             - update
    DELETE /apis/apps/v1/namespaces/web/deployments/api             - delete

Errors come back as a Status object:
    {"kind": "Status", "code": 409, "reason": "Conflict", "message": "..."}

=============================================================================
WHY ONLY READS RETRY HERE?
=============================================================================

Writes are retried by the sync engine, which needs to see every attempt to
count retries, refresh resourceVersion between attempts and stop early when a
sync is cancelled. Reads have none of those concerns and retry right here.
An update carries the resourceVersion it was computed from, so a retried
write can never silently clobber a newer object: the API server answers 409
and the engine re-reads.

=============================================================================
CONCURRENCY
=============================================================================

httpx.AsyncClient is safe to share between tasks. ClientPool opens one per
configured cluster at startup, and every Application reconciling against that
cluster goes through it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_sync.errors import (
    NotFound,
    PermissionDenied,
    TargetError,
    TargetUnreachable,
    TransientTargetError,
    ValidationError,
)

if TYPE_CHECKING:
    from gitops_sync.config import ClusterConnection
    from gitops_sync.kinds import KindInfo

logger = structlog.get_logger(__name__)


# =============================================================================
# ERROR MAPPING
# =============================================================================


def error_from_response(response: httpx.Response) -> TargetError:
    """
    Convert an error response into the matching TargetError subclass.

        401, 403          -> PermissionDenied   (fatal)
        400, 422          -> ValidationError    (fatal for this object)
        404, 410          -> NotFound
        409, 429, 5xx     -> TransientTargetError (retryable)
    """
    code = response.status_code
    message = f"HTTP {code}"
    reason: str | None = None
    details: str | None = None
    try:
        body = response.json()
        message = body.get("message", message)
        reason = body.get("reason")
        details = reason
    except Exception:
        details = response.text[:200] if response.text else None

    if code in (401, 403):
        return PermissionDenied(code, message, details, reason)
    if code in (400, 422):
        return ValidationError(code, message, details, reason)
    if code in (404, 410):
        return NotFound(code, message, details, reason)
    if code in (409, 429) or code >= 500:
        return TransientTargetError(code, message, details, reason)
    return TargetError(code, message, details, reason)


# =============================================================================
# KUBERNETES CLIENT
# =============================================================================


class KubeClient:
    """
    Async Kubernetes API client.

    LIFECYCLE:
    ----------
        async with KubeClient(cluster) as client:
            objs = await client.list_objects(info, label_selector="app=x")
    """

    def __init__(
        self,
        cluster: ClusterConnection,
        timeout: float = 30.0,
    ) -> None:
        self._cluster = cluster
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self._cluster.name

    async def __aenter__(self) -> KubeClient:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        token = self._cluster.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self._cluster.url,
            headers=headers,
            timeout=self._timeout,
            verify=not self._cluster.insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make one HTTP request and map failures.

        Raises:
            TargetUnreachable: timeout or connection failure
            TargetError subclass: error response (see error_from_response)
            RuntimeError: client not initialized (forgot async with)
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path, cluster=self._cluster.name)
        log.debug("Making Kubernetes API request")

        try:
            response = await self._client.request(method, path, params=params, json=json_data)
        except httpx.TimeoutException as e:
            log.warning("Kubernetes API request timed out")
            raise TargetUnreachable("request timed out", f"{method} {path}") from e
        except httpx.TransportError as e:
            log.warning("Kubernetes API unreachable", error=str(e))
            raise TargetUnreachable("cluster unreachable", str(e)) from e

        if response.status_code >= 400:
            error = error_from_response(response)
            log.warning("Kubernetes API error", status=response.status_code, error=error.message)
            raise error

        result = response.json() if response.content else {}
        return result if isinstance(result, dict) else {}

    @retry(
        retry=retry_if_exception_type(TargetUnreachable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("GET", path, params=params)

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def list_objects(
        self,
        info: KindInfo,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        List objects of one kind.

        List responses omit kind/apiVersion on each item; they are filled in
        so items look exactly like objects returned by get_object. A 404 on
        the collection means the kind is not served yet (its CRD is not
        installed) and yields an empty list.
        """
        params = {"labelSelector": label_selector} if label_selector else None
        try:
            data = await self._get(info.collection_path(namespace), params=params)
        except NotFound:
            return []

        items = data.get("items") or []
        for item in items:
            item.setdefault("kind", info.kind)
            item.setdefault("apiVersion", info.api_version)
        return list(items)

    async def get_object(
        self,
        info: KindInfo,
        name: str,
        namespace: str | None = None,
    ) -> dict[str, Any] | None:
        """Get one object, None when it does not exist."""
        try:
            data = await self._get(info.object_path(name, namespace))
        except NotFound:
            return None
        data.setdefault("kind", info.kind)
        data.setdefault("apiVersion", info.api_version)
        return data

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    async def create_object(self, info: KindInfo, manifest: dict[str, Any]) -> dict[str, Any]:
        namespace = (manifest.get("metadata") or {}).get("namespace")
        return await self._request("POST", info.collection_path(namespace), json_data=manifest)

    async def update_object(self, info: KindInfo, manifest: dict[str, Any]) -> dict[str, Any]:
        """Replace an object. The manifest must carry metadata.resourceVersion."""
        metadata = manifest.get("metadata") or {}
        path = info.object_path(metadata["name"], metadata.get("namespace"))
        return await self._request("PUT", path, json_data=manifest)

    async def delete_object(
        self,
        info: KindInfo,
        name: str,
        namespace: str | None = None,
    ) -> bool:
        """
        Delete an object with background propagation.

        Returns False when it was already gone, which callers treat as success.
        """
        body = {"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": "Background"}
        try:
            await self._request("DELETE", info.object_path(name, namespace), json_data=body)
        except NotFound:
            return False
        return True


# =============================================================================
# SHARED CONNECTION POOL
# =============================================================================


class ClientPool:
    """One KubeClient per configured cluster, opened and closed together."""

    def __init__(self, clusters: list[ClusterConnection], timeout: float = 30.0) -> None:
        self._clients = {c.name: KubeClient(c, timeout=timeout) for c in clusters}

    async def __aenter__(self) -> ClientPool:
        for name, client in self._clients.items():
            await client.__aenter__()
            logger.info("Connected to cluster", cluster=name)
        return self

    async def __aexit__(self, *args: object) -> None:
        for name, client in self._clients.items():
            await client.__aexit__(None, None, None)
            logger.info("Disconnected from cluster", cluster=name)

    @property
    def names(self) -> list[str]:
        return list(self._clients)

    def get(self, name: str) -> KubeClient:
        if name not in self._clients:
            raise ValueError(f"Unknown cluster '{name}'. Available: {self.names}")
        return self._clients[name]
