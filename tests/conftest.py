# ABOUTME: Pytest fixtures and configuration for gitops-sync tests
# ABOUTME: Provides settings, safety guards, an in-memory fake cluster and manifest factories

import copy
import os
from pathlib import Path
from typing import Any, AsyncIterator, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml
from pydantic import SecretStr

from gitops_sync.config import ClusterConnection, ControllerSettings, SecuritySettings
from gitops_sync.errors import NotFound, TransientTargetError
from gitops_sync.kinds import KindInfo
from gitops_sync.models import Application, Destination, RendererType, SourceRef, SyncPolicy
from gitops_sync.store import StateStore
from gitops_sync.utils.client import KubeClient
from gitops_sync.utils.safety import SafetyGuard

OWNER_LABEL = "app.kubernetes.io/instance"


# =============================================================================
# FAKE CLUSTER
# =============================================================================


class FakeCluster:
    """
    In-memory stand-in for KubeClient.

    Objects are keyed by (kind, namespace, name). Writes bump a global
    resourceVersion and are recorded in ``writes``. Errors queued with
    ``fail`` are raised by the next matching calls, one per call.
    """

    def __init__(self, name: str = "in-cluster") -> None:
        self.name = name
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.writes: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str, str], list[Exception]] = {}
        self._version = 0

    @staticmethod
    def _key(kind: str, name: str, namespace: str | None) -> tuple[str, str, str]:
        return kind, namespace or "", name

    def _stamp(self, manifest: dict[str, Any]) -> dict[str, Any]:
        self._version += 1
        body = copy.deepcopy(manifest)
        metadata = body.setdefault("metadata", {})
        metadata["resourceVersion"] = str(self._version)
        metadata.setdefault("uid", f"uid-{self._version}")
        return body

    def put(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Seed an object directly, bypassing failures and the write log."""
        body = self._stamp(manifest)
        metadata = body["metadata"]
        self.objects[self._key(body["kind"], metadata["name"], metadata.get("namespace"))] = body
        return body

    def fail(self, operation: str, kind: str, name: str, *errors: Exception) -> None:
        self._failures.setdefault((operation, kind, name), []).extend(errors)

    def _maybe_fail(self, operation: str, kind: str, name: str) -> None:
        queued = self._failures.get((operation, kind, name))
        if queued:
            raise queued.pop(0)

    def find(self, kind: str, name: str, namespace: str = "") -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    async def list_objects(
        self,
        info: KindInfo,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        self._maybe_fail("list", info.kind, "*")
        label, _, value = (label_selector or "").partition("=")
        found = []
        for (kind, ns, _name), obj in self.objects.items():
            if kind != info.kind or (namespace and ns != namespace):
                continue
            labels = obj["metadata"].get("labels") or {}
            if label and labels.get(label) != value:
                continue
            found.append(copy.deepcopy(obj))
        return found

    async def get_object(self, info: KindInfo, name: str, namespace: str | None = None) -> dict[str, Any] | None:
        self._maybe_fail("get", info.kind, name)
        obj = self.objects.get(self._key(info.kind, name, namespace))
        return copy.deepcopy(obj) if obj else None

    async def create_object(self, info: KindInfo, manifest: dict[str, Any]) -> dict[str, Any]:
        metadata = manifest["metadata"]
        self._maybe_fail("create", info.kind, metadata["name"])
        key = self._key(info.kind, metadata["name"], metadata.get("namespace"))
        if key in self.objects:
            raise TransientTargetError(409, f"{info.kind} already exists", "AlreadyExists", "AlreadyExists")
        self.objects[key] = self._stamp(manifest)
        self.writes.append(("create", f"{info.kind}/{metadata['name']}"))
        return copy.deepcopy(self.objects[key])

    async def update_object(self, info: KindInfo, manifest: dict[str, Any]) -> dict[str, Any]:
        metadata = manifest["metadata"]
        self._maybe_fail("update", info.kind, metadata["name"])
        key = self._key(info.kind, metadata["name"], metadata.get("namespace"))
        current = self.objects.get(key)
        if current is None:
            raise NotFound(404, f"{info.kind} not found")
        if metadata.get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise TransientTargetError(409, "object has been modified", "Conflict", "Conflict")
        body = self._stamp(manifest)
        body["metadata"]["uid"] = current["metadata"]["uid"]
        if "status" in current:
            body["status"] = current["status"]
        self.objects[key] = body
        self.writes.append(("update", f"{info.kind}/{metadata['name']}"))
        return copy.deepcopy(body)

    async def delete_object(self, info: KindInfo, name: str, namespace: str | None = None) -> bool:
        self._maybe_fail("delete", info.kind, name)
        existed = self.objects.pop(self._key(info.kind, name, namespace), None) is not None
        self.writes.append(("delete", f"{info.kind}/{name}"))
        return existed


class FakePool:
    """ClientPool look-alike serving FakeCluster instances."""

    def __init__(self, *clusters: FakeCluster) -> None:
        self._clients = {c.name: c for c in clusters}

    @property
    def names(self) -> list[str]:
        return list(self._clients)

    def get(self, name: str) -> FakeCluster:
        if name not in self._clients:
            raise ValueError(f"Unknown cluster '{name}'. Available: {self.names}")
        return self._clients[name]


@pytest.fixture
def fake_cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def fake_pool(fake_cluster: FakeCluster) -> FakePool:
    return FakePool(fake_cluster)


# =============================================================================
# MANIFEST FACTORIES
# =============================================================================


def _meta(name: str, namespace: str | None, owner: str | None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if owner:
        metadata["labels"] = {OWNER_LABEL: owner}
    return metadata


@pytest.fixture
def make_namespace() -> Callable[..., dict[str, Any]]:
    def factory(name: str, owner: str | None = None) -> dict[str, Any]:
        return {"apiVersion": "v1", "kind": "Namespace", "metadata": _meta(name, None, owner)}

    return factory


@pytest.fixture
def make_configmap() -> Callable[..., dict[str, Any]]:
    def factory(
        name: str,
        namespace: str = "default",
        owner: str | None = None,
        data: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": _meta(name, namespace, owner),
            "data": data if data is not None else {"key": "value"},
        }

    return factory


@pytest.fixture
def make_deployment() -> Callable[..., dict[str, Any]]:
    def factory(
        name: str,
        namespace: str = "default",
        owner: str | None = None,
        replicas: int = 1,
        image: str = "nginx:1.25",
    ) -> dict[str, Any]:
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": _meta(name, namespace, owner),
            "spec": {
                "replicas": replicas,
                "selector": {"matchLabels": {"app": name}},
                "template": {
                    "metadata": {"labels": {"app": name}},
                    "spec": {"containers": [{"name": name, "image": image}]},
                },
            },
        }

    return factory


# =============================================================================
# SETTINGS AND GUARDS
# =============================================================================


@pytest.fixture
def mock_cluster_connection() -> ClusterConnection:
    """Create a cluster connection for respx-based tests."""
    return ClusterConnection(
        url="https://k8s.example.com:6443",
        token=SecretStr("test-token"),
        name="in-cluster",
        insecure=True,
    )


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings for testing."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def controller_settings(
    tmp_path: Path,
    mock_cluster_connection: ClusterConnection,
    mock_security_settings: SecuritySettings,
) -> ControllerSettings:
    """Settings with long poll intervals and no retry backoff."""
    return ControllerSettings(
        kube_api_url=mock_cluster_connection.url,
        kube_token=mock_cluster_connection.token,
        poll_interval=3600,
        self_heal_interval=3600,
        max_item_retries=3,
        retry_backoff_min=0,
        retry_backoff_max=0,
        state_dir=tmp_path / "state",
        vault={"addr": ""},
        security=mock_security_settings,
    )


@pytest.fixture
def state_store(controller_settings: ControllerSettings) -> StateStore:
    return StateStore(controller_settings.state_dir, history_limit=controller_settings.history_limit)


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


# =============================================================================
# APPLICATIONS
# =============================================================================


@pytest.fixture
def manifest_dir(tmp_path: Path, make_deployment, make_configmap) -> Path:
    """A plain manifest directory holding one ConfigMap and one Deployment."""
    directory = tmp_path / "repo"
    directory.mkdir()
    (directory / "config.yaml").write_text(yaml.safe_dump(make_configmap("web-config", namespace="web")))
    (directory / "deploy.yaml").write_text(yaml.safe_dump(make_deployment("web", namespace="web", replicas=2)))
    return directory


@pytest.fixture
def sample_application(manifest_dir: Path) -> Application:
    """A manually synced application reading the local manifest directory."""
    return Application(
        name="web",
        source=SourceRef(repo_url=str(manifest_dir), renderer=RendererType.PLAIN),
        destination=Destination(server="in-cluster", namespace="web"),
        sync_policy=SyncPolicy(),
    )


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def kube_api_url() -> str | None:
    """Get the Kubernetes API URL from environment."""
    return os.environ.get("KUBE_API_URL")


@pytest.fixture
def kube_token() -> str | None:
    """Get the Kubernetes bearer token from environment."""
    return os.environ.get("KUBE_TOKEN")


@pytest.fixture
def kube_insecure() -> bool:
    """Get the TLS verification setting from environment."""
    return os.environ.get("KUBE_INSECURE", "false").lower() == "true"


@pytest.fixture
async def live_kube_client(
    kube_api_url: str | None,
    kube_token: str | None,
    kube_insecure: bool,
) -> AsyncIterator[KubeClient | None]:
    """Create a live Kubernetes client for integration tests."""
    if not kube_api_url or not kube_token:
        yield None
        return

    cluster = ClusterConnection(
        url=kube_api_url,
        token=SecretStr(kube_token),
        name="integration-test",
        insecure=kube_insecure,
    )
    async with KubeClient(cluster) as client:
        yield client
