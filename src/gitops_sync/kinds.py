# ABOUTME: Registry of Kubernetes object kinds known to the controller
# ABOUTME: Maps each kind to its API path, scope and dependency rank

"""
Kind registry.

Anything that varies per object kind and is not a health rule lives here:
where the kind is served by the API server, whether it is namespaced, and its
rank in the apply order. Namespaces and CustomResourceDefinitions rank first
so that the objects depending on them are applied afterwards; removals walk
the ranks backwards.

Custom kinds are added at runtime from the CustomResourceDefinitions found in
an Application's desired state (see ``KindRegistry.register_crd``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"

# Apply order, lowest first. Unknown and custom kinds rank after all of these.
KIND_ORDER: tuple[str, ...] = (
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
)

CUSTOM_RANK = len(KIND_ORDER)


@dataclass(frozen=True)
class KindInfo:
    """Where and how a kind is served."""

    kind: str
    api_version: str
    plural: str
    namespaced: bool
    rank: int = CUSTOM_RANK

    @property
    def group(self) -> str:
        return self.api_version.split("/")[0] if "/" in self.api_version else ""

    def collection_path(self, namespace: str | None = None) -> str:
        """Path of the collection, optionally scoped to a namespace."""
        prefix = f"/apis/{self.api_version}" if self.group else f"/api/{self.api_version}"
        if self.namespaced and namespace:
            return f"{prefix}/namespaces/{namespace}/{self.plural}"
        return f"{prefix}/{self.plural}"

    def object_path(self, name: str, namespace: str | None = None) -> str:
        return f"{self.collection_path(namespace)}/{name}"


def _builtin(kind: str, api_version: str, plural: str, namespaced: bool = True) -> KindInfo:
    rank = KIND_ORDER.index(kind) if kind in KIND_ORDER else CUSTOM_RANK
    return KindInfo(kind=kind, api_version=api_version, plural=plural, namespaced=namespaced, rank=rank)


BUILTIN_KINDS: tuple[KindInfo, ...] = (
    _builtin("Namespace", "v1", "namespaces", namespaced=False),
    _builtin("NetworkPolicy", "networking.k8s.io/v1", "networkpolicies"),
    _builtin("ResourceQuota", "v1", "resourcequotas"),
    _builtin("LimitRange", "v1", "limitranges"),
    _builtin("PodDisruptionBudget", "policy/v1", "poddisruptionbudgets"),
    _builtin("ServiceAccount", "v1", "serviceaccounts"),
    _builtin("Secret", "v1", "secrets"),
    _builtin("ConfigMap", "v1", "configmaps"),
    _builtin("StorageClass", "storage.k8s.io/v1", "storageclasses", namespaced=False),
    _builtin("PersistentVolume", "v1", "persistentvolumes", namespaced=False),
    _builtin("PersistentVolumeClaim", "v1", "persistentvolumeclaims"),
    _builtin(
        "CustomResourceDefinition",
        "apiextensions.k8s.io/v1",
        "customresourcedefinitions",
        namespaced=False,
    ),
    _builtin("ClusterRole", "rbac.authorization.k8s.io/v1", "clusterroles", namespaced=False),
    _builtin(
        "ClusterRoleBinding",
        "rbac.authorization.k8s.io/v1",
        "clusterrolebindings",
        namespaced=False,
    ),
    _builtin("Role", "rbac.authorization.k8s.io/v1", "roles"),
    _builtin("RoleBinding", "rbac.authorization.k8s.io/v1", "rolebindings"),
    _builtin("Service", "v1", "services"),
    _builtin("DaemonSet", "apps/v1", "daemonsets"),
    _builtin("Pod", "v1", "pods"),
    _builtin("ReplicaSet", "apps/v1", "replicasets"),
    _builtin("Deployment", "apps/v1", "deployments"),
    _builtin("HorizontalPodAutoscaler", "autoscaling/v2", "horizontalpodautoscalers"),
    _builtin("StatefulSet", "apps/v1", "statefulsets"),
    _builtin("Job", "batch/v1", "jobs"),
    _builtin("CronJob", "batch/v1", "cronjobs"),
    _builtin("IngressClass", "networking.k8s.io/v1", "ingressclasses", namespaced=False),
    _builtin("Ingress", "networking.k8s.io/v1", "ingresses"),
)


class KindRegistry:
    """Runtime lookup of ``KindInfo`` by kind name."""

    def __init__(self, kinds: tuple[KindInfo, ...] = BUILTIN_KINDS) -> None:
        self._kinds: dict[str, KindInfo] = {k.kind: k for k in kinds}

    def __contains__(self, kind: str) -> bool:
        return kind in self._kinds

    def get(self, kind: str) -> KindInfo | None:
        return self._kinds.get(kind)

    def all(self) -> list[KindInfo]:
        return sorted(self._kinds.values(), key=lambda k: (k.rank, k.kind))

    def rank(self, kind: str) -> int:
        info = self._kinds.get(kind)
        return info.rank if info else CUSTOM_RANK

    def is_namespaced(self, kind: str) -> bool:
        info = self._kinds.get(kind)
        return info.namespaced if info else True

    def register(self, info: KindInfo) -> None:
        if info.kind not in self._kinds:
            logger.debug("Registered kind", kind=info.kind, api_version=info.api_version)
        self._kinds[info.kind] = info

    def register_crd(self, manifest: dict[str, Any]) -> KindInfo | None:
        """Register the custom kind defined by a CustomResourceDefinition manifest.

        The served storage version is preferred, falling back to the first
        listed version. Returns None when the manifest is incomplete.
        """
        spec = manifest.get("spec") or {}
        names = spec.get("names") or {}
        group = spec.get("group")
        kind = names.get("kind")
        plural = names.get("plural")
        versions = spec.get("versions") or []
        if not (group and kind and plural and versions):
            return None

        storage = next((v for v in versions if v.get("storage")), versions[0])
        info = KindInfo(
            kind=kind,
            api_version=f"{group}/{storage.get('name', 'v1')}",
            plural=plural,
            namespaced=spec.get("scope", "Namespaced") == "Namespaced",
        )
        self.register(info)
        return info

    def crd_name_for(self, kind: str) -> str | None:
        """Name of the CRD object defining ``kind`` (``<plural>.<group>``)."""
        info = self._kinds.get(kind)
        if info is None or not info.group or info.rank != CUSTOM_RANK:
            return None
        return f"{info.plural}.{info.group}"
