# ABOUTME: Health evaluator mapping live object status to a coarse health classification
# ABOUTME: Rule registry keyed by kind plus worst-of rollup for an application

"""
Health Evaluator.

Rules are plain functions registered per kind in ``HEALTH_RULES``; kinds
without a rule evaluate to Unknown, never to Healthy. ``rollup`` reduces the
per-object results to the Application's aggregate by severity:

    Degraded > Progressing > Missing > Unknown > Healthy
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from gitops_sync.models import HealthStatus, LiveObject

# Restart count at which a crash-looping container marks its Pod Degraded.
RESTART_STORM_THRESHOLD = 5


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    message: str = ""


HealthRule = Callable[[LiveObject], HealthReport]


def _condition(status: dict[str, Any], type_: str) -> dict[str, Any] | None:
    for cond in status.get("conditions") or []:
        if cond.get("type") == type_:
            return cond
    return None


def _generation_observed(obj: LiveObject) -> bool:
    generation = (obj.manifest.get("metadata") or {}).get("generation")
    observed = obj.status.get("observedGeneration")
    return generation is None or observed is None or observed >= generation


# =============================================================================
# WORKLOADS
# =============================================================================


def _replicated_workload(obj: LiveObject) -> HealthReport:
    """Deployment, StatefulSet, ReplicaSet."""
    status = obj.status
    desired = (obj.manifest.get("spec") or {}).get("replicas", 1)

    progressing = _condition(status, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthReport(HealthStatus.DEGRADED, progressing.get("message", "progress deadline exceeded"))
    failure = _condition(status, "ReplicaFailure")
    if failure and failure.get("status") == "True":
        return HealthReport(HealthStatus.DEGRADED, failure.get("message", "replica failure"))

    if not _generation_observed(obj):
        return HealthReport(HealthStatus.PROGRESSING, "waiting for spec update to be observed")

    updated = status.get("updatedReplicas", desired if obj.key.kind == "ReplicaSet" else 0)
    ready = status.get("readyReplicas", 0)
    available = status.get("availableReplicas", ready)
    current = status.get("replicas", 0)
    if updated < desired:
        return HealthReport(HealthStatus.PROGRESSING, f"{updated} of {desired} replicas updated")
    if current > updated:
        return HealthReport(HealthStatus.PROGRESSING, f"{current - updated} old replicas pending termination")
    if ready < desired or available < desired:
        return HealthReport(HealthStatus.PROGRESSING, f"{ready} of {desired} replicas ready")
    return HealthReport(HealthStatus.HEALTHY)


def _daemonset(obj: LiveObject) -> HealthReport:
    status = obj.status
    if not _generation_observed(obj):
        return HealthReport(HealthStatus.PROGRESSING, "waiting for spec update to be observed")
    scheduled = status.get("desiredNumberScheduled", 0)
    updated = status.get("updatedNumberScheduled", 0)
    ready = status.get("numberReady", 0)
    if updated < scheduled or ready < scheduled:
        return HealthReport(HealthStatus.PROGRESSING, f"{ready} of {scheduled} pods ready")
    return HealthReport(HealthStatus.HEALTHY)


def _job(obj: LiveObject) -> HealthReport:
    """Healthy only on terminal success, Degraded on terminal failure."""
    status = obj.status
    failed = _condition(status, "Failed")
    if failed and failed.get("status") == "True":
        return HealthReport(HealthStatus.DEGRADED, failed.get("message", "job failed"))
    complete = _condition(status, "Complete")
    if complete and complete.get("status") == "True":
        return HealthReport(HealthStatus.HEALTHY, "job completed")
    return HealthReport(HealthStatus.PROGRESSING, "job running")


def _pod(obj: LiveObject) -> HealthReport:
    status = obj.status
    phase = status.get("phase")
    if phase == "Succeeded":
        return HealthReport(HealthStatus.HEALTHY, "pod completed")
    if phase == "Failed":
        return HealthReport(HealthStatus.DEGRADED, status.get("message", "pod failed"))

    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in ("CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull"):
            return HealthReport(HealthStatus.DEGRADED, f"{container.get('name')}: {waiting['reason']}")
        if container.get("restartCount", 0) >= RESTART_STORM_THRESHOLD and not container.get("ready"):
            return HealthReport(HealthStatus.DEGRADED, f"{container.get('name')} restarting repeatedly")

    ready = _condition(status, "Ready")
    if phase == "Running" and ready and ready.get("status") == "True":
        return HealthReport(HealthStatus.HEALTHY)
    return HealthReport(HealthStatus.PROGRESSING, f"pod {phase or 'Pending'}")


# =============================================================================
# OTHER KINDS
# =============================================================================


def _service(obj: LiveObject) -> HealthReport:
    if (obj.manifest.get("spec") or {}).get("type") == "LoadBalancer":
        ingress = (obj.status.get("loadBalancer") or {}).get("ingress")
        if not ingress:
            return HealthReport(HealthStatus.PROGRESSING, "waiting for load balancer")
    return HealthReport(HealthStatus.HEALTHY)


def _pvc(obj: LiveObject) -> HealthReport:
    phase = obj.status.get("phase")
    if phase == "Bound":
        return HealthReport(HealthStatus.HEALTHY)
    if phase == "Lost":
        return HealthReport(HealthStatus.DEGRADED, "claim lost its volume")
    return HealthReport(HealthStatus.PROGRESSING, f"claim {phase or 'Pending'}")


def _namespace(obj: LiveObject) -> HealthReport:
    if obj.status.get("phase", "Active") == "Active":
        return HealthReport(HealthStatus.HEALTHY)
    return HealthReport(HealthStatus.PROGRESSING, "namespace terminating")


def _crd(obj: LiveObject) -> HealthReport:
    established = _condition(obj.status, "Established")
    if established and established.get("status") == "True":
        return HealthReport(HealthStatus.HEALTHY)
    return HealthReport(HealthStatus.PROGRESSING, "waiting for CRD to be established")


def _exists(obj: LiveObject) -> HealthReport:  # noqa: ARG001 - rule signature
    return HealthReport(HealthStatus.HEALTHY)


HEALTH_RULES: dict[str, HealthRule] = {
    "Deployment": _replicated_workload,
    "StatefulSet": _replicated_workload,
    "ReplicaSet": _replicated_workload,
    "DaemonSet": _daemonset,
    "Job": _job,
    "Pod": _pod,
    "Service": _service,
    "PersistentVolumeClaim": _pvc,
    "Namespace": _namespace,
    "CustomResourceDefinition": _crd,
    "ConfigMap": _exists,
    "Secret": _exists,
    "ServiceAccount": _exists,
    "Role": _exists,
    "RoleBinding": _exists,
    "ClusterRole": _exists,
    "ClusterRoleBinding": _exists,
}


def evaluate(obj: LiveObject | None, rules: dict[str, HealthRule] | None = None) -> HealthReport:
    """Classify one live object; None means the desired object is missing."""
    if obj is None:
        return HealthReport(HealthStatus.MISSING, "object not found")
    rule = (rules or HEALTH_RULES).get(obj.key.kind)
    if rule is None:
        return HealthReport(HealthStatus.UNKNOWN, f"no health rule for kind {obj.key.kind}")
    return rule(obj)


def rollup(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Worst-of rollup; an empty set is Healthy."""
    return max(statuses, key=lambda s: s.severity, default=HealthStatus.HEALTHY)
