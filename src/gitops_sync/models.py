# ABOUTME: Data model for applications, objects, diffs, sync results and health
# ABOUTME: Pydantic models for persisted state, dataclasses for in-flight objects

"""
Data model.

Persisted and operator-facing state (Application, SyncResult) are pydantic
models so they validate on load and serialize to JSON for the state store.
Objects flowing through a single reconciliation (ObjectKey, DesiredObject,
LiveObject, DiffItem) are plain dataclasses.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

LAST_APPLIED_ANNOTATION = "gitops-sync/last-applied"


# =============================================================================
# ENUMS
# =============================================================================


class SyncStatusCode(str, Enum):
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    MISSING = "Missing"
    UNKNOWN = "Unknown"

    @property
    def severity(self) -> int:
        """Rollup weight; the highest severity among children wins."""
        return _HEALTH_SEVERITY[self]


_HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.MISSING: 2,
    HealthStatus.PROGRESSING: 3,
    HealthStatus.DEGRADED: 4,
}


class DiffAction(str, Enum):
    ADD = "Add"
    REMOVE = "Remove"
    MODIFY = "Modify"


class ItemOutcome(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class SyncPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    PARTIALLY_FAILED = "PartiallyFailed"

    @property
    def terminal(self) -> bool:
        return self not in (SyncPhase.PENDING, SyncPhase.RUNNING)


class RendererType(str, Enum):
    AUTO = "auto"
    PLAIN = "plain"
    KUSTOMIZE = "kustomize"
    HELM = "helm"


class DeletionPolicy(str, Enum):
    CASCADE = "cascade"
    ORPHAN = "orphan"


class FieldRule(str, Enum):
    IGNORE = "ignore"
    NORMALIZE = "normalize"


# =============================================================================
# APPLICATION
# =============================================================================


class SourceRef(BaseModel):
    """Where the desired state comes from."""

    model_config = ConfigDict(extra="ignore")

    repo_url: str = Field(description="Git URL, file:// URL or local directory")
    revision: str = Field(default="HEAD", description="Branch, tag or commit")
    path: str = Field(default=".", description="Directory inside the repository")
    renderer: RendererType = Field(default=RendererType.AUTO)
    helm_values_files: list[str] = Field(default_factory=list)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Keep paths relative to the repository root."""
        v = v.strip().lstrip("/") or "."
        if ".." in v.split("/"):
            raise ValueError("source path must stay inside the repository")
        return v


class Destination(BaseModel):
    """Which cluster and default namespace receive the objects."""

    model_config = ConfigDict(extra="ignore")

    server: str = Field(default="in-cluster", description="Configured cluster name")
    namespace: str = Field(default="default")


class SyncPolicy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    automated: bool = False
    prune: bool = False
    self_heal: bool = False


class ComparisonPolicy(BaseModel):
    """Per-path comparison rules.

    Keys are dotted object paths (``spec.ports.*.nodePort``), optionally
    scoped to a kind (``Service:spec.clusterIP``). ``*`` matches any single
    segment.
    """

    model_config = ConfigDict(extra="ignore")

    rules: dict[str, FieldRule] = Field(default_factory=dict)


class ApplicationStatus(BaseModel):
    sync: SyncStatusCode = SyncStatusCode.UNKNOWN
    health: HealthStatus = HealthStatus.UNKNOWN
    revision: str | None = None
    synced_revision: str | None = None
    operation_phase: SyncPhase | None = None
    conditions: list[str] = Field(default_factory=list)
    resources: dict[str, HealthStatus] = Field(default_factory=dict)
    requires_pruning: list[str] = Field(default_factory=list)
    reconciled_at: datetime | None = None


class Application(BaseModel):
    """A tracked application: source, destination and policy."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", max_length=63)
    source: SourceRef
    destination: Destination = Field(default_factory=Destination)
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy)
    comparison: ComparisonPolicy = Field(default_factory=ComparisonPolicy)
    deletion: DeletionPolicy = DeletionPolicy.CASCADE
    status: ApplicationStatus = Field(default_factory=ApplicationStatus)


# =============================================================================
# OBJECTS
# =============================================================================


def encode_last_applied(manifest: dict[str, Any]) -> str:
    """Compact, key-sorted JSON of what was applied, minus the annotation itself."""
    body = copy.deepcopy(manifest)
    annotations = (body.get("metadata") or {}).get("annotations")
    if annotations:
        annotations.pop(LAST_APPLIED_ANNOTATION, None)
        if not annotations:
            body["metadata"].pop("annotations")
    return json.dumps(body, sort_keys=True, separators=(",", ":"))


def decode_last_applied(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Identity of a target-system object."""

    kind: str
    namespace: str
    name: str

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> ObjectKey:
        metadata = manifest.get("metadata") or {}
        return cls(
            kind=manifest.get("kind", ""),
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name", ""),
        )

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass
class DesiredObject:
    key: ObjectKey
    manifest: dict[str, Any]

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> DesiredObject:
        return cls(key=ObjectKey.from_manifest(manifest), manifest=manifest)


@dataclass
class LiveObject:
    """Observed object: full manifest including status."""

    key: ObjectKey
    manifest: dict[str, Any]
    owner: str | None = None

    @property
    def resource_version(self) -> str | None:
        return (self.manifest.get("metadata") or {}).get("resourceVersion")

    @property
    def status(self) -> dict[str, Any]:
        return self.manifest.get("status") or {}

    @property
    def last_applied(self) -> dict[str, Any] | None:
        annotations = (self.manifest.get("metadata") or {}).get("annotations") or {}
        return decode_last_applied(annotations.get(LAST_APPLIED_ANNOTATION))

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], ownership_label: str) -> LiveObject:
        labels = (manifest.get("metadata") or {}).get("labels") or {}
        return cls(
            key=ObjectKey.from_manifest(manifest),
            manifest=manifest,
            owner=labels.get(ownership_label),
        )


# =============================================================================
# DIFF
# =============================================================================


@dataclass(frozen=True)
class FieldChange:
    path: str
    desired: Any
    live: Any


@dataclass
class DiffItem:
    action: DiffAction
    key: ObjectKey
    desired: DesiredObject | None = None
    live: LiveObject | None = None
    changes: list[FieldChange] = field(default_factory=list)


@dataclass
class DiffReport:
    """Ordered actionable items plus objects reported but never acted on."""

    items: list[DiffItem] = field(default_factory=list)
    requires_pruning: list[LiveObject] = field(default_factory=list)
    unmanaged: list[LiveObject] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.items and not self.requires_pruning


# =============================================================================
# SYNC
# =============================================================================


def utcnow() -> datetime:
    return datetime.now(UTC)


class SyncItemResult(BaseModel):
    """Terminal record of one diff item's execution."""

    model_config = ConfigDict(frozen=True)

    kind: str
    namespace: str = ""
    name: str
    action: DiffAction
    outcome: ItemOutcome
    message: str = ""
    retries: int = 0
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def resource(self) -> str:
        return str(ObjectKey(self.kind, self.namespace, self.name))


class SyncResult(BaseModel):
    """One sync attempt: Pending -> Running -> terminal phase."""

    application: str
    revision: str | None = None
    trigger: str = "manual"
    phase: SyncPhase = SyncPhase.PENDING
    message: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    items: list[SyncItemResult] = Field(default_factory=list)

    def start(self) -> None:
        if self.phase is not SyncPhase.PENDING:
            raise RuntimeError(f"cannot start sync in phase {self.phase.value}")
        self.phase = SyncPhase.RUNNING
        self.started_at = utcnow()

    def finish(self, message: str = "") -> None:
        """Derive the terminal phase from the item outcomes."""
        if self.phase is not SyncPhase.RUNNING:
            raise RuntimeError(f"cannot finish sync in phase {self.phase.value}")
        succeeded = sum(1 for i in self.items if i.outcome is ItemOutcome.SUCCEEDED)
        if succeeded == len(self.items):
            self.phase = SyncPhase.SUCCEEDED
        elif succeeded == 0:
            self.phase = SyncPhase.FAILED
        else:
            self.phase = SyncPhase.PARTIALLY_FAILED
        self.message = message
        self.finished_at = utcnow()

    def fail(self, message: str) -> None:
        """Terminate a sync that could not run its items at all."""
        if self.phase is SyncPhase.PENDING:
            self.start()
        self.phase = SyncPhase.FAILED
        self.message = message
        self.finished_at = utcnow()

    def outcome_of(self, key: ObjectKey) -> ItemOutcome | None:
        for item in self.items:
            if (item.kind, item.namespace, item.name) == (key.kind, key.namespace, key.name):
                return item.outcome
        return None
