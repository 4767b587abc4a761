# ABOUTME: Live-state observer listing an application's objects on its destination cluster
# ABOUTME: Selects by ownership label and tolerates per-kind listing failures

"""Live-State Observer."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from gitops_sync.errors import GitOpsError, PermissionDenied
from gitops_sync.models import LiveObject

if TYPE_CHECKING:
    from gitops_sync.kinds import KindInfo, KindRegistry
    from gitops_sync.models import Destination, ObjectKey
    from gitops_sync.utils.client import ClientPool

logger = structlog.get_logger(__name__)


@dataclass
class LiveSnapshot:
    """Objects found, plus the kinds whose listing failed."""

    objects: list[LiveObject] = field(default_factory=list)
    incomplete_kinds: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.incomplete_kinds


class LiveStateObserver:
    """Lists every registered kind carrying ``<ownership_label>=<owner>``."""

    def __init__(self, pool: ClientPool, registry: KindRegistry, ownership_label: str) -> None:
        self._pool = pool
        self._registry = registry
        self._label = ownership_label

    async def observe(self, destination: Destination, owner: str) -> LiveSnapshot:
        """
        Observe the live objects owned by ``owner``.

        Kinds are listed concurrently. A kind whose listing fails is recorded
        in ``incomplete_kinds`` while the others still return.

        Raises:
            PermissionDenied: every kind failed and at least one was refused.
            TargetUnreachable: every kind failed otherwise.
            ValueError: the destination names an unknown cluster.
        """
        client = self._pool.get(destination.server)
        kinds = self._registry.all()
        selector = f"{self._label}={owner}"

        results = await asyncio.gather(
            *(client.list_objects(info, label_selector=selector) for info in kinds),
            return_exceptions=True,
        )

        snapshot = LiveSnapshot()
        failures: list[GitOpsError] = []
        for info, result in zip(kinds, results, strict=True):
            if isinstance(result, GitOpsError):
                failures.append(result)
                snapshot.incomplete_kinds.append(info.kind)
                snapshot.errors[info.kind] = str(result)
                continue
            if isinstance(result, BaseException):
                raise result
            for manifest in result:
                snapshot.objects.append(LiveObject.from_manifest(manifest, self._label))

        if failures and len(failures) == len(kinds):
            denied = next((f for f in failures if isinstance(f, PermissionDenied)), None)
            raise denied or failures[0]

        if failures:
            logger.warning(
                "Live state incomplete",
                owner=owner,
                incomplete_kinds=snapshot.incomplete_kinds,
            )
        logger.debug("Observed live state", owner=owner, objects=len(snapshot.objects))
        return snapshot

    def _info(self, kind: str) -> KindInfo:
        info = self._registry.get(kind)
        if info is None:
            raise ValueError(f"Unknown kind '{kind}'")
        return info

    async def get(self, destination: Destination, key: ObjectKey) -> LiveObject | None:
        """Re-observe a single object."""
        client = self._pool.get(destination.server)
        manifest = await client.get_object(self._info(key.kind), key.name, key.namespace or None)
        if manifest is None:
            return None
        return LiveObject.from_manifest(manifest, self._label)
