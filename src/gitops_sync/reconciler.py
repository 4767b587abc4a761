# ABOUTME: Sync engine executing diff items against the destination cluster
# ABOUTME: Dependency-ordered, bounded-parallel apply/delete with per-item retry and cancellation

"""
Reconciler / Sync Engine.

=============================================================================
EXECUTION MODEL
=============================================================================

Every diff item becomes one asyncio task. A task first waits for the items it
depends on, then takes a slot from the worker pool and runs its operation
through ``run_with_retry``:

    Namespace/web ─┐
                   ├─> ConfigMap/web/cfg ─┐
                   └─> Deployment/web/api ├─ independent items run in
    Namespace/db ──> StatefulSet/db/pg ───┘  parallel (max_parallel_items)

Hard dependencies:
    apply   namespaced object  -> apply of its Namespace
            custom resource    -> apply of the CRD defining its kind
    remove  Namespace          -> removal of every object inside it
            CRD                -> removal of every object of its kind

An item whose prerequisite did not succeed is Skipped; its siblings carry on.

=============================================================================
CANCELLATION
=============================================================================

The engine checks the cancel event before an item starts and between retry
attempts. Once set, no new operation is issued and remaining items are
recorded as Skipped ("sync cancelled"). Calls already in flight finish and
their outcome is recorded.
"""

from __future__ import annotations

import asyncio
import copy
from typing import TYPE_CHECKING, Any

import structlog

from gitops_sync.errors import GitOpsError, TransientTargetError
from gitops_sync.kinds import CRD_KIND, NAMESPACE_KIND
from gitops_sync.models import (
    LAST_APPLIED_ANNOTATION,
    DiffAction,
    ItemOutcome,
    ObjectKey,
    SyncItemResult,
    SyncResult,
    encode_last_applied,
)
from gitops_sync.retry import (
    AttemptResult,
    FatalFailure,
    RetryPolicy,
    Success,
    classify,
    run_with_retry,
)
from gitops_sync.utils.safety import mask_secrets

if TYPE_CHECKING:
    from collections.abc import Callable

    from gitops_sync.kinds import KindInfo, KindRegistry
    from gitops_sync.models import Application, DiffItem, DiffReport
    from gitops_sync.utils.client import ClientPool, KubeClient
    from gitops_sync.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "sync cancelled"

# Server-populated fields never sent back on create or update.
_SERVER_FIELDS = ("uid", "resourceVersion", "generation", "creationTimestamp", "managedFields", "selfLink")


def dependencies(items: list[DiffItem], registry: KindRegistry) -> dict[ObjectKey, set[ObjectKey]]:
    """Map each item's key to the keys of the items that must succeed first."""
    applies = {i.key for i in items if i.action is not DiffAction.REMOVE}
    removes = {i.key for i in items if i.action is DiffAction.REMOVE}
    graph: dict[ObjectKey, set[ObjectKey]] = {i.key: set() for i in items}

    for item in items:
        key = item.key
        crd_name = registry.crd_name_for(key.kind)
        if item.action is not DiffAction.REMOVE:
            if key.namespace:
                ns = ObjectKey(NAMESPACE_KIND, "", key.namespace)
                if ns in applies:
                    graph[key].add(ns)
            if crd_name:
                crd = ObjectKey(CRD_KIND, "", crd_name)
                if crd in applies:
                    graph[key].add(crd)
        else:
            if key.namespace:
                ns = ObjectKey(NAMESPACE_KIND, "", key.namespace)
                if ns in removes:
                    graph[ns].add(key)
            if crd_name:
                crd = ObjectKey(CRD_KIND, "", crd_name)
                if crd in removes:
                    graph[crd].add(key)
    return graph


class SyncEngine:
    """
    Executes the diff of one Application.

    Args:
        pool: Shared cluster clients.
        registry: The Application's kind registry.
        ownership_label: Label stamped on every applied object.
        policy: Per-item retry policy.
        max_parallel: Worker pool size.
        audit: Receives one record per finished item.
        redact: Masks resolved secret values in item messages.
    """

    def __init__(
        self,
        pool: ClientPool,
        registry: KindRegistry,
        *,
        ownership_label: str,
        policy: RetryPolicy | None = None,
        max_parallel: int = 8,
        audit: AuditLogger | None = None,
        redact: Callable[[str], str] | None = None,
    ) -> None:
        self._pool = pool
        self._registry = registry
        self._label = ownership_label
        self._policy = policy or RetryPolicy()
        self._max_parallel = max(1, max_parallel)
        self._audit = audit
        self._redact = redact

    # =========================================================================
    # OBJECT OPERATIONS
    # =========================================================================

    def _applied_body(self, owner: str, manifest: dict[str, Any]) -> dict[str, Any]:
        body = copy.deepcopy(manifest)
        body.pop("status", None)
        metadata = body.setdefault("metadata", {})
        for name in _SERVER_FIELDS:
            metadata.pop(name, None)
        labels = metadata.get("labels") or {}
        labels[self._label] = owner
        metadata["labels"] = labels
        annotations = metadata.get("annotations") or {}
        annotations[LAST_APPLIED_ANNOTATION] = encode_last_applied(body)
        metadata["annotations"] = annotations
        return body

    async def _apply(self, client: KubeClient, info: KindInfo, owner: str, item: DiffItem) -> str:
        if item.desired is None:
            raise ValueError(f"{item.action.value} of {item.key} has no desired manifest")
        body = self._applied_body(owner, item.desired.manifest)
        key = item.key

        if item.action is DiffAction.ADD:
            try:
                await client.create_object(info, body)
                return "created"
            except TransientTargetError as e:
                if e.code != 409 or e.reason != "AlreadyExists":
                    raise
                logger.info("Object already exists, adopting", resource=str(key))

        # Always update against the latest resourceVersion.
        current = await client.get_object(info, key.name, key.namespace or None)
        if current is None:
            await client.create_object(info, body)
            return "created"
        body["metadata"]["resourceVersion"] = (current.get("metadata") or {}).get("resourceVersion")
        await client.update_object(info, body)
        return "configured"

    async def _delete(self, client: KubeClient, info: KindInfo, item: DiffItem) -> str:
        existed = await client.delete_object(info, item.key.name, item.key.namespace or None)
        return "pruned" if existed else "already deleted"

    async def _attempt(self, client: KubeClient, info: KindInfo, owner: str, item: DiffItem) -> AttemptResult:
        try:
            if item.action is DiffAction.REMOVE:
                return Success(await self._delete(client, info, item))
            return Success(await self._apply(client, info, owner, item))
        except GitOpsError as e:
            return classify(e)

    # =========================================================================
    # SYNC
    # =========================================================================

    def _clean(self, message: str) -> str:
        if self._redact is not None:
            message = self._redact(message)
        return mask_secrets(message)

    async def sync(
        self,
        app: Application,
        report: DiffReport,
        *,
        revision: str | None = None,
        trigger: str = "manual",
        prune: bool | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """
        Execute ``report.items`` against the Application's destination.

        Remove items are executed only when pruning is enabled (``prune``
        overrides the Application's policy). The returned SyncResult is
        terminal; item failures never raise.
        """
        prune = app.sync_policy.prune if prune is None else prune
        cancel = cancel or asyncio.Event()
        result = SyncResult(application=app.name, revision=revision, trigger=trigger)
        result.start()

        items = [i for i in report.items if prune or i.action is not DiffAction.REMOVE]
        if len(items) < len(report.items):
            logger.info("Pruning disabled, leaving removals", skipped=len(report.items) - len(items))

        client = self._pool.get(app.destination.server)
        graph = dependencies(items, self._registry)
        done = {i.key: asyncio.Event() for i in items}
        outcomes: dict[ObjectKey, ItemOutcome] = {}
        semaphore = asyncio.Semaphore(self._max_parallel)

        def record(item: DiffItem, outcome: ItemOutcome, message: str, retries: int = 0) -> None:
            entry = SyncItemResult(
                kind=item.key.kind,
                namespace=item.key.namespace,
                name=item.key.name,
                action=item.action,
                outcome=outcome,
                message=self._clean(message),
                retries=retries,
            )
            result.items.append(entry)
            outcomes[item.key] = outcome
            log = logger.warning if outcome is ItemOutcome.FAILED else logger.info
            log("Sync item finished", resource=str(item.key), action=item.action.value, outcome=outcome.value)
            if self._audit:
                self._audit.log_sync_item(app.name, entry)

        async def run(item: DiffItem) -> None:
            try:
                for dep in graph[item.key]:
                    await done[dep].wait()
                blocked = sorted(str(d) for d in graph[item.key] if outcomes.get(d) is not ItemOutcome.SUCCEEDED)
                if blocked:
                    record(item, ItemOutcome.SKIPPED, f"dependency not synced: {', '.join(blocked)}")
                    return
                info = self._registry.get(item.key.kind)
                if info is None:
                    record(item, ItemOutcome.FAILED, f"unknown kind {item.key.kind}")
                    return

                async with semaphore:
                    if cancel.is_set():
                        record(item, ItemOutcome.SKIPPED, CANCELLED_MESSAGE)
                        return
                    outcome = await run_with_retry(
                        lambda: self._attempt(client, info, app.name, item),
                        self._policy,
                        cancelled=cancel.is_set,
                    )

                attempt = outcome.result
                if isinstance(attempt, Success):
                    record(item, ItemOutcome.SUCCEEDED, str(attempt.value), outcome.retries)
                elif isinstance(attempt, FatalFailure):
                    record(item, ItemOutcome.FAILED, attempt.error, outcome.retries)
                else:
                    suffix = f" ({CANCELLED_MESSAGE})" if cancel.is_set() else ""
                    record(item, ItemOutcome.FAILED, f"{attempt.error}{suffix}", outcome.retries)
            finally:
                done[item.key].set()

        logger.info(
            "Sync started",
            application=app.name,
            revision=(revision or "")[:12],
            items=len(items),
            trigger=trigger,
        )
        await asyncio.gather(*(run(item) for item in items))

        # Present items in the order the diff listed them.
        position = {item.key: index for index, item in enumerate(items)}
        result.items.sort(key=lambda entry: position[ObjectKey(entry.kind, entry.namespace, entry.name)])

        failed = sum(1 for entry in result.items if entry.outcome is ItemOutcome.FAILED)
        skipped = sum(1 for entry in result.items if entry.outcome is ItemOutcome.SKIPPED)
        if cancel.is_set():
            message = CANCELLED_MESSAGE
        elif failed or skipped:
            message = f"{failed} failed, {skipped} skipped of {len(items)}"
        else:
            message = f"{len(items)} items synced"
        result.finish(message)
        logger.info("Sync finished", application=app.name, phase=result.phase.value, message=message)
        return result
