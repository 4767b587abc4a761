# ABOUTME: Per-application control loop and the process-wide controller registry
# ABOUTME: Schedules fetch/observe/diff/sync/health ticks, coalesces triggers, isolates failures

"""
Application Controller.

=============================================================================
ONE TICK
=============================================================================

    fetch ─┐                       (concurrently)
           ├─> diff ─> decide ─> sync? ─> re-observe ─> health ─> status
    observe┘

Decide:
    explicit sync trigger                -> sync
    automated, non-empty diff            -> sync
    otherwise                            -> report OutOfSync only

A tick that is superseded while it fetches (teardown or a new definition)
skips its sync. Each tick owns a fresh cancellation event for this.

=============================================================================
SCHEDULING
=============================================================================

Each Application owns one loop task. The loop sleeps until the poll interval
elapses or a trigger wakes it. Triggers that arrive while a tick is running
only set the wake flag and merge into one pending request, so any number of
them yield exactly one follow-up tick.

A second task watches for live drift every ``self_heal_interval`` when
self-healing is on, so live drift is corrected without waiting for the next
poll. It compares the live objects against the desired set cached from the
last fetch, without touching the repository, and wakes the loop when they
differ.

=============================================================================
FAILURE BOUNDARY
=============================================================================

Errors raised during a tick are caught here and recorded as conditions on the
Application's status. They never reach the registry or other Applications.
PermissionDenied suspends automatic ticks until the definition is updated;
explicit triggers still run.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from gitops_sync.diff import diff
from gitops_sync.errors import GitOpsError, PermissionDenied
from gitops_sync.health import evaluate, rollup
from gitops_sync.kinds import KindRegistry
from gitops_sync.models import (
    Application,
    ApplicationStatus,
    DeletionPolicy,
    DiffReport,
    SyncPhase,
    SyncResult,
    SyncStatusCode,
    utcnow,
)
from gitops_sync.observer import LiveStateObserver
from gitops_sync.reconciler import SyncEngine
from gitops_sync.retry import RetryPolicy
from gitops_sync.source import DesiredStateFetcher, FetchResult, GitRepository, ManifestRenderer
from gitops_sync.utils.logging import bind_application, set_correlation_id

if TYPE_CHECKING:
    from gitops_sync.config import ControllerSettings
    from gitops_sync.observer import LiveSnapshot
    from gitops_sync.secrets import VaultSecretResolver
    from gitops_sync.store import StateStore
    from gitops_sync.utils.client import ClientPool
    from gitops_sync.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


@dataclass
class SyncRequest:
    """A pending explicit trigger."""

    sync: bool = False
    prune: bool | None = None
    source: str = "manual"

    def merge(self, other: SyncRequest) -> SyncRequest:
        if other.sync and not self.sync:
            return other
        if self.sync and not other.sync:
            return self
        prune = other.prune if other.prune is not None else self.prune
        return SyncRequest(sync=self.sync, prune=prune, source=other.source)


class ApplicationController:
    """Runs the reconciliation loop of a single Application."""

    def __init__(
        self,
        app: Application,
        *,
        settings: ControllerSettings,
        pool: ClientPool,
        store: StateStore,
        secrets: VaultSecretResolver | None = None,
        audit: AuditLogger | None = None,
        repository: GitRepository | None = None,
        renderer: ManifestRenderer | None = None,
    ) -> None:
        self._app = app
        self._settings = settings
        self._pool = pool
        self._store = store
        self._secrets = secrets
        self._repository = repository or GitRepository(settings.git_binary, settings.tool_timeout)
        self._renderer = renderer or ManifestRenderer(
            settings.kustomize_binary, settings.helm_binary, settings.tool_timeout
        )

        self._registry = KindRegistry()
        self._observer = LiveStateObserver(pool, self._registry, settings.ownership_label)
        self._engine = SyncEngine(
            pool,
            self._registry,
            ownership_label=settings.ownership_label,
            policy=RetryPolicy(
                max_attempts=settings.max_item_retries,
                backoff_min=settings.retry_backoff_min,
                backoff_max=settings.retry_backoff_max,
            ),
            max_parallel=settings.max_parallel_items,
            audit=audit,
            redact=secrets.redact if secrets else None,
        )
        self._fetcher = self._make_fetcher()

        self._wake = asyncio.Event()
        self._stop = asyncio.Event()
        self._sync_cancel = asyncio.Event()
        self._request: SyncRequest | None = None
        self._running = False
        self._syncing = False
        self._suspended: str | None = None
        self._desired: FetchResult | None = None
        self._report: DiffReport | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: list[asyncio.Task[None]] = []

    def _make_fetcher(self) -> DesiredStateFetcher:
        return DesiredStateFetcher(
            owner=self._app.name,
            default_namespace=self._app.destination.namespace,
            ownership_label=self._settings.ownership_label,
            registry=self._registry,
            repository=self._repository,
            renderer=self._renderer,
            secrets=self._secrets,
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    @property
    def name(self) -> str:
        return self._app.name

    @property
    def application(self) -> Application:
        return self._app

    @property
    def running(self) -> bool:
        return self._running

    @property
    def suspended(self) -> str | None:
        return self._suspended

    @property
    def last_report(self) -> DiffReport | None:
        return self._report

    def status(self) -> ApplicationStatus:
        return self._app.status.model_copy(deep=True)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        self._tasks.append(asyncio.create_task(self._loop(), name=f"reconcile-{self.name}"))
        self._tasks.append(asyncio.create_task(self._heal_loop(), name=f"self-heal-{self.name}"))

    async def stop(self, *, cancel_sync: bool = False) -> None:
        """Stop the loops. An in-flight tick finishes unless ``cancel_sync``."""
        self._stop.set()
        self._wake.set()
        if cancel_sync:
            self._sync_cancel.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

    def trigger(self, request: SyncRequest | None = None) -> None:
        """Wake the loop. Requests made during a running tick coalesce into one."""
        request = request or SyncRequest()
        self._request = self._request.merge(request) if self._request else request
        self._wake.set()

    def cancel(self) -> bool:
        """Ask the running sync to stop issuing operations."""
        if not self._syncing:
            return False
        self._sync_cancel.set()
        return True

    def update(self, app: Application) -> None:
        """Replace the definition, keep the status and lift any suspension.

        A tick already running for the old definition does not start its sync.
        """
        app.status = self._app.status
        self._app = app
        self._fetcher = self._make_fetcher()
        self._desired = None
        self._suspended = None
        self._sync_cancel.set()
        self._store.save(self._app)
        self.trigger()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    # =========================================================================
    # LOOPS
    # =========================================================================

    async def _loop(self) -> None:
        bind_application(self.name)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._settings.poll_interval)
            except TimeoutError:
                pass
            if self._stop.is_set():
                break
            self._wake.clear()
            request, self._request = self._request, None
            if request is None and self._suspended:
                logger.debug("Skipping tick, application suspended", reason=self._suspended)
                continue
            await self.reconcile(request)

    async def _heal_loop(self) -> None:
        bind_application(self.name)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._settings.self_heal_interval)
            except TimeoutError:
                pass
            if self._stop.is_set():
                break
            policy = self._app.sync_policy
            if not (policy.automated and policy.self_heal) or self._suspended or self._running:
                continue
            if self._desired is None or self._wake.is_set():
                continue
            try:
                if await self._live_drift(self._desired):
                    logger.info("Live drift detected, scheduling self-heal")
                    self.trigger(SyncRequest(source="self-heal"))
            except GitOpsError as e:
                logger.debug("Self-heal check failed", error=str(e))

    async def _live_drift(self, desired: FetchResult) -> bool:
        snapshot = await self._observer.observe(self._app.destination, self.name)
        report = diff(
            desired.objects,
            snapshot.objects,
            self._app.comparison,
            owner=self.name,
            prune=self._app.sync_policy.prune,
            registry=self._registry,
        )
        return bool(report.items)

    # =========================================================================
    # TICK
    # =========================================================================

    async def reconcile(self, request: SyncRequest | None = None) -> SyncResult | None:
        """
        Run one tick. Never raises for per-Application failures.

        Returns the SyncResult when a sync ran.
        """
        set_correlation_id(str(uuid.uuid4())[:8])
        bind_application(self.name)
        self._sync_cancel = asyncio.Event()
        self._running = True
        self._idle.clear()
        status = self._app.status
        conditions: list[str] = []
        result: SyncResult | None = None
        try:
            result = await self._tick(request, conditions)
        except PermissionDenied as e:
            self._suspended = str(e)
            conditions.append(f"PermissionDenied: {e}")
            status.sync = SyncStatusCode.UNKNOWN
            logger.error("Permission denied, suspending automatic reconciliation", error=str(e))
        except (GitOpsError, ValueError) as e:
            conditions.append(f"{type(e).__name__}: {e}")
            status.sync = SyncStatusCode.UNKNOWN
            logger.warning("Reconciliation failed", error=str(e))
        except Exception as e:
            conditions.append(f"InternalError: {e}")
            status.sync = SyncStatusCode.UNKNOWN
            logger.exception("Unexpected reconciliation error")
        finally:
            status.conditions = conditions
            status.reconciled_at = utcnow()
            self._running = False
            self._idle.set()
            self._store.save(self._app)
        return result

    async def _gather(self) -> tuple[FetchResult, LiveSnapshot]:
        fetched, observed = await asyncio.gather(
            self._fetcher.fetch(self._app.source),
            self._observer.observe(self._app.destination, self.name),
            return_exceptions=True,
        )
        for outcome in (observed, fetched):
            if isinstance(outcome, PermissionDenied):
                raise outcome
        for outcome in (fetched, observed):
            if isinstance(outcome, BaseException):
                raise outcome
        return fetched, observed

    def _diff(self, desired: FetchResult, snapshot: LiveSnapshot, prune: bool) -> DiffReport:
        return diff(
            desired.objects,
            snapshot.objects,
            self._app.comparison,
            owner=self.name,
            prune=prune,
            registry=self._registry,
        )

    async def preview(self, prune: bool | None = None) -> DiffReport:
        """Fetch, observe and diff without writing anything."""
        desired, snapshot = await self._gather()
        return self._diff(desired, snapshot, self._app.sync_policy.prune if prune is None else prune)

    def _decide(self, request: SyncRequest | None, report: DiffReport, revision: str) -> str | None:
        """The trigger name of the sync to run, or None."""
        if request is not None and request.sync:
            return request.source
        policy = self._app.sync_policy
        if not report.items or not policy.automated or self._suspended:
            return None
        if revision == self._app.status.synced_revision and policy.self_heal:
            return "self-heal"
        return "automated"

    async def _tick(self, request: SyncRequest | None, conditions: list[str]) -> SyncResult | None:
        status = self._app.status
        prune = self._app.sync_policy.prune
        if request is not None and request.prune is not None:
            prune = request.prune

        desired, snapshot = await self._gather()
        self._desired = desired
        status.revision = desired.revision
        report = self._diff(desired, snapshot, prune)

        result: SyncResult | None = None
        trigger = self._decide(request, report, desired.revision)
        if trigger is not None and (self._sync_cancel.is_set() or self._stop.is_set()):
            logger.info("Sync skipped, tick superseded", trigger=trigger)
            trigger = None
        if trigger is not None:
            result = await self._sync(report, desired.revision, trigger, prune)
            snapshot = await self._observer.observe(self._app.destination, self.name)
            report = self._diff(desired, snapshot, prune)

        if not snapshot.complete:
            conditions.append(f"Live state incomplete for kinds: {', '.join(snapshot.incomplete_kinds)}")
        self._report = report
        self._update_status(desired, snapshot, report)
        return result

    async def _sync(self, report: DiffReport, revision: str, trigger: str, prune: bool) -> SyncResult:
        status = self._app.status
        self._syncing = True
        status.operation_phase = SyncPhase.RUNNING
        try:
            result = await self._engine.sync(
                self._app,
                report,
                revision=revision,
                trigger=trigger,
                prune=prune,
                cancel=self._sync_cancel,
            )
        finally:
            self._syncing = False
        status.operation_phase = result.phase
        if result.phase is SyncPhase.SUCCEEDED:
            status.synced_revision = revision
        self._store.append_history(result)
        return result

    def _update_status(self, desired: FetchResult, snapshot: LiveSnapshot, report: DiffReport) -> None:
        status = self._app.status
        live = {obj.key: obj for obj in snapshot.objects}
        resources = {str(obj.key): evaluate(live.get(obj.key)).status for obj in desired.objects}
        status.resources = resources
        status.health = rollup(resources.values())
        status.requires_pruning = [str(obj.key) for obj in report.requires_pruning]
        status.sync = SyncStatusCode.SYNCED if report.in_sync else SyncStatusCode.OUT_OF_SYNC
        logger.info(
            "Reconciled",
            sync=status.sync.value,
            health=status.health.value,
            revision=(status.revision or "")[:12],
        )

    # =========================================================================
    # DELETION
    # =========================================================================

    async def teardown(self, cascade: bool) -> SyncResult | None:
        """Stop the loop and, when ``cascade``, delete every owned object."""
        await self.stop(cancel_sync=True)
        if not cascade:
            logger.info("Orphaning application objects", application=self.name)
            return None
        snapshot = await self._observer.observe(self._app.destination, self.name)
        report = diff([], snapshot.objects, owner=self.name, prune=True, registry=self._registry)
        result = await self._engine.sync(self._app, report, trigger="delete", prune=True)
        self._store.append_history(result)
        return result


class ControllerRegistry:
    """
    Process-wide registry of Application controllers.

    LIFECYCLE:
    ----------
        registry = ControllerRegistry(settings, pool, store)
        await registry.start()        # load persisted Applications
        registry.add(app)             # start reconciling a new one
        await registry.shutdown()     # drain in-flight syncs, persist
    """

    def __init__(
        self,
        settings: ControllerSettings,
        pool: ClientPool,
        store: StateStore,
        *,
        secrets: VaultSecretResolver | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._settings = settings
        self._pool = pool
        self._store = store
        self._secrets = secrets
        self._audit = audit
        self._controllers: dict[str, ApplicationController] = {}
        self._started = False

    def _spawn(self, app: Application) -> ApplicationController:
        controller = ApplicationController(
            app,
            settings=self._settings,
            pool=self._pool,
            store=self._store,
            secrets=self._secrets,
            audit=self._audit,
        )
        self._controllers[app.name] = controller
        if self._started:
            controller.start()
            controller.trigger()
        return controller

    async def start(self) -> None:
        self._started = True
        for app in self._store.load_all():
            if app.name not in self._controllers:
                self._spawn(app)
        for controller in self._controllers.values():
            controller.start()
            controller.trigger()
        logger.info("Controller registry started", applications=len(self._controllers))

    def add(self, app: Application) -> ApplicationController:
        if app.name in self._controllers:
            raise ValueError(f"Application '{app.name}' already exists")
        self._store.save(app)
        logger.info("Application added", application=app.name)
        return self._spawn(app)

    def update(self, app: Application) -> ApplicationController:
        controller = self.get(app.name)
        controller.update(app)
        logger.info("Application updated", application=app.name)
        return controller

    def get(self, name: str) -> ApplicationController:
        if name not in self._controllers:
            raise ValueError(f"Unknown application '{name}'. Available: {sorted(self._controllers)}")
        return self._controllers[name]

    def list(self) -> list[Application]:
        return [c.application for _, c in sorted(self._controllers.items())]

    def history(self, name: str, limit: int | None = None) -> list[SyncResult]:
        self.get(name)
        return self._store.history(name, limit)

    def trigger(self, name: str, *, sync: bool = False, prune: bool | None = None) -> None:
        self.get(name).trigger(SyncRequest(sync=sync, prune=prune))

    def cancel(self, name: str) -> bool:
        return self.get(name).cancel()

    async def delete(self, name: str, cascade: bool | None = None) -> SyncResult | None:
        """Remove an Application; ``cascade`` defaults to its deletion policy."""
        controller = self.get(name)
        if cascade is None:
            cascade = controller.application.deletion is DeletionPolicy.CASCADE
        try:
            result = await controller.teardown(cascade)
        except (GitOpsError, ValueError):
            controller.start()
            raise
        del self._controllers[name]
        self._store.delete(name)
        logger.info("Application deleted", application=name, cascade=cascade)
        return result

    async def shutdown(self) -> None:
        await asyncio.gather(*(c.stop() for c in self._controllers.values()))
        for controller in self._controllers.values():
            self._store.save(controller.application)
        self._started = False
        logger.info("Controller registry stopped", applications=len(self._controllers))
