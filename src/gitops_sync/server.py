# ABOUTME: FastMCP control surface for the GitOps sync controller and main entry point
# ABOUTME: Exposes application tools and resources, runs the controller registry in the lifespan

"""gitops-sync MCP server: operator control surface over the reconciliation loops."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field, ValidationError

from gitops_sync.config import ControllerSettings, load_settings
from gitops_sync.controller import ControllerRegistry
from gitops_sync.errors import GitOpsError
from gitops_sync.models import (
    Application,
    ComparisonPolicy,
    DeletionPolicy,
    Destination,
    DiffAction,
    DiffReport,
    FieldRule,
    HealthStatus,
    RendererType,
    SourceRef,
    SyncPolicy,
    SyncStatusCode,
)
from gitops_sync.secrets import VaultSecretResolver
from gitops_sync.store import StateStore
from gitops_sync.utils.client import ClientPool
from gitops_sync.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitops_sync.utils.safety import ConfirmationRequired, SafetyGuard, mask_secrets

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ControllerSettings | None = None
_registry: ControllerRegistry | None = None
_secrets: VaultSecretResolver | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load config, open cluster and secret clients, run every Application loop."""
    global _settings, _registry, _secrets, _safety_guard, _audit_logger

    logger.info("Starting gitops-sync controller")

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.log_json)
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)

    async with (
        ClientPool(_settings.all_clusters, timeout=_settings.request_timeout) as pool,
        VaultSecretResolver(_settings.vault, timeout=_settings.request_timeout) as secrets,
    ):
        _secrets = secrets
        store = StateStore(_settings.state_dir, history_limit=_settings.history_limit)
        _registry = ControllerRegistry(_settings, pool, store, secrets=secrets, audit=_audit_logger)
        await _registry.start()

        yield {"settings": _settings, "registry": _registry}

        await _registry.shutdown()
        _registry = None
        _secrets = None

    logger.info("gitops-sync controller stopped")


mcp = FastMCP("gitops-sync", lifespan=lifespan)


def get_registry() -> ControllerRegistry:
    """Get the controller registry."""
    if not _registry:
        raise RuntimeError("Server not initialized")
    return _registry


def get_settings() -> ControllerSettings:
    """Get controller settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _masked(value: Any) -> str:
    text = str(value)
    if _secrets is not None:
        text = _secrets.redact(text)
    if _settings is None or _settings.security.mask_secrets:
        text = mask_secrets(text)
    return text


def _format_report(name: str, report: DiffReport) -> str:
    labels = {
        DiffAction.ADD: ("CREATE", "+"),
        DiffAction.MODIFY: ("UPDATE", "~"),
        DiffAction.REMOVE: ("DELETE", "-"),
    }
    lines = [f"Diff for application '{name}':", ""]
    for action, (title, marker) in labels.items():
        items = [i for i in report.items if i.action is action]
        if not items:
            continue
        lines.append(f"Objects to {title} ({len(items)}):")
        for item in items:
            lines.append(f"  {marker} {item.key}")
            if item.key.kind == "Secret":
                lines.extend(f"      {change.path}" for change in item.changes)
                continue
            for change in item.changes:
                lines.append(f"      {change.path}: {_masked(change.live)} -> {_masked(change.desired)}")
        lines.append("")

    if report.requires_pruning:
        lines.append(f"Owned objects not in Git, kept because prune is off ({len(report.requires_pruning)}):")
        lines.extend(f"  ? {obj.key}" for obj in report.requires_pruning)
        lines.append("")

    if report.unmanaged:
        lines.append(f"Unmanaged objects, never touched: {len(report.unmanaged)}")

    if report.in_sync:
        lines.append("Application is fully synced. No changes needed.")
    return "\n".join(lines).rstrip()


# =============================================================================
# TIER 1: Essential Read Operations (Always Available)
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    health_status: HealthStatus | None = Field(
        default=None,
        description="Filter by health status (Healthy, Degraded, Progressing, Missing, Unknown)",
    )
    sync_status: SyncStatusCode | None = Field(
        default=None, description="Filter by sync status (Synced, OutOfSync, Unknown)"
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List tracked applications with optional filtering.

    Use this to get an overview or to find unhealthy / out-of-sync applications.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("list_applications")
    if blocked:
        get_audit_logger().log_blocked("list_applications", "all", blocked.reason)
        return blocked.format_message()

    apps = get_registry().list()
    if params.health_status:
        apps = [a for a in apps if a.status.health is params.health_status]
    if params.sync_status:
        apps = [a for a in apps if a.status.sync is params.sync_status]

    get_audit_logger().log_read("list_applications", "all")

    if not apps:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(apps)} application(s):", ""]
    for app in apps:
        health_marker = "[OK]" if app.status.health is HealthStatus.HEALTHY else "[!]"
        sync_marker = "[OK]" if app.status.sync is SyncStatusCode.SYNCED else "[!]"
        mode = "auto" if app.sync_policy.automated else "manual"
        lines.append(
            f"- {app.name} "
            f"health={app.status.health.value} {health_marker} "
            f"sync={app.status.sync.value} {sync_marker} "
            f"policy={mode} "
            f"dest={app.destination.namespace}@{app.destination.server}"
        )
    return "\n".join(lines)


class GetApplicationParams(BaseModel):
    """Parameters for get_application tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application(params: GetApplicationParams, ctx: MCPContext) -> str:
    """
    Get detailed information about one application.

    Returns source, destination, policy, status, conditions and per-object health.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application")
    if blocked:
        get_audit_logger().log_blocked("get_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_registry().get(params.name)
    except ValueError as e:
        get_audit_logger().log_error("get_application", params.name, str(e))
        return str(e)

    app = controller.application
    status = controller.status()
    get_audit_logger().log_read("get_application", params.name)

    policy = app.sync_policy
    lines = [
        f"Application: {app.name}",
        "",
        "Source:",
        f"  Repository: {app.source.repo_url}",
        f"  Path: {app.source.path}",
        f"  Target Revision: {app.source.revision}",
        f"  Renderer: {app.source.renderer.value}",
        "",
        "Destination:",
        f"  Server: {app.destination.server}",
        f"  Namespace: {app.destination.namespace}",
        "",
        "Sync Policy:",
        f"  Automated: {policy.automated}",
        f"  Prune: {policy.prune}",
        f"  Self-heal: {policy.self_heal}",
        f"  Deletion: {app.deletion.value}",
        "",
        "Status:",
        f"  Sync: {status.sync.value}",
        f"  Health: {status.health.value}",
        f"  Revision: {status.revision or 'N/A'}",
        f"  Last synced revision: {status.synced_revision or 'N/A'}",
    ]
    if status.operation_phase:
        lines.append(f"  Last operation: {status.operation_phase.value}")
    if controller.suspended:
        lines.append(f"  Suspended: {controller.suspended}")

    if status.conditions:
        lines.extend(["", "Conditions:"])
        lines.extend(f"  - {_masked(c)}" for c in status.conditions)

    if status.resources:
        lines.extend(["", "Objects:"])
        for resource, health in sorted(status.resources.items()):
            lines.append(f"  - {resource}: {health.value}")

    if status.requires_pruning:
        lines.extend(["", "Requires pruning:"])
        lines.extend(f"  - {r}" for r in status.requires_pruning)

    return "\n".join(lines)


class GetApplicationStatusParams(BaseModel):
    """Parameters for get_application_status tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application_status(params: GetApplicationStatusParams, ctx: MCPContext) -> str:
    """
    Get condensed health and sync status for quick checks.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_status")
    if blocked:
        get_audit_logger().log_blocked("get_application_status", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_registry().get(params.name)
    except ValueError as e:
        get_audit_logger().log_error("get_application_status", params.name, str(e))
        return str(e)

    status = controller.status()
    get_audit_logger().log_read("get_application_status", params.name)

    health_marker = "[OK]" if status.health is HealthStatus.HEALTHY else "[!]"
    sync_marker = "[OK]" if status.sync is SyncStatusCode.SYNCED else "[!]"
    phase = "Running" if controller.running else (status.operation_phase.value if status.operation_phase else "N/A")
    return (
        f"Application: {params.name}\n"
        f"Health: {status.health.value} {health_marker}\n"
        f"Sync: {status.sync.value} {sync_marker}\n"
        f"Operation: {phase}"
    )


class GetApplicationDiffParams(BaseModel):
    """Parameters for get_application_diff tool."""

    name: str = Field(description="Application name")
    refresh: bool = Field(
        default=False,
        description="Fetch and observe now instead of showing the last reconciled diff",
    )


@mcp.tool()
async def get_application_diff(params: GetApplicationDiffParams, ctx: MCPContext) -> str:
    """
    Preview what would change on sync (dry-run diff).

    Shows objects that would be created, updated or deleted, and owned objects
    that only pruning would remove.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_diff")
    if blocked:
        get_audit_logger().log_blocked("get_application_diff", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_registry().get(params.name)
        report = controller.last_report
        if params.refresh or report is None:
            await ctx.report_progress(0, 1, "Fetching desired and live state")
            report = await controller.preview()
            await ctx.report_progress(1, 1, "Complete")
    except (GitOpsError, ValueError) as e:
        get_audit_logger().log_error("get_application_diff", params.name, str(e))
        return _masked(e)

    get_audit_logger().log_read("get_application_diff", params.name)
    return _format_report(params.name, report)


class GetApplicationHistoryParams(BaseModel):
    """Parameters for get_application_history tool."""

    name: str = Field(description="Application name")
    limit: int = Field(default=10, description="Maximum number of history entries", ge=1, le=50)
    show_items: bool = Field(default=False, description="Include per-object outcomes")


@mcp.tool()
async def get_application_history(params: GetApplicationHistoryParams, ctx: MCPContext) -> str:
    """
    View sync history with revision, trigger, phase and timestamps.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_history")
    if blocked:
        get_audit_logger().log_blocked("get_application_history", params.name, blocked.reason)
        return blocked.format_message()

    try:
        get_registry().get(params.name)
    except ValueError as e:
        get_audit_logger().log_error("get_application_history", params.name, str(e))
        return str(e)

    history = get_registry().history(params.name, params.limit)
    get_audit_logger().log_read("get_application_history", params.name)

    if not history:
        return f"No sync history found for application '{params.name}'"

    lines = [f"Sync history for '{params.name}' (last {len(history)} entries):", ""]
    for i, entry in enumerate(reversed(history), 1):
        revision = (entry.revision or "unknown")[:8]
        started = entry.started_at.isoformat() if entry.started_at else "unknown"
        lines.append(
            f"{i}. [{revision}] {entry.phase.value} at {started} "
            f"trigger={entry.trigger} items={len(entry.items)}"
        )
        if entry.message:
            lines.append(f"     {entry.message}")
        if params.show_items:
            for item in entry.items:
                lines.append(
                    f"     - {item.action.value} {item.resource}: {item.outcome.value}"
                    f"{f' ({item.message})' if item.message else ''}"
                )
    return "\n".join(lines)


# =============================================================================
# TIER 2: Write Operations (Require GITOPS_MCP_READ_ONLY=false)
# =============================================================================


class CreateApplicationParams(BaseModel):
    """Parameters for create_application tool."""

    name: str = Field(description="Application name (DNS label)")
    repo_url: str = Field(description="Git repository URL or local directory")
    revision: str = Field(default="HEAD", description="Branch, tag or commit")
    path: str = Field(default=".", description="Directory inside the repository")
    renderer: RendererType = Field(default=RendererType.AUTO)
    helm_values_files: list[str] = Field(default_factory=list)
    cluster: str = Field(default="in-cluster", description="Destination cluster name")
    namespace: str = Field(default="default", description="Default destination namespace")
    automated: bool = Field(default=False, description="Sync automatically whenever the live state differs")
    self_heal: bool = Field(default=False, description="Check for live drift between polls and revert it immediately")
    prune: bool = Field(default=False, description="Delete owned objects removed from Git")
    deletion: DeletionPolicy = Field(default=DeletionPolicy.CASCADE)
    ignore_fields: list[str] = Field(
        default_factory=list,
        description="Paths excluded from comparison, e.g. 'Deployment:spec.replicas'",
    )
    normalize_fields: list[str] = Field(
        default_factory=list,
        description="Paths compared only when set in Git",
    )
    confirm: bool = Field(default=False, description="Required when prune=true")
    confirm_name: str | None = Field(default=None, description="Application name, when prune=true")


@mcp.tool()
async def create_application(params: CreateApplicationParams, ctx: MCPContext) -> str:
    """
    Start tracking a new application.

    The first reconciliation runs right away. Enabling prune is destructive and
    needs confirmation.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    guard = get_safety_guard()
    if params.prune:
        blocked = guard.check_destructive_operation(
            "enable_prune", params.name, confirmed=params.confirm, confirm_name=params.confirm_name
        )
    else:
        blocked = guard.check_write_operation("create_application")
    if blocked:
        get_audit_logger().log_blocked("create_application", params.name, getattr(blocked, "reason", "confirmation required"))
        return blocked.format_message()

    if get_settings().get_cluster(params.cluster) is None:
        message = f"Unknown cluster '{params.cluster}'. Available: {[c.name for c in get_settings().all_clusters]}"
        get_audit_logger().log_error("create_application", params.name, message)
        return message

    rules = dict.fromkeys(params.normalize_fields, FieldRule.NORMALIZE)
    rules.update(dict.fromkeys(params.ignore_fields, FieldRule.IGNORE))
    try:
        app = Application(
            name=params.name,
            source=SourceRef(
                repo_url=params.repo_url,
                revision=params.revision,
                path=params.path,
                renderer=params.renderer,
                helm_values_files=params.helm_values_files,
            ),
            destination=Destination(server=params.cluster, namespace=params.namespace),
            sync_policy=SyncPolicy(automated=params.automated, prune=params.prune, self_heal=params.self_heal),
            comparison=ComparisonPolicy(rules=rules),
            deletion=params.deletion,
        )
        get_registry().add(app)
    except (ValidationError, ValueError) as e:
        get_audit_logger().log_error("create_application", params.name, str(e))
        return f"Invalid application: {e}"

    get_audit_logger().log_write(
        "create_application",
        params.name,
        "created",
        {"repo_url": params.repo_url, "revision": params.revision, "automated": params.automated},
    )
    return (
        f"Application '{params.name}' created\n"
        f"Source: {params.repo_url} @ {params.revision} ({params.path})\n"
        f"Destination: {params.namespace}@{params.cluster}\n\n"
        f"Use get_application_status to follow the first reconciliation."
    )


class UpdateSyncPolicyParams(BaseModel):
    """Parameters for update_sync_policy tool."""

    name: str = Field(description="Application name")
    automated: bool | None = Field(default=None)
    self_heal: bool | None = Field(default=None)
    prune: bool | None = Field(default=None)
    revision: str | None = Field(default=None, description="New target revision")
    confirm: bool = Field(default=False, description="Required when enabling prune")
    confirm_name: str | None = Field(default=None, description="Application name, when enabling prune")


@mcp.tool()
async def update_sync_policy(params: UpdateSyncPolicyParams, ctx: MCPContext) -> str:
    """
    Change an application's sync policy or target revision.

    Updating an application also lifts a suspension caused by a permission error.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    try:
        controller = get_registry().get(params.name)
    except ValueError as e:
        get_audit_logger().log_error("update_sync_policy", params.name, str(e))
        return str(e)

    current = controller.application
    guard = get_safety_guard()
    if params.prune and not current.sync_policy.prune:
        blocked = guard.check_destructive_operation(
            "enable_prune", params.name, confirmed=params.confirm, confirm_name=params.confirm_name
        )
    else:
        blocked = guard.check_write_operation("update_sync_policy")
    if blocked:
        get_audit_logger().log_blocked("update_sync_policy", params.name, getattr(blocked, "reason", "confirmation required"))
        return blocked.format_message()

    changes = {
        k: v
        for k, v in {"automated": params.automated, "self_heal": params.self_heal, "prune": params.prune}.items()
        if v is not None
    }
    updated = current.model_copy(deep=True)
    updated.sync_policy = current.sync_policy.model_copy(update=changes)
    if params.revision:
        updated.source = current.source.model_copy(update={"revision": params.revision})
    get_registry().update(updated)

    get_audit_logger().log_write(
        "update_sync_policy", params.name, "success", {**changes, "revision": params.revision}
    )
    policy = updated.sync_policy
    return (
        f"Sync policy updated for '{params.name}'\n"
        f"Automated: {policy.automated}\n"
        f"Prune: {policy.prune}\n"
        f"Self-heal: {policy.self_heal}\n"
        f"Revision: {updated.source.revision}"
    )


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    dry_run: bool = Field(
        default=True, description="Preview changes without applying (default: true)"
    )
    prune: bool = Field(default=False, description="Delete owned objects not in Git (destructive)")
    confirm: bool = Field(default=False, description="Required when prune=true")
    confirm_name: str | None = Field(default=None, description="Application name, when prune=true")


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Synchronize an application with its Git source.

    By default runs in dry-run mode showing what would change.
    Set dry_run=false to apply changes. Use prune=true to remove owned
    objects deleted from Git (destructive, requires confirmation).
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    guard = get_safety_guard()
    if params.dry_run:
        blocked = guard.check_read_operation("sync_application")
    elif params.prune:
        blocked = guard.check_destructive_operation(
            "sync_with_prune", params.name, confirmed=params.confirm, confirm_name=params.confirm_name
        )
    else:
        blocked = guard.check_write_operation("sync_application")
    if blocked:
        if isinstance(blocked, ConfirmationRequired):
            get_audit_logger().log_blocked("sync_application", params.name, "prune requires confirmation")
            return (
                f"PRUNE REQUIRES CONFIRMATION\n\n"
                f"Syncing '{params.name}' with prune=true will DELETE owned objects "
                f"that exist in the cluster but not in Git.\n\n"
                f"First, run with dry_run=true to preview deletions:\n"
                f"  sync_application(name='{params.name}', dry_run=true, prune=true)\n\n"
                f"{blocked.confirmation_instructions}"
            )
        get_audit_logger().log_blocked("sync_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_registry().get(params.name)
        if params.dry_run:
            await ctx.report_progress(0, 1, f"[DRY-RUN] Computing sync for {params.name}")
            report = await controller.preview(prune=params.prune)
            await ctx.report_progress(1, 1, "Complete")
            get_audit_logger().log_write("sync_application", params.name, "dry_run")
            return (
                f"[DRY-RUN] {_format_report(params.name, report)}\n\n"
                f"To apply:\n"
                f"  sync_application(name='{params.name}', dry_run=false"
                f"{', prune=true' if params.prune else ''})"
            )

        get_registry().trigger(params.name, sync=True, prune=params.prune or None)
    except (GitOpsError, ValueError) as e:
        get_audit_logger().log_error("sync_application", params.name, str(e))
        return _masked(e)

    get_audit_logger().log_write("sync_application", params.name, "queued", {"prune": params.prune})
    return (
        f"Sync queued for '{params.name}'\n"
        f"Prune: {params.prune}\n\n"
        f"Use get_application_status to monitor progress."
    )


class RefreshApplicationParams(BaseModel):
    """Parameters for refresh_application tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def refresh_application(params: RefreshApplicationParams, ctx: MCPContext) -> str:
    """
    Re-fetch from Git and re-observe the cluster now instead of at the next poll.

    Automated applications sync as usual if the refresh finds a new revision.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_write_operation("refresh_application")
    if blocked:
        get_audit_logger().log_blocked("refresh_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        get_registry().trigger(params.name)
    except ValueError as e:
        get_audit_logger().log_error("refresh_application", params.name, str(e))
        return str(e)

    get_audit_logger().log_write("refresh_application", params.name, "queued")
    return f"Refresh queued for '{params.name}'"


class TerminateSyncParams(BaseModel):
    """Parameters for terminate_sync tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def terminate_sync(params: TerminateSyncParams, ctx: MCPContext) -> str:
    """
    Terminate an ongoing sync operation.

    No new object operation starts after this; calls already in flight finish
    and the remaining objects are reported as skipped.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_write_operation("terminate_sync")
    if blocked:
        get_audit_logger().log_blocked("terminate_sync", params.name, blocked.reason)
        return blocked.format_message()

    try:
        cancelled = get_registry().cancel(params.name)
    except ValueError as e:
        get_audit_logger().log_error("terminate_sync", params.name, str(e))
        return str(e)

    if not cancelled:
        get_audit_logger().log_write("terminate_sync", params.name, "no_operation")
        return f"No sync is running for '{params.name}'"

    get_audit_logger().log_write("terminate_sync", params.name, "terminated")
    return (
        f"Sync operation terminated for '{params.name}'\n\n"
        f"Use get_application_status to check current state."
    )


# =============================================================================
# TIER 3: Destructive Operations (Require explicit confirmation)
# =============================================================================


class DeleteApplicationParams(BaseModel):
    """Parameters for delete_application tool."""

    name: str = Field(description="Application name to delete")
    cascade: bool | None = Field(
        default=None,
        description="Delete owned objects from the cluster (default: the application's deletion policy)",
    )
    confirm: bool = Field(default=False, description="Must be true to execute deletion")
    confirm_name: str | None = Field(
        default=None, description="Type application name to confirm deletion"
    )


@mcp.tool()
async def delete_application(params: DeleteApplicationParams, ctx: MCPContext) -> str:
    """
    Delete an application (DESTRUCTIVE).

    Requires confirm=true AND confirm_name matching the application name.
    With cascade, every object the application owns is deleted from the cluster
    in reverse dependency order; with orphan they are left in place.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    try:
        controller = get_registry().get(params.name)
    except ValueError as e:
        get_audit_logger().log_error("delete_application", params.name, str(e))
        return str(e)

    app = controller.application
    cascade = params.cascade if params.cascade is not None else app.deletion is DeletionPolicy.CASCADE
    operation = "delete_application" if cascade else "delete_application_orphan"

    blocked = get_safety_guard().check_destructive_operation(
        operation,
        params.name,
        confirmed=params.confirm,
        confirm_name=params.confirm_name,
    )
    if blocked:
        if isinstance(blocked, ConfirmationRequired):
            blocked.details = {
                "namespace": app.destination.namespace,
                "cluster": app.destination.server,
                "cascade": str(cascade),
                "effect": "DELETE cluster objects" if cascade else "ORPHAN cluster objects",
            }
            get_audit_logger().log_blocked("delete_application", params.name, "confirmation required")
        else:
            get_audit_logger().log_blocked("delete_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        await ctx.report_progress(0, 1, f"Deleting application {params.name}")
        result = await get_registry().delete(params.name, cascade=cascade)
    except (GitOpsError, ValueError) as e:
        get_audit_logger().log_error("delete_application", params.name, str(e))
        return _masked(e)

    get_audit_logger().log_write("delete_application", params.name, "deleted", {"cascade": cascade})
    lines = [f"Application '{params.name}' deleted successfully.", f"Cascade: {cascade}"]
    if result is not None:
        lines.append(f"Objects deleted: {len(result.items)} ({result.phase.value})")
    return "\n".join(lines)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("gitops://clusters")
async def get_clusters_resource() -> str:
    """Get information about configured destination clusters."""
    settings = get_settings()
    clusters = settings.all_clusters

    if not clusters:
        return "No clusters configured"

    lines = ["Configured Clusters:", ""]
    for cluster in clusters:
        lines.append(f"- {cluster.name}: {cluster.url}")

    return "\n".join(lines)


@mcp.resource("gitops://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    settings = get_settings()
    sec = settings.security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the gitops-sync controller with its MCP control surface."""
    configure_logging(level="INFO")
    logger.info("gitops-sync starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
