# ABOUTME: Configuration management for the GitOps sync controller
# ABOUTME: Handles environment variables, cluster connections, loop tuning and safety modes

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the controller. It:

1. READS environment variables (like KUBE_API_URL, GITOPS_POLL_INTERVAL)
2. VALIDATES them (URLs get a scheme, intervals must be positive, etc.)
3. PROVIDES typed access to settings throughout the application

=============================================================================
ARCHITECTURE: FOUR CONFIGURATION CLASSES
=============================================================================

1. ClusterConnection: how to reach ONE Kubernetes API server
   - URL, bearer token, name, TLS settings

2. VaultSettings: the secret store used to resolve <path:...#key> placeholders
   - Address, token, KV mount version, resolved-value cache TTL

3. SecuritySettings: guards on the operator control surface (GITOPS_MCP_*)
   - Read-only mode, destructive ops, rate limiting, audit log

4. ControllerSettings: main configuration container
   - Primary cluster from environment, additional clusters
   - Reconciliation loop tuning (intervals, retries, worker pool)
   - State directory, renderer binaries, log level
   - Nested VaultSettings and SecuritySettings

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Primary cluster (registered as "in-cluster"):
    KUBE_API_URL        -> Kubernetes API server URL
    KUBE_TOKEN          -> Bearer token
    KUBE_INSECURE       -> Skip TLS certificate verification

Secret store:
    VAULT_ADDR          -> Vault server URL
    VAULT_TOKEN         -> Vault token
    GITOPS_VAULT__KV_VERSION, GITOPS_VAULT__CACHE_TTL

Controller (GITOPS_ prefix):
    GITOPS_POLL_INTERVAL, GITOPS_SELF_HEAL_INTERVAL, GITOPS_REQUEST_TIMEOUT,
    GITOPS_MAX_ITEM_RETRIES, GITOPS_MAX_PARALLEL_ITEMS, GITOPS_HISTORY_LIMIT,
    GITOPS_STATE_DIR, GITOPS_OWNERSHIP_LABEL, GITOPS_TOOL_TIMEOUT, GITOPS_LOG_LEVEL, ...

Control surface (GITOPS_MCP_ prefix):
    GITOPS_MCP_READ_ONLY           -> Block all write operations (default: true)
    GITOPS_MCP_DISABLE_DESTRUCTIVE -> Block delete/prune operations (default: true)
    GITOPS_MCP_AUDIT_LOG           -> Path to audit log file
    GITOPS_MCP_MASK_SECRETS        -> Mask sensitive data in output (default: true)
    GITOPS_MCP_RATE_LIMIT_CALLS    -> Max calls per window (default: 100)
    GITOPS_MCP_RATE_LIMIT_WINDOW   -> Rate limit window in seconds (default: 60)
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CLUSTER = "in-cluster"


def _normalize_url(v: str) -> str:
    if not v:
        return v
    if not v.startswith(("http://", "https://")):
        v = f"https://{v}"
    return v.rstrip("/")


# =============================================================================
# CLUSTER CONNECTION
# =============================================================================


class ClusterConnection(BaseModel):
    """
    Connection details for a single Kubernetes API server.

    Applications name their destination cluster; the controller looks the name
    up here. The primary cluster is read from KUBE_* variables through
    ControllerSettings; further clusters come from
    GITOPS_ADDITIONAL_CLUSTERS as a JSON array.
    """

    model_config = {"extra": "ignore"}

    url: str = Field(description="Kubernetes API server URL")
    token: SecretStr = Field(default=SecretStr(""), description="Bearer token")
    name: str = Field(default=DEFAULT_CLUSTER, description="Cluster identifier")
    insecure: bool = Field(default=False, description="Skip TLS verification")
    # Skip verification only for local clusters with self-signed certificates.

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Ensure URL has a scheme and no trailing slash."""
        return _normalize_url(v)


# =============================================================================
# SECRET STORE
# =============================================================================


class VaultSettings(BaseModel):
    """
    Secret store configuration.

    CACHE LIFETIME:
    ---------------
    Resolved values are cached for ``cache_ttl`` seconds so a reconciliation
    tick resolving the same reference many times only reads it once. After
    the TTL the next fetch re-resolves, which is how a rotated secret reaches
    the cluster. 0 disables caching.
    """

    model_config = {"extra": "ignore"}

    addr: str = Field(default="", description="Vault server URL")
    token: SecretStr = Field(default=SecretStr(""), description="Vault token")
    kv_version: int = Field(default=2, ge=1, le=2, description="KV secrets engine version")
    cache_ttl: float = Field(default=300.0, ge=0, description="Resolved-value cache TTL")
    insecure: bool = Field(default=False)

    @field_validator("addr")
    @classmethod
    def validate_addr(cls, v: str) -> str:
        return _normalize_url(v)

    @property
    def enabled(self) -> bool:
        return bool(self.addr)


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Guards on the operator control surface.

    DEFENSE IN DEPTH:
    -----------------
    Layer 1: GITOPS_MCP_READ_ONLY=true (default)
        - Manual syncs, policy changes and refreshes are refused

    Layer 2: GITOPS_MCP_DISABLE_DESTRUCTIVE=true (default)
        - Application deletion and enabling prune are refused

    Layer 3: Rate limiting
        - Caps how often an operator (or agent) may trigger work

    Layer 4: Confirmation
        - Destructive operations need confirm=true AND confirm_name=<target>

    These guards apply to requests arriving through the control surface only.
    Automated reconciliation is governed by each Application's sync policy.
    """

    model_config = SettingsConfigDict(env_prefix="GITOPS_MCP_")

    read_only: bool = Field(default=True, description="Block all write operations when true")
    disable_destructive: bool = Field(
        default=True,
        description="Block delete and prune operations when true",
    )
    audit_log: Path | None = Field(default=None, description="Path to audit log file")
    # One JSON object per line: timestamp, correlation_id, action, target, result, details.
    mask_secrets: bool = Field(default=True, description="Mask sensitive values in output")
    rate_limit_calls: int = Field(default=100, description="Maximum calls per window")
    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")


# =============================================================================
# MAIN CONTROLLER SETTINGS
# =============================================================================


class ControllerSettings(BaseSettings):
    """
    Main controller configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.poll_interval        # seconds between reconciliation ticks
        settings.get_cluster("in-cluster")
        settings.security.read_only
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # PRIMARY CLUSTER (from environment)
    # -------------------------------------------------------------------------

    kube_api_url: str = Field(
        default="",
        validation_alias="KUBE_API_URL",
        description="Primary Kubernetes API server URL",
    )
    kube_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KUBE_TOKEN",
        description="Primary cluster bearer token",
    )
    # For a service account inside the cluster:
    #    cat /var/run/secrets/kubernetes.io/serviceaccount/token
    kube_insecure: bool = Field(
        default=False,
        validation_alias="KUBE_INSECURE",
        description="Skip TLS verification for the primary cluster",
    )

    additional_clusters: list[ClusterConnection] = Field(
        default_factory=list,
        description="Further destination clusters",
    )

    # -------------------------------------------------------------------------
    # RECONCILIATION LOOP
    # -------------------------------------------------------------------------

    poll_interval: float = Field(default=180.0, gt=0, description="Seconds between ticks")
    self_heal_interval: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between live-drift checks for self-healing applications",
    )
    request_timeout: float = Field(default=30.0, gt=0, description="Per-call timeout")
    max_item_retries: int = Field(default=5, ge=1, description="Attempts per sync item")
    retry_backoff_min: float = Field(default=0.5, ge=0)
    retry_backoff_max: float = Field(default=30.0, ge=0)
    max_parallel_items: int = Field(default=8, ge=1, description="Worker pool per sync")
    history_limit: int = Field(default=10, ge=1, description="Sync history entries kept")
    ownership_label: str = Field(default="app.kubernetes.io/instance")

    # -------------------------------------------------------------------------
    # STATE AND EXTERNAL TOOLS
    # -------------------------------------------------------------------------

    state_dir: Path = Field(default=Path(".gitops-sync"), description="Durable state root")
    git_binary: str = Field(default="git")
    kustomize_binary: str = Field(default="kustomize")
    helm_binary: str = Field(default="helm")
    tool_timeout: float = Field(default=300.0, gt=0, description="Seconds before an external tool run is killed")

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    server_name: str = Field(default="gitops-sync", description="MCP server name")

    # -------------------------------------------------------------------------
    # NESTED SETTINGS
    # -------------------------------------------------------------------------

    vault: VaultSettings = Field(default_factory=dict, validate_default=True)  # type: ignore[arg-type]
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @field_validator("vault", mode="before")
    @classmethod
    def vault_from_env(cls, v: object) -> object:
        """Fall back to the VAULT_ADDR / VAULT_TOKEN variables Vault's own CLI reads."""
        if v is None or v == {}:
            return {
                "addr": os.environ.get("VAULT_ADDR", ""),
                "token": os.environ.get("VAULT_TOKEN", ""),
            }
        return v

    # -------------------------------------------------------------------------
    # COMPUTED PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def primary_cluster(self) -> ClusterConnection | None:
        """Primary cluster from KUBE_* variables, None when KUBE_API_URL is unset."""
        if not self.kube_api_url:
            return None
        return ClusterConnection(
            url=self.kube_api_url,
            token=self.kube_token,
            name=DEFAULT_CLUSTER,
            insecure=self.kube_insecure,
        )

    @property
    def all_clusters(self) -> list[ClusterConnection]:
        clusters = []
        if self.primary_cluster:
            clusters.append(self.primary_cluster)
        clusters.extend(self.additional_clusters)
        return clusters

    def get_cluster(self, name: str = DEFAULT_CLUSTER) -> ClusterConnection | None:
        """Get cluster connection by name, None when not configured."""
        for cluster in self.all_clusters:
            if cluster.name == name:
                return cluster
        return None


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ControllerSettings:
    """
    Load settings from environment with validation.

    If GITOPS_ENV_FILE is set, variables are also read from that file.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ControllerSettings(
        _env_file=os.environ.get("GITOPS_ENV_FILE"),
    )
