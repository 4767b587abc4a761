# ABOUTME: gitops-sync package initialization
# ABOUTME: Exposes version information

"""
gitops-sync - continuous reconciliation of Git-declared state into Kubernetes.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_sync/
├── __init__.py          <- Package entry point
├── config.py            <- Settings from environment (pydantic-settings)
├── models.py            <- Applications, objects, diffs, sync results
├── errors.py            <- Error taxonomy (transient vs fatal)
├── kinds.py             <- Kind registry: API paths and dependency rank
├── source.py            <- Desired state: git checkout, render, parse
├── secrets.py           <- Vault placeholder injection
├── observer.py          <- Live state: owned objects on the cluster
├── diff.py              <- Field-level desired vs live comparison
├── retry.py             <- Bounded retry over explicit attempt results
├── reconciler.py        <- Sync engine: ordered, parallel apply/delete
├── health.py            <- Per-kind health rules and rollup
├── store.py             <- Persisted definitions and sync history
├── controller.py        <- Per-application loops and the registry
├── server.py            <- MCP control surface and main()
└── utils/
    ├── client.py        <- Kubernetes REST client and cluster pool
    ├── logging.py       <- Structured logging with audit trail
    └── safety.py        <- Write guards, rate limiting, secret masking
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
