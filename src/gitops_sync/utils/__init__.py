# ABOUTME: Utilities package initialization for gitops-sync
# ABOUTME: Contains shared utilities for the cluster client, safety, and logging

"""
gitops-sync Utilities Package

Shared utilities:
    - client.py: Kubernetes API client and per-cluster connection pool
    - safety.py: Confirmation patterns and destructive operation guards
    - logging.py: Structured logging with correlation IDs and audit trail
"""
