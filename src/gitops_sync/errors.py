# ABOUTME: Error taxonomy for the GitOps sync controller
# ABOUTME: Separates transient target failures from fatal ones so retries stay bounded

"""
Structured errors raised by the fetcher, observer, client and secret resolver.

Every error carries a ``transient`` flag. The retry layer only ever retries
transient errors; everything else surfaces straight into the Application's
status.

    GitOpsError
    ├── SourceUnavailable        repository reference cannot be resolved
    ├── RenderError              kustomize / helm / parser failed (raw output kept)
    ├── SecretUnavailable        secret reference cannot be resolved
    │   └── AccessDenied         secret store refused the token
    └── TargetError              Kubernetes API answered with an error
        ├── TargetUnreachable    timeout / connection failure      (transient)
        ├── TransientTargetError conflict, throttling, 5xx          (transient)
        ├── PermissionDenied     401 / 403                          (fatal)
        ├── ValidationError      400 / 422 malformed object         (fatal, per object)
        └── NotFound             404
"""

from __future__ import annotations


class GitOpsError(Exception):
    """Base error with a short message and optional details."""

    transient: bool = False

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = self.message
        if self.details:
            base += f" - {self.details}"
        return base


class SourceUnavailable(GitOpsError):
    """The repository location or revision could not be resolved."""


class RenderError(GitOpsError):
    """An external renderer exited non-zero or produced unparseable output.

    ``output`` holds the renderer's raw diagnostic text, untruncated.
    """

    def __init__(self, message: str, output: str = "") -> None:
        self.output = output
        super().__init__(message, output.strip() or None)


class SecretUnavailable(GitOpsError):
    """A secret reference could not be resolved."""


class AccessDenied(SecretUnavailable):
    """The secret store rejected the request."""


class TargetError(GitOpsError):
    """Error answered by (or while talking to) the target cluster."""

    def __init__(
        self,
        code: int,
        message: str,
        details: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.code = code
        self.reason = reason
        super().__init__(message, details)

    def __str__(self) -> str:
        base = f"Kubernetes API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class TargetUnreachable(TargetError):
    """Timeout or connection failure. Always retryable."""

    transient = True

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(0, message, details)


class TransientTargetError(TargetError):
    """Conflict, throttling or server-side failure."""

    transient = True


class PermissionDenied(TargetError):
    """Credentials lack access. Fatal until the Application is reconfigured."""


class ValidationError(TargetError):
    """The API server rejected the object as malformed."""


class NotFound(TargetError):
    """The object does not exist."""
