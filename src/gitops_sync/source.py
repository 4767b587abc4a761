# ABOUTME: Desired-state fetcher: git checkout, manifest rendering and parsing
# ABOUTME: Delegates templating to kustomize/helm and never caches across calls

"""
Desired-State Fetcher.

=============================================================================
PIPELINE
=============================================================================

    SourceRef(repo_url, revision, path)
        │
        ▼  GitRepository.checkout      git clone + checkout into a temp dir
    working tree @ commit SHA                       (SourceUnavailable)
        │
        ▼  ManifestRenderer.render     kustomize build / helm template / files
    multi-document YAML text                        (RenderError)
        │
        ▼  parse_manifests             yaml.safe_load_all, List flattening
    list of manifests                               (RenderError)
        │
        ▼  VaultSecretResolver.inject  <path:...#key> placeholders
    list of DesiredObject                           (SecretUnavailable)

Every call starts from a fresh checkout, so the result is always restartable
and never stale. Caching, where wanted, is the controller's business.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from gitops_sync.errors import RenderError, SourceUnavailable
from gitops_sync.kinds import CRD_KIND
from gitops_sync.models import DesiredObject, RendererType, SourceRef

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_sync.kinds import KindRegistry
    from gitops_sync.secrets import VaultSecretResolver

logger = structlog.get_logger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass
class FetchResult:
    revision: str
    objects: list[DesiredObject] = field(default_factory=list)


DEFAULT_TOOL_TIMEOUT = 300.0


async def run_tool(
    binary: str, *args: str, cwd: Path | None = None, timeout: float | None = None
) -> tuple[int, str, str]:
    """
    Run an external CLI and capture (returncode, stdout, stderr).

    The process is killed and TimeoutError raised when it outlives ``timeout``.
    """
    process = await asyncio.create_subprocess_exec(
        binary,
        *args,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise
    return process.returncode or 0, stdout.decode(errors="replace"), stderr.decode(errors="replace")


# =============================================================================
# REPOSITORY SOURCE
# =============================================================================


class GitRepository:
    """Checks a revision of a git repository out into a temporary directory."""

    def __init__(self, git_binary: str = "git", timeout: float = DEFAULT_TOOL_TIMEOUT) -> None:
        self._git = git_binary
        self._timeout = timeout

    async def _run(self, *args: str, cwd: Path | None = None) -> str:
        try:
            code, out, err = await run_tool(self._git, *args, cwd=cwd, timeout=self._timeout)
        except FileNotFoundError as e:
            raise SourceUnavailable(f"git binary '{self._git}' not found") from e
        except TimeoutError as e:
            raise SourceUnavailable(f"git {args[0]} timed out after {self._timeout:g}s") from e
        if code != 0:
            raise SourceUnavailable(f"git {args[0]} failed", err.strip() or out.strip())
        return out.strip()

    @staticmethod
    def _local_directory(repo_url: str) -> Path | None:
        """A plain local directory that is not itself a git repository."""
        raw = repo_url.removeprefix("file://")
        if "://" in raw or raw.startswith("git@"):
            return None
        path = Path(raw).expanduser()
        if path.is_dir() and not (path / ".git").exists():
            return path
        return None

    @contextlib.asynccontextmanager
    async def checkout(self, source: SourceRef) -> AsyncIterator[tuple[Path, str]]:
        """
        Yield ``(working tree, resolved revision)``.

        Plain local directories are used in place with revision "local".

        Raises:
            SourceUnavailable: clone, checkout or revision lookup failed.
        """
        local = self._local_directory(source.repo_url)
        if local is not None:
            yield local, "local"
            return

        with tempfile.TemporaryDirectory(prefix="gitops-sync-") as tmp:
            workdir = Path(tmp) / "repo"
            await self._run("clone", "--quiet", "--no-checkout", source.repo_url, str(workdir))
            try:
                await self._run("checkout", "--quiet", source.revision, cwd=workdir)
            except SourceUnavailable:
                # Not a branch or tag known after clone, e.g. a PR ref.
                await self._run("fetch", "--quiet", "origin", source.revision, cwd=workdir)
                await self._run("checkout", "--quiet", "FETCH_HEAD", cwd=workdir)
            revision = await self._run("rev-parse", "HEAD", cwd=workdir)
            yield workdir, revision


# =============================================================================
# RENDERER
# =============================================================================


class ManifestRenderer:
    """Turns a source directory into rendered YAML using an external tool."""

    def __init__(
        self,
        kustomize_binary: str = "kustomize",
        helm_binary: str = "helm",
        timeout: float = DEFAULT_TOOL_TIMEOUT,
    ) -> None:
        self._kustomize = kustomize_binary
        self._helm = helm_binary
        self._timeout = timeout

    @staticmethod
    def detect(directory: Path) -> RendererType:
        if any((directory / n).exists() for n in ("kustomization.yaml", "kustomization.yml", "Kustomization")):
            return RendererType.KUSTOMIZE
        if (directory / "Chart.yaml").exists():
            return RendererType.HELM
        return RendererType.PLAIN

    async def _tool(self, binary: str, *args: str, cwd: Path) -> str:
        try:
            code, out, err = await run_tool(binary, *args, cwd=cwd, timeout=self._timeout)
        except FileNotFoundError as e:
            raise RenderError(f"renderer '{binary}' not found") from e
        except TimeoutError as e:
            raise RenderError(f"{Path(binary).name} timed out after {self._timeout:g}s") from e
        if code != 0:
            raise RenderError(f"{Path(binary).name} exited with status {code}", err or out)
        return out

    async def render(
        self,
        directory: Path,
        source: SourceRef,
        release_name: str,
        namespace: str,
    ) -> str:
        if not directory.is_dir():
            raise SourceUnavailable("source path not found in repository", source.path)

        renderer = source.renderer
        if renderer is RendererType.AUTO:
            renderer = self.detect(directory)
        logger.debug("Rendering manifests", renderer=renderer.value, path=source.path)

        if renderer is RendererType.KUSTOMIZE:
            return await self._tool(self._kustomize, "build", ".", cwd=directory)

        if renderer is RendererType.HELM:
            args = ["template", release_name, ".", "--namespace", namespace]
            for values in source.helm_values_files:
                args.extend(["--values", values])
            return await self._tool(self._helm, *args, cwd=directory)

        documents = []
        for file in sorted(directory.rglob("*")):
            if file.is_file() and file.suffix in MANIFEST_SUFFIXES:
                documents.append(file.read_text())
        return "\n---\n".join(documents)


def parse_manifests(text: str) -> list[dict[str, Any]]:
    """
    Parse multi-document YAML into manifests.

    Empty documents are skipped and ``kind: List`` documents are flattened.

    Raises:
        RenderError: unparseable YAML or a document without kind/name.
    """
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise RenderError("rendered output is not valid YAML", str(e)) from e

    manifests: list[dict[str, Any]] = []
    pending = [d for d in documents if d is not None]
    while pending:
        doc = pending.pop(0)
        if not isinstance(doc, dict):
            raise RenderError("rendered document is not a mapping", repr(doc)[:200])
        if str(doc.get("kind", "")).endswith("List") and isinstance(doc.get("items"), list):
            pending[0:0] = list(doc.get("items") or [])
            continue
        if not doc.get("kind") or not (doc.get("metadata") or {}).get("name"):
            raise RenderError("rendered document is missing kind or metadata.name", repr(doc)[:200])
        manifests.append(doc)
    return manifests


# =============================================================================
# FETCHER
# =============================================================================


class DesiredStateFetcher:
    """
    Produces the desired object set of one Application.

    The fetcher stamps every object with the ownership label, defaults the
    namespace of namespaced kinds to the destination namespace, and registers
    the kinds defined by any CustomResourceDefinition it sees.
    """

    def __init__(
        self,
        *,
        owner: str,
        default_namespace: str,
        ownership_label: str,
        registry: KindRegistry,
        repository: GitRepository,
        renderer: ManifestRenderer,
        secrets: VaultSecretResolver | None = None,
    ) -> None:
        self._owner = owner
        self._namespace = default_namespace
        self._label = ownership_label
        self._registry = registry
        self._repository = repository
        self._renderer = renderer
        self._secrets = secrets

    def _prepare(self, manifest: dict[str, Any]) -> dict[str, Any]:
        manifest = copy.deepcopy(manifest)
        metadata = manifest.setdefault("metadata", {})
        if manifest["kind"] == CRD_KIND:
            self._registry.register_crd(manifest)
        if self._registry.is_namespaced(manifest["kind"]):
            metadata.setdefault("namespace", self._namespace)
        else:
            metadata.pop("namespace", None)
        labels = metadata.get("labels") or {}
        labels[self._label] = self._owner
        metadata["labels"] = labels
        return manifest

    async def fetch(self, source: SourceRef) -> FetchResult:
        """
        Fetch, render and parse the desired state.

        Raises:
            SourceUnavailable, RenderError, SecretUnavailable
        """
        async with self._repository.checkout(source) as (workdir, revision):
            text = await self._renderer.render(
                workdir / source.path,
                source,
                release_name=self._owner,
                namespace=self._namespace,
            )

        manifests = parse_manifests(text)
        # CRDs first so custom kinds are known before their objects are prepared.
        manifests.sort(key=lambda m: m.get("kind") != CRD_KIND)

        objects: list[DesiredObject] = []
        seen: set[Any] = set()
        for manifest in manifests:
            prepared = self._prepare(manifest)
            if self._secrets is not None:
                prepared = await self._secrets.inject(prepared)
            obj = DesiredObject.from_manifest(prepared)
            if obj.key in seen:
                raise RenderError("duplicate object in rendered output", str(obj.key))
            seen.add(obj.key)
            objects.append(obj)

        logger.info("Fetched desired state", revision=revision[:12], objects=len(objects))
        return FetchResult(revision=revision, objects=objects)
