# ABOUTME: Unit tests for the desired-state fetcher
# ABOUTME: Tests YAML parsing, renderer selection, git checkout and object preparation

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import yaml

from gitops_sync.errors import RenderError, SourceUnavailable
from gitops_sync.kinds import KindRegistry
from gitops_sync.models import ObjectKey, RendererType, SourceRef
from gitops_sync.source import (
    DEFAULT_TOOL_TIMEOUT,
    DesiredStateFetcher,
    GitRepository,
    ManifestRenderer,
    parse_manifests,
    run_tool,
)

OWNER_LABEL = "app.kubernetes.io/instance"

CRD = {
    "apiVersion": "apiextensions.k8s.io/v1",
    "kind": "CustomResourceDefinition",
    "metadata": {"name": "widgets.example.com"},
    "spec": {
        "group": "example.com",
        "scope": "Namespaced",
        "names": {"kind": "Widget", "plural": "widgets"},
        "versions": [{"name": "v1alpha1", "served": True, "storage": True}],
    },
}


def make_fetcher(registry: KindRegistry, secrets=None) -> DesiredStateFetcher:
    return DesiredStateFetcher(
        owner="web",
        default_namespace="web",
        ownership_label=OWNER_LABEL,
        registry=registry,
        repository=GitRepository(),
        renderer=ManifestRenderer(),
        secrets=secrets,
    )


@pytest.mark.unit
class TestParseManifests:
    """Tests for parse_manifests."""

    def test_multi_document(self):
        """Test documents are returned in order and empty ones skipped."""
        text = "kind: ConfigMap\nmetadata: {name: a}\n---\n---\nkind: Secret\nmetadata: {name: b}\n"

        manifests = parse_manifests(text)

        assert [m["metadata"]["name"] for m in manifests] == ["a", "b"]

    def test_list_is_flattened(self):
        """Test kind: List documents contribute their items in place."""
        text = yaml.safe_dump_all(
            [
                {"kind": "Namespace", "metadata": {"name": "first"}},
                {
                    "apiVersion": "v1",
                    "kind": "List",
                    "items": [
                        {"kind": "ConfigMap", "metadata": {"name": "x"}},
                        {"kind": "ConfigMap", "metadata": {"name": "y"}},
                    ],
                },
                {"kind": "Service", "metadata": {"name": "last"}},
            ]
        )

        names = [m["metadata"]["name"] for m in parse_manifests(text)]

        assert names == ["first", "x", "y", "last"]

    def test_invalid_yaml(self):
        """Test a YAML syntax error becomes a RenderError."""
        with pytest.raises(RenderError, match="not valid YAML"):
            parse_manifests("kind: [unterminated")

    def test_scalar_document(self):
        """Test non-mapping documents are rejected."""
        with pytest.raises(RenderError, match="not a mapping"):
            parse_manifests("just a string")

    def test_missing_name(self):
        """Test documents without metadata.name are rejected."""
        with pytest.raises(RenderError, match="missing kind or metadata.name"):
            parse_manifests("kind: ConfigMap\nmetadata: {}\n")


@pytest.mark.unit
class TestManifestRenderer:
    """Tests for renderer detection and external tools."""

    @pytest.mark.parametrize(
        "marker,expected",
        [
            ("kustomization.yaml", RendererType.KUSTOMIZE),
            ("Kustomization", RendererType.KUSTOMIZE),
            ("Chart.yaml", RendererType.HELM),
            ("deploy.yaml", RendererType.PLAIN),
        ],
    )
    def test_detect(self, tmp_path: Path, marker: str, expected: RendererType):
        """Test the renderer is picked from marker files."""
        (tmp_path / marker).write_text("")

        assert ManifestRenderer.detect(tmp_path) is expected

    async def test_kustomize_build(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test kustomize build runs in the source directory."""
        (tmp_path / "kustomization.yaml").write_text("resources: []\n")
        tool = AsyncMock(return_value=(0, "kind: ConfigMap\nmetadata: {name: a}\n", ""))
        monkeypatch.setattr("gitops_sync.source.run_tool", tool)

        out = await ManifestRenderer(kustomize_binary="/usr/bin/kustomize").render(
            tmp_path, SourceRef(repo_url="x"), "web", "web"
        )

        assert "ConfigMap" in out
        tool.assert_awaited_once_with("/usr/bin/kustomize", "build", ".", cwd=tmp_path, timeout=DEFAULT_TOOL_TIMEOUT)

    async def test_helm_template_args(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test helm template receives release, namespace and values files."""
        (tmp_path / "Chart.yaml").write_text("name: web\n")
        tool = AsyncMock(return_value=(0, "", ""))
        monkeypatch.setattr("gitops_sync.source.run_tool", tool)
        source = SourceRef(repo_url="x", helm_values_files=["values-prod.yaml"])

        await ManifestRenderer().render(tmp_path, source, "web", "prod")

        tool.assert_awaited_once_with(
            "helm",
            "template",
            "web",
            ".",
            "--namespace",
            "prod",
            "--values",
            "values-prod.yaml",
            cwd=tmp_path,
            timeout=DEFAULT_TOOL_TIMEOUT,
        )

    async def test_renderer_failure_keeps_output(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test a non-zero exit surfaces the renderer's diagnostics."""
        diagnostics = "Error: accumulating resources: missing.yaml: no such file\n"
        monkeypatch.setattr("gitops_sync.source.run_tool", AsyncMock(return_value=(1, "", diagnostics)))
        source = SourceRef(repo_url="x", renderer=RendererType.KUSTOMIZE)

        with pytest.raises(RenderError) as exc_info:
            await ManifestRenderer().render(tmp_path, source, "web", "web")

        assert exc_info.value.output == diagnostics
        assert "exited with status 1" in exc_info.value.message

    async def test_missing_binary(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test an absent renderer binary is a RenderError."""
        monkeypatch.setattr("gitops_sync.source.run_tool", AsyncMock(side_effect=FileNotFoundError()))
        source = SourceRef(repo_url="x", renderer=RendererType.HELM)

        with pytest.raises(RenderError, match="not found"):
            await ManifestRenderer(helm_binary="helm3").render(tmp_path, source, "web", "web")

    async def test_renderer_timeout(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test a renderer outliving its timeout is a RenderError."""
        tool = AsyncMock(side_effect=TimeoutError())
        monkeypatch.setattr("gitops_sync.source.run_tool", tool)
        source = SourceRef(repo_url="x", renderer=RendererType.KUSTOMIZE)

        with pytest.raises(RenderError, match="kustomize timed out after 5s"):
            await ManifestRenderer(timeout=5).render(tmp_path, source, "web", "web")

        assert tool.await_args.kwargs["timeout"] == 5

    async def test_missing_directory(self, tmp_path: Path):
        """Test a path absent from the repository is a SourceUnavailable."""
        with pytest.raises(SourceUnavailable):
            await ManifestRenderer().render(tmp_path / "nope", SourceRef(repo_url="x", path="nope"), "web", "web")


@pytest.mark.unit
class TestGitRepository:
    """Tests for git checkouts."""

    async def test_local_directory_used_in_place(self, tmp_path: Path):
        """Test a plain directory is used directly with revision 'local'."""
        async with GitRepository().checkout(SourceRef(repo_url=str(tmp_path))) as (workdir, revision):
            assert workdir == tmp_path
            assert revision == "local"

    async def test_clone_and_checkout(self, monkeypatch: pytest.MonkeyPatch):
        """Test remote repositories are cloned and the revision resolved."""
        tool = AsyncMock(side_effect=[(0, "", ""), (0, "", ""), (0, "3f2a9c1d\n", "")])
        monkeypatch.setattr("gitops_sync.source.run_tool", tool)
        source = SourceRef(repo_url="https://git.example.com/apps.git", revision="v1.2.0")

        async with GitRepository().checkout(source) as (_workdir, revision):
            assert revision == "3f2a9c1d"

        commands = [c.args[1] for c in tool.await_args_list]
        assert commands == ["clone", "checkout", "rev-parse"]

    async def test_unknown_revision_is_fetched(self, monkeypatch: pytest.MonkeyPatch):
        """Test refs unknown after clone are fetched explicitly."""
        tool = AsyncMock(
            side_effect=[
                (0, "", ""),
                (1, "", "error: pathspec 'refs/pull/7/head' did not match"),
                (0, "", ""),
                (0, "", ""),
                (0, "abc123\n", ""),
            ]
        )
        monkeypatch.setattr("gitops_sync.source.run_tool", tool)
        source = SourceRef(repo_url="https://git.example.com/apps.git", revision="refs/pull/7/head")

        async with GitRepository().checkout(source) as (_workdir, revision):
            assert revision == "abc123"

        commands = [c.args[1] for c in tool.await_args_list]
        assert commands == ["clone", "checkout", "fetch", "checkout", "rev-parse"]

    async def test_clone_failure(self, monkeypatch: pytest.MonkeyPatch):
        """Test an unreachable repository is a SourceUnavailable."""
        tool = AsyncMock(return_value=(128, "", "fatal: repository not found"))
        monkeypatch.setattr("gitops_sync.source.run_tool", tool)

        with pytest.raises(SourceUnavailable) as exc_info:
            async with GitRepository().checkout(SourceRef(repo_url="https://git.example.com/x.git")):
                pass

        assert "repository not found" in str(exc_info.value)

    async def test_clone_timeout(self, monkeypatch: pytest.MonkeyPatch):
        """Test a hung clone is a SourceUnavailable naming the timeout."""
        monkeypatch.setattr("gitops_sync.source.run_tool", AsyncMock(side_effect=TimeoutError()))

        with pytest.raises(SourceUnavailable, match="git clone timed out after 2.5s"):
            async with GitRepository(timeout=2.5).checkout(SourceRef(repo_url="https://git.example.com/x.git")):
                pass


@pytest.mark.unit
class TestRunTool:
    """Tests for running external tools."""

    async def test_captures_output(self):
        code, out, err = await run_tool(sys.executable, "-c", "import sys; print('out'); sys.exit(3)", timeout=10)

        assert code == 3
        assert out.strip() == "out"
        assert err == ""

    async def test_timeout_kills_process(self):
        """Test a process outliving its timeout is killed and reported as TimeoutError."""
        with pytest.raises(TimeoutError):
            await run_tool(sys.executable, "-c", "import time; time.sleep(30)", timeout=0.2)


@pytest.mark.unit
class TestDesiredStateFetcher:
    """Tests for DesiredStateFetcher.fetch."""

    async def test_fetch_plain_directory(self, sample_application):
        """Test manifests are labelled with the owner and namespaced."""
        registry = KindRegistry()

        result = await make_fetcher(registry).fetch(sample_application.source)

        assert result.revision == "local"
        keys = {o.key for o in result.objects}
        assert keys == {ObjectKey("ConfigMap", "web", "web-config"), ObjectKey("Deployment", "web", "web")}
        for obj in result.objects:
            assert obj.manifest["metadata"]["labels"][OWNER_LABEL] == "web"

    async def test_namespace_defaults(self, tmp_path: Path):
        """Test namespaced kinds get the destination namespace and cluster-scoped ones lose theirs."""
        (tmp_path / "all.yaml").write_text(
            yaml.safe_dump_all(
                [
                    {"kind": "ConfigMap", "metadata": {"name": "cfg"}},
                    {"kind": "Namespace", "metadata": {"name": "web", "namespace": "stray"}},
                ]
            )
        )

        result = await make_fetcher(KindRegistry()).fetch(SourceRef(repo_url=str(tmp_path)))

        keys = {o.key for o in result.objects}
        assert ObjectKey("ConfigMap", "web", "cfg") in keys
        assert ObjectKey("Namespace", "", "web") in keys

    async def test_crd_registers_custom_kind(self, tmp_path: Path):
        """Test a CRD in the desired state makes its kind known."""
        widget = {"apiVersion": "example.com/v1alpha1", "kind": "Widget", "metadata": {"name": "w"}}
        (tmp_path / "a.yaml").write_text(yaml.safe_dump(widget))
        (tmp_path / "b.yaml").write_text(yaml.safe_dump(CRD))
        registry = KindRegistry()

        result = await make_fetcher(registry).fetch(SourceRef(repo_url=str(tmp_path)))

        assert "Widget" in registry
        assert registry.crd_name_for("Widget") == "widgets.example.com"
        assert ObjectKey("Widget", "web", "w") in {o.key for o in result.objects}

    async def test_duplicate_objects(self, tmp_path: Path):
        """Test the same object rendered twice is a RenderError."""
        (tmp_path / "a.yaml").write_text("kind: ConfigMap\nmetadata: {name: cfg}\n")
        (tmp_path / "b.yaml").write_text("kind: ConfigMap\nmetadata: {name: cfg, namespace: web}\n")

        with pytest.raises(RenderError, match="duplicate"):
            await make_fetcher(KindRegistry()).fetch(SourceRef(repo_url=str(tmp_path)))

    async def test_secrets_injected(self, sample_application):
        """Test every prepared manifest passes through the secret resolver."""
        secrets = AsyncMock()
        secrets.inject = AsyncMock(side_effect=lambda m: m)

        await make_fetcher(KindRegistry(), secrets).fetch(sample_application.source)

        assert secrets.inject.await_count == 2

    async def test_fetch_is_not_cached(self, manifest_dir: Path, sample_application):
        """Test a second fetch sees changes made to the source."""
        fetcher = make_fetcher(KindRegistry())
        await fetcher.fetch(sample_application.source)
        (manifest_dir / "config.yaml").unlink()

        result = await fetcher.fetch(sample_application.source)

        assert [o.key.kind for o in result.objects] == ["Deployment"]
