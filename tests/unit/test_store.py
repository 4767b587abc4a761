# ABOUTME: Unit tests for the durable state store
# ABOUTME: Tests definition persistence, corrupt-file tolerance and bounded sync history

from pathlib import Path

import pytest

from gitops_sync.models import (
    Application,
    DiffAction,
    HealthStatus,
    ItemOutcome,
    SourceRef,
    SyncItemResult,
    SyncPhase,
    SyncResult,
)
from gitops_sync.store import StateStore


def make_app(name: str) -> Application:
    return Application(name=name, source=SourceRef(repo_url="https://git.example.com/apps.git"))


def make_result(name: str, revision: str) -> SyncResult:
    result = SyncResult(application=name, revision=revision)
    result.start()
    result.items.append(
        SyncItemResult(
            kind="ConfigMap",
            namespace="web",
            name="cfg",
            action=DiffAction.ADD,
            outcome=ItemOutcome.SUCCEEDED,
            message="created",
        )
    )
    result.finish("1 items synced")
    return result


@pytest.mark.unit
class TestDefinitions:
    """Tests for saving and loading Application definitions."""

    def test_round_trip_with_status(self, tmp_path: Path):
        store = StateStore(tmp_path)
        app = make_app("web")
        app.status.health = HealthStatus.DEGRADED
        app.status.synced_revision = "abc123"

        store.save(app)
        loaded = store.load("web")

        assert loaded == app

    def test_load_missing(self, tmp_path: Path):
        assert StateStore(tmp_path).load("nope") is None

    def test_save_leaves_no_temp_files(self, tmp_path: Path):
        """Test the atomic write cleans up after itself."""
        store = StateStore(tmp_path)
        store.save(make_app("web"))
        store.save(make_app("web"))

        assert [p.name for p in (tmp_path / "applications").iterdir()] == ["web.json"]

    def test_load_all_skips_corrupt_files(self, tmp_path: Path):
        store = StateStore(tmp_path)
        store.save(make_app("web"))
        store.save(make_app("api"))
        (tmp_path / "applications" / "broken.json").write_text("{not json")

        assert [a.name for a in store.load_all()] == ["api", "web"]

    def test_load_all_empty(self, tmp_path: Path):
        assert StateStore(tmp_path / "fresh").load_all() == []

    def test_delete_removes_history(self, tmp_path: Path):
        store = StateStore(tmp_path)
        store.save(make_app("web"))
        store.append_history(make_result("web", "r1"))

        store.delete("web")

        assert store.load("web") is None
        assert store.history("web") == []


@pytest.mark.unit
class TestHistory:
    """Tests for sync history."""

    def test_oldest_first(self, tmp_path: Path):
        store = StateStore(tmp_path)
        for revision in ("r1", "r2", "r3"):
            store.append_history(make_result("web", revision))

        history = store.history("web")

        assert [r.revision for r in history] == ["r1", "r2", "r3"]
        assert history[0].phase is SyncPhase.SUCCEEDED
        assert history[0].items[0].message == "created"

    def test_trimmed_to_limit(self, tmp_path: Path):
        """Test only the newest entries are retained."""
        store = StateStore(tmp_path, history_limit=3)
        for n in range(5):
            store.append_history(make_result("web", f"r{n}"))

        assert [r.revision for r in store.history("web")] == ["r2", "r3", "r4"]
        assert len((tmp_path / "history" / "web.jsonl").read_text().splitlines()) == 3

    def test_limit_argument(self, tmp_path: Path):
        store = StateStore(tmp_path)
        for n in range(4):
            store.append_history(make_result("web", f"r{n}"))

        assert [r.revision for r in store.history("web", limit=2)] == ["r2", "r3"]
        assert store.history("web", limit=0) == []

    def test_histories_are_per_application(self, tmp_path: Path):
        store = StateStore(tmp_path)
        store.append_history(make_result("web", "r1"))
        store.append_history(make_result("api", "r9"))

        assert [r.revision for r in store.history("api")] == ["r9"]

    def test_corrupt_line_skipped(self, tmp_path: Path):
        store = StateStore(tmp_path)
        store.append_history(make_result("web", "r1"))
        with (tmp_path / "history" / "web.jsonl").open("a") as f:
            f.write("garbage\n")
        store.append_history(make_result("web", "r2"))

        assert [r.revision for r in store.history("web")] == ["r1", "r2"]
