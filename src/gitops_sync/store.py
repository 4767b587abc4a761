# ABOUTME: Durable state for application definitions and sync history
# ABOUTME: JSON definitions written atomically, history kept as bounded JSON lines

"""
State store.

Layout under ``state_dir``::

    applications/<name>.json   one Application definition (with last status)
    history/<name>.jsonl       one SyncResult per line, oldest first

Definitions are replaced with write-then-rename so a crash never leaves a
half-written file. History is appended; once it exceeds ``history_limit`` the
oldest lines are dropped by the same atomic rewrite.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pydantic
import structlog

from gitops_sync.models import Application, SyncResult

logger = structlog.get_logger(__name__)


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class StateStore:
    """File-backed persistence for definitions and history."""

    def __init__(self, root: Path, history_limit: int = 10) -> None:
        self._root = Path(root)
        self._history_limit = history_limit
        self._apps = self._root / "applications"
        self._history = self._root / "history"

    @property
    def root(self) -> Path:
        return self._root

    def _app_path(self, name: str) -> Path:
        return self._apps / f"{name}.json"

    def _history_path(self, name: str) -> Path:
        return self._history / f"{name}.jsonl"

    # =========================================================================
    # DEFINITIONS
    # =========================================================================

    def save(self, app: Application) -> None:
        _atomic_write(self._app_path(app.name), app.model_dump_json(indent=2) + "\n")

    def load(self, name: str) -> Application | None:
        path = self._app_path(name)
        if not path.exists():
            return None
        return Application.model_validate_json(path.read_text())

    def load_all(self) -> list[Application]:
        """Every stored definition; unreadable files are logged and skipped."""
        if not self._apps.is_dir():
            return []
        apps: list[Application] = []
        for path in sorted(self._apps.glob("*.json")):
            try:
                apps.append(Application.model_validate_json(path.read_text()))
            except (OSError, pydantic.ValidationError) as e:
                logger.error("Skipping unreadable application definition", path=str(path), error=str(e))
        return apps

    def delete(self, name: str) -> None:
        """Remove a definition together with its history."""
        self._app_path(name).unlink(missing_ok=True)
        self._history_path(name).unlink(missing_ok=True)

    # =========================================================================
    # HISTORY
    # =========================================================================

    def append_history(self, result: SyncResult) -> None:
        path = self._history_path(result.application)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a") as f:
            f.write(result.model_dump_json() + "\n")

        lines = path.read_text().splitlines()
        if self._history_limit > 0 and len(lines) > self._history_limit:
            kept = lines[-self._history_limit :]
            _atomic_write(path, "\n".join(kept) + "\n")
            logger.debug("Trimmed sync history", application=result.application, evicted=len(lines) - len(kept))

    def history(self, name: str, limit: int | None = None) -> list[SyncResult]:
        """Sync records oldest first; ``limit`` keeps only the newest N."""
        path = self._history_path(name)
        if not path.exists():
            return []
        records: list[SyncResult] = []
        for line in path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                records.append(SyncResult.model_validate_json(line))
            except pydantic.ValidationError as e:
                logger.warning("Skipping corrupt history line", application=name, error=str(e))
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records
