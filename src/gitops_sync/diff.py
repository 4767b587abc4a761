# ABOUTME: Diff engine comparing desired and live object sets field by field
# ABOUTME: Applies comparison policy, ownership and prune rules, emits dependency-ordered items

"""
Diff Engine.

=============================================================================
HOW OBJECTS ARE COMPARED
=============================================================================

Comparison is structural: the desired manifest is walked field by field
against the live one. Whole-document hashing would never converge because
the API server injects fields of its own (``spec.clusterIP``, container
``imagePullPolicy``, generated labels, ``status`` ...).

Three sources decide whether a difference counts:

1. ALWAYS IGNORED: ``status`` and server-populated metadata.

2. THREE-WAY RULE: a field present only in live is a server default and is
   ignored, unless it appears in the last-applied annotation written by the
   sync engine. In that case the engine put it there, desired no longer has
   it, and its removal is a real change.

       desired   {replicas: 2}
       applied   {replicas: 2, paused: true}
       live      {replicas: 2, paused: true, progressDeadlineSeconds: 600}
       result    [spec.paused removed]      (progressDeadlineSeconds ignored)

3. COMPARISON POLICY: per-path rules from the Application.
   - ignore:    the path is dropped on both sides
   - normalize: compared only when desired sets it; scalars compared by
                string form; None, {} and [] are treated as absent

=============================================================================
OWNERSHIP AND PRUNING
=============================================================================

Live objects absent from desired:
    owner marker matches, prune on   -> Remove item
    owner marker matches, prune off  -> requires_pruning (advisory)
    owner marker differs             -> unmanaged (never a Remove)

Objects are keyed by (kind, namespace, name), so an Add and a Remove of the
same identity always collapse into one Modify.
"""

from __future__ import annotations

import fnmatch
from typing import TYPE_CHECKING, Any

import structlog

from gitops_sync.kinds import KindRegistry
from gitops_sync.models import (
    LAST_APPLIED_ANNOTATION,
    ComparisonPolicy,
    DiffAction,
    DiffItem,
    DiffReport,
    FieldChange,
    FieldRule,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_sync.models import DesiredObject, LiveObject

logger = structlog.get_logger(__name__)

_DEFAULT_REGISTRY = KindRegistry()


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

ALWAYS_IGNORED: tuple[str, ...] = (
    "status",
    "metadata.uid",
    "metadata.resourceVersion",
    "metadata.generation",
    "metadata.creationTimestamp",
    "metadata.deletionTimestamp",
    "metadata.deletionGracePeriodSeconds",
    "metadata.managedFields",
    "metadata.selfLink",
    "metadata.ownerReferences",
    f"metadata.annotations.{LAST_APPLIED_ANNOTATION}",
)


def _split(pattern: str) -> tuple[str | None, list[str]]:
    kind, sep, path = pattern.partition(":")
    if not sep:
        return None, pattern.split(".")
    return kind, path.split(".")


def _prefix_match(pattern: list[str], path: list[str]) -> bool:
    if len(pattern) > len(path):
        return False
    return all(p == "*" or fnmatch.fnmatchcase(seg, p) for p, seg in zip(pattern, path, strict=False))


def _normalize(value: Any) -> Any:
    if value is None or value == {} or value == []:
        return MISSING
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float, str)):
        return str(value)
    return value


class ObjectComparator:
    """Field-level comparison of one desired/live pair under a policy."""

    def __init__(self, policy: ComparisonPolicy | None = None) -> None:
        rules = dict.fromkeys(ALWAYS_IGNORED, FieldRule.IGNORE)
        if policy:
            rules.update(policy.rules)
        self._rules = [(*_split(pattern), rule) for pattern, rule in rules.items()]

    def rule_for(self, kind: str, path: list[str]) -> FieldRule | None:
        """The rule of the most specific matching pattern, if any."""
        best: tuple[int, FieldRule] | None = None
        for rule_kind, pattern, rule in self._rules:
            if rule_kind is not None and rule_kind != kind:
                continue
            if _prefix_match(pattern, path) and (best is None or len(pattern) > best[0]):
                best = (len(pattern), rule)
        return best[1] if best else None

    def compare(
        self,
        kind: str,
        desired: dict[str, Any],
        live: dict[str, Any],
        applied: dict[str, Any] | None = None,
    ) -> list[FieldChange]:
        changes: list[FieldChange] = []
        self._walk(kind, desired, live, applied if applied is not None else MISSING, [], changes)
        return changes

    def _walk(
        self,
        kind: str,
        desired: Any,
        live: Any,
        applied: Any,
        path: list[str],
        changes: list[FieldChange],
    ) -> None:
        rule = self.rule_for(kind, path) if path else None
        if rule is FieldRule.IGNORE:
            return
        if rule is FieldRule.NORMALIZE:
            desired, live = _normalize(desired), _normalize(live)
            if desired is MISSING:
                return

        if isinstance(desired, dict) and isinstance(live, dict):
            applied_map = applied if isinstance(applied, dict) else {}
            for key, value in desired.items():
                self._walk(kind, value, live.get(key, MISSING), applied_map.get(key, MISSING), [*path, key], changes)
            for key, value in live.items():
                if key not in desired and key in applied_map:
                    self._walk(kind, MISSING, value, applied_map[key], [*path, key], changes)
            return

        if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
            applied_list = applied if isinstance(applied, list) and len(applied) == len(desired) else None
            for index, (d, lv) in enumerate(zip(desired, live, strict=True)):
                a = applied_list[index] if applied_list is not None else MISSING
                self._walk(kind, d, lv, a, [*path, str(index)], changes)
            return

        if desired is MISSING and live is MISSING:
            return
        if desired != live or type(desired) is not type(live) and not _same_number(desired, live):
            changes.append(
                FieldChange(
                    path=".".join(path),
                    desired=None if desired is MISSING else desired,
                    live=None if live is MISSING else live,
                )
            )


def _same_number(a: Any, b: Any) -> bool:
    numeric = (int, float)
    return (
        isinstance(a, numeric)
        and isinstance(b, numeric)
        and not isinstance(a, bool)
        and not isinstance(b, bool)
        and a == b
    )


def order_items(items: Iterable[DiffItem], registry: KindRegistry | None = None) -> list[DiffItem]:
    """
    Dependency order: applies by ascending kind rank, then removals by
    descending rank. Ties break on object identity for a stable order.
    """
    registry = registry or _DEFAULT_REGISTRY
    applies = [i for i in items if i.action is not DiffAction.REMOVE]
    removes = [i for i in items if i.action is DiffAction.REMOVE]
    applies.sort(key=lambda i: (registry.rank(i.key.kind), i.key))
    removes.sort(key=lambda i: (-registry.rank(i.key.kind), i.key))
    return applies + removes


def diff(
    desired: Iterable[DesiredObject],
    live: Iterable[LiveObject],
    policy: ComparisonPolicy | None = None,
    *,
    owner: str,
    prune: bool,
    registry: KindRegistry | None = None,
) -> DiffReport:
    """
    Compare desired and live object sets.

    Args:
        desired: Rendered desired objects.
        live: Observed live objects.
        policy: Per-path comparison rules.
        owner: Application name expected in the ownership marker.
        prune: Whether owned live-only objects become Remove items.
        registry: Kind registry used for dependency ordering.

    Returns:
        DiffReport with ordered items and the advisory lists.
    """
    comparator = ObjectComparator(policy)
    live_by_key = {obj.key: obj for obj in live}
    report = DiffReport()
    items: list[DiffItem] = []

    for obj in desired:
        current = live_by_key.pop(obj.key, None)
        if current is None:
            items.append(DiffItem(DiffAction.ADD, obj.key, desired=obj))
            continue
        changes = comparator.compare(obj.key.kind, obj.manifest, current.manifest, current.last_applied)
        if changes:
            items.append(DiffItem(DiffAction.MODIFY, obj.key, desired=obj, live=current, changes=changes))

    for obj in live_by_key.values():
        if obj.owner != owner:
            report.unmanaged.append(obj)
        elif prune:
            items.append(DiffItem(DiffAction.REMOVE, obj.key, live=obj))
        else:
            report.requires_pruning.append(obj)

    report.items = order_items(items, registry)
    if report.items or report.requires_pruning:
        logger.debug(
            "Diff computed",
            owner=owner,
            items=len(report.items),
            requires_pruning=len(report.requires_pruning),
            unmanaged=len(report.unmanaged),
        )
    return report
