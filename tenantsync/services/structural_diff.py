"""Schema-driven structural diff for mirrored entities.

Walks an ``EntitySchema`` tree, comparing a desired state against the last
known remote state. Each field's ``mutable_in`` set is evaluated against the
entity's current lifecycle state, so the immutable set is always derived at
diff time. A field that differs but is immutable is reported in
``skipped_immutable`` and never reaches the payload.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from tenantsync.services.campaign_models import FieldSpec, LifecycleState

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class FieldChange:
    """A single changed leaf (or atomic subtree)."""

    path: str
    remote_path: str
    old: Any
    new: Any


@dataclass
class DiffResult:
    """Changed and skipped fields for one entity."""

    changes: list[FieldChange] = field(default_factory=list)
    skipped_immutable: list[str] = field(default_factory=list)

    @property
    def changed_fields(self) -> list[str]:
        return [change.path for change in self.changes]

    @property
    def remote_paths(self) -> list[str]:
        return [change.remote_path for change in self.changes]

    @property
    def is_empty(self) -> bool:
        return not self.changes


def _canonical(value: Any, unordered: bool) -> Any:
    if value is _MISSING:
        return None
    if unordered and isinstance(value, list):
        return sorted(json.dumps(item, sort_keys=True, default=str) for item in value)
    return value


def _equal(a: Any, b: Any, unordered: bool = False) -> bool:
    return _canonical(a, unordered) == _canonical(b, unordered)


def diff_state(
    fields: tuple[FieldSpec, ...],
    desired: dict[str, Any],
    remote: dict[str, Any],
    lifecycle: LifecycleState,
    _path: str = "",
    _remote_path: str = "",
) -> DiffResult:
    """Compare desired against remote, field by field.

    Only fields present in ``desired`` are considered; a field the tenant
    never set is not managed locally and is left alone on the platform.

    Args:
        fields: Schema nodes at this level.
        desired: Desired state at this level.
        remote: Last known remote state at this level.
        lifecycle: Current lifecycle state of the entity.

    Returns:
        The changed fields and the differing-but-immutable fields.
    """
    result = DiffResult()
    for spec in fields:
        if spec.name not in desired:
            continue
        path = f"{_path}{spec.name}"
        remote_path = f"{_remote_path}{spec.remote}"
        want = desired[spec.name]
        have = remote.get(spec.name, _MISSING) if isinstance(remote, dict) else _MISSING

        if _equal(want, have, spec.unordered):
            continue

        if not spec.is_mutable(lifecycle):
            result.skipped_immutable.append(path)
            continue

        if spec.children and isinstance(want, dict):
            nested = diff_state(
                spec.children,
                want,
                have if isinstance(have, dict) else {},
                lifecycle,
                _path=f"{path}.",
                _remote_path=f"{remote_path}.",
            )
            result.changes.extend(nested.changes)
            result.skipped_immutable.extend(nested.skipped_immutable)
            continue

        result.changes.append(
            FieldChange(
                path=path,
                remote_path=remote_path,
                old=None if have is _MISSING else have,
                new=copy.deepcopy(want),
            )
        )
    return result


def _set_path(target: dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = target
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[leaf] = value


def build_partial_payload(changes: list[FieldChange]) -> dict[str, Any]:
    """Build a nested, remote-shaped payload containing only the changed paths."""
    payload: dict[str, Any] = {}
    for change in changes:
        _set_path(payload, change.remote_path, copy.deepcopy(change.new))
    return payload


def apply_changes(state: dict[str, Any], changes: list[FieldChange]) -> dict[str, Any]:
    """Return a copy of ``state`` with the changed local paths set to their new values."""
    updated = copy.deepcopy(state)
    for change in changes:
        _set_path(updated, change.path, copy.deepcopy(change.new))
    return updated
