"""Attribute diff engine: compares desired attributes with observed ones.

Produces a structured diff showing exactly which desired keys do not hold,
with the observed and desired value for each. The reconciler uses it to
decide whether a resource has converged, and reports use it to explain why
a resource failed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class AttributeChange:
    """A single desired key whose observed value differs."""

    key: str
    observed: Any
    desired: Any


@dataclass
class AttributeDiff:
    """Result of comparing desired attributes against observed ones."""

    changes: List[AttributeChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return len(self.changes) > 0

    def summary_lines(self) -> List[str]:
        if not self.has_changes:
            return ["No differences"]
        return [
            f"{change.key}: {_format_value(change.observed)} → {_format_value(change.desired)}"
            for change in self.changes
        ]

    def describe(self) -> str:
        """One-line form used in outcome details."""
        return "; ".join(self.summary_lines())


def compute_diff(desired: Mapping[str, Any], observed: Mapping[str, Any]) -> AttributeDiff:
    """Compare every desired key with its observed value.

    Keys present only in the observed mapping (pid, for example) are
    informational and never count as differences.
    """
    changes = [
        AttributeChange(key=key, observed=observed.get(key), desired=value)
        for key, value in desired.items()
        if observed.get(key) != value
    ]
    return AttributeDiff(changes=changes)


def _format_value(val: Any) -> str:
    """Format a value for human-readable display."""
    if val is None:
        return "null"
    if isinstance(val, bool):
        return "true" if val else "false"
    if isinstance(val, str):
        if _HEX_DIGEST.match(val):
            return val[:12]
        return f'"{val}"'
    if isinstance(val, list):
        if len(val) == 0:
            return "[]"
        if len(val) <= 3:
            return "[" + ", ".join(_format_value(v) for v in val) + "]"
        return f"[{len(val)} items]"
    return str(val)
